"""SQL repository for letters and subject profiles."""

import uuid
from datetime import UTC, datetime
from typing import Any

import databases
import sqlalchemy as sa
from loguru import logger
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.schema import CreateIndex, CreateTable

from ..types import LetterRecord, LetterStats, Preferences

_DIALECTS = {"sqlite": sqlite.dialect(), "postgresql": postgresql.dialect()}


class SQLRepository:
    """SQLite/PostgreSQL repository using databases."""

    def __init__(self, database_url: str):
        """Initialize repository.

        Args:
            database_url: Database connection URL.
        """
        self.database = databases.Database(database_url)
        self.metadata = sa.MetaData()

        self.letters = sa.Table(
            "letters",
            self.metadata,
            sa.Column("id", sa.String, primary_key=True),
            sa.Column("subject_id", sa.String, nullable=False, index=True),
            sa.Column("variant", sa.String, nullable=False),
            sa.Column("trigger", sa.String, nullable=False),
            sa.Column("content", sa.Text, nullable=False),
            sa.Column("created_at", sa.DateTime, nullable=False),
            sa.Column("read_at", sa.DateTime, nullable=True),
            sa.Column("read_duration_ms", sa.Integer, nullable=True),
            sa.Column("metadata", sa.JSON),
        )

        self.subjects = sa.Table(
            "subjects",
            self.metadata,
            sa.Column("id", sa.String, primary_key=True),
            sa.Column("name", sa.String),
            sa.Column("age", sa.Integer),
            sa.Column("city", sa.String),
            sa.Column("currency", sa.String),
            sa.Column("monthly_income", sa.Float),
            sa.Column("net_worth", sa.Float),
            sa.Column("savings_rate", sa.Float),
            sa.Column("weekly_letters_enabled", sa.Boolean, default=True),
            sa.Column("goals", sa.JSON),
            sa.Column("updated_at", sa.DateTime),
        )

    async def startup(self) -> None:
        """Connect and create tables if they don't exist."""
        await self.database.connect()
        await self._create_tables()

    async def shutdown(self) -> None:
        """Close database connection."""
        await self.database.disconnect()

    async def _create_tables(self) -> None:
        dialect = _DIALECTS.get(self.database.url.dialect, sqlite.dialect())
        for table in self.metadata.sorted_tables:
            ddl = CreateTable(table, if_not_exists=True).compile(dialect=dialect)
            await self.database.execute(str(ddl))
            for index in table.indexes:
                ddl = CreateIndex(index, if_not_exists=True).compile(dialect=dialect)
                await self.database.execute(str(ddl))

    async def save_letter(
        self, subject_id: str, variant: str, trigger: str, content: str, **metadata: Any
    ) -> str:
        """Persist a letter.

        Args:
            subject_id: Subject the letter was written for.
            variant: Letter variant (experiment arm).
            trigger: What caused the generation.
            content: Letter text.
            **metadata: Usage, ages and projection figures.

        Returns:
            The new letter id.
        """
        letter_id = str(uuid.uuid4())
        query = self.letters.insert().values(
            id=letter_id,
            subject_id=subject_id,
            variant=variant,
            trigger=trigger,
            content=content,
            created_at=datetime.now(UTC),
            metadata=metadata,
        )
        await self.database.execute(query)
        logger.info(f"Letter persisted: {letter_id} for subject {subject_id}")
        return letter_id

    @staticmethod
    def _letter_record(row: Any) -> LetterRecord:
        return {
            "id": row["id"],
            "subject_id": row["subject_id"],
            "variant": row["variant"],
            "trigger": row["trigger"],
            "content": row["content"],
            "created_at": row["created_at"].isoformat(),
            "read_at": row["read_at"].isoformat() if row["read_at"] else None,
            "read_duration_ms": row["read_duration_ms"],
            "metadata": row["metadata"] or {},
        }

    async def get_history(
        self, subject_id: str, limit: int = 10, offset: int = 0
    ) -> list[LetterRecord]:
        """Get a subject's letters ordered by creation time descending."""
        query = (
            self.letters.select()
            .where(self.letters.c.subject_id == subject_id)
            .order_by(self.letters.c.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        rows = await self.database.fetch_all(query)
        return [self._letter_record(row) for row in rows]

    async def get_letter(self, subject_id: str, letter_id: str) -> LetterRecord | None:
        """Get one letter if it belongs to the subject."""
        row = await self.database.fetch_one(
            self.letters.select().where(
                (self.letters.c.id == letter_id) & (self.letters.c.subject_id == subject_id)
            )
        )
        return self._letter_record(row) if row is not None else None

    async def mark_read(
        self, subject_id: str, letter_id: str, read_duration_ms: int | None = None
    ) -> bool:
        """Record a read if the letter belongs to the subject.

        The first read time is kept; a new duration replaces the stored one.
        """
        owned = await self.database.fetch_one(
            self.letters.select().where(
                (self.letters.c.id == letter_id) & (self.letters.c.subject_id == subject_id)
            )
        )
        if owned is None:
            return False

        await self.database.execute(
            self.letters.update()
            .where(self.letters.c.id == letter_id)
            .values(
                read_at=owned["read_at"] or datetime.now(UTC),
                read_duration_ms=(
                    read_duration_ms if read_duration_ms is not None else owned["read_duration_ms"]
                ),
            )
        )
        return True

    async def letter_stats(self, subject_id: str, since: datetime) -> LetterStats:
        """Aggregate engagement for a subject; ``this_month`` counts letters from since."""
        letters = self.letters
        owned = letters.c.subject_id == subject_id

        totals = await self.database.fetch_one(
            sa.select(
                sa.func.count(letters.c.id).label("total"),
                sa.func.count(letters.c.read_at).label("read"),
                sa.func.avg(letters.c.read_duration_ms).label("avg_read_duration_ms"),
            ).where(owned)
        )
        first = await self.database.fetch_one(
            sa.select(letters.c.created_at).where(owned).order_by(letters.c.created_at.asc()).limit(1)
        )
        last = await self.database.fetch_one(
            sa.select(letters.c.created_at).where(owned).order_by(letters.c.created_at.desc()).limit(1)
        )
        by_trigger = await self.database.fetch_all(
            sa.select(letters.c.trigger, sa.func.count(letters.c.id).label("count"))
            .where(owned)
            .group_by(letters.c.trigger)
        )
        this_month = await self.database.fetch_val(
            sa.select(sa.func.count(letters.c.id)).where(owned & (letters.c.created_at >= since))
        )

        avg_duration = totals["avg_read_duration_ms"] if totals else None
        return {
            "total_letters": int(totals["total"]) if totals else 0,
            "letters_read": int(totals["read"]) if totals else 0,
            "avg_read_duration_ms": float(avg_duration) if avg_duration is not None else None,
            "first_letter_at": first["created_at"].isoformat() if first else None,
            "last_letter_at": last["created_at"].isoformat() if last else None,
            "by_trigger": {row["trigger"]: int(row["count"]) for row in by_trigger},
            "this_month": int(this_month or 0),
        }

    async def save_subject(self, subject_id: str, **profile: Any) -> None:
        """Insert or replace a subject profile.

        The weekly letter opt-in is kept from the stored row unless given.
        """
        async with self.database.transaction():
            if "weekly_letters_enabled" not in profile:
                current = await self.get_preferences(subject_id)
                profile["weekly_letters_enabled"] = (
                    current["weekly_letters_enabled"] if current else True
                )
            await self.database.execute(
                self.subjects.delete().where(self.subjects.c.id == subject_id)
            )
            await self.database.execute(
                self.subjects.insert().values(
                    id=subject_id, updated_at=datetime.now(UTC), **profile
                )
            )

    async def get_preferences(self, subject_id: str) -> Preferences | None:
        row = await self.database.fetch_one(
            sa.select(self.subjects.c.weekly_letters_enabled, self.subjects.c.updated_at).where(
                self.subjects.c.id == subject_id
            )
        )
        if row is None:
            return None
        return {
            "weekly_letters_enabled": bool(row["weekly_letters_enabled"]),
            "updated_at": row["updated_at"].isoformat() if row["updated_at"] else None,
        }

    async def update_preferences(
        self, subject_id: str, weekly_letters_enabled: bool | None = None
    ) -> Preferences | None:
        """Update the weekly letter opt-in; None when the subject is unknown."""
        values: dict[str, Any] = {"updated_at": datetime.now(UTC)}
        if weekly_letters_enabled is not None:
            values["weekly_letters_enabled"] = weekly_letters_enabled

        async with self.database.transaction():
            if await self.get_preferences(subject_id) is None:
                return None
            await self.database.execute(
                self.subjects.update().where(self.subjects.c.id == subject_id).values(**values)
            )
            return await self.get_preferences(subject_id)

    async def get_profile(self, subject_id: str) -> dict[str, Any] | None:
        row = await self.database.fetch_one(
            self.subjects.select().where(self.subjects.c.id == subject_id)
        )
        if row is None:
            return None
        return {
            "subject_id": row["id"],
            "name": row["name"],
            "age": row["age"],
            "city": row["city"],
            "currency": row["currency"],
            "monthly_income": row["monthly_income"],
            "net_worth": row["net_worth"],
            "savings_rate": row["savings_rate"],
            "weekly_letters_enabled": bool(row["weekly_letters_enabled"]),
            "goals": row["goals"] or [],
        }

    async def eligible_subjects(self) -> list[str]:
        """Subjects opted in to weekly letters that have financial data."""
        query = (
            sa.select(self.subjects.c.id)
            .where(self.subjects.c.weekly_letters_enabled.is_(True))
            .where(self.subjects.c.monthly_income > 0)
            .where(self.subjects.c.net_worth.is_not(None))
            .order_by(self.subjects.c.id)
        )
        rows = await self.database.fetch_all(query)
        return [row["id"] for row in rows]

    async def health_check(self) -> bool:
        """Check if database is accessible."""
        try:
            await self.database.execute("SELECT 1")
            return True
        except (ConnectionError, TimeoutError, OSError):
            logger.exception("Database health check failed")
            return False
