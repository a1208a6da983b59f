"""Storage protocol definitions using typing.Protocol."""

from datetime import datetime
from typing import Any, Protocol

from ..types import LetterRecord, LetterStats, Preferences


class KeyValueBackend(Protocol):
    """Raw key-value store. Implementations raise on backend failure."""

    async def get(self, key: str) -> str | None:
        """Get raw value."""
        ...

    async def set(
        self, key: str, value: str, ttl_ms: int | None = None, only_if_absent: bool = False
    ) -> bool:
        """Set raw value; returns False when only_if_absent and the key exists."""
        ...

    async def delete(self, key: str) -> int:
        """Delete a key, returning the number of removed keys."""
        ...

    async def compare_and_delete(self, key: str, token: str) -> bool:
        """Delete key only if its value equals token, atomically."""
        ...

    async def compare_and_expire(self, key: str, token: str, ttl_ms: int) -> bool:
        """Reset key TTL only if its value equals token, atomically."""
        ...

    async def keys(self, pattern: str) -> list[str]:
        """List keys matching a glob pattern in one blocking call."""
        ...

    async def scan(self, pattern: str, count: int = 100) -> list[str]:
        """List keys matching a glob pattern with cursor iteration."""
        ...

    async def ping(self) -> bool:
        """Check backend connectivity."""
        ...

    async def startup(self) -> None:
        """Initialize backend on startup."""
        ...

    async def shutdown(self) -> None:
        """Cleanup backend on shutdown."""
        ...


class LetterRepository(Protocol):
    """Repository protocol for letter persistence."""

    async def save_letter(
        self, subject_id: str, variant: str, trigger: str, content: str, **metadata: Any
    ) -> str:
        """Persist a letter and return its permanent id."""
        ...

    async def get_history(
        self, subject_id: str, limit: int = 10, offset: int = 0
    ) -> list[LetterRecord]:
        """Get a subject's letters, newest first."""
        ...

    async def get_letter(self, subject_id: str, letter_id: str) -> LetterRecord | None:
        """Get one of the subject's letters or None."""
        ...

    async def mark_read(
        self, subject_id: str, letter_id: str, read_duration_ms: int | None = None
    ) -> bool:
        """Mark a letter as read; False when it does not belong to the subject."""
        ...

    async def letter_stats(self, subject_id: str, since: datetime) -> LetterStats:
        """Aggregate engagement over the subject's letters."""
        ...

    async def health_check(self) -> bool:
        """Check if repository is healthy."""
        ...


class SubjectRepository(Protocol):
    """Subject profiles and letter preferences."""

    async def get_profile(self, subject_id: str) -> dict[str, Any] | None:
        """Get a subject profile or None."""
        ...

    async def eligible_subjects(self) -> list[str]:
        """Ids of subjects opted in to weekly letters with financial data."""
        ...

    async def get_preferences(self, subject_id: str) -> Preferences | None:
        """Get the subject's letter preferences or None."""
        ...

    async def update_preferences(
        self, subject_id: str, weekly_letters_enabled: bool | None = None
    ) -> Preferences | None:
        """Update preferences; None when the subject is unknown."""
        ...


class FutureSelfRepository(LetterRepository, SubjectRepository, Protocol):
    """Letters and subject profiles behind one store."""
