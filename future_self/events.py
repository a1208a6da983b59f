"""Domain events that keep cached simulations and letters fresh."""

from collections.abc import Iterable
from typing import Annotated, Any, Literal, Protocol

from loguru import logger
from pydantic import BaseModel, Field, TypeAdapter

from .background import BackgroundTasks
from .service import FutureSelfService
from .types import LetterTrigger

RELEVANT_PROFILE_FIELDS = frozenset({"name", "date_of_birth", "country", "currency"})


class SubjectEvent(BaseModel):
    subject_id: str = Field(..., min_length=1, max_length=100)


class FinancialSnapshotCreated(SubjectEvent):
    kind: Literal["financial.snapshot.created"]
    snapshot_id: str | None = None
    net_worth: float | None = None
    savings_rate: float | None = None


class GoalChanged(SubjectEvent):
    kind: Literal["goal.created", "goal.updated", "goal.deleted"]
    goal_id: str | None = None
    goal_name: str | None = None


class ProfileUpdated(SubjectEvent):
    kind: Literal["user.profile.updated"]
    fields_updated: list[str] = Field(default_factory=list)


class ExpenseCreated(SubjectEvent):
    kind: Literal["expense.created"]
    expense_id: str | None = None


class GoalMilestoneReached(SubjectEvent):
    kind: Literal["goal.milestone.reached"]
    goal_name: str
    goal_amount: float
    current_amount: float
    milestone: int = Field(..., ge=0, le=100)
    currency: str | None = None


class LargeExpenseRecorded(SubjectEvent):
    kind: Literal["expense.large_recorded"]
    description: str
    amount: float = Field(..., gt=0)
    currency: str | None = None


DomainEvent = Annotated[
    FinancialSnapshotCreated
    | GoalChanged
    | ProfileUpdated
    | ExpenseCreated
    | GoalMilestoneReached
    | LargeExpenseRecorded,
    Field(discriminator="kind"),
]

_event_adapter: TypeAdapter[Any] = TypeAdapter(DomainEvent)


def parse_event(payload: dict[str, Any]) -> DomainEvent:
    """Validate a raw payload into its event model by ``kind``."""
    return _event_adapter.validate_python(payload)  # type: ignore[no-any-return]


class DomainEventSink(Protocol):
    async def handle(self, event: DomainEvent) -> None: ...


class CacheInvalidationListener:
    """Invalidates a subject's cache on upstream data changes.

    Handlers never raise: a failed invalidation leaves stale entries that
    expire by TTL, and a failed triggered letter is only logged. Triggered
    letters run detached on ``tasks`` so an LLM call never holds up the
    events queued behind it.
    """

    def __init__(
        self, service: FutureSelfService, tasks: BackgroundTasks | None = None
    ) -> None:
        self.service = service
        self.tasks = tasks or BackgroundTasks()

    async def handle(self, event: DomainEvent) -> None:
        match event:
            case FinancialSnapshotCreated() | GoalChanged():
                await self._invalidate(event.subject_id, event.kind)
            case ProfileUpdated(fields_updated=fields):
                if RELEVANT_PROFILE_FIELDS.isdisjoint(fields):
                    logger.debug(
                        f"Skipping cache invalidation for {event.subject_id}: "
                        f"no relevant fields in {fields}"
                    )
                    return
                await self._invalidate(event.subject_id, event.kind)
            case ExpenseCreated():
                logger.debug(
                    f"Expense activity for {event.subject_id}, cache refreshes on expiry"
                )
            case GoalMilestoneReached():
                self._submit_trigger(
                    event.subject_id,
                    LetterTrigger.GOAL_MILESTONE,
                    {
                        "goal_name": event.goal_name,
                        "goal_amount": event.goal_amount,
                        "current_amount": event.current_amount,
                        "milestone": event.milestone,
                        "currency": event.currency,
                    },
                )
            case LargeExpenseRecorded():
                self._submit_trigger(
                    event.subject_id,
                    LetterTrigger.POST_DECISION,
                    {
                        "expense_description": event.description,
                        "expense_amount": event.amount,
                        "currency": event.currency,
                    },
                )

    async def handle_many(self, events: Iterable[DomainEvent]) -> None:
        for event in events:
            await self.handle(event)

    async def _invalidate(self, subject_id: str, kind: str) -> None:
        try:
            await self.service.invalidate_cache(subject_id)
            logger.info(f"Cache invalidated for {subject_id} after {kind}")
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Cache invalidation failed for {subject_id} ({kind}): {e}")

    def _submit_trigger(
        self, subject_id: str, trigger: LetterTrigger, context: dict[str, Any]
    ) -> None:
        self.tasks.submit(
            self._trigger(subject_id, trigger, context),
            f"{trigger.value} letter {subject_id}",
        )

    async def _trigger(
        self, subject_id: str, trigger: LetterTrigger, context: dict[str, Any]
    ) -> None:
        try:
            await self.service.generate_triggered_letter(subject_id, trigger, context)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Triggered letter failed for {subject_id} ({trigger.value}): {e}")
