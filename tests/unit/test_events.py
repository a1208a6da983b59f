"""Unit tests for domain events and the cache invalidation listener."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from future_self.events import (
    CacheInvalidationListener,
    GoalChanged,
    LargeExpenseRecorded,
    ProfileUpdated,
    parse_event,
)
from future_self.types import LetterTrigger


@pytest.fixture
def listener_service() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def listener(listener_service) -> CacheInvalidationListener:
    return CacheInvalidationListener(listener_service)


class TestParseEvent:
    def test_dispatches_on_kind(self):
        event = parse_event({"kind": "goal.deleted", "subject_id": "user-1", "goal_id": "g1"})
        assert isinstance(event, GoalChanged)

    def test_unknown_kind_is_rejected(self):
        with pytest.raises(ValidationError):
            parse_event({"kind": "user.deleted", "subject_id": "user-1"})

    def test_large_expense_requires_positive_amount(self):
        with pytest.raises(ValidationError):
            parse_event(
                {
                    "kind": "expense.large_recorded",
                    "subject_id": "user-1",
                    "description": "Phone",
                    "amount": 0,
                }
            )


class TestCacheInvalidationListener:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {"kind": "financial.snapshot.created", "subject_id": "user-1", "net_worth": 10.0},
            {"kind": "goal.created", "subject_id": "user-1", "goal_name": "House"},
            {"kind": "goal.updated", "subject_id": "user-1"},
            {"kind": "goal.deleted", "subject_id": "user-1"},
        ],
    )
    async def test_data_changes_invalidate(self, listener, listener_service, payload):
        await listener.handle(parse_event(payload))
        listener_service.invalidate_cache.assert_awaited_once_with("user-1")

    @pytest.mark.asyncio
    async def test_profile_update_with_relevant_field_invalidates(
        self, listener, listener_service
    ):
        event = ProfileUpdated(
            kind="user.profile.updated", subject_id="user-1", fields_updated=["currency", "bio"]
        )
        await listener.handle(event)
        listener_service.invalidate_cache.assert_awaited_once_with("user-1")

    @pytest.mark.asyncio
    async def test_profile_update_without_relevant_field_is_ignored(
        self, listener, listener_service
    ):
        event = ProfileUpdated(
            kind="user.profile.updated", subject_id="user-1", fields_updated=["avatar", "bio"]
        )
        await listener.handle(event)
        listener_service.invalidate_cache.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expense_created_only_logs(self, listener, listener_service):
        await listener.handle(parse_event({"kind": "expense.created", "subject_id": "user-1"}))
        listener_service.invalidate_cache.assert_not_awaited()
        listener_service.generate_triggered_letter.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalidation_failure_is_swallowed(self, listener, listener_service):
        listener_service.invalidate_cache.side_effect = ConnectionError("cache down")
        await listener.handle(parse_event({"kind": "goal.created", "subject_id": "user-1"}))

    @pytest.mark.asyncio
    async def test_milestone_triggers_letter(self, listener, listener_service):
        await listener.handle(
            parse_event(
                {
                    "kind": "goal.milestone.reached",
                    "subject_id": "user-1",
                    "goal_name": "House",
                    "goal_amount": 1000.0,
                    "current_amount": 500.0,
                    "milestone": 50,
                }
            )
        )
        await listener.tasks.drain()

        subject_id, trigger, context = listener_service.generate_triggered_letter.await_args.args
        assert (subject_id, trigger) == ("user-1", LetterTrigger.GOAL_MILESTONE)
        assert context["goal_name"] == "House"
        assert context["milestone"] == 50

    @pytest.mark.asyncio
    async def test_large_expense_triggers_post_decision_letter(self, listener, listener_service):
        listener_service.generate_triggered_letter.side_effect = RuntimeError("llm down")
        event = LargeExpenseRecorded(
            kind="expense.large_recorded", subject_id="user-1", description="Laptop", amount=900.0
        )

        await listener.handle(event)
        await listener.tasks.drain()

        _, trigger, context = listener_service.generate_triggered_letter.await_args.args
        assert trigger is LetterTrigger.POST_DECISION
        assert context["expense_amount"] == 900.0

    @pytest.mark.asyncio
    async def test_handle_many_processes_in_order(self, listener, listener_service):
        events = [
            parse_event({"kind": "goal.created", "subject_id": "user-1"}),
            parse_event({"kind": "goal.created", "subject_id": "user-2"}),
        ]
        await listener.handle_many(events)

        called = [call.args[0] for call in listener_service.invalidate_cache.await_args_list]
        assert called == ["user-1", "user-2"]

    @pytest.mark.asyncio
    async def test_slow_triggered_letter_does_not_hold_up_later_events(
        self, listener, listener_service
    ):
        gate = asyncio.Event()

        async def slow_letter(subject_id, trigger, context):
            await gate.wait()

        listener_service.generate_triggered_letter.side_effect = slow_letter
        events = [
            parse_event(
                {
                    "kind": "goal.milestone.reached",
                    "subject_id": "user-1",
                    "goal_name": "House",
                    "goal_amount": 1000.0,
                    "current_amount": 500.0,
                    "milestone": 50,
                }
            ),
            parse_event({"kind": "goal.updated", "subject_id": "user-1"}),
        ]

        await asyncio.wait_for(listener.handle_many(events), timeout=1)

        listener_service.invalidate_cache.assert_awaited_once_with("user-1")
        assert listener.tasks.pending == 1

        gate.set()
        await listener.tasks.drain()
        listener_service.generate_triggered_letter.assert_awaited_once()
        assert listener.tasks.pending == 0
