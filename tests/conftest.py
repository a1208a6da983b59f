"""Shared test fixtures."""

import itertools
import os
from unittest.mock import AsyncMock, MagicMock

import pytest

# Set test environment before settings are loaded
os.environ["FUTURE_SELF_DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["FUTURE_SELF_LLM_API_KEY"] = "test-key"
os.environ["FUTURE_SELF_SCHEDULER_ENABLED"] = "false"
os.environ["FUTURE_SELF_LOG_LEVEL"] = "ERROR"
# Use litellm's bundled model cost map; the remote fetch fails offline and
# its warning path deadlocks the import under pytest.
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

from future_self.background import BackgroundTasks  # noqa: E402
from future_self.config import Settings  # noqa: E402
from future_self.service import FutureSelfService  # noqa: E402
from future_self.storage.cache import CacheClient, InMemoryBackend  # noqa: E402

SIMULATION = {
    "subject_id": "user-1",
    "current_path": {
        "savings_rate": 0.1,
        "projected_net_worth": {"6mo": 100.0, "1yr": 200.0, "5yr": 1000.0, "10yr": 2000.0, "20yr": 5000.0},
    },
    "optimized_path": {
        "savings_rate": 0.2,
        "projected_net_worth": {"6mo": 150.0, "1yr": 300.0, "5yr": 1500.0, "10yr": 3500.0, "20yr": 9000.0},
    },
    "difference_20yr": 4000.0,
}

PROFILE = {
    "subject_id": "user-1",
    "name": "Ada",
    "age": 28,
    "city": "Lagos",
    "currency": "NGN",
    "monthly_income": 500_000.0,
    "net_worth": 1_000_000.0,
    "savings_rate": 0.1,
    "weekly_letters_enabled": True,
    "goals": [{"name": "House", "target_amount": 20_000_000.0}],
}


def make_draft(variant: str = "gratitude", content: str = "Dear younger me...") -> dict:
    return {
        "content": content,
        "variant": variant,
        "simulation": SIMULATION,
        "user_age": 28,
        "future_age": 60,
        "usage": {"total_tokens": 42},
    }


@pytest.fixture
def config() -> Settings:
    """Settings with fast idempotency polling and small lock bounds."""
    return Settings(
        redis_url=None,
        idempotency_wait_initial_seconds=0.01,
        idempotency_wait_multiplier=1.5,
        idempotency_wait_max_interval_seconds=0.05,
        idempotency_wait_timeout_seconds=0.3,
    )


@pytest.fixture
def cache() -> CacheClient:
    return CacheClient(InMemoryBackend())


@pytest.fixture
def tasks() -> BackgroundTasks:
    return BackgroundTasks()


@pytest.fixture
def repository() -> AsyncMock:
    """Repository mock assigning sequential letter ids."""
    repo = AsyncMock()
    counter = itertools.count(1)
    repo.save_letter.side_effect = lambda *args, **kwargs: f"letter-{next(counter)}"
    repo.get_history.return_value = []
    repo.mark_read.return_value = True
    repo.health_check.return_value = True
    repo.get_profile.return_value = dict(PROFILE)
    repo.eligible_subjects.return_value = []
    return repo


@pytest.fixture
def simulator() -> AsyncMock:
    engine = AsyncMock()
    engine.simulate.return_value = SIMULATION
    return engine


@pytest.fixture
def generator() -> AsyncMock:
    gen = AsyncMock()
    gen.generate_letter.side_effect = lambda subject_id, variant: make_draft(variant)
    gen.generate_triggered_letter.side_effect = lambda subject_id, trigger, context: make_draft(
        trigger.value, "A note from later"
    )
    return gen


@pytest.fixture
def selector() -> MagicMock:
    sel = MagicMock()
    sel.select_variant.return_value = "gratitude"
    return sel


@pytest.fixture
def service(cache, repository, simulator, generator, selector, tasks, config) -> FutureSelfService:
    return FutureSelfService(
        cache, repository, simulator, generator, selector, tasks=tasks, config=config
    )
