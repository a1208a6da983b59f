"""Deterministic A/B variant assignment."""

import hashlib
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from loguru import logger


class VariantSelector(Protocol):
    """Assigns a subject to an experiment arm."""

    def select_variant(self, experiment: str, subject_id: str) -> str | None: ...


@dataclass
class Variant:
    id: str
    weight: float
    criteria: dict[str, Any] = field(default_factory=dict)


@dataclass
class Experiment:
    name: str
    variants: list[Variant]
    enabled: bool = True
    description: str = ""
    start_date: datetime | None = None
    end_date: datetime | None = None


class ABTestManager:
    """Registry of experiments with hash-based weighted assignment.

    The same subject always lands in the same arm of a given experiment, so
    cache and idempotency keys namespaced by variant stay stable.
    """

    def __init__(self) -> None:
        self._experiments: dict[str, Experiment] = {}

    def register(self, experiment: Experiment) -> None:
        """Register or replace an experiment."""
        if not experiment.variants:
            raise ValueError(f"Experiment '{experiment.name}' needs at least one variant")
        for variant in experiment.variants:
            if variant.weight <= 0:
                raise ValueError(f"Variant weight must be positive: {variant.id}")
        self._experiments[experiment.name] = experiment
        logger.debug(f"Registered experiment '{experiment.name}'")

    def select_variant(self, experiment: str, subject_id: str) -> str | None:
        """Select a variant id, or None when the experiment is unknown or inactive."""
        test = self._experiments.get(experiment)
        if test is None:
            logger.warning(f"Experiment '{experiment}' not found")
            return None
        if not test.enabled:
            return None

        now = datetime.now(UTC)
        if test.start_date and now < test.start_date:
            return None
        if test.end_date and now > test.end_date:
            return None

        point = self._hash(experiment, subject_id)
        total = sum(v.weight for v in test.variants)
        cumulative = 0.0
        for variant in test.variants:
            cumulative += variant.weight / total
            if point < cumulative:
                return variant.id
        return test.variants[-1].id

    @staticmethod
    def _hash(experiment: str, subject_id: str) -> float:
        """Map (experiment, subject) to [0, 1] via the first 4 bytes of md5."""
        digest = hashlib.md5(f"{experiment}:{subject_id}".encode(), usedforsecurity=False).digest()
        return int.from_bytes(digest[:4], "big") / 0xFFFFFFFF


def letter_mode_experiment(name: str, variants: list[str]) -> Experiment:
    """Even split across letter variants (gratitude vs regret framing)."""
    return Experiment(
        name=name,
        variants=[Variant(id=v, weight=1.0, criteria={"mode": v}) for v in variants],
        description="Letter framing: gain (gratitude) against loss (regret)",
    )
