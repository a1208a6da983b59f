"""Dual-path net worth projection.

A deterministic compound-growth stand-in for the Monte Carlo engine: the
orchestration layer only depends on ``SimulationEngine.simulate``.
"""

from typing import Any, Protocol

from .exceptions import InsufficientDataError, SubjectNotFoundError
from .storage.protocols import SubjectRepository
from .types import PathProjection, Simulation

HORIZONS = {"6mo": 0.5, "1yr": 1.0, "5yr": 5.0, "10yr": 10.0, "20yr": 20.0}

ANNUAL_RETURN = 0.07
RATE_UPLIFT = 0.10
MIN_OPTIMIZED_RATE = 0.20
MAX_OPTIMIZED_RATE = 0.60


class SimulationEngine(Protocol):
    async def simulate(self, subject_id: str) -> Simulation: ...


def require_financials(subject_id: str, profile: dict[str, Any] | None) -> dict[str, Any]:
    """Raise the user-data errors for a missing subject or missing figures."""
    if profile is None:
        raise SubjectNotFoundError(subject_id)
    missing = []
    if profile.get("net_worth") is None:
        missing.append("financial snapshot")
    if not profile.get("monthly_income"):
        missing.append("monthly income")
    if missing:
        raise InsufficientDataError(missing)
    return profile


def horizon_for(years: float) -> str:
    """Smallest projection horizon covering years; longer spans use 20yr."""
    for label, horizon_years in HORIZONS.items():
        if years <= horizon_years:
            return label
    return "20yr"


def project(net_worth: float, annual_savings: float, years: float) -> float:
    growth = (1 + ANNUAL_RETURN) ** years
    return round(net_worth * growth + annual_savings * (growth - 1) / ANNUAL_RETURN, 2)


def project_path(net_worth: float, monthly_income: float, savings_rate: float) -> PathProjection:
    annual_savings = monthly_income * 12 * savings_rate
    return {
        "savings_rate": savings_rate,
        "projected_net_worth": {
            label: project(net_worth, annual_savings, years) for label, years in HORIZONS.items()
        },
    }


class ProjectionEngine:
    """Projects current savings behavior against an optimized savings rate."""

    def __init__(self, subjects: SubjectRepository) -> None:
        self.subjects = subjects

    async def simulate(self, subject_id: str) -> Simulation:
        profile = require_financials(subject_id, await self.subjects.get_profile(subject_id))

        rate = float(profile.get("savings_rate") or 0.0)
        optimized_rate = min(max(rate + RATE_UPLIFT, MIN_OPTIMIZED_RATE), MAX_OPTIMIZED_RATE)
        net_worth = float(profile["net_worth"])
        income = float(profile["monthly_income"])

        current = project_path(net_worth, income, rate)
        optimized = project_path(net_worth, income, optimized_rate)
        return {
            "subject_id": subject_id,
            "current_path": current,
            "optimized_path": optimized,
            "difference_20yr": round(
                optimized["projected_net_worth"]["20yr"] - current["projected_net_worth"]["20yr"],
                2,
            ),
        }
