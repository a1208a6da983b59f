"""Letter generation: profile, projection, LLM call and moderation."""

from typing import Any, Protocol

from loguru import logger

from .exceptions import GenerationError, InsufficientDataError
from .moderation import Moderator
from .providers import LLMProvider
from .simulation import SimulationEngine, require_financials
from .storage.protocols import SubjectRepository
from .types import LetterDraft, LetterTrigger, Simulation

SYSTEM_PROMPT = (
    "You are the reader's future self, writing a short personal letter back in time. "
    "Be warm and specific. Never recommend specific securities, never promise returns, "
    "and never shame the reader."
)


class LetterGenerator(Protocol):
    """Produces letters. May raise SubjectNotFoundError, InsufficientDataError
    or GenerationError; never retries internally."""

    async def generate_letter(self, subject_id: str, variant: str) -> LetterDraft: ...

    async def generate_triggered_letter(
        self, subject_id: str, trigger: LetterTrigger, context: dict[str, Any]
    ) -> LetterDraft: ...


def _money(amount: float, currency: str) -> str:
    return f"{currency} {amount:,.0f}"


def build_letter_prompt(
    profile: dict[str, Any], simulation: Simulation, variant: str, future_age: int
) -> str:
    currency = profile.get("currency") or "NGN"
    current = simulation["current_path"]
    optimized = simulation["optimized_path"]
    goals = ", ".join(g.get("name", "") for g in profile.get("goals") or []) or "none recorded"

    framing = (
        "Write with regret about the years the savings rate stayed where it is, "
        "then show the better path is still open."
        if variant == "regret"
        else "Write with gratitude for the choice to raise the savings rate, "
        "and describe the life it made possible."
    )
    return (
        f"Write a letter from {profile.get('name') or 'Friend'} at age {future_age} "
        f"to themselves at age {profile['age']}, living in {profile.get('city') or 'their city'}.\n"
        f"Current savings rate: {current['savings_rate']:.0%}, 20-year net worth "
        f"{_money(current['projected_net_worth']['20yr'], currency)}.\n"
        f"Optimized savings rate: {optimized['savings_rate']:.0%}, 20-year net worth "
        f"{_money(optimized['projected_net_worth']['20yr'], currency)}.\n"
        f"Goals: {goals}.\n{framing}"
    )


def build_triggered_prompt(
    profile: dict[str, Any], trigger: LetterTrigger, context: dict[str, Any]
) -> str | None:
    name = profile.get("name") or "Friend"
    currency = context.get("currency") or profile.get("currency") or "NGN"

    if trigger is LetterTrigger.POST_DECISION and context.get("expense_amount"):
        amount = float(context["expense_amount"])
        return (
            f"Write a short note from {name}'s future self about a recent purchase: "
            f"{context.get('expense_description') or 'a purchase'} for {_money(amount, currency)} "
            f"(about {_money(amount / 30, currency)} a day over a month). Be kind, not judgmental."
        )
    if trigger is LetterTrigger.GOAL_MILESTONE and context.get("goal_name"):
        return (
            f"Write a short celebration from {name}'s future self: the goal "
            f"'{context['goal_name']}' reached {context.get('milestone', 0)}% "
            f"({_money(float(context.get('current_amount') or 0), currency)} of "
            f"{_money(float(context.get('goal_amount') or 0), currency)})."
        )
    return None


class LLMLetterGenerator:
    """Generates letters through an LLM provider with a moderation gate."""

    def __init__(
        self,
        subjects: SubjectRepository,
        simulator: SimulationEngine,
        provider: LLMProvider,
        moderator: Moderator,
        future_age: int = 60,
    ) -> None:
        self.subjects = subjects
        self.simulator = simulator
        self.provider = provider
        self.moderator = moderator
        self.future_age = future_age

    async def generate_letter(self, subject_id: str, variant: str) -> LetterDraft:
        profile = require_financials(subject_id, await self.subjects.get_profile(subject_id))
        age = profile.get("age")
        if age is None:
            raise InsufficientDataError(["date of birth"])
        if age >= self.future_age:
            raise InsufficientDataError(
                [f"age ({age}) must be below future self age ({self.future_age})"]
            )

        simulation = await self.simulator.simulate(subject_id)
        prompt = build_letter_prompt(profile, simulation, variant, self.future_age)
        response = await self.provider.complete(prompt, system=SYSTEM_PROMPT)
        self._check(subject_id, response.text)

        return {
            "content": response.text,
            "variant": variant,
            "simulation": simulation,
            "user_age": age,
            "future_age": self.future_age,
            "usage": response.usage,
        }

    async def generate_triggered_letter(
        self, subject_id: str, trigger: LetterTrigger, context: dict[str, Any]
    ) -> LetterDraft:
        profile = require_financials(subject_id, await self.subjects.get_profile(subject_id))
        prompt = build_triggered_prompt(profile, trigger, context)
        if prompt is None:
            raise GenerationError(
                f"Unknown trigger or missing context: {trigger.value}", {"context": context}
            )

        response = await self.provider.complete(prompt, system=SYSTEM_PROMPT)
        self._check(subject_id, response.text)

        return {
            "content": response.text,
            "variant": trigger.value,
            "simulation": None,
            "user_age": profile.get("age") or 0,
            "future_age": self.future_age,
            "usage": response.usage,
        }

    def _check(self, subject_id: str, content: str) -> None:
        result = self.moderator.moderate(content)
        if not result.passed:
            logger.error(f"Content moderation failed for subject {subject_id}: {result.flags}")
            raise GenerationError(
                "Generated content failed safety checks",
                {"subject_id": subject_id, "flags": result.flags},
            )
