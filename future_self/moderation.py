"""Rule-based safety check for generated letters."""

import re
from dataclasses import dataclass, field
from typing import Literal, Protocol

from loguru import logger

Severity = Literal["passed", "info", "warning", "critical"]

_RANK = {"passed": 0, "info": 1, "warning": 2, "critical": 3}


@dataclass
class ModerationResult:
    passed: bool
    flags: list[str] = field(default_factory=list)
    severity: Severity = "passed"


class Moderator(Protocol):
    def moderate(self, content: str) -> ModerationResult: ...


@dataclass(frozen=True)
class Rule:
    id: str
    pattern: str
    severity: Severity
    description: str


DEFAULT_RULES = [
    Rule("guaranteed_returns", r"guaranteed\s+(returns?|profits?)", "critical",
         "Promises guaranteed investment returns"),
    Rule("specific_securities", r"\b(buy|sell)\s+(shares|stock|crypto|bitcoin)\b", "critical",
         "Recommends buying or selling specific assets"),
    Rule("get_rich_quick", r"get\s+rich\s+quick|double\s+your\s+money", "critical",
         "Get-rich-quick framing"),
    Rule("self_harm", r"\b(kill|hurt)\s+(yourself|myself)\b", "critical",
         "Self-harm language"),
    Rule("shaming", r"\b(stupid|lazy|pathetic|failure)\b", "warning",
         "Shaming language"),
    Rule("urgency", r"\b(act now|before it'?s too late)\b", "info",
         "Pressure tactics"),
]


class RuleModerator:
    """Regex rules ordered by severity; any critical match fails the letter."""

    def __init__(self, rules: list[Rule] | None = None) -> None:
        self.rules = rules if rules is not None else DEFAULT_RULES

    def moderate(self, content: str) -> ModerationResult:
        flags: list[str] = []
        highest: Severity = "passed"

        for rule in self.rules:
            if re.search(rule.pattern, content, re.IGNORECASE):
                flag = f"{rule.id}: {rule.description}"
                if flag not in flags:
                    flags.append(flag)
                if _RANK[rule.severity] > _RANK[highest]:
                    highest = rule.severity

        passed = highest != "critical"
        if not passed:
            logger.warning(f"Content moderation FAILED: {', '.join(flags)}")
        elif flags:
            logger.debug(f"Content moderation passed with warnings: {', '.join(flags)}")

        return ModerationResult(passed=passed, flags=flags, severity=highest)
