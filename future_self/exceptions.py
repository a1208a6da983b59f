"""Domain-specific exceptions for the Future Self service."""

from typing import Any


class FutureSelfError(Exception):
    """Base exception for all Future Self errors."""


class SubjectNotFoundError(FutureSelfError):
    """The subject a letter or simulation was requested for does not exist."""

    def __init__(self, subject_id: str) -> None:
        self.subject_id = subject_id
        super().__init__(f"Subject '{subject_id}' not found")


class InsufficientDataError(FutureSelfError):
    """The subject lacks the financial data needed to generate output."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"Insufficient data: missing {', '.join(missing)}")


class GenerationError(FutureSelfError):
    """Letter generation failed (LLM error, moderation or safety rejection)."""

    def __init__(self, reason: str, details: dict[str, Any] | None = None) -> None:
        self.reason = reason
        self.details = details or {}
        super().__init__(reason)


class StorageError(FutureSelfError):
    """Error related to durable storage operations."""


class ConfigurationError(FutureSelfError):
    """Error related to configuration issues."""
