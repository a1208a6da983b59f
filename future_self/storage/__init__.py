"""Storage module with factories for the cache client and repository."""

from loguru import logger

from ..config import settings
from .cache import CacheClient, InMemoryBackend, RedisBackend, create_cache
from .protocols import (
    FutureSelfRepository,
    KeyValueBackend,
    LetterRepository,
    SubjectRepository,
)
from .sqlite import SQLRepository


def create_repository(database_url: str | None = None) -> SQLRepository:
    """Create repository instance based on database URL.

    Args:
        database_url: Database URL. Uses settings if not provided.

    Returns:
        Repository serving both letters and subject profiles.
    """
    url = database_url or settings.database_url
    logger.info(f"Creating SQL repository ({url.split(':', 1)[0]})")
    return SQLRepository(url)


__all__ = [
    "CacheClient",
    "FutureSelfRepository",
    "InMemoryBackend",
    "KeyValueBackend",
    "LetterRepository",
    "RedisBackend",
    "SQLRepository",
    "SubjectRepository",
    "create_cache",
    "create_repository",
]
