"""Future Self - letters from your future self, cached and generated once."""

from .api import app, create_app
from .events import CacheInvalidationListener, parse_event
from .jobs import JobState, LetterJobs
from .service import FutureSelfService

__version__ = "1.0.0"

__all__ = [
    "CacheInvalidationListener",
    "FutureSelfService",
    "JobState",
    "LetterJobs",
    "app",
    "create_app",
    "parse_event",
]
