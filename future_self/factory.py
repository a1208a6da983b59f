"""Component factory for dependency injection."""

from dataclasses import dataclass

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from .background import BackgroundTasks
from .config import Settings, get_settings
from .events import CacheInvalidationListener
from .experiments import ABTestManager, letter_mode_experiment
from .generator import LLMLetterGenerator
from .jobs import LetterJobs
from .moderation import RuleModerator
from .providers import create_llm_provider
from .retry_queue import RetryQueue
from .scheduler import build_scheduler, register_jobs
from .service import FutureSelfService
from .simulation import ProjectionEngine
from .storage import SQLRepository, create_cache, create_repository
from .storage.cache import CacheClient
from .telemetry import LoggingTracer


@dataclass
class Components:
    """Everything the application wires together at startup."""

    cache: CacheClient
    repository: SQLRepository
    tasks: BackgroundTasks
    service: FutureSelfService
    jobs: LetterJobs
    listener: CacheInvalidationListener
    scheduler: AsyncIOScheduler | None = None


class ServiceFactory:
    """Builds and tears down the configured components."""

    @staticmethod
    async def create(config: Settings | None = None) -> Components:
        config = config or get_settings()

        cache = create_cache(config.redis_url)
        repository = create_repository(config.database_url)
        await repository.startup()
        await cache.startup()

        selector = ABTestManager()
        selector.register(letter_mode_experiment(config.letter_experiment, config.letter_variants))

        simulator = ProjectionEngine(repository)
        generator = LLMLetterGenerator(
            repository, simulator, create_llm_provider(), RuleModerator(), config.future_age
        )
        tasks = BackgroundTasks()
        service = FutureSelfService(
            cache, repository, simulator, generator, selector, tasks=tasks, config=config
        )
        jobs = LetterJobs(
            service, repository, cache, RetryQueue(cache, config), LoggingTracer(), config
        )

        scheduler = None
        if config.scheduler_enabled:
            scheduler = build_scheduler(config)
            register_jobs(scheduler, jobs, config)

        logger.info("Future Self components created")
        return Components(
            cache=cache,
            repository=repository,
            tasks=tasks,
            service=service,
            jobs=jobs,
            listener=CacheInvalidationListener(service, tasks),
            scheduler=scheduler,
        )

    @staticmethod
    async def shutdown(components: Components) -> None:
        """Stop the scheduler, drain detached work and close connections."""
        logger.info("Shutting down Future Self components")

        if components.scheduler is not None and components.scheduler.running:
            components.scheduler.shutdown(wait=False)

        await components.tasks.drain()

        try:
            await components.repository.shutdown()
            logger.debug("Repository shutdown complete")
        except (ConnectionError, TimeoutError, OSError) as e:
            logger.warning(f"Repository shutdown failed: {e}")

        try:
            await components.cache.shutdown()
            logger.debug("Cache shutdown complete")
        except (ConnectionError, TimeoutError, OSError) as e:
            logger.warning(f"Cache shutdown failed: {e}")

        logger.info("Future Self shutdown complete")
