"""
Service container - built once at app startup (or per test).

Wires the database engine, repositories and services together so request
handlers and jobs receive explicit instances instead of module globals.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from thanalytica.cache.config import CacheConfig, get_cache_config
from thanalytica.cache.dispatch import RecomputeDispatcher
from thanalytica.cache.invalidation import CacheInvalidator, install_invalidation_hooks
from thanalytica.cache.service import CacheService
from thanalytica.database.repository import RawDataRepository
from thanalytica.database.session import create_db_engine, create_session_factory, init_db
from thanalytica.jobs.batch import BatchJobRunner
from thanalytica.jobs.scheduler import JobScheduler
from thanalytica.metrics.engine import MetricsCalculationEngine
from thanalytica.metrics.scoring import ScoringPolicy
from thanalytica.utils.clock import Clock, utcnow
from thanalytica.utils.config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Holds every long-lived service instance."""
    settings: Settings
    db_engine: Engine
    session_factory: sessionmaker
    raw_data: RawDataRepository
    cache: CacheService
    metrics: MetricsCalculationEngine
    invalidator: CacheInvalidator
    dispatcher: RecomputeDispatcher
    jobs: BatchJobRunner
    scheduler: Optional[JobScheduler] = None
    clock: Clock = utcnow
    _remove_hooks: Optional[Callable[[], None]] = field(default=None, repr=False)
    _owns_engine: bool = field(default=False, repr=False)

    def close(self) -> None:
        """Stop background work and release database connections."""
        self.dispatcher.shutdown(wait_for_running=True)
        if self._remove_hooks is not None:
            self._remove_hooks()
            self._remove_hooks = None
        if self._owns_engine:
            self.db_engine.dispose()
        logger.info("Service container closed")


def build_container(
    settings: Optional[Settings] = None,
    db_engine: Optional[Engine] = None,
    clock: Clock = utcnow,
    scoring: Optional[ScoringPolicy] = None,
    cache_config: Optional[CacheConfig] = None,
    create_tables: bool = True,
) -> ServiceContainer:
    """
    Build and wire all services.

    Args:
        settings: Application settings (environment if omitted)
        db_engine: Existing engine to use; one is created from
            settings.DATABASE_URL otherwise
        clock: Time source shared by every service
        scoring: Scoring policy for the metrics engine
        cache_config: Cache TTLs/limits/toggles
        create_tables: Create missing tables on startup
    """
    settings = settings or get_settings()
    owns_engine = db_engine is None
    if db_engine is None:
        db_engine = create_db_engine(settings.DATABASE_URL, echo=settings.SQL_DEBUG)
    if create_tables:
        init_db(db_engine)

    session_factory = create_session_factory(db_engine)

    raw_data = RawDataRepository(session_factory, clock=clock)
    cache = CacheService(session_factory, clock=clock, config=cache_config or get_cache_config())
    metrics = MetricsCalculationEngine(
        cache,
        raw_data,
        scoring=scoring,
        clock=clock,
        max_workers=settings.ENGINE_MAX_WORKERS,
    )

    invalidator = CacheInvalidator(cache)
    remove_hooks = install_invalidation_hooks(session_factory, invalidator)

    dispatcher = RecomputeDispatcher(
        metrics,
        cache,
        max_workers=settings.RECOMPUTE_MAX_WORKERS,
        in_flight_ttl=timedelta(seconds=settings.RECOMPUTE_IN_FLIGHT_SECONDS),
    )

    jobs = BatchJobRunner(metrics, cache, raw_data, settings=settings, clock=clock)

    scheduler = None
    if settings.SCHEDULER_ENABLED:
        scheduler = JobScheduler(
            jobs,
            timezone=settings.SCHEDULER_TIMEZONE,
            poll_seconds=settings.SCHEDULER_POLL_SECONDS,
        )

    logger.info(f"Service container ready (database: {db_engine.dialect.name})")

    return ServiceContainer(
        settings=settings,
        db_engine=db_engine,
        session_factory=session_factory,
        raw_data=raw_data,
        cache=cache,
        metrics=metrics,
        invalidator=invalidator,
        dispatcher=dispatcher,
        jobs=jobs,
        scheduler=scheduler,
        clock=clock,
        _remove_hooks=remove_hooks,
        _owns_engine=owns_engine,
    )
