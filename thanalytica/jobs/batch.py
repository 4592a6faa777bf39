"""
Scheduled Batch Jobs

Bulk work the event path can't do on its own:

1. Daily recompute - users active in the last week, so caches for users
   who aren't generating invalidations still get refreshed
2. Weekly correlation refresh - users with enough history get their
   monthly cache (correlations) rebuilt from scratch
3. Cache cleanup - purge expired sub-caches, compact oversized records,
   rebuild the heavy sub-caches of records that stay oversized

Per-user failures are captured in the JobReport and never stop a chunk
or the job (all-settled). A failure before any user is processed (e.g.
listing users) aborts the run with JobAbortedError; the scheduler retries
at the next occurrence.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional

from thanalytica.cache.service import CacheService
from thanalytica.database.models import SubCacheName
from thanalytica.database.repository import RawDataRepository
from thanalytica.metrics.engine import MetricsCalculationEngine
from thanalytica.utils.clock import Clock, utcnow, to_iso
from thanalytica.utils.config import Settings, get_settings

logger = logging.getLogger(__name__)


class JobAbortedError(Exception):
    """A batch job could not start (nothing was processed)."""


@dataclass
class JobReport:
    """Summary of one batch job run."""
    job: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    users_total: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job,
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at) if self.finished_at else None,
            "duration_seconds": round(self.duration_seconds, 2),
            "users_total": self.users_total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": self.errors,
            "details": self.details,
        }


def chunked(items: List[str], size: int) -> Iterator[List[str]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class BatchJobRunner:
    """
    Runs the batch jobs against the shared services.

    Usage:
        runner = BatchJobRunner(engine, cache_service, raw_data)
        report = runner.run_daily_recompute()
    """

    def __init__(
        self,
        engine: MetricsCalculationEngine,
        cache_service: CacheService,
        raw_data: RawDataRepository,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.engine = engine
        self.cache = cache_service
        self.raw_data = raw_data
        self.settings = settings or get_settings()
        self.clock = clock

        self.jobs: Dict[str, Callable[[], JobReport]] = {
            "daily-recompute": self.run_daily_recompute,
            "weekly-correlation": self.run_weekly_correlation_refresh,
            "cache-cleanup": self.run_cache_cleanup,
        }

    def run_job(self, name: str) -> JobReport:
        """Run a job by name (see ``self.jobs``)."""
        if name not in self.jobs:
            raise ValueError(f"Unknown job: {name}. Available: {', '.join(self.jobs)}")
        return self.jobs[name]()

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _list_users(self, report: JobReport, lister: Callable[[], List[str]]) -> List[str]:
        try:
            user_ids = lister()
        except Exception as e:
            logger.error(f"Job {report.job} aborted: could not list users: {e}")
            raise JobAbortedError(f"{report.job}: could not list users: {e}") from e
        report.users_total = len(user_ids)
        return user_ids

    def _process_users(
        self,
        report: JobReport,
        user_ids: List[str],
        process: Callable[[str], Any],
        chunk_size: int,
        parallelism: int,
    ) -> None:
        """Run ``process`` for every user, chunk by chunk, all-settled."""
        for index, chunk in enumerate(chunked(user_ids, chunk_size)):
            chunk_start = time.perf_counter()
            with ThreadPoolExecutor(max_workers=max(1, parallelism),
                                    thread_name_prefix=report.job) as pool:
                futures = [(user_id, pool.submit(process, user_id)) for user_id in chunk]
                for user_id, future in futures:
                    try:
                        future.result()
                        report.succeeded += 1
                    except Exception as e:
                        report.failed += 1
                        report.errors.append({"user_id": user_id, "error": str(e)})
                        logger.error(f"{report.job}: failed for user {user_id}: {e}")

            logger.info(
                f"{report.job}: chunk {index + 1} done ({len(chunk)} users) "
                f"in {time.perf_counter() - chunk_start:.2f}s"
            )

    def _finish(self, report: JobReport) -> JobReport:
        report.finished_at = self.clock()
        logger.info(
            f"Job {report.job} complete: {report.succeeded}/{report.users_total} succeeded, "
            f"{report.failed} failed"
        )
        return report

    # =========================================================================
    # JOBS
    # =========================================================================

    def run_daily_recompute(self) -> JobReport:
        """Recompute all metrics for users active in the trailing window."""
        report = JobReport(job="daily-recompute", started_at=self.clock())
        since = self.clock() - timedelta(days=self.settings.DAILY_JOB_ACTIVE_DAYS)

        user_ids = self._list_users(report, lambda: self.raw_data.list_active_user_ids(since))
        logger.info(f"Daily recompute: {len(user_ids)} active users since {since.date()}")

        self._process_users(
            report,
            user_ids,
            self.engine.calculate_and_cache_user_metrics,
            chunk_size=self.settings.DAILY_JOB_CHUNK_SIZE,
            parallelism=self.settings.DAILY_JOB_PARALLELISM,
        )
        return self._finish(report)

    def run_weekly_correlation_refresh(self) -> JobReport:
        """Drop and rebuild monthly caches for users with enough history."""
        report = JobReport(job="weekly-correlation", started_at=self.clock())
        min_days = self.settings.CORRELATION_JOB_MIN_DAYS

        user_ids = self._list_users(
            report, lambda: self.raw_data.list_user_ids_with_history(min_days)
        )
        logger.info(f"Weekly correlation refresh: {len(user_ids)} users with >= {min_days} days")

        def refresh(user_id: str):
            self.cache.invalidate_cache(user_id, [SubCacheName.MONTHLY])
            return self.engine.calculate_and_cache_user_metrics(user_id)

        self._process_users(
            report,
            user_ids,
            refresh,
            chunk_size=self.settings.CORRELATION_JOB_CHUNK_SIZE,
            parallelism=self.settings.CORRELATION_JOB_PARALLELISM,
        )
        return self._finish(report)

    def run_cache_cleanup(self) -> JobReport:
        """
        Cache maintenance.

        Purges expired sub-caches, compacts oversized records, and for
        records still over the size limit drops and rebuilds the lifetime
        and monthly sub-caches.
        """
        report = JobReport(job="cache-cleanup", started_at=self.clock())

        try:
            stats_before = self.cache.get_cache_stats()
            purged = self.cache.purge_expired()
        except Exception as e:
            logger.error(f"Job cache-cleanup aborted: {e}")
            raise JobAbortedError(f"cache-cleanup: {e}") from e

        report.details["stats_before"] = stats_before
        report.details["expired_purged"] = purged

        user_ids = self._list_users(report, self.cache.list_oversized_user_ids)
        logger.info(
            f"Cache cleanup: {stats_before['total_documents']} documents, "
            f"{len(user_ids)} oversized, {purged} expired sub-caches purged"
        )

        max_size = self.cache.limits.MAX_DOCUMENT_SIZE
        compact = self.cache.config.compact_on_cleanup
        rebuilt = []

        def shrink(user_id: str):
            if compact:
                outcome = self.cache.compact_cache(user_id)
                if outcome["size_after"] <= max_size:
                    return
            # Still too big: rebuild the heavy sub-caches from scratch
            self.cache.invalidate_cache(
                user_id, [SubCacheName.LIFETIME, SubCacheName.MONTHLY], drop_lifetime_history=True
            )
            self.engine.calculate_lifetime_metrics(user_id)
            self.engine.calculate_monthly_metrics(user_id)
            rebuilt.append(user_id)

        self._process_users(report, user_ids, shrink, chunk_size=len(user_ids) or 1, parallelism=1)

        report.details["rebuilt"] = sorted(rebuilt)
        return self._finish(report)
