"""
Background Recompute Dispatch

Cache misses on the read path hand the user off to this dispatcher and
return immediately. Recomputes run on a dedicated thread pool that is not
tied to any request, so a client disconnect or request timeout never
cancels one.

Single-flight per user, on two levels:
- in-process: a registry of running futures
- across processes: the ``computing_until`` marker on the cache record,
  claimed with a conditional UPDATE and released when the run ends
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import timedelta
from typing import Dict, Optional

from thanalytica.cache.service import CacheService, CacheStoreError

logger = logging.getLogger(__name__)

# Placeholder while the store-level marker is being claimed
_RESERVED = object()


class RecomputeDispatcher:
    """
    Schedules metric recomputes without waiting for them.

    Usage:
        dispatcher = RecomputeDispatcher(engine, cache_service)
        dispatcher.trigger("user-1")             # full recompute
        dispatcher.trigger("user-1", "weekly")   # one timeframe + dashboard
    """

    def __init__(
        self,
        engine,
        cache_service: CacheService,
        max_workers: int = 4,
        in_flight_ttl: timedelta = timedelta(minutes=5),
    ):
        self.engine = engine
        self.cache_service = cache_service
        self.in_flight_ttl = in_flight_ttl

        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="recompute",
        )
        self._lock = threading.Lock()
        self._in_flight: Dict[str, object] = {}
        self._closed = False

    def is_in_flight(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._in_flight

    def trigger(self, user_id: str, timeframe: Optional[str] = None) -> bool:
        """
        Start a background recompute for a user.

        Args:
            user_id: User to recompute
            timeframe: daily/weekly/monthly/lifetime for a targeted
                recompute, None for the full set

        Returns:
            True if a recompute was started, False if one is already in
            flight (here or in another process) or the dispatcher is closed
        """
        with self._lock:
            if self._closed or user_id in self._in_flight:
                return False
            self._in_flight[user_id] = _RESERVED

        try:
            claimed = self.cache_service.try_mark_computing(user_id, self.in_flight_ttl)
        except CacheStoreError as e:
            logger.warning(f"Could not claim recompute marker for {user_id}: {e}")
            claimed = False

        if not claimed:
            with self._lock:
                self._in_flight.pop(user_id, None)
            logger.debug(f"Recompute for {user_id} already in flight elsewhere")
            return False

        try:
            future = self._executor.submit(self._run, user_id, timeframe)
        except RuntimeError:
            # Executor shut down between the check and the submit
            self._release(user_id)
            return False

        with self._lock:
            # The run may already have finished and removed its entry
            if self._in_flight.get(user_id) is _RESERVED:
                self._in_flight[user_id] = future

        logger.info(f"Recompute triggered for {user_id} ({timeframe or 'all'})")
        return True

    def _run(self, user_id: str, timeframe: Optional[str]) -> None:
        try:
            if timeframe:
                self.engine.calculate_timeframe(user_id, timeframe)
            else:
                self.engine.calculate_and_cache_user_metrics(user_id)
        except Exception as e:
            logger.error(f"Background recompute failed for {user_id}: {e}")
        finally:
            self._release(user_id)

    def _release(self, user_id: str) -> None:
        try:
            self.cache_service.clear_computing(user_id)
        except CacheStoreError as e:
            # The marker TTL frees the user eventually
            logger.warning(f"Could not clear recompute marker for {user_id}: {e}")
        finally:
            with self._lock:
                self._in_flight.pop(user_id, None)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for outstanding recomputes.

        Returns:
            True if nothing is left in flight
        """
        with self._lock:
            futures = [f for f in self._in_flight.values() if isinstance(f, Future)]
        if futures:
            wait(futures, timeout=timeout)
        with self._lock:
            return not self._in_flight

    def shutdown(self, wait_for_running: bool = True) -> None:
        """Stop accepting work and release the worker threads."""
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait_for_running)
        logger.info("Recompute dispatcher stopped")
