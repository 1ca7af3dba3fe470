"""
Periodic cleanup of expired reservations and stale trackers.

Runs on a background thread at a fixed interval. Each cycle expires
reservations past their expiry time, sweeps stale streaming trackers,
prunes old error metrics and evicts finished trackers whose grace period
is over. Failures in one step are recorded and never stop the loop.
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog

from ai_credit_guard.config.loader import CleanupConfig

from .ledger import CreditLedger
from .tracker import StreamingTracker

logger = structlog.get_logger()

MAX_RECORDED_ERRORS = 50
HEALTHY_RUN_WINDOW = timedelta(minutes=10)
RECENT_ERROR_WINDOW = timedelta(hours=1)


@dataclass
class CleanupStats:
    total_runs: int = 0
    reservations_expired: int = 0
    trackers_cleaned: int = 0
    metrics_pruned: int = 0
    last_run_time: Optional[datetime] = None
    last_run_duration: Optional[float] = None  # seconds
    errors: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class CleanupRun:
    reservations_expired: int
    trackers_found: int
    trackers_cleaned: int
    trackers_evicted: int
    metrics_pruned: int
    duration: float
    errors: List[str]


class CleanupService:
    """Background sweeper for the ledger and the streaming tracker."""

    def __init__(
        self,
        ledger: CreditLedger,
        tracker: StreamingTracker,
        config: Optional[CleanupConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.ledger = ledger
        self.tracker = tracker
        self.config = config or CleanupConfig()
        self._clock = clock
        self.stats = CleanupStats()
        self._stats_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the cleanup thread. Does nothing if already running."""
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="credit-cleanup", daemon=True)
        self._thread.start()
        logger.info("Cleanup service started", interval_minutes=self.config.interval_minutes)

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the cleanup thread. Does nothing if not running."""
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout)
        self._thread = None
        logger.info("Cleanup service stopped")

    def _loop(self) -> None:
        interval = self.config.interval_minutes * 60
        while not self._stop.is_set():
            self.run_cleanup()
            self._stop.wait(interval)

    def _record_error(self, step: str, error: BaseException) -> str:
        message = f"{step}: {error}"
        logger.error("Cleanup step failed", step=step, error=str(error))
        with self._stats_lock:
            self.stats.errors.append({"timestamp": self._clock(), "step": step, "error": str(error)})
            del self.stats.errors[:-MAX_RECORDED_ERRORS]
        return message

    def run_cleanup(self) -> CleanupRun:
        """Run one cleanup cycle now."""
        started = time.monotonic()
        errors: List[str] = []
        expired = found = cleaned = evicted = pruned = 0

        try:
            expired = self.ledger.expire_reservations(self.config.expire_batch_size)
        except Exception as e:
            errors.append(self._record_error("expire_reservations", e))

        try:
            sweep = self.tracker.cleanup_stale_trackers()
            found, cleaned = sweep.found, sweep.cleaned
            for item in sweep.errors:
                errors.append(f"cleanup_stale_trackers: {item['tracker_id']}: {item['error']}")
        except Exception as e:
            errors.append(self._record_error("cleanup_stale_trackers", e))

        try:
            pruned = self.ledger.recovery.metrics.prune()
        except Exception as e:
            errors.append(self._record_error("prune_error_metrics", e))

        evicted = self.tracker.registry.run_pending()
        duration = time.monotonic() - started

        with self._stats_lock:
            self.stats.total_runs += 1
            self.stats.reservations_expired += expired
            self.stats.trackers_cleaned += cleaned
            self.stats.metrics_pruned += pruned
            self.stats.last_run_time = self._clock()
            self.stats.last_run_duration = duration

        if expired or cleaned or errors:
            logger.info(
                "Cleanup cycle finished",
                reservations_expired=expired,
                trackers_cleaned=cleaned,
                errors=len(errors),
                duration=round(duration, 3),
            )
        return CleanupRun(expired, found, cleaned, evicted, pruned, duration, errors)

    def get_health_status(self) -> Dict[str, Any]:
        now = self._clock()
        with self._stats_lock:
            last_run = self.stats.last_run_time
            recent_errors = [e for e in self.stats.errors if now - e["timestamp"] < RECENT_ERROR_WINDOW]
            snapshot = {
                "total_runs": self.stats.total_runs,
                "reservations_expired": self.stats.reservations_expired,
                "trackers_cleaned": self.stats.trackers_cleaned,
                "metrics_pruned": self.stats.metrics_pruned,
                "last_run_duration": self.stats.last_run_duration,
            }

        healthy = self.is_running and last_run is not None and now - last_run < HEALTHY_RUN_WINDOW
        return {
            "status": "healthy" if healthy else "unhealthy",
            "is_running": self.is_running,
            "last_run": last_run,
            "recent_errors": len(recent_errors),
            **snapshot,
        }
