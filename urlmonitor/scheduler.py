"""Wall-clock aligned scheduler that dispatches the check batch on fixed cadences."""

import logging
import time
from collections.abc import Callable, Iterable
from threading import Event, Thread

from .config import DEFAULT_SCHEDULES

logger = logging.getLogger(__name__)


def _seconds_until_next(interval: int, now: float | None = None) -> float:
    """Seconds from now until the next wall-clock multiple of interval.

    A 300 second interval fires at :00, :05, :10... past the hour, like the
    cron expression ``*/5 * * * *``. When now falls exactly on a boundary the
    next tick is a full interval away.
    """
    if now is None:
        now = time.time()
    return interval - (now % interval)


class Scheduler:
    """Runs a job on one or more fixed cadences until stopped.

    Each cadence has its own daemon thread. A tick hands the job to a fresh
    thread and goes back to waiting, so a slow run may still be going when
    the next tick (from the same or another cadence) fires. Callers must
    tolerate overlapping runs.

    Example:
        scheduler = Scheduler(monitor.check_all, intervals=(300, 60))
        scheduler.start()
        ...
        scheduler.stop()
    """

    def __init__(self, job: Callable[[], object], intervals: Iterable[int] = DEFAULT_SCHEDULES) -> None:
        """Initialize the scheduler.

        Args:
            job: Callable run on every tick. Its return value is ignored.
            intervals: Cadences in seconds.
        """
        self._job = job
        self._intervals = tuple(intervals)
        if not self._intervals:
            raise ValueError("At least one interval is required")
        for interval in self._intervals:
            if interval < 1:
                raise ValueError(f"Interval must be at least 1 second (got {interval})")
        self._stop_event = Event()
        self._threads: list[Thread] = []

    @property
    def intervals(self) -> tuple[int, ...]:
        return self._intervals

    def start(self) -> None:
        """Start one cadence thread per interval."""
        if self.is_running():
            logger.warning("Scheduler already running")
            return

        self._stop_event.clear()
        self._threads = [
            Thread(
                target=self._run_cadence,
                args=(interval,),
                daemon=True,
                name=f"scheduler-{interval}s",
            )
            for interval in self._intervals
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Scheduler started with cadences: %s", ", ".join(f"{i}s" for i in self._intervals))

    def stop(self, timeout: float = 10.0) -> None:
        """Stop all cadence threads.

        Runs already dispatched are not interrupted.

        Args:
            timeout: Maximum seconds to wait for each cadence thread.
        """
        if not self._threads:
            return

        logger.info("Stopping scheduler...")
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)

        if any(t.is_alive() for t in self._threads):
            logger.warning("Scheduler threads did not stop within timeout")
        else:
            logger.info("Scheduler stopped")
        self._threads = []

    def is_running(self) -> bool:
        """Check if any cadence thread is alive."""
        return any(t.is_alive() for t in self._threads)

    def _run_cadence(self, interval: int) -> None:
        logger.debug("Cadence %ds started", interval)

        while not self._stop_event.wait(timeout=_seconds_until_next(interval)):
            Thread(target=self._run_job, args=(interval,), daemon=True, name=f"job-{interval}s").start()

        logger.debug("Cadence %ds exited", interval)

    def _run_job(self, interval: int) -> None:
        logger.debug("Running scheduled job (%ds cadence)", interval)
        try:
            self._job()
        except Exception:
            logger.exception("Scheduled job failed (%ds cadence)", interval)
