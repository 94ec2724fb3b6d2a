"""URL probes and the monitor loop that turns them into statistics, logs, and alerts."""

import logging
import threading
import time
import urllib.error
import urllib.request
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import UTC, datetime, timedelta
from urllib.parse import urljoin

from . import __version__
from .config import MonitorConfig
from .models import CheckResult, ErrorKind, MonitoredTarget, TargetStatus, compute_uptime
from .notifier import Notifier
from .store import Store

logger = logging.getLogger(__name__)


class _RedirectHandler(urllib.request.HTTPRedirectHandler):
    """Custom redirect handler that follows 307 and 308 redirects."""

    def http_error_307(self, req, fp, code, msg, headers):
        """Handle 307 Temporary Redirect."""
        return self._do_redirect(req, fp, code, msg, headers)

    def http_error_308(self, req, fp, code, msg, headers):
        """Handle 308 Permanent Redirect."""
        return self._do_redirect(req, fp, code, msg, headers)

    def _do_redirect(self, req, fp, code, msg, headers):
        """Follow redirect preserving the original method."""
        new_url = headers.get("Location")
        if new_url:
            new_req = urllib.request.Request(
                urljoin(req.full_url, new_url),
                method=req.get_method(),
                headers=dict(req.headers),
            )
            return self.parent.open(new_req, timeout=req.timeout)
        return None


_opener = urllib.request.build_opener(_RedirectHandler())

DEFAULT_TIMEOUT_MS = 30000

USER_AGENT = f"urlmonitor/{__version__}"


def _is_timeout(error: BaseException) -> bool:
    """Return True if error (or the reason it wraps) is a deadline exceeded."""
    if isinstance(error, TimeoutError):
        return True
    if isinstance(error, urllib.error.URLError) and isinstance(error.reason, TimeoutError):
        return True
    return False


def probe(url: str, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> CheckResult:
    """Perform a single HTTP GET liveness probe.

    Status codes below 400 are online. Failures never raise: they come back
    as an offline CheckResult with error_kind set to ``http_error``,
    ``timeout`` or ``connection_error``.

    Args:
        url: URL to probe.
        timeout_ms: Request deadline in milliseconds.

    Returns:
        CheckResult with classification and elapsed time.
    """
    start = time.monotonic()
    checked_at = datetime.now(UTC)

    def elapsed_ms() -> int:
        return int((time.monotonic() - start) * 1000)

    try:
        request = urllib.request.Request(url, method="GET", headers={"User-Agent": USER_AGENT})
        with _opener.open(request, timeout=timeout_ms / 1000) as response:
            response_time_ms = elapsed_ms()
            status_code = response.status
            status_text = getattr(response, "reason", None)

        if status_code >= 400:
            return CheckResult(
                is_online=False,
                response_time_ms=response_time_ms,
                status_code=status_code,
                error_kind=ErrorKind.HTTP_ERROR,
                error_message=f"HTTP {status_code}: {status_text}",
                status_text=status_text,
                checked_at=checked_at,
            )
        return CheckResult(
            is_online=True,
            response_time_ms=response_time_ms,
            status_code=status_code,
            status_text=status_text,
            checked_at=checked_at,
        )

    except urllib.error.HTTPError as e:
        response_time_ms = elapsed_ms()
        e.close()
        # Unfollowed 3xx redirects surface as HTTPError but still mean the server answered
        if e.code < 400:
            return CheckResult(
                is_online=True,
                response_time_ms=response_time_ms,
                status_code=e.code,
                status_text=e.reason,
                checked_at=checked_at,
            )
        return CheckResult(
            is_online=False,
            response_time_ms=response_time_ms,
            status_code=e.code,
            error_kind=ErrorKind.HTTP_ERROR,
            error_message=f"HTTP {e.code}: {e.reason}",
            status_text=e.reason,
            checked_at=checked_at,
        )

    except Exception as e:
        response_time_ms = elapsed_ms()
        if _is_timeout(e):
            return CheckResult(
                is_online=False,
                response_time_ms=response_time_ms,
                error_kind=ErrorKind.TIMEOUT,
                error_message=f"Connection timeout after {timeout_ms}ms",
                checked_at=checked_at,
            )

        if isinstance(e, urllib.error.URLError):
            message = str(e.reason) if e.reason else ""
        else:
            message = str(e)
        return CheckResult(
            is_online=False,
            response_time_ms=response_time_ms,
            error_kind=ErrorKind.CONNECTION_ERROR,
            error_message=message or "Connection failed",
            checked_at=checked_at,
        )


class InFlightSet:
    """Thread-safe set of target ids with a check currently running."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids: set[int] = set()

    def try_add(self, target_id: int) -> bool:
        """Insert target_id unless present. Returns False if it was already in flight."""
        with self._lock:
            if target_id in self._ids:
                return False
            self._ids.add(target_id)
            return True

    def discard(self, target_id: int) -> None:
        with self._lock:
            self._ids.discard(target_id)

    def __contains__(self, target_id: int) -> bool:
        with self._lock:
            return target_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)


def is_due(target: MonitoredTarget, now: datetime) -> bool:
    """Return True if target's own check_interval has elapsed since its last check."""
    if target.last_check is None:
        return True
    return target.last_check + timedelta(minutes=target.check_interval) <= now


class Monitor:
    """Checks stored targets, updates their statistics, and dispatches alerts.

    At most one check per target id runs at a time; a second concurrent
    check_one() for the same id returns immediately. This is what makes
    overlapping scheduler ticks safe.

    Example:
        monitor = Monitor(config.monitor, store, notifier)
        monitor.check_all()
    """

    def __init__(
        self,
        config: MonitorConfig,
        store: Store,
        notifier: Notifier | None = None,
    ) -> None:
        """Initialize the monitor.

        Args:
            config: Monitor configuration (probe timeout, worker count).
            store: Store holding targets and the error log.
            notifier: Optional notifier for downtime and recovery alerts.
        """
        self._config = config
        self._store = store
        self._notifier = notifier
        self._in_flight = InFlightSet()

    @property
    def in_flight(self) -> InFlightSet:
        return self._in_flight

    def check_one(self, target_id: int) -> bool:
        """Probe a single target and record the outcome.

        Args:
            target_id: Id of the target to check.

        Returns:
            True if a probe was performed, False if the target was missing,
            inactive, or already being checked.

        Raises:
            StoreError: If reading or writing the store fails.
        """
        if not self._in_flight.try_add(target_id):
            logger.debug("Check already in progress for target %d, skipping", target_id)
            return False

        try:
            target = self._store.get_target(target_id)
            if target is None or not target.is_active:
                return False

            result = probe(target.url, self._config.probe_timeout_ms)
            self._record_result(target, result)
            return True
        finally:
            self._in_flight.discard(target_id)

    def _record_result(self, target: MonitoredTarget, result: CheckResult) -> None:
        """Persist statistics, log failures, and send transition alerts."""
        previous_status = target.status
        new_status = TargetStatus.ONLINE if result.is_online else TargetStatus.OFFLINE
        status_changed = previous_status != new_status

        total_checks = target.total_checks + 1
        successful_checks = target.successful_checks + (1 if result.is_online else 0)

        updated = self._store.update_target(
            target.id,
            status=new_status,
            response_time=result.response_time_ms,
            last_check=datetime.now(UTC),
            total_checks=total_checks,
            successful_checks=successful_checks,
            uptime=compute_uptime(successful_checks, total_checks),
        )
        if updated is None:
            logger.info("Target %d was deleted during its check, discarding result", target.id)
            return

        logger.debug(
            "%s: %s (%dms)",
            updated.label,
            new_status.upper(),
            result.response_time_ms,
        )

        if not result.is_online:
            self._store.add_error_log(
                target_id=target.id,
                url=target.url,
                error_kind=result.error_kind or ErrorKind.UNKNOWN,
                error_message=result.error_message or "Unknown error",
                status_code=result.status_code,
            )
            if status_changed:
                logger.warning("%s is DOWN: %s", updated.label, result.error_message)
                if self._notifier is not None:
                    self._notifier.send_downtime(updated, result)
        elif status_changed and previous_status == TargetStatus.OFFLINE:
            logger.info("%s recovered (%dms)", updated.label, result.response_time_ms)
            if self._notifier is not None:
                self._notifier.send_recovery(updated, result)

    def _targets_to_check(self) -> list[MonitoredTarget]:
        targets = [t for t in self._store.list_targets() if t.is_active]
        if self._config.respect_check_interval:
            now = datetime.now(UTC)
            targets = [t for t in targets if is_due(t, now)]
        return targets

    def check_all(self) -> int:
        """Check every active target concurrently and wait for all of them.

        A failure checking one target is logged and never aborts the batch.

        Returns:
            Number of probes performed.
        """
        targets = self._targets_to_check()
        if not targets:
            return 0

        checked = 0
        with ThreadPoolExecutor(max_workers=self._config.max_workers, thread_name_prefix="check") as executor:
            futures = {executor.submit(self.check_one, target.id): target for target in targets}

            for future in as_completed(futures):
                target = futures[future]
                try:
                    if future.result():
                        checked += 1
                except Exception as e:
                    logger.error("Failed to check %s: %s", target.label, e)

        logger.debug("Checked %d of %d active targets", checked, len(targets))
        return checked
