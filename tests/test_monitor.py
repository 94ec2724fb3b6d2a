"""Tests for the monitor module."""

import io
import threading
import time
import urllib.error
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest

from urlmonitor.config import MailConfig, MonitorConfig
from urlmonitor.models import CheckResult, EmailSettings, ErrorKind, MonitoredTarget, TargetStatus
from urlmonitor.monitor import InFlightSet, Monitor, is_due, probe
from urlmonitor.notifier import Notifier
from urlmonitor.store import MemoryStore


def _mock_response(status: int, reason: str = "OK") -> MagicMock:
    response = MagicMock()
    response.status = status
    response.reason = reason
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


def _online(response_time_ms: int = 120) -> CheckResult:
    return CheckResult(is_online=True, response_time_ms=response_time_ms, status_code=200, status_text="OK")


def _offline(kind: str = ErrorKind.TIMEOUT, message: str = "Connection timeout after 30000ms") -> CheckResult:
    return CheckResult(is_online=False, response_time_ms=30000, error_kind=kind, error_message=message)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def notifier() -> MagicMock:
    return MagicMock(spec=Notifier)


@pytest.fixture
def monitor(store: MemoryStore, notifier: MagicMock) -> Monitor:
    return Monitor(MonitorConfig(probe_timeout_ms=5000), store, notifier)


class TestProbe:
    """Tests for probe function."""

    def test_successful_check_is_online(self) -> None:
        with patch("urlmonitor.monitor._opener.open") as mock_open:
            mock_open.return_value = _mock_response(200)

            result = probe("https://example.com")

            assert result.is_online is True
            assert result.status_code == 200
            assert result.status_text == "OK"
            assert result.error_kind is None
            assert result.error_message is None

    @pytest.mark.parametrize("status", [301, 302, 304])
    def test_redirect_status_is_online(self, status: int) -> None:
        with patch("urlmonitor.monitor._opener.open") as mock_open:
            mock_open.return_value = _mock_response(status, "Redirect")

            assert probe("https://example.com").is_online is True

    def test_redirect_as_http_error_is_online(self) -> None:
        """Unfollowed redirects raised as HTTPError still count as online."""
        with patch("urlmonitor.monitor._opener.open") as mock_open:
            mock_open.side_effect = urllib.error.HTTPError("https://example.com", 308, "Redirect", {}, None)

            result = probe("https://example.com")

            assert result.is_online is True
            assert result.status_code == 308

    @pytest.mark.parametrize(
        "code,reason",
        [(404, "Not Found"), (500, "Internal Server Error"), (503, "Service Unavailable")],
    )
    def test_error_status_is_http_error(self, code: int, reason: str) -> None:
        with patch("urlmonitor.monitor._opener.open") as mock_open:
            mock_open.side_effect = urllib.error.HTTPError("https://example.com", code, reason, {}, None)

            result = probe("https://example.com")

            assert result.is_online is False
            assert result.status_code == code
            assert result.error_kind == ErrorKind.HTTP_ERROR
            assert result.error_message == f"HTTP {code}: {reason}"

    @pytest.mark.parametrize("code", [308, 404])
    def test_error_response_is_closed(self, code: int) -> None:
        body = io.BytesIO(b"error page")
        with patch("urlmonitor.monitor._opener.open") as mock_open:
            mock_open.side_effect = urllib.error.HTTPError("https://example.com", code, "Status", {}, body)

            probe("https://example.com")

            assert body.closed

    def test_error_status_without_exception_is_http_error(self) -> None:
        with patch("urlmonitor.monitor._opener.open") as mock_open:
            mock_open.return_value = _mock_response(502, "Bad Gateway")

            result = probe("https://example.com")

            assert result.is_online is False
            assert result.error_kind == ErrorKind.HTTP_ERROR
            assert result.error_message == "HTTP 502: Bad Gateway"

    def test_timeout_is_classified(self) -> None:
        with patch("urlmonitor.monitor._opener.open") as mock_open:
            mock_open.side_effect = TimeoutError("timed out")

            result = probe("https://example.com", timeout_ms=2000)

            assert result.is_online is False
            assert result.status_code is None
            assert result.error_kind == ErrorKind.TIMEOUT
            assert result.error_message == "Connection timeout after 2000ms"

    def test_timeout_wrapped_in_url_error_is_classified(self) -> None:
        with patch("urlmonitor.monitor._opener.open") as mock_open:
            mock_open.side_effect = urllib.error.URLError(TimeoutError("timed out"))

            assert probe("https://example.com").error_kind == ErrorKind.TIMEOUT

    def test_connection_error_is_classified(self) -> None:
        with patch("urlmonitor.monitor._opener.open") as mock_open:
            mock_open.side_effect = urllib.error.URLError("Connection refused")

            result = probe("https://example.com")

            assert result.is_online is False
            assert result.error_kind == ErrorKind.CONNECTION_ERROR
            assert result.error_message == "Connection refused"

    def test_unexpected_error_never_raises(self) -> None:
        with patch("urlmonitor.monitor._opener.open") as mock_open:
            mock_open.side_effect = ValueError("")

            result = probe("https://example.com")

            assert result.error_kind == ErrorKind.CONNECTION_ERROR
            assert result.error_message == "Connection failed"

    def test_measures_response_time(self) -> None:
        def slow_open(*args, **kwargs):
            time.sleep(0.05)
            return _mock_response(200)

        with patch("urlmonitor.monitor._opener.open", side_effect=slow_open):
            result = probe("https://example.com")

        assert result.response_time_ms >= 50

    def test_passes_timeout_in_seconds(self) -> None:
        with patch("urlmonitor.monitor._opener.open") as mock_open:
            mock_open.return_value = _mock_response(200)

            probe("https://example.com", timeout_ms=1500)

            assert mock_open.call_args.kwargs["timeout"] == 1.5


class TestInFlightSet:
    """Tests for InFlightSet."""

    def test_try_add_is_exclusive(self) -> None:
        in_flight = InFlightSet()

        assert in_flight.try_add(1) is True
        assert in_flight.try_add(1) is False
        assert 1 in in_flight

        in_flight.discard(1)

        assert 1 not in in_flight
        assert in_flight.try_add(1) is True

    def test_instances_are_independent(self) -> None:
        first, second = InFlightSet(), InFlightSet()
        first.try_add(1)

        assert second.try_add(1) is True


class TestIsDue:
    """Tests for is_due function."""

    def test_never_checked_is_due(self) -> None:
        target = MonitoredTarget(id=1, url="https://example.com", name="Ex")

        assert is_due(target, datetime.now(UTC)) is True

    def test_due_after_interval(self) -> None:
        now = datetime.now(UTC)
        target = MonitoredTarget(
            id=1, url="https://example.com", name="Ex", check_interval=5, last_check=now - timedelta(minutes=5)
        )

        assert is_due(target, now) is True

    def test_not_due_within_interval(self) -> None:
        now = datetime.now(UTC)
        target = MonitoredTarget(
            id=1, url="https://example.com", name="Ex", check_interval=5, last_check=now - timedelta(minutes=4)
        )

        assert is_due(target, now) is False


class TestCheckOne:
    """Tests for Monitor.check_one."""

    def test_down_then_recovery_scenario(self, monitor: Monitor, store: MemoryStore, notifier: MagicMock) -> None:
        """A timeout followed by a success yields 50% uptime and both alerts."""
        target = store.create_target("https://example.com", "Example")

        with patch("urlmonitor.monitor.probe", return_value=_offline()):
            assert monitor.check_one(target.id) is True

        after_first = store.get_target(target.id)
        assert after_first.status == TargetStatus.OFFLINE
        assert after_first.total_checks == 1
        assert after_first.successful_checks == 0
        assert after_first.uptime == 0.0
        assert after_first.last_check is not None
        logs = store.list_error_logs()
        assert len(logs) == 1
        assert logs[0].error_kind == ErrorKind.TIMEOUT
        assert logs[0].target_id == target.id
        notifier.send_downtime.assert_called_once()

        with patch("urlmonitor.monitor.probe", return_value=_online(120)):
            assert monitor.check_one(target.id) is True

        after_second = store.get_target(target.id)
        assert after_second.status == TargetStatus.ONLINE
        assert after_second.total_checks == 2
        assert after_second.successful_checks == 1
        assert after_second.uptime == 50.0
        assert after_second.response_time == 120
        assert len(store.list_error_logs()) == 1
        notifier.send_recovery.assert_called_once()

    def test_downtime_alert_outcome_is_logged(self, store: MemoryStore) -> None:
        """The first failure logs both the probe error and the alert outcome."""
        store.save_email_settings(
            EmailSettings(
                smtp_host="smtp.example.com",
                smtp_port=587,
                from_email="monitor@example.com",
                to_emails="ops@example.com",
            )
        )
        monitor = Monitor(MonitorConfig(), store, Notifier(store, MailConfig()))
        target = store.create_target("https://example.com", "Example")

        with patch("urlmonitor.monitor.probe", return_value=_offline()), patch(
            "urlmonitor.notifier.smtplib.SMTP"
        ) as mock_smtp:
            monitor.check_one(target.id)

        mock_smtp.return_value.sendmail.assert_called_once()
        kinds = [e.error_kind for e in store.list_error_logs()]
        assert sorted(kinds) == sorted([ErrorKind.TIMEOUT, ErrorKind.EMAIL_ALERT_SUCCESS])

    def test_first_success_sends_nothing(self, monitor: Monitor, store: MemoryStore, notifier: MagicMock) -> None:
        target = store.create_target("https://example.com", "Example")

        with patch("urlmonitor.monitor.probe", return_value=_online()):
            monitor.check_one(target.id)

        updated = store.get_target(target.id)
        assert updated.status == TargetStatus.ONLINE
        assert updated.uptime == 100.0
        notifier.send_downtime.assert_not_called()
        notifier.send_recovery.assert_not_called()

    @pytest.mark.parametrize(
        "previous,online,downtime,recovery",
        [
            (TargetStatus.UNKNOWN, False, True, False),
            (TargetStatus.UNKNOWN, True, False, False),
            (TargetStatus.ONLINE, False, True, False),
            (TargetStatus.ONLINE, True, False, False),
            (TargetStatus.OFFLINE, False, False, False),
            (TargetStatus.OFFLINE, True, False, True),
        ],
    )
    def test_notification_matrix(
        self,
        monitor: Monitor,
        store: MemoryStore,
        notifier: MagicMock,
        previous: str,
        online: bool,
        downtime: bool,
        recovery: bool,
    ) -> None:
        target = store.create_target("https://example.com", "Example")
        store.update_target(target.id, status=previous)

        with patch("urlmonitor.monitor.probe", return_value=_online() if online else _offline()):
            monitor.check_one(target.id)

        assert notifier.send_downtime.called is downtime
        assert notifier.send_recovery.called is recovery

    def test_every_failure_is_logged(self, monitor: Monitor, store: MemoryStore, notifier: MagicMock) -> None:
        target = store.create_target("https://example.com", "Example")
        failure = _offline(ErrorKind.HTTP_ERROR, "HTTP 500: Internal Server Error")

        with patch("urlmonitor.monitor.probe", return_value=failure):
            monitor.check_one(target.id)
            monitor.check_one(target.id)

        logs = store.list_error_logs()
        assert len(logs) == 2
        assert all(log.error_kind == ErrorKind.HTTP_ERROR for log in logs)
        notifier.send_downtime.assert_called_once()

    def test_notifier_receives_updated_target(
        self, monitor: Monitor, store: MemoryStore, notifier: MagicMock
    ) -> None:
        target = store.create_target("https://example.com", "Example")
        result = _offline()

        with patch("urlmonitor.monitor.probe", return_value=result):
            monitor.check_one(target.id)

        sent_target, sent_result = notifier.send_downtime.call_args.args
        assert sent_target.total_checks == 1
        assert sent_target.uptime == 0.0
        assert sent_result is result

    def test_uses_configured_timeout(self, monitor: Monitor, store: MemoryStore) -> None:
        target = store.create_target("https://example.com", "Example")

        with patch("urlmonitor.monitor.probe", return_value=_online()) as mock_probe:
            monitor.check_one(target.id)

        mock_probe.assert_called_once_with("https://example.com", 5000)

    def test_missing_target_returns_false(self, monitor: Monitor) -> None:
        with patch("urlmonitor.monitor.probe") as mock_probe:
            assert monitor.check_one(42) is False
            mock_probe.assert_not_called()

    def test_inactive_target_is_skipped(self, monitor: Monitor, store: MemoryStore) -> None:
        target = store.create_target("https://example.com", "Example", is_active=False)

        with patch("urlmonitor.monitor.probe") as mock_probe:
            assert monitor.check_one(target.id) is False
            mock_probe.assert_not_called()

    def test_target_deleted_during_check(self, monitor: Monitor, store: MemoryStore, notifier: MagicMock) -> None:
        target = store.create_target("https://example.com", "Example")

        def probe_and_delete(url: str, timeout_ms: int) -> CheckResult:
            store.delete_target(target.id)
            return _offline()

        with patch("urlmonitor.monitor.probe", side_effect=probe_and_delete):
            assert monitor.check_one(target.id) is True

        assert store.list_error_logs() == []
        notifier.send_downtime.assert_not_called()

    def test_concurrent_checks_of_same_target_are_deduplicated(
        self, monitor: Monitor, store: MemoryStore
    ) -> None:
        """A second check while the first is in flight returns False without probing."""
        target = store.create_target("https://example.com", "Example")
        release = threading.Event()
        results: list[bool] = []

        def blocking_probe(url: str, timeout_ms: int) -> CheckResult:
            release.wait(timeout=5)
            return _online()

        with patch("urlmonitor.monitor.probe", side_effect=blocking_probe) as mock_probe:
            first = threading.Thread(target=lambda: results.append(monitor.check_one(target.id)))
            first.start()

            deadline = time.monotonic() + 5
            while target.id not in monitor.in_flight and time.monotonic() < deadline:
                time.sleep(0.01)

            assert monitor.check_one(target.id) is False

            release.set()
            first.join(timeout=5)

            assert mock_probe.call_count == 1

        assert results == [True]
        assert store.get_target(target.id).total_checks == 1
        assert target.id not in monitor.in_flight

    def test_in_flight_cleared_when_store_fails(self, store: MemoryStore) -> None:
        failing_store = MagicMock(wraps=store)
        failing_store.update_target.side_effect = RuntimeError("disk full")
        monitor = Monitor(MonitorConfig(), failing_store)
        target = store.create_target("https://example.com", "Example")

        with patch("urlmonitor.monitor.probe", return_value=_online()):
            with pytest.raises(RuntimeError, match="disk full"):
                monitor.check_one(target.id)

        assert target.id not in monitor.in_flight

    def test_works_without_notifier(self, store: MemoryStore) -> None:
        monitor = Monitor(MonitorConfig(), store)
        target = store.create_target("https://example.com", "Example")

        with patch("urlmonitor.monitor.probe", return_value=_offline()):
            assert monitor.check_one(target.id) is True


class TestCheckAll:
    """Tests for Monitor.check_all."""

    def test_checks_every_active_target(self, monitor: Monitor, store: MemoryStore) -> None:
        a = store.create_target("https://a.example.com", "A")
        b = store.create_target("https://b.example.com", "B")
        store.create_target("https://c.example.com", "C", is_active=False)

        with patch("urlmonitor.monitor.probe", return_value=_online()) as mock_probe:
            assert monitor.check_all() == 2

        assert {call.args[0] for call in mock_probe.call_args_list} == {a.url, b.url}

    def test_empty_store(self, monitor: Monitor) -> None:
        assert monitor.check_all() == 0

    def test_one_failure_does_not_abort_batch(self, monitor: Monitor, store: MemoryStore) -> None:
        bad = store.create_target("https://bad.example.com", "Bad")
        good = store.create_target("https://good.example.com", "Good")

        def flaky_probe(url: str, timeout_ms: int) -> CheckResult:
            if url == bad.url:
                raise RuntimeError("boom")
            return _online()

        with patch("urlmonitor.monitor.probe", side_effect=flaky_probe):
            assert monitor.check_all() == 1

        assert store.get_target(good.id).status == TargetStatus.ONLINE
        assert store.get_target(bad.id).status == TargetStatus.UNKNOWN
        assert len(monitor.in_flight) == 0

    def test_global_tick_ignores_check_interval(self, monitor: Monitor, store: MemoryStore) -> None:
        target = store.create_target("https://example.com", "Example", check_interval=60)
        store.update_target(target.id, last_check=datetime.now(UTC))

        with patch("urlmonitor.monitor.probe", return_value=_online()):
            assert monitor.check_all() == 1

    def test_respect_check_interval_skips_targets_not_due(self, store: MemoryStore) -> None:
        monitor = Monitor(MonitorConfig(respect_check_interval=True), store)
        recent = store.create_target("https://recent.example.com", "Recent", check_interval=60)
        store.update_target(recent.id, last_check=datetime.now(UTC))
        store.create_target("https://new.example.com", "New")

        with patch("urlmonitor.monitor.probe", return_value=_online()) as mock_probe:
            assert monitor.check_all() == 1

        mock_probe.assert_called_once_with("https://new.example.com", 30000)
