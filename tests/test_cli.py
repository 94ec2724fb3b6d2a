"""Tests for the command line interface."""

from pathlib import Path
from unittest.mock import patch

import pytest

from urlmonitor import main
from urlmonitor.models import CheckResult, EmailSettings
from urlmonitor.store import JsonFileStore


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Write a config pointing at a JSON store in tmp_path."""
    path = tmp_path / "config.yaml"
    path.write_text(f"store:\n  backend: json\n  path: {tmp_path / 'storage.json'}\n")
    return path


@pytest.fixture
def store_path(tmp_path: Path) -> str:
    return str(tmp_path / "storage.json")


class TestCheckCommand:
    """Tests for the check subcommand."""

    def test_prints_status_per_target(self, config_file: Path, store_path: str, capsys) -> None:
        store = JsonFileStore(store_path)
        store.create_target("https://example.com", "Example")
        store.create_target("https://paused.example.com", "Paused", is_active=False)

        online = CheckResult(is_online=True, response_time_ms=120, status_code=200)
        with patch("urlmonitor.monitor.probe", return_value=online):
            main(["check", "-c", str(config_file)])

        out = capsys.readouterr().out
        assert "ONLINE" in out
        assert "INACTIVE" in out
        assert "Example (https://example.com)" in out
        assert "Checked 1 target(s)" in out

        assert JsonFileStore(store_path).list_targets()[-1].total_checks == 1

    def test_missing_config_exits(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["check", "-c", str(tmp_path / "missing.yaml")])

        assert exc_info.value.code == 1


class TestTestEmailCommand:
    """Tests for the test-email subcommand."""

    def test_not_configured_exits_1(self, config_file: Path, capsys) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["test-email", "-c", str(config_file)])

        assert exc_info.value.code == 1
        assert "not configured" in capsys.readouterr().out

    def test_success(self, config_file: Path, store_path: str, capsys) -> None:
        JsonFileStore(store_path).save_email_settings(
            EmailSettings(
                smtp_host="smtp.example.com",
                smtp_port=587,
                from_email="monitor@example.com",
                to_emails="ops@example.com",
            )
        )

        with patch("urlmonitor.notifier.smtplib.SMTP"):
            main(["test-email", "-c", str(config_file)])

        assert "SUCCESS" in capsys.readouterr().out

    def test_smtp_failure_exits_1(self, config_file: Path, store_path: str, capsys) -> None:
        JsonFileStore(store_path).save_email_settings(
            EmailSettings(
                smtp_host="smtp.example.com",
                smtp_port=587,
                from_email="monitor@example.com",
                to_emails="ops@example.com",
            )
        )

        with patch("urlmonitor.notifier.smtplib.SMTP", side_effect=OSError("refused")):
            with pytest.raises(SystemExit) as exc_info:
                main(["test-email", "-c", str(config_file)])

        assert exc_info.value.code == 1
        assert "FAILED" in capsys.readouterr().out


def test_version(capsys) -> None:
    with pytest.raises(SystemExit) as exc_info:
        main(["--version"])

    assert exc_info.value.code == 0
    assert "urlmonitor 0.1.0" in capsys.readouterr().out
