"""Store contract for targets, error logs, and email settings, with in-memory and JSON file backends."""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .config import DEFAULT_MAX_ERROR_LOGS, StoreConfig
from .models import DEFAULT_CHECK_INTERVAL, EmailSettings, ErrorLogEntry, MonitoredTarget, validate_target_fields

logger = logging.getLogger(__name__)

# Default number of error log entries returned by list_error_logs().
ERROR_LOG_LIMIT = 50

# Fields of a MonitoredTarget that update_target() may change.
UPDATABLE_FIELDS = frozenset(
    {
        "url",
        "name",
        "check_interval",
        "is_active",
        "status",
        "response_time",
        "last_check",
        "total_checks",
        "successful_checks",
        "uptime",
    }
)


class StoreError(Exception):
    """Raised when a store operation fails."""

    pass


class Store(ABC):
    """Durable mapping of targets, error log entries, and the email settings singleton."""

    @abstractmethod
    def list_targets(self) -> list[MonitoredTarget]:
        """Return all targets, newest first."""

    @abstractmethod
    def get_target(self, target_id: int) -> MonitoredTarget | None:
        """Return the target with the given id, or None."""

    @abstractmethod
    def create_target(
        self,
        url: str,
        name: str,
        check_interval: int = DEFAULT_CHECK_INTERVAL,
        is_active: bool = True,
    ) -> MonitoredTarget:
        """Create a target with initial statistics and return it."""

    @abstractmethod
    def update_target(self, target_id: int, **fields: Any) -> MonitoredTarget | None:
        """Atomically apply field updates. Returns the updated target, or None if missing."""

    @abstractmethod
    def delete_target(self, target_id: int) -> bool:
        """Delete a target. Returns False if it did not exist."""

    @abstractmethod
    def add_error_log(
        self,
        target_id: int | None,
        url: str,
        error_kind: str,
        error_message: str,
        status_code: int | None = None,
    ) -> ErrorLogEntry:
        """Append an error log entry, pruning the oldest beyond the retention cap."""

    @abstractmethod
    def list_error_logs(self, limit: int = ERROR_LOG_LIMIT) -> list[ErrorLogEntry]:
        """Return up to limit entries, newest first."""

    @abstractmethod
    def get_email_settings(self) -> EmailSettings | None:
        """Return the email settings, or None if never saved."""

    @abstractmethod
    def save_email_settings(self, settings: EmailSettings) -> EmailSettings:
        """Overwrite the email settings wholesale, keeping the singleton id."""

    @abstractmethod
    def record_email_test(self, tested_at: datetime) -> EmailSettings | None:
        """Set last_test on the stored settings only. Returns None if never saved."""

    def close(self) -> None:
        """Release backend resources."""


def check_update_fields(fields: dict[str, Any]) -> None:
    """Reject unknown fields and invalid values before an update is applied."""
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise StoreError(f"Cannot update target fields: {', '.join(sorted(unknown))}")
    validate_target_fields(
        url=fields.get("url"),
        name=fields.get("name"),
        check_interval=fields.get("check_interval"),
    )


class MemoryStore(Store):
    """In-process store. State is lost on restart."""

    def __init__(self, max_error_logs: int = DEFAULT_MAX_ERROR_LOGS) -> None:
        if max_error_logs < 1:
            raise StoreError(f"max_error_logs must be at least 1, got {max_error_logs}")
        self._lock = threading.Lock()
        self._max_error_logs = max_error_logs
        self._targets: dict[int, MonitoredTarget] = {}
        self._error_logs: list[ErrorLogEntry] = []
        self._email_settings: EmailSettings | None = None
        self._next_target_id = 1
        self._next_error_log_id = 1
        self._next_email_settings_id = 1

    def _persist(self) -> None:
        """Hook called with the lock held after every mutation."""

    @contextmanager
    def _commit(self) -> Iterator[None]:
        """Apply a mutation and persist it, restoring the prior state if either step fails.

        Must be entered with the lock held.
        """
        saved = (
            dict(self._targets),
            self._error_logs,
            self._email_settings,
            self._next_target_id,
            self._next_error_log_id,
            self._next_email_settings_id,
        )
        try:
            yield
            self._persist()
        except Exception:
            (
                self._targets,
                self._error_logs,
                self._email_settings,
                self._next_target_id,
                self._next_error_log_id,
                self._next_email_settings_id,
            ) = saved
            raise

    def list_targets(self) -> list[MonitoredTarget]:
        with self._lock:
            targets = list(self._targets.values())
        return sorted(targets, key=lambda t: (t.created_at, t.id), reverse=True)

    def get_target(self, target_id: int) -> MonitoredTarget | None:
        with self._lock:
            return self._targets.get(target_id)

    def create_target(
        self,
        url: str,
        name: str,
        check_interval: int = DEFAULT_CHECK_INTERVAL,
        is_active: bool = True,
    ) -> MonitoredTarget:
        validate_target_fields(url, name, check_interval)
        with self._lock, self._commit():
            target = MonitoredTarget(
                id=self._next_target_id,
                url=url,
                name=name,
                check_interval=check_interval,
                is_active=is_active,
            )
            self._next_target_id += 1
            self._targets[target.id] = target
        return target

    def update_target(self, target_id: int, **fields: Any) -> MonitoredTarget | None:
        check_update_fields(fields)
        with self._lock:
            target = self._targets.get(target_id)
            if target is None:
                return None
            updated = replace(target, **fields)
            with self._commit():
                self._targets[target_id] = updated
        return updated

    def delete_target(self, target_id: int) -> bool:
        with self._lock:
            if target_id not in self._targets:
                return False
            with self._commit():
                del self._targets[target_id]
        return True

    def add_error_log(
        self,
        target_id: int | None,
        url: str,
        error_kind: str,
        error_message: str,
        status_code: int | None = None,
    ) -> ErrorLogEntry:
        with self._lock, self._commit():
            entry = ErrorLogEntry(
                id=self._next_error_log_id,
                target_id=target_id,
                url=url,
                error_kind=error_kind,
                error_message=error_message,
                status_code=status_code,
                timestamp=datetime.now(UTC),
            )
            self._next_error_log_id += 1
            # Rebind rather than mutate so _commit can restore the old list.
            self._error_logs = (self._error_logs + [entry])[-self._max_error_logs :]
        return entry

    def list_error_logs(self, limit: int = ERROR_LOG_LIMIT) -> list[ErrorLogEntry]:
        with self._lock:
            entries = list(self._error_logs)
        entries.sort(key=lambda e: (e.timestamp, e.id), reverse=True)
        return entries[: max(limit, 0)]

    def get_email_settings(self) -> EmailSettings | None:
        with self._lock:
            return self._email_settings

    def save_email_settings(self, settings: EmailSettings) -> EmailSettings:
        with self._lock, self._commit():
            if self._email_settings is not None:
                settings_id = self._email_settings.id
            else:
                settings_id = self._next_email_settings_id
                self._next_email_settings_id += 1
            saved = replace(settings, id=settings_id)
            self._email_settings = saved
        return saved

    def record_email_test(self, tested_at: datetime) -> EmailSettings | None:
        with self._lock:
            if self._email_settings is None:
                return None
            updated = replace(self._email_settings, last_test=tested_at)
            with self._commit():
                self._email_settings = updated
        return updated


class JsonFileStore(MemoryStore):
    """Store persisted as a single JSON document, rewritten after each mutation.

    Writes go to a temporary file that replaces the original, so a crash
    mid-write leaves the previous snapshot intact.
    """

    def __init__(self, path: str, max_error_logs: int = DEFAULT_MAX_ERROR_LOGS) -> None:
        super().__init__(max_error_logs)
        self._path = Path(path)
        self._load()

    def _load(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Failed to create store directory: {e}")

        if not self._path.exists():
            logger.info("Starting with empty store at %s", self._path)
            return

        try:
            with open(self._path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Failed to read store file {self._path}: {e}")

        try:
            for item in data.get("targets", []):
                target = MonitoredTarget.from_dict(item)
                self._targets[target.id] = target
            error_logs = [ErrorLogEntry.from_dict(item) for item in data.get("error_logs", [])]
            self._error_logs = error_logs[-self._max_error_logs :]
            settings = data.get("email_settings")
            self._email_settings = EmailSettings.from_dict(settings) if settings else None
        except (KeyError, TypeError, ValueError) as e:
            raise StoreError(f"Corrupt store file {self._path}: {e}")

        counters = data.get("counters", {})
        self._next_target_id = max(int(counters.get("target_id", 1)), max(self._targets, default=0) + 1)
        self._next_error_log_id = max(
            int(counters.get("error_log_id", 1)),
            max((e.id for e in self._error_logs), default=0) + 1,
        )
        self._next_email_settings_id = int(counters.get("email_settings_id", 1))

        logger.info(
            "Store loaded from %s: %d targets, %d error log entries, email settings %s",
            self._path,
            len(self._targets),
            len(self._error_logs),
            "present" if self._email_settings else "absent",
        )

    def _persist(self) -> None:
        data = {
            "targets": [t.to_dict() for t in self._targets.values()],
            "error_logs": [e.to_dict() for e in self._error_logs],
            "email_settings": self._email_settings.to_dict() if self._email_settings else None,
            "counters": {
                "target_id": self._next_target_id,
                "error_log_id": self._next_error_log_id,
                "email_settings_id": self._next_email_settings_id,
            },
        }
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self._path)
        except (OSError, TypeError, ValueError) as e:
            with suppress(OSError):
                tmp_path.unlink(missing_ok=True)
            raise StoreError(f"Failed to write store file {self._path}: {e}")


def create_store(config: StoreConfig) -> Store:
    """Create the backend selected by configuration.

    Raises:
        StoreError: If the backend cannot be opened.
    """
    if config.backend == "memory":
        return MemoryStore(config.max_error_logs)
    if config.backend == "json":
        return JsonFileStore(config.path, config.max_error_logs)

    from .database import SqliteStore

    return SqliteStore(config.path, config.max_error_logs)
