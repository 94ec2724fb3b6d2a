"""SQLite store backend."""

import sqlite3
import threading
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .config import DEFAULT_MAX_ERROR_LOGS
from .models import (
    DEFAULT_CHECK_INTERVAL,
    INITIAL_UPTIME,
    EmailSettings,
    ErrorLogEntry,
    MonitoredTarget,
    TargetStatus,
    normalize_status,
    parse_timestamp,
    validate_target_fields,
)
from .store import ERROR_LOG_LIMIT, Store, StoreError, check_update_fields


class DatabaseError(StoreError):
    """Raised when a database operation fails."""

    pass


def _to_db_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return 1 if value else 0
    return value


def _row_to_target(row: sqlite3.Row) -> MonitoredTarget:
    return MonitoredTarget(
        id=row["id"],
        url=row["url"],
        name=row["name"],
        check_interval=row["check_interval"],
        is_active=bool(row["is_active"]),
        status=normalize_status(row["status"]),
        response_time=row["response_time"],
        last_check=parse_timestamp(row["last_check"]),
        total_checks=row["total_checks"],
        successful_checks=row["successful_checks"],
        uptime=row["uptime"],
        created_at=parse_timestamp(row["created_at"]) or datetime.now(UTC),
    )


def _row_to_error_log(row: sqlite3.Row) -> ErrorLogEntry:
    return ErrorLogEntry(
        id=row["id"],
        target_id=row["target_id"],
        url=row["url"],
        error_kind=row["error_kind"],
        error_message=row["error_message"],
        status_code=row["status_code"],
        timestamp=parse_timestamp(row["timestamp"]) or datetime.now(UTC),
    )


def init_db(db_path: str) -> sqlite3.Connection:
    """Initialize the database and create tables if they don't exist.

    Args:
        db_path: Path to the SQLite database file.

    Returns:
        Database connection with WAL mode enabled.

    Raises:
        DatabaseError: If database initialization fails.
    """
    try:
        parent_dir = Path(db_path).parent
        if not parent_dir.exists():
            parent_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS targets (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                url TEXT NOT NULL,
                name TEXT NOT NULL,
                check_interval INTEGER NOT NULL DEFAULT {DEFAULT_CHECK_INTERVAL},
                is_active INTEGER NOT NULL DEFAULT 1,
                status TEXT NOT NULL DEFAULT '{TargetStatus.UNKNOWN}',
                response_time INTEGER,
                last_check TEXT,
                total_checks INTEGER NOT NULL DEFAULT 0,
                successful_checks INTEGER NOT NULL DEFAULT 0,
                uptime REAL NOT NULL DEFAULT {INITIAL_UPTIME},
                created_at TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS error_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                target_id INTEGER,
                url TEXT NOT NULL,
                error_kind TEXT NOT NULL,
                error_message TEXT NOT NULL,
                status_code INTEGER,
                timestamp TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_error_logs_timestamp
            ON error_logs(timestamp)
        """)

        # Single-row table: the CHECK keeps email settings a singleton
        conn.execute("""
            CREATE TABLE IF NOT EXISTS email_settings (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                smtp_host TEXT NOT NULL,
                smtp_port INTEGER NOT NULL,
                from_email TEXT NOT NULL,
                to_emails TEXT NOT NULL,
                username TEXT,
                password TEXT,
                is_enabled INTEGER NOT NULL DEFAULT 1,
                last_test TEXT
            )
        """)

        conn.commit()
        return conn

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to initialize database: {e}")
    except OSError as e:
        raise DatabaseError(f"Failed to create database directory: {e}")


class SqliteStore(Store):
    """Store backed by a SQLite file shared by the monitor and API threads.

    Thread-safe: every operation holds the instance lock, since SQLite
    allows only one writer at a time.
    """

    def __init__(self, db_path: str, max_error_logs: int = DEFAULT_MAX_ERROR_LOGS) -> None:
        if max_error_logs < 1:
            raise DatabaseError(f"max_error_logs must be at least 1, got {max_error_logs}")
        self._max_error_logs = max_error_logs
        self._conn = init_db(db_path)
        self._lock = threading.Lock()

    def list_targets(self) -> list[MonitoredTarget]:
        try:
            with self._lock:
                rows = self._conn.execute("SELECT * FROM targets ORDER BY created_at DESC, id DESC").fetchall()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to list targets: {e}")
        return [_row_to_target(row) for row in rows]

    def get_target(self, target_id: int) -> MonitoredTarget | None:
        try:
            with self._lock:
                row = self._conn.execute("SELECT * FROM targets WHERE id = ?", (target_id,)).fetchone()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to get target {target_id}: {e}")
        return _row_to_target(row) if row is not None else None

    def create_target(
        self,
        url: str,
        name: str,
        check_interval: int = DEFAULT_CHECK_INTERVAL,
        is_active: bool = True,
    ) -> MonitoredTarget:
        validate_target_fields(url, name, check_interval)
        created_at = datetime.now(UTC)
        try:
            with self._lock:
                cursor = self._conn.execute(
                    """
                    INSERT INTO targets (url, name, check_interval, is_active, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (url, name, check_interval, 1 if is_active else 0, created_at.isoformat()),
                )
                self._conn.commit()
                target_id = cursor.lastrowid
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to create target: {e}")

        return MonitoredTarget(
            id=target_id,
            url=url,
            name=name,
            check_interval=check_interval,
            is_active=is_active,
            created_at=created_at,
        )

    def update_target(self, target_id: int, **fields: Any) -> MonitoredTarget | None:
        check_update_fields(fields)
        try:
            with self._lock:
                if fields:
                    # Column names come from UPDATABLE_FIELDS, never from user input
                    assignments = ", ".join(f"{name} = ?" for name in fields)
                    self._conn.execute(
                        f"UPDATE targets SET {assignments} WHERE id = ?",
                        (*(_to_db_value(v) for v in fields.values()), target_id),
                    )
                    self._conn.commit()
                row = self._conn.execute("SELECT * FROM targets WHERE id = ?", (target_id,)).fetchone()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to update target {target_id}: {e}")
        return _row_to_target(row) if row is not None else None

    def delete_target(self, target_id: int) -> bool:
        try:
            with self._lock:
                cursor = self._conn.execute("DELETE FROM targets WHERE id = ?", (target_id,))
                self._conn.commit()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to delete target {target_id}: {e}")
        return cursor.rowcount > 0

    def add_error_log(
        self,
        target_id: int | None,
        url: str,
        error_kind: str,
        error_message: str,
        status_code: int | None = None,
    ) -> ErrorLogEntry:
        timestamp = datetime.now(UTC)
        try:
            with self._lock:
                cursor = self._conn.execute(
                    """
                    INSERT INTO error_logs (target_id, url, error_kind, error_message, status_code, timestamp)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (target_id, url, error_kind, error_message, status_code, timestamp.isoformat()),
                )
                self._conn.execute(
                    """
                    DELETE FROM error_logs WHERE id NOT IN (
                        SELECT id FROM error_logs ORDER BY timestamp DESC, id DESC LIMIT ?
                    )
                    """,
                    (self._max_error_logs,),
                )
                self._conn.commit()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to insert error log: {e}")

        return ErrorLogEntry(
            id=cursor.lastrowid,
            target_id=target_id,
            url=url,
            error_kind=error_kind,
            error_message=error_message,
            status_code=status_code,
            timestamp=timestamp,
        )

    def list_error_logs(self, limit: int = ERROR_LOG_LIMIT) -> list[ErrorLogEntry]:
        try:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT * FROM error_logs ORDER BY timestamp DESC, id DESC LIMIT ?",
                    (max(limit, 0),),
                ).fetchall()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to list error logs: {e}")
        return [_row_to_error_log(row) for row in rows]

    def get_email_settings(self) -> EmailSettings | None:
        try:
            with self._lock:
                row = self._conn.execute("SELECT * FROM email_settings WHERE id = 1").fetchone()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to get email settings: {e}")

        if row is None:
            return None
        return EmailSettings(
            smtp_host=row["smtp_host"],
            smtp_port=row["smtp_port"],
            from_email=row["from_email"],
            to_emails=row["to_emails"],
            username=row["username"],
            password=row["password"],
            is_enabled=bool(row["is_enabled"]),
            last_test=parse_timestamp(row["last_test"]),
            id=row["id"],
        )

    def save_email_settings(self, settings: EmailSettings) -> EmailSettings:
        try:
            with self._lock:
                self._conn.execute(
                    """
                    INSERT OR REPLACE INTO email_settings
                    (id, smtp_host, smtp_port, from_email, to_emails, username, password, is_enabled, last_test)
                    VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        settings.smtp_host,
                        settings.smtp_port,
                        settings.from_email,
                        settings.to_emails,
                        settings.username,
                        settings.password,
                        1 if settings.is_enabled else 0,
                        _to_db_value(settings.last_test),
                    ),
                )
                self._conn.commit()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to save email settings: {e}")

        return replace(settings, id=1)

    def record_email_test(self, tested_at: datetime) -> EmailSettings | None:
        try:
            with self._lock:
                cursor = self._conn.execute(
                    "UPDATE email_settings SET last_test = ? WHERE id = 1",
                    (tested_at.isoformat(),),
                )
                self._conn.commit()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to record email test: {e}")

        if cursor.rowcount == 0:
            return None
        return self.get_email_settings()

    def close(self) -> None:
        with self._lock:
            self._conn.close()
