"""Data models for monitored targets, check results, and alert settings."""

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

# Uptime reported for a target that has never been checked.
INITIAL_UPTIME = 100.0

# Default check interval for new targets (minutes).
DEFAULT_CHECK_INTERVAL = 5


class ValidationError(ValueError):
    """Raised when a user-supplied record is invalid."""

    pass


class TargetStatus:
    """Classified state of a monitored target."""

    UNKNOWN = "unknown"
    ONLINE = "online"
    OFFLINE = "offline"

    # Written by older stores for never-checked targets; read back as UNKNOWN.
    LEGACY_PENDING = "pending"


class ErrorKind:
    """Kinds recorded on error log entries."""

    TIMEOUT = "timeout"
    HTTP_ERROR = "http_error"
    CONNECTION_ERROR = "connection_error"
    UNKNOWN = "unknown"

    EMAIL_TEST_SUCCESS = "EMAIL_TEST_SUCCESS"
    EMAIL_TEST_FAILED = "EMAIL_TEST_FAILED"
    EMAIL_ALERT_SUCCESS = "EMAIL_ALERT_SUCCESS"
    EMAIL_ALERT_FAILED = "EMAIL_ALERT_FAILED"
    EMAIL_RECOVERY_SUCCESS = "EMAIL_RECOVERY_SUCCESS"
    EMAIL_RECOVERY_FAILED = "EMAIL_RECOVERY_FAILED"


def compute_uptime(successful_checks: int, total_checks: int) -> float:
    """Return the uptime percentage for the given counters.

    Args:
        successful_checks: Number of checks classified online.
        total_checks: Number of checks performed.

    Returns:
        Percentage in [0, 100], or INITIAL_UPTIME when nothing was checked yet.
    """
    if total_checks <= 0:
        return INITIAL_UPTIME
    return successful_checks / total_checks * 100


def normalize_status(value: str | None) -> str:
    """Map a stored status to a TargetStatus value."""
    if not value or value == TargetStatus.LEGACY_PENDING:
        return TargetStatus.UNKNOWN
    return str(value)


def _dt_to_str(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO 8601 string, treating naive values as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def validate_target_url(url: str) -> None:
    """Raise ValidationError unless url is an absolute http(s) URL."""
    if not url:
        raise ValidationError("URL cannot be empty")
    if not url.startswith(("http://", "https://")):
        raise ValidationError(f"URL must start with http:// or https://, got '{url}'")


def validate_target_fields(
    url: str | None = None,
    name: str | None = None,
    check_interval: int | None = None,
) -> None:
    """Validate user-editable target fields. None means the field is not being set.

    Raises:
        ValidationError: If any given field is invalid.
    """
    if url is not None:
        validate_target_url(url)
    if name is not None and not name.strip():
        raise ValidationError("Name cannot be empty")
    if check_interval is not None and (isinstance(check_interval, bool) or check_interval < 1):
        raise ValidationError(f"Check interval must be a positive number of minutes, got {check_interval}")


@dataclass(frozen=True)
class CheckResult:
    """Result of a single probe.

    Attributes:
        is_online: Whether the probe classified the target online.
        response_time_ms: Elapsed time from request start to resolution.
        status_code: HTTP status code, or None if no response was received.
        error_kind: One of the ErrorKind probe kinds when offline, else None.
        error_message: Error description when offline, else None.
        status_text: HTTP reason phrase, if available.
        checked_at: Timestamp when the probe started.
    """

    is_online: bool
    response_time_ms: int
    status_code: int | None = None
    error_kind: str | None = None
    error_message: str | None = None
    status_text: str | None = None
    checked_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class MonitoredTarget:
    """A monitored URL with its check configuration and rolling statistics.

    Attributes:
        id: Store-assigned identifier.
        url: URL to probe.
        name: Display name.
        check_interval: Configured interval in minutes.
        is_active: Inactive targets are never probed.
        status: Last known status (see TargetStatus).
        response_time: Last response time in milliseconds.
        last_check: Timestamp of the last probe.
        total_checks: Cumulative probes performed.
        successful_checks: Cumulative probes classified online.
        uptime: Derived uptime percentage.
        created_at: Creation timestamp.
    """

    id: int
    url: str
    name: str
    check_interval: int = DEFAULT_CHECK_INTERVAL
    is_active: bool = True
    status: str = TargetStatus.UNKNOWN
    response_time: int | None = None
    last_check: datetime | None = None
    total_checks: int = 0
    successful_checks: int = 0
    uptime: float = INITIAL_UPTIME
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def label(self) -> str:
        """Name used in notifications, falling back to the URL."""
        return self.name or self.url

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_check"] = _dt_to_str(self.last_check)
        data["created_at"] = _dt_to_str(self.created_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MonitoredTarget":
        return cls(
            id=int(data["id"]),
            url=str(data["url"]),
            name=str(data.get("name") or ""),
            check_interval=int(data.get("check_interval", DEFAULT_CHECK_INTERVAL)),
            is_active=bool(data.get("is_active", True)),
            status=normalize_status(data.get("status")),
            response_time=data.get("response_time"),
            last_check=parse_timestamp(data.get("last_check")),
            total_checks=int(data.get("total_checks") or 0),
            successful_checks=int(data.get("successful_checks") or 0),
            uptime=float(data.get("uptime", INITIAL_UPTIME)),
            created_at=parse_timestamp(data.get("created_at")) or datetime.now(UTC),
        )


@dataclass(frozen=True)
class ErrorLogEntry:
    """Append-only log record for failed probes and notification outcomes."""

    id: int
    target_id: int | None
    url: str
    error_kind: str
    error_message: str
    status_code: int | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = _dt_to_str(self.timestamp)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ErrorLogEntry":
        target_id = data.get("target_id")
        return cls(
            id=int(data["id"]),
            target_id=int(target_id) if target_id is not None else None,
            url=str(data.get("url") or ""),
            error_kind=str(data["error_kind"]),
            error_message=str(data.get("error_message") or ""),
            status_code=data.get("status_code"),
            timestamp=parse_timestamp(data.get("timestamp")) or datetime.now(UTC),
        )


@dataclass(frozen=True)
class EmailSettings:
    """SMTP settings for alert emails. At most one instance is stored."""

    smtp_host: str
    smtp_port: int
    from_email: str
    to_emails: str  # comma-separated
    username: str | None = None
    password: str | None = None
    is_enabled: bool = True
    last_test: datetime | None = None
    id: int | None = None

    def __post_init__(self) -> None:
        if not self.smtp_host:
            raise ValidationError("SMTP host cannot be empty")
        if not (1 <= self.smtp_port <= 65535):
            raise ValidationError(f"SMTP port must be between 1 and 65535, got {self.smtp_port}")
        if not self.from_email:
            raise ValidationError("From address cannot be empty")
        if not self.recipients:
            raise ValidationError("At least one recipient address is required")

    @property
    def recipients(self) -> list[str]:
        """Recipient addresses, trimmed, empty entries dropped."""
        return [addr.strip() for addr in self.to_emails.split(",") if addr.strip()]

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_test"] = _dt_to_str(self.last_test)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EmailSettings":
        settings_id = data.get("id")
        return cls(
            smtp_host=str(data.get("smtp_host") or ""),
            smtp_port=int(data.get("smtp_port") or 0),
            from_email=str(data.get("from_email") or ""),
            to_emails=str(data.get("to_emails") or ""),
            username=data.get("username") or None,
            password=data.get("password") or None,
            is_enabled=bool(data.get("is_enabled", True)),
            last_test=parse_timestamp(data.get("last_test")),
            id=int(settings_id) if settings_id is not None else None,
        )
