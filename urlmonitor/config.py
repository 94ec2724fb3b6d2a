"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


# Probes shorter than this produce false timeouts on slow links.
MIN_PROBE_TIMEOUT_MS = 1000

# Cadences of the reference deployment: every 5 minutes plus every minute.
DEFAULT_SCHEDULES = (300, 60)

STORE_BACKENDS = ("memory", "json", "sqlite")

# Error log entries kept per store; older ones are pruned on insert.
DEFAULT_MAX_ERROR_LOGS = 1000


@dataclass(frozen=True)
class MonitorConfig:
    """Configuration for the monitor loop and scheduler."""

    probe_timeout_ms: int = 30000
    schedules: tuple[int, ...] = DEFAULT_SCHEDULES  # seconds, wall-clock aligned
    max_workers: int = 8
    respect_check_interval: bool = False  # honor per-target check_interval (off = global tick)

    def __post_init__(self) -> None:
        if self.probe_timeout_ms < MIN_PROBE_TIMEOUT_MS:
            raise ConfigError(
                f"Probe timeout must be at least {MIN_PROBE_TIMEOUT_MS}ms (got {self.probe_timeout_ms})"
            )
        if not self.schedules:
            raise ConfigError("At least one schedule interval is required")
        for interval in self.schedules:
            if interval < 1:
                raise ConfigError(f"Schedule interval must be at least 1 second (got {interval})")
        if self.max_workers < 1:
            raise ConfigError(f"max_workers must be at least 1 (got {self.max_workers})")


def _get_default_store_path() -> str:
    """Return the default JSON store path under ./data."""
    return str(Path("data") / "storage.json")


DEFAULT_STORE_PATH = _get_default_store_path()


@dataclass(frozen=True)
class StoreConfig:
    """Configuration for the persistence backend."""

    backend: str = "json"
    path: str = DEFAULT_STORE_PATH
    max_error_logs: int = DEFAULT_MAX_ERROR_LOGS

    def __post_init__(self) -> None:
        if self.backend not in STORE_BACKENDS:
            raise ConfigError(f"Invalid store backend '{self.backend}'. Must be one of: {STORE_BACKENDS}")
        if self.backend != "memory" and not self.path:
            raise ConfigError(f"Store path is required for the '{self.backend}' backend")
        if self.max_error_logs < 1:
            raise ConfigError(f"Store max_error_logs must be at least 1, got {self.max_error_logs}")


@dataclass(frozen=True)
class ApiConfig:
    """Configuration for JSON API server."""

    enabled: bool = True
    host: str = ""
    port: int = 5000

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"API port must be between 1 and 65535, got {self.port}")


@dataclass(frozen=True)
class MailConfig:
    """SMTP transport options. Addresses and credentials live in the store."""

    use_tls: bool = True  # STARTTLS for non-465 ports
    timeout: int = 30
    password_override: str | None = None  # takes precedence over the stored password

    def __post_init__(self) -> None:
        if self.timeout < 1:
            raise ConfigError(f"Mail timeout must be at least 1 second, got {self.timeout}")


@dataclass(frozen=True)
class WebhookConfig:
    """Configuration for a single webhook alert."""

    url: str
    enabled: bool = True
    on_failure: bool = True  # Send alert when a target goes offline
    on_recovery: bool = True  # Send alert when a target comes back online

    def __post_init__(self) -> None:
        if not self.url:
            raise ConfigError("Webhook URL cannot be empty")
        if not self.url.startswith(("http://", "https://")):
            raise ConfigError(f"Webhook URL must start with http:// or https://, got '{self.url}'")
        if not self.on_failure and not self.on_recovery:
            raise ConfigError("Webhook must have at least one of 'on_failure' or 'on_recovery' enabled")


@dataclass(frozen=True)
class AlertsConfig:
    """Configuration for alert channels besides email."""

    webhooks: list[WebhookConfig] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not isinstance(self.webhooks, list):
            raise ConfigError("Webhooks must be a list")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    mail: MailConfig = field(default_factory=MailConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)


def _section(data: dict, name: str) -> dict:
    value = data.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' section must be a dictionary")
    return value


def _parse_monitor_config(data: dict) -> MonitorConfig:
    """Parse monitor configuration section."""
    schedules_raw = data.get("schedules", list(DEFAULT_SCHEDULES))
    if not isinstance(schedules_raw, list):
        raise ConfigError("'monitor.schedules' must be a list of seconds")

    try:
        return MonitorConfig(
            probe_timeout_ms=int(data.get("probe_timeout_ms", 30000)),
            schedules=tuple(int(s) for s in schedules_raw),
            max_workers=int(data.get("max_workers", 8)),
            respect_check_interval=bool(data.get("respect_check_interval", False)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid monitor configuration: {e}")


def _parse_store_config(data: dict) -> StoreConfig:
    """Parse store configuration section."""
    try:
        max_error_logs = int(data.get("max_error_logs", DEFAULT_MAX_ERROR_LOGS))
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid store max_error_logs: {data.get('max_error_logs')!r}")

    return StoreConfig(
        backend=str(data.get("backend", "json")),
        path=str(data.get("path", DEFAULT_STORE_PATH)),
        max_error_logs=max_error_logs,
    )


def _parse_api_config(data: dict) -> ApiConfig:
    """Parse API configuration section."""
    try:
        port = int(data.get("port", 5000))
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid API port: {data.get('port')!r}")

    return ApiConfig(
        enabled=bool(data.get("enabled", True)),
        host=str(data.get("host", "")),
        port=port,
    )


def _parse_mail_config(data: dict) -> MailConfig:
    """Parse mail transport configuration section."""
    password_override = data.get("password_override")
    try:
        timeout = int(data.get("timeout", 30))
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid mail timeout: {data.get('timeout')!r}")

    return MailConfig(
        use_tls=bool(data.get("use_tls", True)),
        timeout=timeout,
        password_override=str(password_override) if password_override else None,
    )


def _parse_webhook_config(data: dict, index: int) -> WebhookConfig:
    """Parse a single webhook configuration entry."""
    if not isinstance(data, dict):
        raise ConfigError(f"Webhook entry {index} must be a dictionary")

    url = data.get("url")
    if url is None:
        raise ConfigError(f"Webhook entry {index} is missing 'url' field")

    return WebhookConfig(
        url=str(url),
        enabled=bool(data.get("enabled", True)),
        on_failure=bool(data.get("on_failure", True)),
        on_recovery=bool(data.get("on_recovery", True)),
    )


def _parse_alerts_config(data: dict) -> AlertsConfig:
    """Parse alerts configuration section."""
    webhooks_data = data.get("webhooks", [])
    if not isinstance(webhooks_data, list):
        raise ConfigError("'alerts.webhooks' must be a list")

    webhooks = [_parse_webhook_config(webhook_data, i) for i, webhook_data in enumerate(webhooks_data)]
    return AlertsConfig(webhooks=webhooks)


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - URLMONITOR_PROBE_TIMEOUT_MS: Override monitor.probe_timeout_ms
    - URLMONITOR_STORE_BACKEND: Override store.backend
    - URLMONITOR_STORE_PATH: Override store.path
    - URLMONITOR_API_PORT: Override api.port
    - URLMONITOR_API_ENABLED: Override api.enabled (true/false)
    - URLMONITOR_SMTP_PASSWORD: Override mail.password_override
    """
    for section in ("monitor", "store", "api", "mail"):
        if config_data.get(section) is None:
            config_data[section] = {}

    probe_timeout = os.environ.get("URLMONITOR_PROBE_TIMEOUT_MS")
    if probe_timeout is not None:
        config_data["monitor"]["probe_timeout_ms"] = int(probe_timeout)

    store_backend = os.environ.get("URLMONITOR_STORE_BACKEND")
    if store_backend is not None:
        config_data["store"]["backend"] = store_backend

    store_path = os.environ.get("URLMONITOR_STORE_PATH")
    if store_path is not None:
        config_data["store"]["path"] = store_path

    api_port = os.environ.get("URLMONITOR_API_PORT")
    if api_port is not None:
        config_data["api"]["port"] = int(api_port)

    api_enabled = os.environ.get("URLMONITOR_API_ENABLED")
    if api_enabled is not None:
        config_data["api"]["enabled"] = api_enabled.lower() in ("true", "1", "yes")

    smtp_password = os.environ.get("URLMONITOR_SMTP_PASSWORD")
    if smtp_password:
        config_data["mail"]["password_override"] = smtp_password

    return config_data


def load_config(config_path: str | None = None) -> Config:
    """Load and validate configuration from an optional YAML file.

    Args:
        config_path: Path to the YAML configuration file, or None for defaults.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    data: dict = {}

    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")

        try:
            with open(path, encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration: {e}")
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}")

        if loaded is not None:
            if not isinstance(loaded, dict):
                raise ConfigError("Configuration must be a YAML dictionary")
            data = loaded

    for name in ("monitor", "store", "api", "mail", "alerts"):
        _section(data, name)

    try:
        data = _apply_env_overrides(data)
    except ValueError as e:
        raise ConfigError(f"Invalid environment override: {e}")

    return Config(
        monitor=_parse_monitor_config(_section(data, "monitor")),
        store=_parse_store_config(_section(data, "store")),
        api=_parse_api_config(_section(data, "api")),
        mail=_parse_mail_config(_section(data, "mail")),
        alerts=_parse_alerts_config(_section(data, "alerts")),
    )
