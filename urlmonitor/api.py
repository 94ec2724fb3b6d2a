"""HTTP JSON API for managing monitored URLs, the error log, and email settings."""

import json
import logging
import re
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import parse_qs, urlsplit

from .config import ApiConfig
from .models import EmailSettings, ErrorLogEntry, MonitoredTarget, TargetStatus, ValidationError
from .monitor import Monitor
from .notifier import NotificationError, Notifier
from .store import ERROR_LOG_LIMIT, Store, StoreError

logger = logging.getLogger(__name__)

# Delay before the first check of a newly created target.
INITIAL_CHECK_DELAY = 1.0

# Largest accepted request body.
MAX_BODY_BYTES = 64 * 1024

# Target fields a client may set through POST/PATCH /api/urls.
EDITABLE_TARGET_FIELDS = ("url", "name", "check_interval", "is_active")

_TARGET_PATH = re.compile(r"^/api/urls/(\d+)$")
_TARGET_CHECK_PATH = re.compile(r"^/api/urls/(\d+)/check$")


class ApiError(Exception):
    """Raised when an API operation fails."""

    pass


class BadRequest(Exception):
    """Raised by request parsing helpers; answered with 400."""

    pass


def _target_to_dict(target: MonitoredTarget) -> dict[str, Any]:
    """Convert a MonitoredTarget to a JSON-serializable dictionary."""
    return {
        "id": target.id,
        "url": target.url,
        "name": target.name,
        "check_interval": target.check_interval,
        "is_active": target.is_active,
        "status": target.status,
        "response_time": target.response_time,
        "last_check": target.last_check.isoformat() if target.last_check else None,
        "total_checks": target.total_checks,
        "successful_checks": target.successful_checks,
        "uptime": round(target.uptime, 2),
        "created_at": target.created_at.isoformat(),
    }


def _error_log_to_dict(entry: ErrorLogEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "target_id": entry.target_id,
        "url": entry.url,
        "error_kind": entry.error_kind,
        "error_message": entry.error_message,
        "status_code": entry.status_code,
        "timestamp": entry.timestamp.isoformat(),
    }


def _email_settings_to_dict(settings: EmailSettings) -> dict[str, Any]:
    """Convert EmailSettings to a dictionary. The password is never included."""
    return {
        "id": settings.id,
        "smtp_host": settings.smtp_host,
        "smtp_port": settings.smtp_port,
        "from_email": settings.from_email,
        "to_emails": settings.to_emails,
        "username": settings.username,
        "has_password": bool(settings.password),
        "is_enabled": settings.is_enabled,
        "last_test": settings.last_test.isoformat() if settings.last_test else None,
    }


def _build_stats_response(targets: list[MonitoredTarget]) -> dict[str, Any]:
    """Build the dashboard statistics summary."""
    checked = [t.last_check for t in targets if t.last_check is not None]
    last_check = max(checked) if checked else None
    return {
        "online": sum(1 for t in targets if t.status == TargetStatus.ONLINE),
        "offline": sum(1 for t in targets if t.status == TargetStatus.OFFLINE),
        "total": len(targets),
        "last_check": last_check.isoformat() if last_check else None,
    }


def _parse_target_fields(body: dict[str, Any], required: bool) -> dict[str, Any]:
    """Extract and type-check editable target fields from a request body.

    Args:
        body: Decoded JSON object.
        required: If True, url and name must be present (create).

    Raises:
        BadRequest: On unknown fields, missing required fields, or wrong types.
    """
    unknown = set(body) - set(EDITABLE_TARGET_FIELDS)
    if unknown:
        raise BadRequest(f"Unknown fields: {', '.join(sorted(unknown))}")

    if required:
        for name in ("url", "name"):
            if name not in body:
                raise BadRequest(f"Missing required field '{name}'")

    fields: dict[str, Any] = {}
    for name in ("url", "name"):
        if name in body:
            if not isinstance(body[name], str):
                raise BadRequest(f"'{name}' must be a string")
            fields[name] = body[name].strip()
    if "check_interval" in body:
        value = body["check_interval"]
        if isinstance(value, bool) or not isinstance(value, int):
            raise BadRequest("'check_interval' must be an integer number of minutes")
        fields["check_interval"] = value
    if "is_active" in body:
        if not isinstance(body["is_active"], bool):
            raise BadRequest("'is_active' must be a boolean")
        fields["is_active"] = body["is_active"]
    return fields


def _parse_email_settings(body: dict[str, Any], current: EmailSettings | None) -> EmailSettings:
    """Build EmailSettings from a request body.

    An omitted password keeps the stored one, since GET never returns it.

    Raises:
        BadRequest: On missing fields or wrong types.
        ValidationError: If the resulting settings are invalid.
    """
    for name in ("smtp_host", "smtp_port", "from_email", "to_emails"):
        if name not in body:
            raise BadRequest(f"Missing required field '{name}'")

    port = body["smtp_port"]
    if isinstance(port, bool) or not isinstance(port, int):
        raise BadRequest("'smtp_port' must be an integer")
    for name in ("smtp_host", "from_email", "to_emails"):
        if not isinstance(body[name], str):
            raise BadRequest(f"'{name}' must be a string")
    for name in ("username", "password"):
        if body.get(name) is not None and not isinstance(body[name], str):
            raise BadRequest(f"'{name}' must be a string")
    is_enabled = body.get("is_enabled", True)
    if not isinstance(is_enabled, bool):
        raise BadRequest("'is_enabled' must be a boolean")

    if "password" in body:
        password = body["password"] or None
    else:
        password = current.password if current else None

    return EmailSettings(
        smtp_host=body["smtp_host"].strip(),
        smtp_port=port,
        from_email=body["from_email"].strip(),
        to_emails=body["to_emails"],
        username=body.get("username") or None,
        password=password,
        is_enabled=is_enabled,
        last_test=current.last_test if current else None,
    )


def _run_initial_check(monitor: Monitor, target_id: int) -> None:
    try:
        monitor.check_one(target_id)
    except Exception:
        logger.exception("Initial check failed for target %d", target_id)


class MonitorHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the monitoring API."""

    # Class-level references set by factory
    store: Store | None = None
    monitor: Monitor | None = None
    notifier: Notifier | None = None

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("API %s - %s", self.address_string(), format % args)

    def _send_json(self, code: int, data: Any) -> None:
        """Send a JSON response with the given status code."""
        body = json.dumps(data, indent=2).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(body)

    def _send_error_json(self, code: int, message: str) -> None:
        """Send a JSON error response."""
        self._send_json(code, {"error": message})

    def _read_json_body(self) -> dict[str, Any]:
        """Read and decode the request body as a JSON object.

        Raises:
            BadRequest: If the body is too large, not JSON, or not an object.
        """
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            raise BadRequest("Invalid Content-Length header")
        if length > MAX_BODY_BYTES:
            raise BadRequest("Request body too large")
        if length <= 0:
            return {}

        raw = self.rfile.read(length)
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise BadRequest("Request body must be valid JSON")
        if not isinstance(data, dict):
            raise BadRequest("Request body must be a JSON object")
        return data

    def _dispatch(self, routes: list[tuple[Any, Any]]) -> None:
        """Route the request path to the first matching handler.

        Each route is (path or compiled pattern, handler). Pattern groups are
        passed to the handler as integer ids.
        """
        parts = urlsplit(self.path)
        path = parts.path.rstrip("/") or "/"

        try:
            for route, handler in routes:
                if isinstance(route, str):
                    if path == route:
                        handler(parts.query)
                        return
                else:
                    match = route.match(path)
                    if match:
                        handler(*(int(g) for g in match.groups()))
                        return
            self._send_error_json(404, "Not found")
        except BadRequest as e:
            self._send_error_json(400, str(e))
        except ValidationError as e:
            self._send_error_json(400, str(e))
        except StoreError as e:
            logger.error("Store error handling %s %s: %s", self.command, path, e)
            self._send_error_json(500, "Store error")
        except Exception as e:
            logger.exception("Error handling %s %s: %s", self.command, path, e)
            self._send_error_json(500, "Internal server error")

    def do_GET(self) -> None:
        """Handle GET requests."""
        self._dispatch(
            [
                ("/health", self._handle_health),
                ("/api/urls", self._handle_list_targets),
                ("/api/errors", self._handle_list_errors),
                ("/api/email-settings", self._handle_get_email_settings),
                ("/api/stats", self._handle_stats),
            ]
        )

    def do_POST(self) -> None:
        """Handle POST requests."""
        self._dispatch(
            [
                ("/api/urls", self._handle_create_target),
                (_TARGET_CHECK_PATH, self._handle_check_target),
                ("/api/email-settings", self._handle_save_email_settings),
                ("/api/email-settings/test", self._handle_test_email),
            ]
        )

    def do_PATCH(self) -> None:
        """Handle PATCH requests."""
        self._dispatch([(_TARGET_PATH, self._handle_update_target)])

    def do_DELETE(self) -> None:
        """Handle DELETE requests."""
        self._dispatch([(_TARGET_PATH, self._handle_delete_target)])

    def _handle_health(self, query: str) -> None:
        """Handle GET /health endpoint."""
        self._send_json(200, {"status": "ok"})

    def _handle_list_targets(self, query: str) -> None:
        targets = self.store.list_targets()
        self._send_json(200, [_target_to_dict(t) for t in targets])

    def _handle_create_target(self, query: str) -> None:
        """Handle POST /api/urls: create a target and schedule its first check."""
        fields = _parse_target_fields(self._read_json_body(), required=True)
        target = self.store.create_target(**fields)
        logger.info("Target %d created: %s", target.id, target.url)

        if self.monitor is not None:
            timer = threading.Timer(INITIAL_CHECK_DELAY, _run_initial_check, args=(self.monitor, target.id))
            timer.daemon = True
            timer.start()

        self._send_json(201, _target_to_dict(target))

    def _handle_update_target(self, target_id: int) -> None:
        fields = _parse_target_fields(self._read_json_body(), required=False)
        target = self.store.update_target(target_id, **fields)
        if target is None:
            self._send_error_json(404, f"Target {target_id} not found")
            return
        self._send_json(200, _target_to_dict(target))

    def _handle_delete_target(self, target_id: int) -> None:
        if not self.store.delete_target(target_id):
            self._send_error_json(404, f"Target {target_id} not found")
            return
        logger.info("Target %d deleted", target_id)
        self._send_json(200, {"deleted": target_id})

    def _handle_check_target(self, target_id: int) -> None:
        """Handle POST /api/urls/<id>/check: probe now and return the updated target.

        If a check for the target is already running, the current record is
        returned without probing again.
        """
        if self.store.get_target(target_id) is None:
            self._send_error_json(404, f"Target {target_id} not found")
            return
        if self.monitor is None:
            self._send_error_json(503, "Monitor not available")
            return

        self.monitor.check_one(target_id)

        target = self.store.get_target(target_id)
        if target is None:
            self._send_error_json(404, f"Target {target_id} not found")
            return
        self._send_json(200, _target_to_dict(target))

    def _handle_list_errors(self, query: str) -> None:
        """Handle GET /api/errors?limit=N endpoint."""
        params = parse_qs(query)
        limit = ERROR_LOG_LIMIT
        if "limit" in params:
            try:
                limit = int(params["limit"][0])
            except ValueError:
                raise BadRequest("'limit' must be an integer")
            if limit < 0:
                raise BadRequest("'limit' must not be negative")

        entries = self.store.list_error_logs(limit)
        self._send_json(200, [_error_log_to_dict(e) for e in entries])

    def _handle_get_email_settings(self, query: str) -> None:
        settings = self.store.get_email_settings()
        self._send_json(200, _email_settings_to_dict(settings) if settings else None)

    def _handle_save_email_settings(self, query: str) -> None:
        body = self._read_json_body()
        settings = _parse_email_settings(body, self.store.get_email_settings())
        saved = self.store.save_email_settings(settings)
        logger.info("Email settings updated (%d recipient(s))", len(saved.recipients))
        self._send_json(200, _email_settings_to_dict(saved))

    def _handle_test_email(self, query: str) -> None:
        """Handle POST /api/email-settings/test endpoint."""
        if self.notifier is None:
            self._send_error_json(503, "Notifier not available")
            return

        try:
            sent = self.notifier.send_test()
        except NotificationError as e:
            self._send_error_json(500, str(e))
            return

        if not sent:
            self._send_error_json(400, "Email settings are not configured or disabled")
            return
        self._send_json(200, {"message": "Test email sent successfully"})

    def _handle_stats(self, query: str) -> None:
        self._send_json(200, _build_stats_response(self.store.list_targets()))


def _create_handler_class(
    store: Store,
    monitor: Monitor | None = None,
    notifier: Notifier | None = None,
) -> type:
    """Create a handler class with the store and services bound."""

    class BoundMonitorHandler(MonitorHandler):
        pass

    BoundMonitorHandler.store = store
    BoundMonitorHandler.monitor = monitor
    BoundMonitorHandler.notifier = notifier
    return BoundMonitorHandler


class ApiServer:
    """Threaded HTTP API server."""

    def __init__(
        self,
        config: ApiConfig,
        store: Store,
        monitor: Monitor | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        """Initialize the API server.

        Args:
            config: API configuration.
            store: Store holding targets, error logs, and email settings.
            monitor: Monitor used for initial and manual checks.
            notifier: Notifier used for test emails.
        """
        self.config = config
        self.store = store
        self.monitor = monitor
        self.notifier = notifier
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()

    def start(self) -> None:
        """Start the API server in a background thread.

        Raises:
            ApiError: If the server fails to start.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("API server is already running")
            return

        try:
            handler_class = _create_handler_class(self.store, self.monitor, self.notifier)
            self._server = ThreadingHTTPServer((self.config.host, self.config.port), handler_class)
            self._server.timeout = 1.0  # Allow periodic shutdown checks

            self._shutdown_event.clear()
            self._thread = threading.Thread(
                target=self._serve_forever,
                name="api-server",
                daemon=True,
            )
            self._thread.start()

            logger.info("API server started on %s:%d", self.config.host or "*", self.config.port)

        except OSError as e:
            if e.errno in (98, 48):  # EADDRINUSE (Linux=98, macOS=48)
                raise ApiError(
                    f"Port {self.config.port} is already in use. "
                    f"Another process may be using this port, or urlmonitor is already running."
                )
            elif e.errno == 13:  # EACCES
                raise ApiError(
                    f"Permission denied for port {self.config.port}. "
                    f"Ports below 1024 require root privileges."
                )
            else:
                raise ApiError(f"Failed to start API server on port {self.config.port}: {e}")

    def _serve_forever(self) -> None:
        """Server loop that checks for shutdown."""
        while not self._shutdown_event.is_set():
            if self._server:
                self._server.handle_request()

    def stop(self) -> None:
        """Stop the API server gracefully."""
        if self._thread is None:
            return

        logger.info("Stopping API server...")
        self._shutdown_event.set()

        if self._thread.is_alive():
            self._thread.join(timeout=5.0)

        if self._server:
            self._server.server_close()

        self._server = None
        self._thread = None
        logger.info("API server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()
