"""urlmonitor - URL liveness monitoring with email alerts and a JSON API."""

import argparse
import logging
import signal
import sys
from threading import Event

__version__ = "0.1.0"

# Global shutdown event for signal handlers
_shutdown_event: Event | None = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _load_config_or_exit(path: str | None):
    from .config import ConfigError, load_config

    try:
        return load_config(path)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)


def _open_store_or_exit(config):
    from .store import StoreError, create_store

    try:
        store = create_store(config.store)
    except StoreError as e:
        logger.error("Store error: %s", e)
        sys.exit(1)
    logger.info("Store opened (%s backend)", config.store.backend)
    return store


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - start the monitoring service."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("urlmonitor %s starting...", __version__)

    # Import here so logging is configured first
    from .api import ApiError, ApiServer
    from .monitor import Monitor
    from .notifier import Notifier
    from .scheduler import Scheduler

    # 1. Load configuration and open the store
    config = _load_config_or_exit(args.config)
    store = _open_store_or_exit(config)

    # 2. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    # 3. Wire components
    notifier = Notifier(store, config.mail, config.alerts.webhooks)
    if config.alerts.webhooks:
        logger.info("Alerts configured with %d webhook(s)", len(config.alerts.webhooks))

    monitor = Monitor(config.monitor, store, notifier)
    scheduler = Scheduler(monitor.check_all, config.monitor.schedules)
    api_server: ApiServer | None = None

    try:
        scheduler.start()

        if config.api.enabled:
            try:
                api_server = ApiServer(config.api, store, monitor, notifier)
                api_server.start()
            except ApiError as e:
                logger.error("Failed to start API server: %s", e)
                logger.warning("Continuing without API server")
                api_server = None

        logger.info("All components started, waiting for shutdown signal...")

        # 4. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        # 5. Cleanup in reverse order of startup
        logger.info("Shutting down components...")

        if api_server is not None:
            api_server.stop()

        scheduler.stop()

        store.close()
        logger.info("Store closed")

        logger.info("Shutdown complete")


def _cmd_check(args: argparse.Namespace) -> None:
    """Execute the check command - run one batch and print the results."""
    _setup_logging(args.verbose)

    from .monitor import Monitor
    from .notifier import Notifier

    config = _load_config_or_exit(args.config)
    store = _open_store_or_exit(config)

    try:
        monitor = Monitor(config.monitor, store, Notifier(store, config.mail, config.alerts.webhooks))
        checked = monitor.check_all()

        for target in store.list_targets():
            if not target.is_active:
                state = "INACTIVE"
            else:
                state = target.status.upper()
            response = f"{target.response_time}ms" if target.response_time is not None else "-"
            print(f"{state:<9} {target.uptime:6.1f}%  {response:>8}  {target.label} ({target.url})")

        print(f"\nChecked {checked} target(s)")
    finally:
        store.close()


def _cmd_test_email(args: argparse.Namespace) -> None:
    """Execute the test-email command - verify SMTP settings."""
    _setup_logging(args.verbose)

    from .notifier import NotificationError, Notifier

    config = _load_config_or_exit(args.config)
    store = _open_store_or_exit(config)

    try:
        notifier = Notifier(store, config.mail)
        try:
            sent = notifier.send_test()
        except NotificationError as e:
            print(f"✗ FAILED: {e}")
            sys.exit(1)

        if not sent:
            print("Error: Email settings are not configured or disabled")
            sys.exit(1)

        settings = store.get_email_settings()
        print(f"✓ SUCCESS: test email sent to {', '.join(settings.recipients)}")
    finally:
        store.close()


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c", "--config",
        default=None,
        help="Path to YAML configuration file (default: built-in defaults)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the urlmonitor package."""
    parser = argparse.ArgumentParser(
        description="urlmonitor - URL liveness monitoring with email alerts"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"urlmonitor {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Run subcommand (default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Start the scheduler and API server (default)",
    )
    _add_common_arguments(run_parser)
    run_parser.set_defaults(func=_cmd_run)

    check_parser = subparsers.add_parser(
        "check",
        help="Check every active target once and print the results",
    )
    _add_common_arguments(check_parser)
    check_parser.set_defaults(func=_cmd_check)

    test_email_parser = subparsers.add_parser(
        "test-email",
        help="Send a test email using the stored email settings",
    )
    _add_common_arguments(test_email_parser)
    test_email_parser.set_defaults(func=_cmd_test_email)

    args = parser.parse_args(argv)

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = None
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
