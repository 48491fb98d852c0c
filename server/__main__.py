from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional, Sequence

from shared.protocol import DisconnectReason

from server.api import ApiServer, PairingApi
from server.config import ServerSettings
from server.inactivity import InactivityMonitor
from server.presence import PresenceRegistry
from server.rate_limit import RateLimiter
from server.relay import SignalingRelay
from server.session_registry import SessionRegistry

logger = logging.getLogger(__name__)


def parse_settings(argv: Optional[Sequence[str]] = None) -> ServerSettings:
    """Layer command-line flags over ``FLIPSYNC_*`` environment settings."""

    settings = ServerSettings.from_env()
    parser = argparse.ArgumentParser(description="Display/controller pairing server")
    parser.add_argument("--host", default=settings.host, help="Host/IP to bind the HTTP server")
    parser.add_argument("--port", type=int, default=settings.port, help="HTTP and WebSocket port")
    parser.add_argument("--session-ttl", type=float, default=settings.session_ttl, help="Seconds before an idle session expires")
    parser.add_argument(
        "--inactivity-timeout",
        type=float,
        default=settings.inactivity_timeout,
        help="Seconds of inactivity before a connected session is terminated",
    )
    parser.add_argument(
        "--inactivity-warning",
        type=float,
        default=settings.inactivity_warning,
        help="Seconds of inactivity before clients are warned",
    )
    parser.add_argument(
        "--inactivity-check-interval",
        type=float,
        default=settings.inactivity_check_interval,
        help="Seconds between inactivity checks",
    )
    parser.add_argument(
        "--stale-connection-timeout",
        type=float,
        default=settings.stale_connection_timeout,
        help="Seconds without frames before a relay connection is dropped",
    )
    parser.add_argument(
        "--presence-idle-timeout",
        type=float,
        default=settings.presence_idle_timeout,
        help="Seconds before an idle presence entry is removed",
    )
    parser.add_argument(
        "--message-rate-limit",
        type=int,
        default=settings.message_rate_limit,
        help="Messages (and pairing attempts) allowed per user or address in each window",
    )
    parser.add_argument("--rate-limit-window", type=float, default=settings.rate_limit_window, help="Rate limit window in seconds")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        default=settings.log_level,
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"],
        help="Logging verbosity",
    )
    parser.add_argument("--log-file", type=Path, default=settings.log_file, help="Optional path to a rotating log file")
    parser.add_argument("--log-max-bytes", type=int, default=settings.log_max_bytes, help="Max size of the log file before rotation")
    parser.add_argument("--log-backup-count", type=int, default=settings.log_backup_count, help="Number of rotated log files to retain")
    args = parser.parse_args(argv)

    settings = ServerSettings(**vars(args))
    try:
        settings.validate()
    except ValueError as exc:
        parser.error(str(exc))
    return settings


def configure_logging(settings: ServerSettings) -> None:
    log_handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.log_file:
        from logging.handlers import RotatingFileHandler

        settings.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            settings.log_file,
            maxBytes=max(1024, settings.log_max_bytes),
            backupCount=max(1, settings.log_backup_count),
        )
        file_handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s"))
        log_handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        handlers=log_handlers,
        force=True,
    )


async def main(argv: Optional[Sequence[str]] = None) -> None:
    settings = parse_settings(argv)
    configure_logging(settings)

    registry = SessionRegistry(session_ttl=settings.session_ttl)
    presence = PresenceRegistry(idle_timeout=settings.presence_idle_timeout)
    window = settings.rate_limit_window
    relay = SignalingRelay(
        registry,
        presence,
        message_limiter=RateLimiter(settings.message_rate_limit, window, name="relay messages"),
    )
    monitor = InactivityMonitor(
        registry,
        relay,
        presence,
        warning_after=settings.inactivity_warning,
        timeout=settings.inactivity_timeout,
        stale_after=settings.stale_connection_timeout,
        interval=settings.inactivity_check_interval,
    )
    api_server = ApiServer(
        PairingApi(
            registry,
            presence,
            relay,
            pair_limiter=RateLimiter(settings.message_rate_limit, window, name="pairing"),
            broker_limiter=RateLimiter(2 * settings.message_rate_limit, window, name="broker messages"),
        ),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )

    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        if stop_event.is_set():
            logger.debug("Shutdown already in progress")
            return
        logger.info("Shutdown signal initiated shutdown")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Signals aren't implemented on Windows for ProactorEventLoop; fallback to keyboard interrupt.
            pass

    await api_server.start()
    monitor_task = asyncio.create_task(monitor.run())

    await stop_event.wait()

    logger.info("Shutdown signal processed; stopping services")

    try:
        await relay.disconnect_all(DisconnectReason.SHUTDOWN)
    except Exception:
        logger.exception("Failed to disconnect relay peers during shutdown")

    monitor_task.cancel()
    try:
        await monitor_task
    except asyncio.CancelledError:
        pass

    try:
        await api_server.stop()
    except Exception:
        logger.exception("Error stopping pairing server")

    logger.info("Shutdown complete")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
