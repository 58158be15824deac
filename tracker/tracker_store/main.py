"""
Tracker storage server - main entry point.

This module starts the HTTP request-handling layer on top of the stores:
- Connects the configured document backend (S3, SQLite tables, memory)
- Composes every store over one BlobStore
- Serves the aiohttp application until SIGTERM/SIGINT

Usage:
    python -m tracker.tracker_store.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The server does not accept requests until storage is connected
    - An unreachable backend is fatal at startup ("storage unavailable")
    - Graceful shutdown closes the HTTP runner before the backend

How to change safely:
    - Construct new stores in services.build_services, not here
    - Test the shutdown sequence after adding components
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter
from aiohttp import web

from .api import run_http_server
from .backend import StorageConnectionError, create_backend
from .blob import BlobStore
from .config import ServerConfig
from .services import Services, build_services

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


async def connect_services(config: ServerConfig) -> Services:
    """Connect storage and compose the stores.

    Raises:
        StorageConnectionError: If the backend is unreachable
    """
    blob = BlobStore(
        create_backend(config),
        max_retries=config.retry.max_retries,
        base_delay_ms=config.retry.base_delay_ms,
    )
    try:
        await blob.connect()
    except StorageConnectionError as e:
        logger.error(
            "Storage unavailable",
            extra={"backend": config.backend.value, "error": str(e)},
        )
        raise
    logger.info("Storage connected", extra={"backend": config.backend.value})
    return build_services(blob, retention=config.retention)


class Server:
    """Tracker server orchestrator.

    Attributes:
        config: Server configuration
        services: Composed stores (set in start())

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        self.config = config or ServerConfig.from_env()
        self.services: Services | None = None
        self._runner: web.AppRunner | None = None
        self._running = False
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Start the server and wait for a shutdown request."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting tracker server")
        self.config.log_config()

        try:
            self.services = await connect_services(self.config)
            self._runner = await run_http_server(self.services, self.config.http)
            self._running = True
            logger.info("Tracker server started")

            await self._shutdown_event.wait()
        except Exception as e:
            logger.error("Server startup failed", extra={"error": str(e)}, exc_info=True)
            self._running = True
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping tracker server")

        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

        if self.services is not None:
            await self.services.blob.close()

        self._running = False
        logger.info("Tracker server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    server = Server(config)

    def handle_signal(sig: int) -> None:
        logger.info("Received signal, initiating shutdown", extra={"signal": sig})
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except StorageConnectionError:
        sys.exit(2)
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
