"""
Inventory core - main entry point.

Starts the HTTP server over an initialized InventoryCore:
- loads configuration from the environment
- connects the configured backend and storage provider
- serves the aiohttp application on PORT until SIGTERM/SIGINT

Usage:
    python -m bizbook.inventory_core.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The backend is connected before the first request is accepted
    - Shutdown stops accepting requests before the backend is closed

How to change safely:
    - Keep configuration errors on stderr with exit status 1
    - Test the shutdown sequence when adding components
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter
from aiohttp import web

from .api import create_http_app
from .config import AppConfig
from .core import InventoryCore
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def setup_logging(config: AppConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Application configuration
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


class Server:
    """Inventory core server.

    Manages the lifecycle of the core and the HTTP listener.

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: AppConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional configuration (loaded from env if not provided)
        """
        self.config = config or AppConfig.from_env()
        self.core = InventoryCore(self.config)
        self.runner: web.AppRunner | None = None
        self._running = False
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Start the server and wait for a shutdown request."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting inventory core server")
        self.config.log_config()

        try:
            await self.core.init()

            app = create_http_app(self.core)
            self.runner = web.AppRunner(app)
            await self.runner.setup()
            site = web.TCPSite(self.runner, "0.0.0.0", self.config.port)
            await site.start()

            self._running = True
            logger.info("Inventory core server started", extra={"port": self.config.port})

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

        logger.info("Stopping inventory core server")

        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None

        await self.core.shutdown()

        self._running = False
        logger.info("Inventory core server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = AppConfig.from_env()
    except ConfigurationError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
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
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
