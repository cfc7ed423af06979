"""
Worker process: keeps the configured node connections alive.

This is the long-running process the supervisor launches. It opens one
logical connection per configured service id, logs connectivity events,
and shuts down cleanly (exit code 0) on SIGTERM/SIGINT.

Usage:
    python -m nodekeeper.worker --config config/settings.yaml
"""

import argparse
import asyncio
import sys
from typing import Any, Optional

import structlog
from dotenv import load_dotenv

from nodekeeper.config import DEFAULT_CONFIG_PATH, Settings, load_settings
from nodekeeper.errors import ConfigurationError, RetryCeilingExceeded, TransientConnectionError
from nodekeeper.logging_setup import setup_logging
from nodekeeper.manager import ConnectionCallbacks, ConnectionManager
from nodekeeper.shutdown import GracefulShutdown

logger = structlog.get_logger(__name__)


class ConnectionWorker:
    """Owns the connection manager for the lifetime of the worker process."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.messages_received = 0
        self.manager = ConnectionManager.from_settings(
            settings.connection,
            callbacks=ConnectionCallbacks(
                on_connected=self._on_connected,
                on_disconnected=self._on_disconnected,
                on_give_up=self._on_give_up,
                on_error=self._on_error,
                on_message=self._on_message,
            ),
        )

    def _on_connected(self, service_id: str) -> None:
        logger.info("worker_service_connected", service_id=service_id)

    def _on_disconnected(self, service_id: str, reason: str) -> None:
        logger.warning("worker_service_disconnected", service_id=service_id, reason=reason)

    def _on_error(self, service_id: str, error: TransientConnectionError) -> None:
        logger.warning(
            "worker_connection_error",
            service_id=service_id,
            endpoint=error.endpoint,
            reason=error.reason,
        )

    def _on_give_up(self, service_id: str, error: RetryCeilingExceeded) -> None:
        logger.error("worker_service_gave_up", service_id=service_id, attempts=error.attempts)

    def _on_message(self, service_id: str, data: Any) -> None:
        self.messages_received += 1

    async def start(self) -> None:
        for service_id in self.settings.connection.services:
            await self.manager.connect(service_id)

    async def stop(self) -> None:
        await self.manager.close_all()
        logger.info("worker_stopped", messages_received=self.messages_received)


async def run_worker(settings: Settings, pid_file: Optional[str] = None) -> int:
    worker = ConnectionWorker(settings)
    shutdown = GracefulShutdown(pid_file=pid_file)
    shutdown.register_cleanup("connections", worker.stop, priority=10)
    shutdown.install()

    await worker.start()
    await shutdown.wait()
    return await shutdown.run_cleanup()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="nodekeeper connection worker")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH)
    parser.add_argument("--pid-file", default=None)
    args = parser.parse_args(argv)

    load_dotenv()

    try:
        settings = load_settings(args.config)
    except ConfigurationError as e:
        setup_logging("INFO")
        logger.error("invalid_configuration", error=str(e))
        return 1

    setup_logging(settings.log_level)
    return asyncio.run(run_worker(settings, pid_file=args.pid_file))


if __name__ == "__main__":
    sys.exit(main())
