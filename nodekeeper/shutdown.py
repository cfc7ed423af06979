"""
Graceful shutdown for a supervised worker.

Installed in the WORKER (not the supervisor). When the supervisor forwards
SIGTERM/SIGINT, the worker runs its registered cleanups (closing every
managed connection first) and exits with code 0, which the supervisor
treats as a clean exit and does not restart.
"""

import asyncio
import inspect
import os
import signal
from pathlib import Path
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


class GracefulShutdown:
    """
    Coordinates asyncio shutdown of a worker process.

    Usage:
        shutdown = GracefulShutdown(pid_file="/tmp/nodekeeper/worker.pid")
        shutdown.register_cleanup("connections", manager.close_all, priority=10)
        shutdown.install()

        await shutdown.wait()
        sys.exit(await shutdown.run_cleanup())
    """

    def __init__(self, pid_file: Optional[str] = None):
        """
        Args:
            pid_file: Path to PID file (written on install, removed on cleanup)
        """
        self.pid_file = Path(pid_file) if pid_file else None
        self.received_signal: Optional[int] = None
        self._requested = asyncio.Event()
        self._cleanups: list[tuple[int, int, str, Callable[[], Any]]] = []

    def register_cleanup(
        self,
        name: str,
        callback: Callable[[], Any],
        priority: int = 0,
    ) -> None:
        """
        Register a cleanup (plain callable or coroutine function).

        Higher priority runs first; equal priorities run in reverse order of
        registration.
        """
        self._cleanups.append((priority, len(self._cleanups), name, callback))

    def install(self) -> None:
        """Install SIGTERM/SIGINT handlers on the running loop and write the PID file."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request, sig)

        if self.pid_file:
            self.pid_file.parent.mkdir(parents=True, exist_ok=True)
            self.pid_file.write_text(str(os.getpid()))
            logger.info("pid_file_written", path=str(self.pid_file))

        logger.info("signal_handlers_installed")

    def request(self, signum: int = signal.SIGTERM) -> None:
        if self._requested.is_set():
            return
        self.received_signal = signum
        logger.info("shutdown_signal_received", signal=signal.Signals(signum).name)
        self._requested.set()

    @property
    def shutdown_requested(self) -> bool:
        return self._requested.is_set()

    async def wait(self) -> None:
        await self._requested.wait()

    async def run_cleanup(self) -> int:
        """
        Run every cleanup, highest priority first.

        Returns the exit code: 0 when every cleanup succeeded, 1 otherwise.
        """
        ordered = sorted(self._cleanups, key=lambda c: (c[0], c[1]), reverse=True)
        logger.info("running_cleanup_callbacks", count=len(ordered))

        failed = False
        for _, _, name, callback in ordered:
            logger.info("shutting_down_component", component=name)
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                failed = True
                logger.error("cleanup_callback_error", component=name, error=str(e))

        if self.pid_file and self.pid_file.exists():
            self.pid_file.unlink()
            logger.info("pid_file_removed")

        logger.info("graceful_shutdown_complete", failed=failed)
        return 1 if failed else 0
