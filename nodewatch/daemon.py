"""
Process supervisor (watchdog) daemon.

Keeps exactly one child process alive:

IDLE --start()--> RUNNING
RUNNING --clean exit--> STOPPED (supervisor exits 0)
RUNNING --crash / vanished--> RESTART_PENDING
RESTART_PENDING --under ceiling--> RUNNING (after fixed restart delay)
RESTART_PENDING --ceiling reached--> COOLING_DOWN --window elapses--> RUNNING
any --SIGINT/SIGTERM--> STOPPED (child signaled first)

Key principles:
- The child's stdout/stderr are inherited, never intercepted
- Liveness means "the pid still exists", not application health
- Operator shutdown never schedules a restart
"""

import asyncio
import os
import signal
import time
from contextlib import suppress
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

import psutil
import structlog

from nodekeeper.backoff import BackoffPolicy
from nodekeeper.config import SupervisorSettings
from nodekeeper.errors import ChildProcessCleanExit, ChildProcessCrash, ConfigurationError
from nodewatch.journal import SupervisorJournal

logger = structlog.get_logger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)

# How long to wait for an exit status after the probe reports the pid gone
LOST_CHILD_GRACE_SECONDS = 1.0


class SupervisorState(Enum):
    """Supervisor lifecycle states."""
    IDLE = "idle"
    RUNNING = "running"
    RESTART_PENDING = "restart_pending"
    COOLING_DOWN = "cooling_down"
    STOPPED = "stopped"


async def spawn_child(
    command: list[str],
    env: Mapping[str, str],
    cwd: Optional[str] = None,
) -> asyncio.subprocess.Process:
    """Launch the child with inherited stdio (transparent passthrough)."""
    return await asyncio.create_subprocess_exec(
        *command,
        env=dict(env),
        cwd=cwd,
        stdin=None,
        stdout=None,
        stderr=None,
    )


class ProcessSupervisor:
    """
    Supervises a single child process.

    The supervisor is a single instance per program run; build it in the
    entry point and pass it around rather than reaching for a global.
    """

    def __init__(
        self,
        settings: SupervisorSettings,
        journal: Optional[SupervisorJournal] = None,
        spawn: Callable[..., Awaitable[Any]] = spawn_child,
        pid_exists: Callable[[int], bool] = psutil.pid_exists,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        environ: Optional[Mapping[str, str]] = None,
    ):
        """
        Initialize supervisor.

        Args:
            settings: Command, throttling and probe settings
            journal: Append-only event journal
            spawn: Coroutine (command, env, cwd) -> process handle
            pid_exists: OS-level liveness check
            clock: Monotonic clock for the restart window
            sleep: Sleep used for restart delays and cooldowns
            environ: Base environment for the child (defaults to os.environ)

        Raises:
            ConfigurationError: missing command or invalid throttling values
        """
        settings.validate()

        self.settings = settings
        self.journal = journal or SupervisorJournal(settings.log_file)
        self._spawn = spawn
        self._pid_exists = pid_exists
        self._clock = clock
        self._sleep = sleep
        self._environ = os.environ if environ is None else environ
        self._restart_backoff = BackoffPolicy.fixed(settings.restart_delay) if settings.restart_delay > 0 else None

        # Supervisor record
        self.state = SupervisorState.IDLE
        self.child: Optional[Any] = None
        self.restart_count = 0
        self.window_start: Optional[float] = None
        self.last_liveness_at: Optional[float] = None
        self.exit_code: Optional[int] = None

        self._stopping = False
        self._child_lost = asyncio.Event()
        self._stopped = asyncio.Event()
        self._liveness_task: Optional[asyncio.Task] = None
        self._supervise_task: Optional[asyncio.Task] = None
        self._shutdown_task: Optional[asyncio.Task] = None

        logger.info(
            "supervisor_initialized",
            command=list(settings.command),
            max_restarts=settings.max_restarts,
            reset_window=settings.reset_window,
            restart_delay=settings.restart_delay,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> int:
        """
        Entry point: install signal handlers, start, wait for STOPPED.

        Returns the supervisor's exit code (0 after a clean shutdown).
        """
        loop = asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            loop.add_signal_handler(sig, self._on_signal, sig)

        try:
            await self.start()
            return await self.wait_stopped()
        finally:
            for sig in SHUTDOWN_SIGNALS:
                loop.remove_signal_handler(sig)

    async def start(self) -> None:
        """Spawn the child and begin supervising it."""
        if self.state is not SupervisorState.IDLE:
            raise RuntimeError(f"Supervisor already started ({self.state.value})")

        self.window_start = self._clock()
        self.journal.write(f"Supervisor starting: {' '.join(self.settings.command)}")

        try:
            await self._spawn_child()
        except OSError as e:
            self.state = SupervisorState.STOPPED
            self.journal.write(f"Cannot launch {self.settings.command[0]}: {e}", level="error")
            raise ConfigurationError(f"Cannot launch {self.settings.command[0]}: {e}") from e

        self._liveness_task = asyncio.create_task(self._liveness_loop())
        self._supervise_task = asyncio.create_task(self._run_supervision())

    async def wait_stopped(self) -> int:
        await self._stopped.wait()
        return self.exit_code if self.exit_code is not None else 0

    def _on_signal(self, signum: int) -> None:
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self.shutdown(signum))

    async def shutdown(self, signum: int = signal.SIGTERM) -> None:
        """
        Operator-initiated shutdown.

        Forwards `signum` to the child, cancels the probe and any pending
        restart, waits up to kill_timeout for the child, then SIGKILLs it.
        """
        if self._stopping or self.state is SupervisorState.STOPPED:
            return
        self._stopping = True

        name = signal.Signals(signum).name
        self.journal.write(f"Supervisor received {name}. Shutting down child...")

        for task in (self._liveness_task, self._supervise_task):
            if task is not None and task is not asyncio.current_task() and not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task

        child = self.child
        if child is not None and child.returncode is None:
            with suppress(ProcessLookupError):
                child.send_signal(signum)
            try:
                await asyncio.wait_for(child.wait(), self.settings.kill_timeout)
            except asyncio.TimeoutError:
                self.journal.write(
                    f"Child did not exit within {self.settings.kill_timeout:g}s. Sending SIGKILL.",
                    level="warning",
                )
                with suppress(ProcessLookupError):
                    child.kill()
                await child.wait()

        self._finish(0)

    def _finish(self, exit_code: int) -> None:
        self.state = SupervisorState.STOPPED
        self.exit_code = exit_code

        task = self._liveness_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

        self.journal.write(f"Supervisor stopped (exit code {exit_code})")
        self._stopped.set()

    # ------------------------------------------------------------------
    # Supervision loop
    # ------------------------------------------------------------------

    async def _spawn_child(self) -> None:
        self.journal.write("Starting child process...")

        env = self.build_env()
        self._child_lost.clear()
        self.child = await self._spawn(
            list(self.settings.command),
            env,
            self.settings.cwd,
        )
        self.state = SupervisorState.RUNNING
        self.last_liveness_at = self._clock()

        self.journal.write(f"Child started with PID: {self.child.pid}", pid=self.child.pid)

    def build_env(self) -> dict[str, str]:
        """Inherited environment plus the memory-diagnostics additions."""
        env = dict(self._environ)
        env.update(self.settings.extra_env)
        return env

    async def _run_supervision(self) -> None:
        """Run the supervision loop; an unexpected failure stops the supervisor with code 1."""
        try:
            await self._supervise()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("supervision_loop_crashed", error=str(e))
            self.journal.write(f"Supervision loop failed: {e}. Stopping.", level="error")

            child = self.child
            if child is not None and child.returncode is None:
                with suppress(ProcessLookupError):
                    child.kill()
                await child.wait()

            self._finish(1)

    async def _supervise(self) -> None:
        while True:
            returncode = await self._wait_for_exit()
            if self._stopping:
                return

            outcome = self.classify_exit(returncode)
            self.journal.write(describe_exit(returncode))

            if isinstance(outcome, ChildProcessCleanExit):
                self.journal.write("Clean exit detected. Not restarting.")
                self._finish(0)
                return

            self.journal.write(f"{outcome}.", level="warning", returncode=returncode)
            while not await self._restart():
                if self._stopping:
                    return

    async def _wait_for_exit(self) -> Optional[int]:
        """Wait for the child to exit or for the probe to report it gone."""
        child = self.child
        exit_waiter = asyncio.ensure_future(child.wait())
        lost_waiter = asyncio.ensure_future(self._child_lost.wait())

        try:
            done, _ = await asyncio.wait(
                {exit_waiter, lost_waiter},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if exit_waiter not in done:
                # Give a racing exit handler a chance to deliver the real status
                done, _ = await asyncio.wait({exit_waiter}, timeout=LOST_CHILD_GRACE_SECONDS)
        finally:
            for waiter in (exit_waiter, lost_waiter):
                if not waiter.done():
                    waiter.cancel()

        if exit_waiter in done:
            return exit_waiter.result()
        return child.returncode

    async def _restart(self) -> bool:
        """
        Apply throttling, wait, and spawn a replacement child.

        Returns False if the spawn itself failed (the caller loops, so the
        failure still counts against the ceiling).
        """
        self.state = SupervisorState.RESTART_PENDING
        now = self._clock()

        if now - self.window_start > self.settings.reset_window:
            self.journal.write("Restart window elapsed. Resetting restart counter.")
            self.restart_count = 0
            self.window_start = now

        if self.restart_count >= self.settings.max_restarts:
            remaining = max(0.0, self.window_start + self.settings.reset_window - now)
            self.state = SupervisorState.COOLING_DOWN
            self.journal.write(
                f"Too many restarts ({self.restart_count}). "
                f"Waiting {remaining:.0f}s before trying again.",
                level="error",
                restart_count=self.restart_count,
            )
            await self._sleep(remaining)

            self.restart_count = 0
            self.window_start = self._clock()
            self.journal.write("Cooldown complete. Restart counter reset.")
        else:
            delay = self._restart_backoff.delay(0) if self._restart_backoff else 0.0
            self.journal.write(f"Restarting in {delay:g} seconds...")
            await self._sleep(delay)

        self.restart_count += 1

        try:
            await self._spawn_child()
        except OSError as e:
            self.journal.write(f"Failed to start child: {e}", level="error")
            return False
        return True

    # ------------------------------------------------------------------
    # Liveness probe
    # ------------------------------------------------------------------

    async def _liveness_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.liveness_interval)
            self.check_liveness()

    def check_liveness(self) -> bool:
        """
        Verify the child pid still exists at the OS level.

        A missing process takes the same restart path as an observed exit.
        Returns False only when the probe declared the child lost.
        """
        child = self.child
        if self.state is not SupervisorState.RUNNING or child is None:
            return True

        if self._pid_exists(child.pid):
            self.last_liveness_at = self._clock()
            return True

        self.journal.write(
            f"Liveness probe failed: PID {child.pid} no longer exists.",
            level="warning",
            pid=child.pid,
        )
        self._child_lost.set()
        return False

    # ------------------------------------------------------------------
    # Exit classification
    # ------------------------------------------------------------------

    def classify_exit(
        self, returncode: Optional[int]
    ) -> Union[ChildProcessCrash, ChildProcessCleanExit]:
        """Clean only for designated codes or (negative) signal numbers."""
        if returncode is None:
            return ChildProcessCrash(None)
        if returncode in self.settings.clean_exit_codes:
            return ChildProcessCleanExit(returncode)
        if returncode < 0 and -returncode in self.settings.clean_exit_signals:
            return ChildProcessCleanExit(returncode)
        return ChildProcessCrash(returncode)


def describe_exit(returncode: Optional[int]) -> str:
    """Human-readable exit line, e.g. 'exited with code 1 and signal None'."""
    if returncode is None:
        return "Child process exit status unknown (process vanished)"
    if returncode < 0:
        try:
            sig_name = signal.Signals(-returncode).name
        except ValueError:
            sig_name = str(-returncode)
        return f"Child process exited with code None and signal {sig_name}"
    return f"Child process exited with code {returncode} and signal None"
