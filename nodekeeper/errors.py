"""
Error taxonomy for the resilience core.

Only configuration errors are raised into application code. Everything
else is absorbed by the connection manager or the supervisor and surfaced
as an event or a log line.
"""

from typing import Optional


class NodekeeperError(Exception):
    """Base class for all nodekeeper errors."""


class ConfigurationError(NodekeeperError):
    """Invalid configuration detected at construction time. Fatal."""


class TransientConnectionError(NodekeeperError):
    """A single connection attempt (or live connection) failed. Always retried."""

    def __init__(self, endpoint: str, reason: str):
        super().__init__(f"{endpoint}: {reason}")
        self.endpoint = endpoint
        self.reason = reason


class RetryCeilingExceeded(NodekeeperError):
    """Consecutive failures for a service exceeded the configured ceiling."""

    def __init__(self, service_id: str, attempts: int):
        super().__init__(
            f"Giving up on '{service_id}' after {attempts} failed attempts"
        )
        self.service_id = service_id
        self.attempts = attempts


class ChildProcessCrash(NodekeeperError):
    """Supervised child exited unexpectedly (or vanished)."""

    def __init__(self, returncode: Optional[int]):
        if returncode is None:
            message = "Child process vanished without an exit status"
        else:
            message = f"Child process crashed with return code {returncode}"
        super().__init__(message)
        self.returncode = returncode


class ChildProcessCleanExit(NodekeeperError):
    """Supervised child exited with a designated clean code or signal."""

    def __init__(self, returncode: int):
        super().__init__(f"Child process exited cleanly with return code {returncode}")
        self.returncode = returncode
