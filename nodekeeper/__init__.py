"""
nodekeeper - keeps dependent connections and processes alive.

Two pieces make up the resilience core:
- ConnectionManager: named websocket connections that rotate through a set
  of interchangeable nodes with escalating backoff
- ProcessSupervisor (in the ``nodewatch`` package): restarts a crashing
  worker process with throttling and liveness probing

Neither interprets the payloads or the work it keeps alive.
"""

from nodekeeper.backoff import BackoffPolicy
from nodekeeper.config import ConnectionSettings, Settings, SupervisorSettings, load_settings
from nodekeeper.errors import (
    ChildProcessCleanExit,
    ChildProcessCrash,
    ConfigurationError,
    NodekeeperError,
    RetryCeilingExceeded,
    TransientConnectionError,
)
from nodekeeper.manager import ConnectionCallbacks, ConnectionManager, ConnectionState
from nodekeeper.rotator import EndpointRotator
from nodekeeper.session import ConnectionSession, SessionListener, SessionState
from nodekeeper.shutdown import GracefulShutdown

__version__ = "0.1.0"

__all__ = [
    "BackoffPolicy",
    "EndpointRotator",
    "ConnectionSession",
    "SessionListener",
    "SessionState",
    "GracefulShutdown",
    "ConnectionManager",
    "ConnectionCallbacks",
    "ConnectionState",
    "Settings",
    "ConnectionSettings",
    "SupervisorSettings",
    "load_settings",
    "NodekeeperError",
    "ConfigurationError",
    "TransientConnectionError",
    "RetryCeilingExceeded",
    "ChildProcessCrash",
    "ChildProcessCleanExit",
]
