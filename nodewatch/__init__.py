"""
Process supervisor (watchdog).

Runs as the parent of the worker process. It restarts the worker when it
crashes, throttles crash loops, probes the worker's pid for silent deaths,
and forwards SIGINT/SIGTERM so an operator shutdown is never mistaken for
a crash.
"""

from nodewatch.daemon import ProcessSupervisor, SupervisorState
from nodewatch.journal import SupervisorJournal

__all__ = ["ProcessSupervisor", "SupervisorState", "SupervisorJournal"]
