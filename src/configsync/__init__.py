"""ConfigSync: keep cluster objects in sync with a git repository."""

from configsync.machine import ReconciliationStateMachine
from configsync.reporter import StatusReporter
from configsync.scheduler import RequeueResult, Scheduler
from configsync.state import SyncState, Target

__all__ = [
    "ReconciliationStateMachine",
    "RequeueResult",
    "Scheduler",
    "StatusReporter",
    "SyncState",
    "Target",
]

__version__ = "0.1.0"
