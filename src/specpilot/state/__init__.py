from specpilot.state.activity import ActivityEntry, ActivityLog
from specpilot.state.execution import ExecutionState, ExecutionStateStore, PersistedRun
from specpilot.state.spec_store import SpecFile, SpecStore, atomic_write_text

__all__ = [
    "ActivityEntry",
    "ActivityLog",
    "ExecutionState",
    "ExecutionStateStore",
    "PersistedRun",
    "SpecFile",
    "SpecStore",
    "atomic_write_text",
]
