from taskherd.state.locks import LockBusyError, LockManager, RunningTask, parse_lock_label
from taskherd.state.milestones import MilestoneStore
from taskherd.state.record import RecordEntry, RecordLedger
from taskherd.state.tasks import (
    Task,
    TaskNotFoundError,
    TaskState,
    TaskStore,
    TaskStoreError,
    branch_name,
)

__all__ = [
    "LockBusyError",
    "LockManager",
    "MilestoneStore",
    "RecordEntry",
    "RecordLedger",
    "RunningTask",
    "Task",
    "TaskNotFoundError",
    "TaskState",
    "TaskStore",
    "TaskStoreError",
    "branch_name",
    "parse_lock_label",
]
