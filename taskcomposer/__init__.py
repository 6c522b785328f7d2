from .composer import Composer
from .config import Config
from .events import (
    Listener,
    RunFailed,
    TaskFailed,
    TaskFinished,
    TaskStarting,
    fn_listener,
)
from .exceptions import (
    ComposerError,
    CyclicDependencyError,
    ExecutionError,
    InvalidArgumentError,
    NoTasksError,
    ResolutionError,
    SettleError,
    TaskError,
    UnknownTaskError,
)
from .execution import RunRecord, RunStatus, TaskRunRecord
from .flow import Flow
from .registry import TaskRegistry
from .resolver import Resolver, TaskStep
from .task import FlowPolicy, Task, TaskContext, TaskOptions
from .topology import Topology
from .trigger import Trigger
from .watcher import WatchdogWatcher

__all__ = [
    "Composer",
    "Config",
    "Flow",
    "FlowPolicy",
    "Task",
    "TaskContext",
    "TaskOptions",
    "TaskRegistry",
    "Resolver",
    "TaskStep",
    "Topology",
    "Trigger",
    "WatchdogWatcher",
    "Listener",
    "fn_listener",
    "TaskStarting",
    "TaskFinished",
    "TaskFailed",
    "RunFailed",
    "RunRecord",
    "RunStatus",
    "TaskRunRecord",
    "ComposerError",
    "ResolutionError",
    "UnknownTaskError",
    "CyclicDependencyError",
    "InvalidArgumentError",
    "NoTasksError",
    "ExecutionError",
    "TaskError",
    "SettleError",
]
