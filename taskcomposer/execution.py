import inspect
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

import anyio
from pydantic import BaseModel, ConfigDict, Field, computed_field

from .exceptions import ExecutionError, TaskError
from .task import FlowPolicy, TaskContext, body_parameters, is_async

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Awaitable, Callable, Mapping
    from typing import Any

    from anyio.abc import TaskGroup

    from .events import EventDispatcher
    from .task import Task, TaskFn

    Step = Callable[["Execution"], Awaitable[None]]


class RunStatus(str, Enum):
    PENDING = "pending"
    STARTING = "starting"
    FINISHED = "finished"
    ERRORED = "errored"


class TaskRunRecord(BaseModel):
    """Bookkeeping for one invocation of one task."""

    id: UUID = Field(default_factory=uuid4)
    task: str
    status: RunStatus = RunStatus.PENDING
    started_at: float | None = None
    finished_at: float | None = None
    error: BaseException | None = Field(default=None, exclude=True)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @computed_field  # type: ignore[misc]
    @property
    def duration_s(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None

        return self.finished_at - self.started_at

    def start(self) -> None:
        self.status = RunStatus.STARTING
        self.started_at = time.time()

    def finish(self) -> None:
        self.status = RunStatus.FINISHED
        self.finished_at = time.time()

    def fail(self, error: BaseException) -> None:
        self.status = RunStatus.ERRORED
        self.error = error
        self.finished_at = time.time()


class RunRecord(BaseModel):
    """
    One end-to-end run. Under settle policies ``errors`` holds every failure,
    otherwise only the first one.
    """

    id: UUID = Field(default_factory=uuid4)
    policy: FlowPolicy
    started_at: float = Field(default_factory=time.time)
    finished_at: float | None = None
    tasks: list[TaskRunRecord] = Field(default_factory=list)
    errors: list[BaseException] = Field(default_factory=list, exclude=True)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def ok(self) -> bool:
        return not self.errors

    def status_of(self, task_name: str) -> list[RunStatus]:
        return [run.status for run in self.tasks if run.task == task_name]


class _Completion:
    """The ``done`` callback handed to callback-style task bodies."""

    def __init__(self) -> None:
        self._event = anyio.Event()
        self.error: "Any" = None

    def __call__(self, error: "Any" = None) -> None:
        self.error = error
        self._event.set()

    async def wait(self) -> "Any":
        await self._event.wait()
        return self.error


async def call_body(
    fn: "TaskFn", context: TaskContext, *, in_thread: bool = True
) -> "Any":
    """
    Invoke a task body and wait for it to complete. Returns the error value a
    callback-style body reported (``None`` on success); raised exceptions and
    rejected awaitables propagate.
    """
    completion: _Completion | None = None
    args: list["Any"] = []
    kwargs: dict[str, "Any"] = {}

    for param in body_parameters(fn):
        if param.callback:
            completion = completion or _Completion()
            value = completion
        else:
            value = context

        if param.positional_only:
            args.append(value)
        else:
            kwargs[param.name] = value

    if completion is None and in_thread and not is_async(fn):
        result = await anyio.to_thread.run_sync(partial(fn, *args, **kwargs))
    else:
        # callback-style bodies stay on the loop thread so `done` can set the event
        result = fn(*args, **kwargs)

    if inspect.isawaitable(result):
        await result

    if completion is not None:
        return await completion.wait()

    return None


@dataclass
class Execution:
    record: RunRecord
    events: "EventDispatcher"
    overrides: "Mapping[str, Any]" = field(default_factory=dict)
    task_group: "TaskGroup | None" = None
    sync_in_thread: bool = True
    log: logging.Logger = field(
        default_factory=lambda: logging.getLogger("taskcomposer")
    )

    async def run_task(self, task: "Task", dependencies: "Step | None" = None) -> None:
        """Run a task's dependency plan, then its own body, emitting lifecycle events."""
        run = TaskRunRecord(task=task.name)
        self.record.tasks.append(run)

        if dependencies is not None:
            await dependencies(self)

        context = TaskContext(task=task, run=run, options=task.options.merge(self.overrides))

        run.start()
        self.log.debug("Starting task '%s' (run %s)", task.name, run.id)
        self.events.task_starting(task, run)

        try:
            failure = await call_body(task.fn, context, in_thread=self.sync_in_thread)
        except Exception as e:
            failure = e

        if failure is None:
            run.finish()
            self.log.debug(
                "Task '%s' finished in %.3fs (run %s)", task.name, run.duration_s, run.id
            )
            self.events.task_finished(task, run)
            return

        # failures of nested flows already carry their task and run
        if isinstance(failure, ExecutionError):
            error: ExecutionError = failure
        else:
            error = TaskError(task.name, run, failure)

        run.fail(error)
        self.log.warning("Task '%s' failed (run %s): %s", task.name, run.id, failure)
        self.events.task_failed(error, task, run)

        if error is failure or not isinstance(failure, BaseException):
            raise error

        raise error from failure
