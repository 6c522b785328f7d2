"""
Lifecycle events. Observers implement any subset of ``Listener`` (or build one from
plain functions with ``fn_listener``) and are attached to a single ``Composer``.
Listeners are called synchronously at each transition, on the event loop thread, so
they should be quick.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable
    from typing import Any

    from .execution import RunRecord, TaskRunRecord
    from .task import Task


@dataclass(frozen=True, slots=True)
class TaskStarting:
    task: "Task"
    run: "TaskRunRecord"


@dataclass(frozen=True, slots=True)
class TaskFinished:
    task: "Task"
    run: "TaskRunRecord"


@dataclass(frozen=True, slots=True)
class TaskFailed:
    error: BaseException
    task: "Task"
    run: "TaskRunRecord"


@dataclass(frozen=True, slots=True)
class RunFailed:
    """A whole run (direct, flow or watch triggered) ended with an error."""

    error: BaseException
    record: "RunRecord"


class Listener:
    """Base class for lifecycle observers. Unimplemented methods are no-ops."""

    def on_task_starting(self, event: TaskStarting) -> None: ...

    def on_task_finished(self, event: TaskFinished) -> None: ...

    def on_task_error(self, event: TaskFailed) -> None: ...

    def on_error(self, event: RunFailed) -> None: ...


EVENT_METHODS: dict[str, str] = {
    "task.starting": "on_task_starting",
    "task.finished": "on_task_finished",
    "task.error": "on_task_error",
    "error": "on_error",
}


def fn_listener(
    *,
    on_task_starting: "Callable[[TaskStarting], Any] | None" = None,
    on_task_finished: "Callable[[TaskFinished], Any] | None" = None,
    on_task_error: "Callable[[TaskFailed], Any] | None" = None,
    on_error: "Callable[[RunFailed], Any] | None" = None,
) -> Listener:
    listener = Listener()
    if on_task_starting is not None:
        listener.on_task_starting = on_task_starting  # type: ignore[method-assign]
    if on_task_finished is not None:
        listener.on_task_finished = on_task_finished  # type: ignore[method-assign]
    if on_task_error is not None:
        listener.on_task_error = on_task_error  # type: ignore[method-assign]
    if on_error is not None:
        listener.on_error = on_error  # type: ignore[method-assign]
    return listener


class EventDispatcher:
    """
    Fan-out to the listeners of one composer. A listener that raises is logged and
    skipped; it never breaks the run that emitted the event.
    """

    def __init__(
        self,
        listeners: "list[Listener] | None" = None,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._listeners: list[Listener] = list(listeners) if listeners else []
        self._log = logger or logging.getLogger("taskcomposer.events")

    @property
    def listeners(self) -> list[Listener]:
        return self._listeners

    def add(self, listener: Listener) -> Listener:
        self._listeners.append(listener)
        return listener

    def remove(self, listener: Listener) -> None:
        self._listeners.remove(listener)

    def emit(self, method_name: str, event: object) -> None:
        for listener in list(self._listeners):
            if (fn := getattr(listener, method_name, None)) is None:
                continue

            try:
                fn(event)
            except Exception:
                self._log.exception(
                    "Listener %r raised in %s", type(listener).__name__, method_name
                )

    def task_starting(self, task: "Task", run: "TaskRunRecord") -> None:
        self.emit("on_task_starting", TaskStarting(task=task, run=run))

    def task_finished(self, task: "Task", run: "TaskRunRecord") -> None:
        self.emit("on_task_finished", TaskFinished(task=task, run=run))

    def task_failed(
        self, error: BaseException, task: "Task", run: "TaskRunRecord"
    ) -> None:
        self.emit("on_task_error", TaskFailed(error=error, task=task, run=run))

    def run_failed(self, error: BaseException, record: "RunRecord") -> None:
        self.emit("on_error", RunFailed(error=error, record=record))
