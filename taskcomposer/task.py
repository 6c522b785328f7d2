import inspect
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, ValidationError

from .exceptions import InvalidArgumentError

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Awaitable, Callable, Mapping
    from typing import Any

    from .execution import TaskRunRecord
    from .reference import Reference

    TaskFn = Callable[..., Awaitable[Any] | Any]


class FlowPolicy(str, Enum):
    SERIES = "series"
    PARALLEL = "parallel"
    SETTLE_SERIES = "settleSeries"
    SETTLE_PARALLEL = "settleParallel"

    @property
    def settles(self) -> bool:
        return self in (FlowPolicy.SETTLE_SERIES, FlowPolicy.SETTLE_PARALLEL)

    @classmethod
    def parse(cls, value: "FlowPolicy | str") -> "FlowPolicy":
        try:
            return cls(value)
        except ValueError:
            allowed = ", ".join(policy.value for policy in cls)
            raise InvalidArgumentError(
                f"Unknown flow policy {value!r}; expected one of: {allowed}."
            ) from None


# keys that shape the plan itself and are never forwarded to task bodies
STRUCTURAL_OPTIONS = frozenset({"deps", "flow"})


class TaskOptions(BaseModel):
    """
    Options of a registered task. ``flow`` controls how the task's dependencies are
    run; any other key is passed through untouched to the running task.
    """

    flow: FlowPolicy = FlowPolicy.SERIES

    model_config = ConfigDict(extra="allow", frozen=True)

    @classmethod
    def from_mapping(cls, options: "Mapping[str, Any]") -> "TaskOptions":
        try:
            return cls.model_validate(dict(options))
        except ValidationError as e:
            raise InvalidArgumentError(f"Invalid task options: {e}") from e

    def merge(self, overrides: "Mapping[str, Any]") -> "TaskOptions":
        """Return a copy in which ``overrides`` win over the current values."""
        if not overrides:
            return self

        # extra values pass through untouched
        return self.from_mapping({**dict(self), **overrides})


async def noop() -> None:
    """Default task body; completes immediately."""


CONTEXT_PARAMETERS = frozenset({"ctx", "context"})
CALLBACK_PARAMETERS = frozenset({"done", "cb", "callback", "next"})


@dataclass(frozen=True, slots=True)
class BodyParameter:
    name: str
    callback: bool
    positional_only: bool


@lru_cache(maxsize=None)
def body_parameters(fn: "TaskFn") -> tuple[BodyParameter, ...]:
    """
    Work out what a task body wants to be called with. Parameters are matched by
    name: ``ctx``/``context`` receive the ``TaskContext``, ``done``/``cb``/
    ``callback``/``next`` receive a completion callback. Any other parameter must
    have a default.
    """
    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        # builtins without an introspectable signature are called bare
        return ()

    resolved: list[BodyParameter] = []
    unresolvable: list[str] = []
    for param in signature.parameters.values():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue

        if param.name in CONTEXT_PARAMETERS or param.name in CALLBACK_PARAMETERS:
            resolved.append(
                BodyParameter(
                    name=param.name,
                    callback=param.name in CALLBACK_PARAMETERS,
                    positional_only=param.kind is param.POSITIONAL_ONLY,
                )
            )
        elif param.default is inspect.Parameter.empty:
            unresolvable.append(param.name)

    if unresolvable:
        name = getattr(fn, "__name__", repr(fn))
        raise InvalidArgumentError(
            f"Task function {name} has unresolvable parameters: {unresolvable}"
        )

    return tuple(resolved)


def is_async(fn: "TaskFn") -> bool:
    return inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(
        getattr(fn, "__call__", None)
    )


@dataclass(frozen=True)
class Task:
    name: str
    fn: "TaskFn" = noop
    deps: tuple["Reference", ...] = ()
    options: TaskOptions = field(default_factory=TaskOptions)
    anonymous: bool = False

    @classmethod
    def from_function(cls, fn: "TaskFn") -> "Task":
        name = getattr(fn, "__name__", None) or type(fn).__name__
        return cls(name=name, fn=fn, anonymous=True)

    def __repr__(self) -> str:
        kind = "anonymous task" if self.anonymous else "task"
        return f"<{kind} {self.name!r} deps={len(self.deps)} flow={self.options.flow.value}>"


@dataclass(frozen=True)
class TaskContext:
    """What a task body sees of the invocation it is part of."""

    task: Task
    run: "TaskRunRecord"
    options: TaskOptions

    @property
    def name(self) -> str:
        return self.task.name
