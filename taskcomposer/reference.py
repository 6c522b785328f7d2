"""
References to work: the tagged union that every registration and run argument is
turned into before anything else looks at it.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

from .exceptions import InvalidArgumentError
from .task import Task, body_parameters

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Iterable
    from typing import Any

    from .task import TaskFn


@dataclass(frozen=True, slots=True)
class TaskName:
    name: str


@dataclass(frozen=True, slots=True)
class InlineFunction:
    fn: "TaskFn"


@dataclass(frozen=True, slots=True)
class NestedDefinition:
    task: Task


Reference = Union[TaskName, InlineFunction, NestedDefinition]


def to_reference(value: "Any") -> Reference:
    if isinstance(value, (TaskName, InlineFunction, NestedDefinition)):
        return value
    elif isinstance(value, str):
        if not value:
            raise InvalidArgumentError("Task names cannot be empty.")

        return TaskName(value)
    elif isinstance(value, Task):
        return NestedDefinition(value)
    elif callable(value):
        # fail fast on bodies we would not know how to call
        body_parameters(value)
        return InlineFunction(value)

    raise InvalidArgumentError(
        "Expected a task name, a function or a Task definition, but got"
        f" `{type(value).__name__}`."
    )


def flatten(values: "Iterable[Any]") -> list["Any"]:
    flat: list["Any"] = []
    for value in values:
        if isinstance(value, (list, tuple)):
            flat.extend(flatten(value))
        else:
            flat.append(value)

    return flat


def split_arguments(
    values: "Iterable[Any]", options: "Mapping[str, Any] | None" = None
) -> tuple[list[Reference], dict[str, "Any"]]:
    """
    Split variadic run/flow arguments into references and options. Mappings found
    among the arguments are merged, in order, and keyword ``options`` win over them.
    """
    references: list[Reference] = []
    merged: dict[str, "Any"] = {}

    for value in flatten(values):
        if isinstance(value, Mapping):
            merged.update(value)
        else:
            references.append(to_reference(value))

    merged.update(options or {})
    return references, merged


def split_registration(
    args: "Iterable[Any]", options: "Mapping[str, Any] | None" = None
) -> tuple["TaskFn | None", list[Reference], dict[str, "Any"]]:
    """
    Split ``register`` arguments: a trailing callable is the task body, a leading
    mapping holds options and everything else is a dependency. ``deps`` given as an
    option are appended to the positional dependencies.
    """
    flat = flatten(args)

    fn: "TaskFn | None" = None
    if flat and callable(flat[-1]) and not isinstance(flat[-1], (str, Task)):
        fn = flat.pop()
        body_parameters(fn)

    merged: dict[str, "Any"] = {}
    if flat and isinstance(flat[0], Mapping):
        merged.update(flat.pop(0))
    merged.update(options or {})

    extra_deps = merged.pop("deps", None) or []
    if isinstance(extra_deps, (str, Task)) or callable(extra_deps):
        extra_deps = [extra_deps]

    references = [to_reference(dep) for dep in flatten([*flat, *extra_deps])]
    return fn, references, merged
