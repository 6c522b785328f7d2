import warnings
from types import MappingProxyType
from typing import TYPE_CHECKING

from .exceptions import UnknownTaskError

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Iterator, Mapping

    from .task import Task


class TaskRegistry:
    """
    Name -> Task mapping. Registration is expected to happen during setup; the
    composer refuses to register while one of its runs is in flight.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, "Task"] = {}

    def register(self, task: "Task") -> None:
        if task.name in self._tasks:
            warnings.warn(
                f"Task '{task.name}' is already registered. This will override that"
                " definition.",
                stacklevel=3,
            )

        self._tasks[task.name] = task

    def get(self, name: str) -> "Task":
        if task := self._tasks.get(name):
            return task

        raise UnknownTaskError(name)

    @property
    def tasks(self) -> "Mapping[str, Task]":
        return MappingProxyType(self._tasks)

    def clear(self) -> None:
        self._tasks.clear()

    def __getitem__(self, name: str) -> "Task":
        return self._tasks[name]

    def __contains__(self, name: object) -> bool:
        return name in self._tasks

    def __iter__(self) -> "Iterator[str]":
        return iter(self._tasks)

    def __len__(self) -> int:
        return len(self._tasks)

    def __repr__(self) -> str:
        return f"TaskRegistry({sorted(self._tasks)})"
