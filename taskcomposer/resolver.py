from dataclasses import dataclass
from typing import TYPE_CHECKING

from .exceptions import CyclicDependencyError
from .flow import compose
from .reference import InlineFunction, NestedDefinition, TaskName, flatten, to_reference
from .task import FlowPolicy, Task

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Iterable, Iterator, Sequence
    from typing import Any

    from .execution import Execution
    from .reference import Reference
    from .registry import TaskRegistry


@dataclass(frozen=True)
class TaskStep:
    """A task together with the already-resolved plan of its dependencies."""

    task: Task
    dependencies: tuple["TaskStep", ...] = ()

    async def __call__(self, execution: "Execution") -> None:
        dependencies = (
            compose(self.dependencies, self.task.options.flow)
            if self.dependencies
            else None
        )
        await execution.run_task(self.task, dependencies)

    @property
    def name(self) -> str:
        return self.task.name


def iter_steps(steps: "Iterable[TaskStep]") -> "Iterator[TaskStep]":
    """Depth-first walk of a plan: dependencies first, then the task itself."""
    for step in steps:
        yield from iter_steps(step.dependencies)
        yield step


class Resolver:
    """
    Expands requests into runnable steps against a registry. Expansion is
    structural and never memoized, so a dependency reachable along two paths is
    planned twice; only a name met again while it is still being expanded is an
    error.
    """

    def __init__(self, registry: "TaskRegistry") -> None:
        self.registry = registry

    def resolve(self, requests: "Sequence[Any]") -> list[TaskStep]:
        return [
            self._resolve(to_reference(request), ()) for request in flatten(requests)
        ]

    def _resolve(self, reference: "Reference", expanding: tuple[str, ...]) -> TaskStep:
        if isinstance(reference, TaskName):
            return self._expand(self.registry.get(reference.name), expanding)
        elif isinstance(reference, NestedDefinition):
            return self._expand(reference.task, expanding)
        elif isinstance(reference, InlineFunction):
            return TaskStep(Task.from_function(reference.fn))

        raise TypeError(f"Unsupported reference {reference!r}")  # pragma: no cover

    def _expand(self, task: Task, expanding: tuple[str, ...]) -> TaskStep:
        if task.name in expanding:
            cycle = expanding[expanding.index(task.name) :]
            raise CyclicDependencyError([*cycle, task.name])

        expanding = (*expanding, task.name)
        return TaskStep(
            task=task,
            dependencies=tuple(self._resolve(dep, expanding) for dep in task.deps),
        )


def runs_in_parallel(steps: "Sequence[TaskStep]", policy: FlowPolicy) -> bool:
    """Whether running ``steps`` under ``policy`` starts concurrent ``parallel`` siblings."""
    if policy is FlowPolicy.PARALLEL and len(steps) > 1:
        return True

    return any(
        step.task.options.flow is FlowPolicy.PARALLEL and len(step.dependencies) > 1
        for step in iter_steps(steps)
    )
