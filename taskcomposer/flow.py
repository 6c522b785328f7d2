"""
Flow module: composes resolved steps under a flow policy.
"""

from functools import partial
from typing import TYPE_CHECKING

import anyio

from .exceptions import NoTasksError, SettleError
from .task import STRUCTURAL_OPTIONS, FlowPolicy

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Awaitable, Callable, Mapping, Sequence
    from typing import Any

    from anyio.abc import TaskGroup

    from .execution import Execution, RunRecord, Step
    from .reference import Reference
    from .task import TaskContext

    Executor = Callable[
        [Sequence[Reference], FlowPolicy, Mapping[str, Any]], Awaitable[RunRecord]
    ]


def compose(steps: "Sequence[Step]", policy: FlowPolicy | str) -> "Step":
    """Compose steps into a single step that runs them under ``policy``."""
    policy = FlowPolicy.parse(policy)

    if not steps:
        raise NoTasksError()
    elif len(steps) == 1:
        return steps[0]

    return partial(_COMBINATORS[policy], tuple(steps))


async def _series(steps: "Sequence[Step]", execution: "Execution") -> None:
    for step in steps:
        await step(execution)


async def _settle_series(steps: "Sequence[Step]", execution: "Execution") -> None:
    errors: list[BaseException] = []
    for step in steps:
        try:
            await step(execution)
        except Exception as e:
            errors.append(e)

    if errors:
        raise SettleError(errors)


class _Gather:
    """Tracks a batch of concurrently running steps."""

    def __init__(self, size: int, settle: bool) -> None:
        self.errors: list[tuple[int, BaseException]] = []
        self._remaining = size
        self._settle = settle
        self._done = anyio.Event()

    async def watch(self, index: int, step: "Step", execution: "Execution") -> None:
        try:
            await step(execution)
        except Exception as e:
            self.errors.append((index, e))
            if not self._settle:
                self._done.set()
        finally:
            self._remaining -= 1
            if self._remaining == 0:
                self._done.set()

    def spawn(self, tg: "TaskGroup", steps: "Sequence[Step]", execution: "Execution") -> None:
        for index, step in enumerate(steps):
            tg.start_soon(self.watch, index, step, execution)

    async def wait(self) -> None:
        await self._done.wait()


async def _parallel(steps: "Sequence[Step]", execution: "Execution") -> None:
    if execution.task_group is None:
        raise RuntimeError(
            "Parallel steps need a background task group to outlive the first error."
            " Enter the composer with `async with composer:` before running them."
        )

    gather = _Gather(len(steps), settle=False)
    # siblings keep running in the background after the first error is reported
    gather.spawn(execution.task_group, steps, execution)
    await gather.wait()

    if gather.errors:
        raise gather.errors[0][1]


async def _settle_parallel(steps: "Sequence[Step]", execution: "Execution") -> None:
    gather = _Gather(len(steps), settle=True)

    async with anyio.create_task_group() as tg:
        gather.spawn(tg, steps, execution)

    if gather.errors:
        raise SettleError([error for _, error in sorted(gather.errors, key=lambda e: e[0])])


_COMBINATORS = {
    FlowPolicy.SERIES: _series,
    FlowPolicy.PARALLEL: _parallel,
    FlowPolicy.SETTLE_SERIES: _settle_series,
    FlowPolicy.SETTLE_PARALLEL: _settle_parallel,
}


class Flow:
    """
    A standalone composed operation. Awaiting it resolves its requests against the
    composer's registry and runs them under its policy; since it is an async
    callable it can also be registered directly as a task body.
    """

    def __init__(
        self,
        execute: "Executor",
        references: "Sequence[Reference]",
        policy: FlowPolicy,
        overrides: "Mapping[str, Any] | None" = None,
    ) -> None:
        self._execute = execute
        self.references = tuple(references)
        self.policy = policy
        self.overrides = dict(overrides or {})
        self.__name__ = f"{policy.value}({len(self.references)})"

    async def __call__(self, ctx: "TaskContext | None" = None) -> "RunRecord":
        overrides = self.overrides
        if ctx is not None:
            # options of the enclosing run reach the tasks inside the flow
            inherited = {
                k: v for k, v in dict(ctx.options).items() if k not in STRUCTURAL_OPTIONS
            }
            overrides = {**overrides, **inherited}

        return await self._execute(self.references, self.policy, overrides)

    def __repr__(self) -> str:
        return f"<Flow {self.policy.value} of {len(self.references)} step(s)>"
