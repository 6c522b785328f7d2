import logging
import time
from contextlib import AsyncExitStack
from functools import partial
from typing import TYPE_CHECKING

import anyio
import sniffio
from anyio.from_thread import BlockingPortal

from .config import Config
from .events import EVENT_METHODS, EventDispatcher, fn_listener
from .exceptions import InvalidArgumentError, NoTasksError, SettleError
from .execution import Execution, RunRecord
from .flow import Flow, compose
from .reference import split_arguments, split_registration
from .registry import TaskRegistry
from .resolver import Resolver, runs_in_parallel
from .task import STRUCTURAL_OPTIONS, FlowPolicy, Task, TaskOptions, noop
from .topology import Topology
from .trigger import Trigger
from .watcher import WatchdogWatcher

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Awaitable, Callable, Mapping, Sequence
    from types import TracebackType
    from typing import Any

    from anyio.abc import TaskGroup

    from .events import Listener
    from .reference import Reference
    from .watcher import Watcher

    Done = Callable[[BaseException | None], Any]


class Composer:
    """
    Registers tasks, resolves them into plans and runs those plans.

    ```python
    app = Composer()
    app.register("styles", build_styles)
    app.register("site", ["styles"], build_site)

    async with app:
        await app.run("site")
        app.watch("templates/**/*.hbs", "site")
        ...
    ```

    Entering the composer (``async with``) opens a background task group. Watches,
    callback-style runs inside an event loop and plans with ``parallel`` siblings
    need it, since siblings keep running there after the first error is reported.
    Plans without parallel siblings can be awaited without entering the composer.
    """

    def __init__(
        self,
        *,
        registry: TaskRegistry | None = None,
        listeners: "list[Listener] | None" = None,
        watcher: "Watcher | None" = None,
        logger: logging.Logger | None = None,
        **settings: "Any",
    ) -> None:
        self.config = Config(**settings)
        self.registry = registry if registry is not None else TaskRegistry()
        self.resolver = Resolver(self.registry)
        self.triggers: list[Trigger] = []

        self._log = logger or logging.getLogger("taskcomposer")
        self.events = EventDispatcher(listeners, logger=self._log)

        self._watcher = watcher
        self._owns_watcher = watcher is None
        self._exit_stack: AsyncExitStack | None = None
        self._task_group: "TaskGroup | None" = None
        self._portal: BlockingPortal | None = None
        self._active_runs = 0

    ##
    ## REGISTRATION
    ##

    def register(self, name: str, *args: "Any", **options: "Any") -> "Composer":
        """
        Register a task. A trailing callable is its body (a no-op when omitted), a
        leading mapping and keyword arguments are its options, and everything else
        (names, functions, ``Task`` definitions, or lists of them) is a dependency.
        """
        if not isinstance(name, str) or not name:
            raise InvalidArgumentError(
                f"Expected a non-empty task name, but got {name!r}."
            )
        elif self._active_runs:
            raise RuntimeError(
                f"Cannot register task '{name}' while a run is in flight; register"
                " tasks before running them."
            )

        fn, deps, opts = split_registration(args, options)
        self.registry.register(
            Task(
                name=name,
                fn=fn or noop,
                deps=tuple(deps),
                options=TaskOptions.from_mapping(opts),
            )
        )
        return self

    @property
    def tasks(self) -> "Mapping[str, Task]":
        return self.registry.tasks

    ##
    ## EVENTS
    ##

    def on(self, event: str, fn: "Callable[[Any], Any]") -> "Listener":
        """Subscribe ``fn`` to ``task.starting``, ``task.finished``, ``task.error`` or ``error``."""
        if (method := EVENT_METHODS.get(event)) is None:
            raise InvalidArgumentError(
                f"Unknown event {event!r}; expected one of: {', '.join(EVENT_METHODS)}."
            )

        return self.events.add(fn_listener(**{method: fn}))

    def off(self, listener: "Listener") -> None:
        self.events.remove(listener)

    def add_listener(self, listener: "Listener") -> "Listener":
        return self.events.add(listener)

    ##
    ## RUNNING
    ##

    def run(
        self, *requests: "Any", done: "Done | None" = None, **options: "Any"
    ) -> "Awaitable[RunRecord] | None":
        """
        Run tasks by name, inline functions, or ``Task`` definitions. Top-level
        requests are composed with the ``flow`` option (``series`` by default); any
        other option overrides the options of every task in this run.

        Without ``done`` the returned awaitable yields the ``RunRecord`` or raises the
        run's error. With ``done`` the callback receives ``None`` or the error.
        """
        references, policy, overrides = self._prepare(requests, options)

        if done is None:
            return self._execute(references, policy, overrides)
        elif not callable(done):
            raise InvalidArgumentError(
                "Expected `done` to be a callback function, but got"
                f" `{type(done).__name__}`."
            )

        try:
            sniffio.current_async_library()
        except sniffio.AsyncLibraryNotFoundError:
            done(self._run_blocking(references, policy, overrides))
            return None

        self._background("a run with a `done` callback").start_soon(
            self._execute_and_report, references, policy, overrides, done
        )
        return None

    def series(self, *requests: "Any", **options: "Any") -> Flow:
        return self._flow(FlowPolicy.SERIES, requests, options)

    def parallel(self, *requests: "Any", **options: "Any") -> Flow:
        return self._flow(FlowPolicy.PARALLEL, requests, options)

    def settle_series(self, *requests: "Any", **options: "Any") -> Flow:
        return self._flow(FlowPolicy.SETTLE_SERIES, requests, options)

    def settle_parallel(self, *requests: "Any", **options: "Any") -> Flow:
        return self._flow(FlowPolicy.SETTLE_PARALLEL, requests, options)

    def topology(self, *requests: "Any") -> Topology:
        references, _ = split_arguments(requests)
        return Topology.from_steps(self.resolver.resolve(references))

    def _prepare(
        self, requests: "Sequence[Any]", options: "Mapping[str, Any]"
    ) -> tuple[list["Reference"], FlowPolicy, dict[str, "Any"]]:
        references, merged = split_arguments(requests, options)
        policy = FlowPolicy.parse(merged.get("flow", self.config.default_flow))
        overrides = {k: v for k, v in merged.items() if k not in STRUCTURAL_OPTIONS}
        return references, policy, overrides

    def _flow(
        self, policy: FlowPolicy, requests: "Sequence[Any]", options: "Mapping[str, Any]"
    ) -> Flow:
        references, merged = split_arguments(requests, options)
        overrides = {k: v for k, v in merged.items() if k not in STRUCTURAL_OPTIONS}
        return Flow(self._execute, references, policy, overrides)

    async def _execute(
        self,
        references: "Sequence[Reference]",
        policy: FlowPolicy,
        overrides: "Mapping[str, Any]",
    ) -> RunRecord:
        record = RunRecord(policy=policy)
        execution = Execution(
            record=record,
            events=self.events,
            overrides=overrides,
            task_group=self._task_group,
            sync_in_thread=self.config.sync_in_thread,
            log=self._log,
        )

        self._log.debug(
            "Starting run %s (%s of %d request(s))", record.id, policy.value, len(references)
        )
        self._active_runs += 1
        try:
            # resolution errors surface here, before any task has started
            steps = self.resolver.resolve(references)
            if self._task_group is None and runs_in_parallel(steps, policy):
                self._background("a parallel flow")

            operation = compose(steps, policy)
            await operation(execution)
        except Exception as e:
            record.errors.extend(e.errors if isinstance(e, SettleError) else [e])
            record.finished_at = time.time()
            self._log.warning("Run %s failed: %s", record.id, e)
            self.events.run_failed(e, record)
            raise
        finally:
            self._active_runs -= 1

        record.finished_at = time.time()
        self._log.info(
            "Finished run %s: %d task(s) in %.3fs",
            record.id,
            len(record.tasks),
            record.finished_at - record.started_at,
        )
        return record

    async def _execute_and_report(
        self,
        references: "Sequence[Reference]",
        policy: FlowPolicy,
        overrides: "Mapping[str, Any]",
        done: "Done",
    ) -> None:
        try:
            await self._execute(references, policy, overrides)
        except Exception as e:
            done(e)
        else:
            done(None)

    def _run_blocking(
        self,
        references: "Sequence[Reference]",
        policy: FlowPolicy,
        overrides: "Mapping[str, Any]",
    ) -> BaseException | None:
        async def main() -> BaseException | None:
            async with self:
                try:
                    await self._execute(references, policy, overrides)
                except Exception as e:
                    return e

            return None

        return anyio.run(main)

    ##
    ## WATCHING
    ##

    def watch(self, pattern: str, *requests: "Any", **options: "Any") -> "Composer":
        """
        Re-run ``requests`` whenever files matching ``pattern`` change. Failures of
        triggered runs are logged and emitted as ``error`` events, never raised.
        """
        references, policy, overrides = self._prepare(requests, options)
        if not references:
            raise NoTasksError()

        trigger = Trigger(
            pattern,
            references,
            partial(self._execute, references, policy, overrides),
            self._background("watch"),
            debounce_s=self.config.watch_debounce / 1000,
            logger=self._log,
        )
        trigger.handle = self._get_watcher().watch(
            pattern, trigger.on_ready, trigger.on_change
        )
        self.triggers.append(trigger)
        return self

    def _get_watcher(self) -> "Watcher":
        if self._watcher is None:
            self._watcher = WatchdogWatcher(
                self._portal, recursive=self.config.watch_recursive
            )

        return self._watcher

    async def _close_watches(self) -> None:
        for trigger in self.triggers:
            trigger.close()
        self.triggers.clear()

        if self._watcher is not None:
            await anyio.to_thread.run_sync(self._watcher.close)
            if self._owns_watcher:
                self._watcher = None

    ##
    ## LIFECYCLE
    ##

    def _background(self, action: str) -> "TaskGroup":
        if self._task_group is None:
            raise RuntimeError(
                f"Composer is not running. Enter it with `async with composer:` before"
                f" starting {action}."
            )

        return self._task_group

    async def __aenter__(self) -> "Composer":
        if self._exit_stack is not None:
            raise RuntimeError("Composer is already running.")

        async with AsyncExitStack() as stack:
            self._task_group = await stack.enter_async_context(anyio.create_task_group())
            self._portal = await stack.enter_async_context(BlockingPortal())
            stack.push_async_callback(self._close_watches)
            self._exit_stack = stack.pop_all()

        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: "TracebackType | None",
    ) -> bool | None:
        stack, self._exit_stack = self._exit_stack, None
        try:
            return await stack.__aexit__(exc_type, exc_val, exc_tb)
        finally:
            self._task_group = None
            self._portal = None
