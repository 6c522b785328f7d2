import logging
from typing import TYPE_CHECKING

import anyio

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Awaitable, Callable, Sequence
    from typing import Any

    from anyio.abc import TaskGroup

    from .reference import Reference
    from .watcher import WatchHandle


class Trigger:
    """
    Re-runs a set of requests whenever its watch reports a change.

    At most one triggered run is in flight at a time. Changes reported while a run
    is in flight set ``pending`` and are folded into exactly one follow-up run.
    Changes reported before the watcher signals ready are ignored. All state is
    touched only from the event loop thread.
    """

    def __init__(
        self,
        pattern: str,
        requests: "Sequence[Reference]",
        run: "Callable[[], Awaitable[Any]]",
        task_group: "TaskGroup",
        *,
        debounce_s: float = 0.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.pattern = pattern
        self.requests = tuple(requests)
        self.ready = False
        self.running = False
        self.pending = False
        self.runs = 0
        self.handle: "WatchHandle | None" = None

        self._run = run
        self._task_group = task_group
        self._debounce_s = debounce_s
        self._log = logger or logging.getLogger("taskcomposer.trigger")
        self._idle: anyio.Event | None = None

    def on_ready(self) -> None:
        self.ready = True

    def on_change(self, path: str | None = None) -> None:
        if not self.ready:
            return

        self.pending = True
        if self.running:
            self._log.debug("Change to %s folded into the in-flight run", path)
            return

        self.running = True
        self._idle = anyio.Event()
        self._task_group.start_soon(self._drain, name=f"watch:{self.pattern}")

    async def _drain(self) -> None:
        try:
            while self.pending:
                if self._debounce_s:
                    await anyio.sleep(self._debounce_s)

                self.pending = False
                await self._run_once()
        finally:
            self.running = False
            if self._idle is not None:
                self._idle.set()

    async def _run_once(self) -> None:
        self.runs += 1
        try:
            await self._run()
        except Exception:
            # there is no caller to hand this to
            self._log.exception("Run triggered by '%s' failed", self.pattern)

    async def wait_idle(self) -> None:
        """Wait until no triggered run is in flight or pending."""
        if self._idle is not None:
            await self._idle.wait()

    def close(self) -> None:
        if self.handle is not None:
            self.handle.stop()
            self.handle = None

    def __repr__(self) -> str:
        return f"<Trigger {self.pattern!r} runs={self.runs} running={self.running}>"
