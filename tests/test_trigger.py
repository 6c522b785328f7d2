import logging
from pathlib import Path

import anyio
import pytest
from anyio.from_thread import BlockingPortal
from watchdog.observers.polling import PollingObserver

from taskcomposer import Composer, NoTasksError, WatchdogWatcher
from taskcomposer.watcher import _ChangeHandler, split_pattern


class FakeHandle:
    def __init__(self, pattern, on_ready, on_change):
        self.pattern = pattern
        self.ready = on_ready
        self.change = on_change
        self.stopped = False

    def stop(self):
        self.stopped = True


class FakeWatcher:
    """Delivers notifications on demand, from the calling (event loop) thread."""

    def __init__(self):
        self.handles = []
        self.closed = False

    def watch(self, pattern, on_ready, on_change):
        handle = FakeHandle(pattern, on_ready, on_change)
        self.handles.append(handle)
        return handle

    def close(self):
        self.closed = True


@pytest.fixture
def watcher():
    return FakeWatcher()


@pytest.fixture
def watched_app(recorder, watcher):
    return Composer(listeners=[recorder], watcher=watcher)


@pytest.mark.anyio
async def test_watch_requires_running_composer(watched_app):
    watched_app.register("build")

    with pytest.raises(RuntimeError, match="Composer is not running"):
        watched_app.watch("src/*.txt", "build")


@pytest.mark.anyio
async def test_watch_requires_tasks(watched_app):
    async with watched_app:
        with pytest.raises(NoTasksError):
            watched_app.watch("src/*.txt")


@pytest.mark.anyio
async def test_changes_before_ready_are_ignored(watched_app, watcher):
    watched_app.register("build")

    async with watched_app:
        assert watched_app.watch("src/*.txt", "build") is watched_app
        (handle,) = watcher.handles
        (trigger,) = watched_app.triggers

        handle.change("src/a.txt")
        await trigger.wait_idle()

        assert trigger.runs == 0
        assert not trigger.running


@pytest.mark.anyio
async def test_changes_during_run_coalesce(watched_app, watcher):
    started = anyio.Event()
    release = anyio.Event()
    calls = []

    async def build():
        calls.append(len(calls))
        started.set()
        await release.wait()

    watched_app.register("build", build)

    async with watched_app:
        watched_app.watch("src/*.txt", "build")
        (handle,) = watcher.handles
        (trigger,) = watched_app.triggers
        handle.ready()

        handle.change("src/a.txt")
        await started.wait()

        handle.change("src/b.txt")
        handle.change("src/c.txt")
        assert trigger.running
        assert trigger.pending

        release.set()
        with anyio.fail_after(1):
            await trigger.wait_idle()

        assert trigger.runs == 2
        assert calls == [0, 1]
        assert not trigger.pending


@pytest.mark.anyio
async def test_triggered_errors_are_logged(watched_app, watcher, recorder, caplog):
    async def broken():
        raise ValueError("boom")

    watched_app.register("broken", broken)

    with caplog.at_level(logging.ERROR, logger="taskcomposer"):
        async with watched_app:
            watched_app.watch("src/*.txt", "broken")
            (handle,) = watcher.handles
            (trigger,) = watched_app.triggers
            handle.ready()

            handle.change("src/a.txt")
            await trigger.wait_idle()

    assert trigger.runs == 1
    assert len(recorder.errors) == 1
    assert "Run triggered by 'src/*.txt' failed" in caplog.text


@pytest.mark.anyio
async def test_debounce_folds_bursts(recorder, watcher):
    app = Composer(listeners=[recorder], watcher=watcher, watch_debounce=50)
    app.register("build")

    async with app:
        app.watch("src/*.txt", "build")
        (handle,) = watcher.handles
        (trigger,) = app.triggers
        handle.ready()

        handle.change("src/a.txt")
        await anyio.sleep(0.01)
        handle.change("src/b.txt")
        handle.change("src/c.txt")

        with anyio.fail_after(1):
            await trigger.wait_idle()

        assert trigger.runs == 1

    assert recorder.names("finished") == ["build"]


@pytest.mark.anyio
async def test_exit_stops_watches(watched_app, watcher):
    watched_app.register("build")

    async with watched_app:
        watched_app.watch("src/*.txt", "build").watch("docs/*.md", "build")

    assert [handle.stopped for handle in watcher.handles] == [True, True]
    assert watcher.closed
    assert watched_app.triggers == []


@pytest.mark.parametrize(
    ("pattern", "root", "glob"),
    (
        ("src/**/*.py", Path("src"), "**/*.py"),
        ("*.txt", Path("."), "*.txt"),
        ("assets/img/logo.svg", Path("assets/img"), "logo.svg"),
    ),
    ids=("recursive", "bare", "plain"),
)
def test_split_pattern(pattern, root, glob):
    assert split_pattern(pattern) == (root, glob)


def test_split_pattern_directory(tmp_path):
    assert split_pattern(str(tmp_path)) == (tmp_path, None)


def test_change_handler_matches(tmp_path):
    handler = _ChangeHandler(tmp_path, "**/*.py", portal=None, on_change=print)

    assert handler.matches(str(tmp_path / "a.py"))
    assert handler.matches(str(tmp_path / "pkg" / "b.py"))
    assert not handler.matches(str(tmp_path / "c.txt"))


def test_change_handler_single_segment_star(tmp_path):
    root, pattern = split_pattern(str(tmp_path / "pages" / "*.hbs"))
    handler = _ChangeHandler(root, pattern, portal=None, on_change=print)

    assert root == tmp_path / "pages"
    assert handler.matches(str(root / "index.hbs"))
    assert not handler.matches(str(root / "partials" / "deep" / "x.hbs"))


def test_change_handler_braces(tmp_path):
    handler = _ChangeHandler(tmp_path, "src/*.{js,css}", portal=None, on_change=print)

    assert handler.matches(str(tmp_path / "src" / "app.css"))
    assert not handler.matches(str(tmp_path / "src" / "app.hbs"))


@pytest.mark.anyio
async def test_watchdog_watcher(tmp_path, recorder):
    async with BlockingPortal() as portal:
        watcher = WatchdogWatcher(portal, observer_class=PollingObserver, timeout=0.1)
        app = Composer(listeners=[recorder], watcher=watcher)
        app.register("build")

        async with app:
            app.watch(str(tmp_path / "*.txt"), "build")
            (trigger,) = app.triggers
            assert trigger.ready

            with anyio.fail_after(10):
                # the polling observer may take its first snapshot after a write
                attempt = 0
                while not trigger.runs:
                    attempt += 1
                    (tmp_path / f"change-{attempt}.txt").write_text("changed")
                    await anyio.sleep(0.3)

                await trigger.wait_idle()

    assert "build" in recorder.names("finished")
