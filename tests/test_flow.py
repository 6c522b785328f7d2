import anyio
import pytest

from taskcomposer import (
    Composer,
    Flow,
    FlowPolicy,
    NoTasksError,
    SettleError,
    TaskError,
)
from taskcomposer.events import EventDispatcher
from taskcomposer.execution import Execution, RunRecord
from taskcomposer.flow import compose


def sleeper(delay, order, name=None):
    async def body(ctx):
        await anyio.sleep(delay)
        order.append(name or ctx.name)

    return body


def failing(message, delay=0):
    async def body():
        await anyio.sleep(delay)
        raise ValueError(message)

    return body


@pytest.mark.anyio
async def test_series_order(app, recorder):
    order = []
    app.register("foo", sleeper(0.02, order))
    app.register("bar", sleeper(0, order))
    app.register("baz", sleeper(0.01, order))

    record = await app.series("foo", "bar", "baz")()

    assert order == ["foo", "bar", "baz"]
    assert recorder.names("starting") == ["foo", "bar", "baz"]
    assert record.policy is FlowPolicy.SERIES
    assert record.ok


@pytest.mark.anyio
async def test_parallel_order(app):
    order = []
    delays = {"a": 0.2, "b": 0.15, "c": 0.1, "d": 0.05, "e": 0}
    for name, delay in delays.items():
        app.register(name, sleeper(delay, order))

    async with app:
        with anyio.fail_after(1):
            await app.parallel(*delays)()

    assert order == ["e", "d", "c", "b", "a"]


@pytest.mark.anyio
async def test_parallel_dependencies(app):
    order = []
    app.register("bar", sleeper(0.15, order))
    app.register("baz", sleeper(0.1, order))
    app.register("qux", sleeper(0.05, order))
    app.register("foo", ["bar", "baz", "qux"], sleeper(0, order), flow="parallel")

    async with app:
        await app.run("foo")

    assert order == ["qux", "baz", "bar", "foo"]


@pytest.mark.anyio
async def test_series_stops_at_first_error(app, recorder):
    app.register("ok", sleeper(0, []))
    app.register("bad", failing("boom"))
    app.register("never", sleeper(0, []))

    with pytest.raises(TaskError) as exc:
        await app.series("ok", "bad", "never")()

    assert exc.value.task_name == "bad"
    assert isinstance(exc.value.error, ValueError)
    assert isinstance(exc.value.__cause__, ValueError)
    assert "never" not in recorder.names("starting")


@pytest.mark.anyio
@pytest.mark.parametrize(
    "factory", (Composer.settle_series, Composer.settle_parallel), ids=("series", "parallel")
)
async def test_settle_runs_everything(app, recorder, factory):
    app.register("ok1", sleeper(0, []))
    app.register("bad1", failing("first", delay=0.05))
    app.register("ok2", sleeper(0, []))
    app.register("bad2", failing("second"))

    with pytest.raises(SettleError) as exc:
        await factory(app, "ok1", "bad1", "ok2", "bad2")()

    # step order, not completion order
    assert [error.task_name for error in exc.value.errors] == ["bad1", "bad2"]
    assert sorted(recorder.names("finished")) == ["ok1", "ok2"]
    assert sorted(recorder.names("error")) == ["bad1", "bad2"]
    assert len(recorder.errors) == 1


@pytest.mark.anyio
async def test_parallel_without_tasks(app):
    with pytest.raises(NoTasksError, match="actual list of tasks"):
        await app.parallel()()


@pytest.mark.anyio
async def test_flow_as_task_body(app, recorder):
    order = []
    app.register("a", sleeper(0.05, order))
    app.register("b", sleeper(0, order))
    app.register("both", app.parallel("a", "b"))

    async with app:
        await app.run("both")

    assert order == ["b", "a"]
    assert recorder.names("finished")[-1] == "both"


@pytest.mark.anyio
async def test_flow_resolves_lazily(app):
    order = []
    flow = app.series("late")
    app.register("late", sleeper(0, order))

    assert isinstance(flow, Flow)
    await flow()

    assert order == ["late"]


@pytest.mark.anyio
async def test_flow_error_passes_through_task(app):
    app.register("bad", failing("boom"))
    app.register("wrapper", app.series("bad"))

    with pytest.raises(TaskError) as exc:
        await app.run("wrapper")

    # the nested failure is reported as is, not wrapped a second time
    assert exc.value.task_name == "bad"


def test_compose_single_step():
    async def step(execution):
        pass

    assert compose([step], FlowPolicy.PARALLEL) is step

    with pytest.raises(NoTasksError):
        compose([], FlowPolicy.SERIES)


@pytest.mark.anyio
async def test_compose_steps():
    order = []

    def step(name):
        async def run(execution):
            order.append(name)

        return run

    operation = compose([step("a"), step("b")], "series")
    await operation(Execution(record=RunRecord(policy="series"), events=EventDispatcher()))

    assert order == ["a", "b"]


@pytest.mark.anyio
async def test_parallel_requires_running_composer(app, recorder):
    app.register("a", sleeper(0, []))
    app.register("b", sleeper(0, []))
    app.register("both", ["a", "b"], flow="parallel")
    app.register("single", ["a"], flow="parallel")

    with pytest.raises(RuntimeError, match="Composer is not running"):
        await app.parallel("a", "b")()

    with pytest.raises(RuntimeError, match="Composer is not running"):
        await app.run("both")

    # nothing started, and the failed runs are still reported
    assert recorder.events == []
    assert len(recorder.errors) == 2

    # a single parallel step has no siblings to leave behind
    await app.run("single")
    assert recorder.names("finished") == ["a", "single"]


@pytest.mark.anyio
async def test_parallel_reports_before_siblings_finish(app, recorder):
    app.register("slow", sleeper(0.5, []))
    app.register("bad", failing("boom"))

    async with app:
        with anyio.fail_after(0.25):
            with pytest.raises(TaskError) as exc:
                await app.run("slow", "bad", flow="parallel")

        assert exc.value.task_name == "bad"
        assert "slow" not in recorder.names("finished")

    assert recorder.names("finished") == ["slow"]


@pytest.mark.anyio
async def test_flow_body_receives_run_options(app):
    seen = []

    def leaf(ctx):
        seen.append(getattr(ctx.options, "silent", None))

    app.register("leaf", leaf)
    app.register("plain", "leaf")
    app.register("wrap", app.series("leaf"))

    await app.run("plain", silent=True)
    await app.run("wrap", silent=True)
    await app.run("wrap")

    assert seen == [True, True, None]
