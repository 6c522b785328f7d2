import pytest

from taskcomposer import Composer, Listener


class Recorder(Listener):
    """Collects lifecycle events as (kind, task name) pairs."""

    def __init__(self):
        self.events = []
        self.errors = []

    def on_task_starting(self, event):
        self.events.append(("starting", event.task.name))

    def on_task_finished(self, event):
        self.events.append(("finished", event.task.name))

    def on_task_error(self, event):
        self.events.append(("error", event.task.name))

    def on_error(self, event):
        self.errors.append(event.error)

    def names(self, kind):
        return [name for k, name in self.events if k == kind]


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def app(recorder):
    return Composer(listeners=[recorder])


@pytest.fixture(
    params=[
        pytest.param(("asyncio", {"use_uvloop": False}), id="asyncio"),
        pytest.param(
            ("trio", {"restrict_keyboard_interrupt_to_checkpoints": True}), id="trio"
        ),
    ],
    scope="session",
)
def anyio_backend(request):
    return request.param
