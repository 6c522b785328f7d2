from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Sequence
    from typing import Any

    from .execution import TaskRunRecord


class ComposerError(Exception):
    def __init__(self, *args: "Any", **kwargs: "Any") -> None:
        super().__init__(*args, **kwargs)


##
## RESOLUTION
##


class ResolutionError(ComposerError):
    def __init__(self, message: str) -> None:
        super().__init__(message)


class UnknownTaskError(ResolutionError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(
            f"Task '{name}' is not registered. Register it with"
            f" `composer.register({name!r}, ...)`."
        )


class CyclicDependencyError(ResolutionError):
    def __init__(self, cycle: "Sequence[str]") -> None:
        self.cycle = tuple(cycle)
        super().__init__(
            "Tasks cannot depend on themselves. Offending cycle:\n"
            f"  {' -> '.join(self.cycle)}"
        )


class InvalidArgumentError(ResolutionError):
    def __init__(self, message: str) -> None:
        super().__init__(message)


class NoTasksError(InvalidArgumentError):
    def __init__(self) -> None:
        super().__init__(
            "Expected at least one task to compose, but the actual list of tasks"
            " is empty."
        )


##
## EXECUTION
##


class ExecutionError(ComposerError):
    def __init__(self, message: str) -> None:
        super().__init__(message)


class TaskError(ExecutionError):
    def __init__(self, task_name: str, run: "TaskRunRecord", error: "Any") -> None:
        self.task_name = task_name
        self.run = run
        self.error = error
        super().__init__(f"Task '{task_name}' failed (run {run.id}): {error}")


class SettleError(ExecutionError):
    def __init__(self, errors: "Sequence[BaseException]") -> None:
        self.errors = list(errors)
        details = "\n  ".join(str(error) for error in self.errors)
        super().__init__(
            f"{len(self.errors)} settled step(s) failed:\n  {details}"
        )
