"""Exception types raised by the stepstone engine."""

from __future__ import annotations


class StepstoneError(Exception):
    """Base class for stepstone errors."""


class UnknownWorkflowError(StepstoneError, KeyError):
    """Raised when a run references a workflow that is not registered."""


class NoResultsError(StepstoneError):
    """Raised by a handler when its work produced nothing usable.

    The runner fails the run as usual but reports "no results" to progress
    observers instead of a generic error.
    """


class RunInterrupted(StepstoneError):
    """Control-flow signal that stops a handler at a step boundary."""

    def __init__(self, run_id: str, message: str | None = None) -> None:
        super().__init__(message or f"Run {run_id} interrupted")
        self.run_id = run_id


class RunCancelled(RunInterrupted):
    """A cancellation request was observed before a step started."""

    def __init__(self, run_id: str) -> None:
        super().__init__(run_id, f"Run {run_id} was cancelled")


class RunTerminated(RunInterrupted):
    """A step was invoked on a run that already reached a terminal state."""

    def __init__(self, run_id: str, status: str) -> None:
        super().__init__(run_id, f"Run {run_id} is already {status}")
        self.status = status
