"""Stepstone: durable step workflows with concurrent progress reporting."""

from .config import StepstoneConfig, load_config
from .exceptions import (
    NoResultsError,
    RunCancelled,
    RunInterrupted,
    RunTerminated,
    StepstoneError,
    UnknownWorkflowError,
)
from .persistence import WorkflowRun, get_repository
from .poller import ProgressPoller, ProgressView
from .progress import ProgressReporter, get_activity_log, get_progress_store
from .step import StepExecutor, completed
from .workflow import (
    Workflow,
    WorkflowContext,
    WorkflowHandle,
    WorkflowRunner,
    describe_outcome,
)

__version__ = "0.1.0"
__all__ = [
    "NoResultsError",
    "ProgressPoller",
    "ProgressReporter",
    "ProgressView",
    "RunCancelled",
    "RunInterrupted",
    "RunTerminated",
    "StepExecutor",
    "StepstoneConfig",
    "StepstoneError",
    "UnknownWorkflowError",
    "Workflow",
    "WorkflowContext",
    "WorkflowHandle",
    "WorkflowRun",
    "WorkflowRunner",
    "completed",
    "describe_outcome",
    "get_activity_log",
    "get_progress_store",
    "get_repository",
    "load_config",
]
