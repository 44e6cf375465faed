"""Task polling, dispatch and outcome reporting."""

from robot_worker.worker.outcomes import (
    Completed,
    Failed,
    FailureKind,
    IncidentRaised,
    Outcome,
    OutputDefect,
    TaskHandler,
)
from robot_worker.worker.poller import TaskPoller, WorkerRunSummary
from robot_worker.worker.registry import HandlerRegistry, Subscription
from robot_worker.worker.reporter import OutcomeReporter

__all__ = [
    "Completed",
    "Failed",
    "FailureKind",
    "HandlerRegistry",
    "IncidentRaised",
    "Outcome",
    "OutcomeReporter",
    "OutputDefect",
    "Subscription",
    "TaskHandler",
    "TaskPoller",
    "WorkerRunSummary",
]
