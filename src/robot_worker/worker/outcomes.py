"""Terminal outcomes produced by task handlers."""

from __future__ import annotations

import traceback
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from robot_worker.engine.models import ExternalTask


class FailureKind(str, Enum):
    """Normalized failure kinds carried by incidents."""

    TIMEOUT = "timeout"
    NON_ZERO_EXIT = "non_zero_exit"
    LAUNCH_FAILURE = "launch_failure"
    HANDLER_ERROR = "handler_error"


class OutputDefect(str, Enum):
    """Non-fatal problems found while reading robot output."""

    EMPTY = "empty"
    INVALID_JSON = "invalid_json"
    NOT_AN_OBJECT = "not_an_object"


@dataclass(frozen=True, slots=True)
class Completed:
    """Task finished; variables are written back to the process instance."""

    variables: Mapping[str, object] = field(default_factory=dict)
    output_defect: OutputDefect | None = None


@dataclass(frozen=True, slots=True)
class Failed:
    """Task failed with an explicit retry policy chosen by the handler."""

    message: str
    details: str = ""
    retries: int = 0
    retry_timeout_ms: int = 0


@dataclass(frozen=True, slots=True)
class IncidentRaised:
    """Task failed and needs operator attention."""

    message: str
    details: str = ""
    kind: FailureKind = FailureKind.HANDLER_ERROR


Outcome = Completed | Failed | IncidentRaised


class TaskHandler(Protocol):
    """Contract shared by every topic handler."""

    def execute(self, task: ExternalTask) -> Outcome:
        """Handle one locked task and return its terminal outcome."""


def incident_from_exception(
    message: str,
    error: BaseException,
    *,
    kind: FailureKind = FailureKind.HANDLER_ERROR,
) -> IncidentRaised:
    """Build an incident whose details carry the formatted traceback."""

    details = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return IncidentRaised(message=message, details=details, kind=kind)
