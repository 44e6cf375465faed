"""Error taxonomy shared by the engine client, poller and handlers."""

from __future__ import annotations


class RobotWorkerError(RuntimeError):
    """Base class for worker errors."""


class StartupConfigError(RobotWorkerError):
    """Configuration problem that must abort worker startup."""


class TransientEngineError(RobotWorkerError):
    """Engine unreachable or temporarily failing; safe to retry later."""


class EngineRequestError(RobotWorkerError):
    """Engine rejected a request; retrying the same call will not help."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TaskExecutionError(RobotWorkerError):
    """Task-level execution failure surfaced as an incident."""


class RobotLaunchError(TaskExecutionError):
    """Robot process could not be spawned."""

    def __init__(self, message: str, *, command_line: str) -> None:
        super().__init__(message)
        self.command_line = command_line


class SupervisionCancelled(RobotWorkerError):
    """Supervising context was interrupted while waiting for the robot."""
