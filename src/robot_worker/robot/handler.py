"""Topic handler that runs one robot process per external task."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from robot_worker.engine.models import ExternalTask
from robot_worker.errors import RobotLaunchError, StartupConfigError
from robot_worker.robot.marshaller import parse_process_output, to_process_input
from robot_worker.robot.supervisor import ProcessInvocation, ProcessResult, ProcessSupervisor
from robot_worker.worker.outcomes import (
    Completed,
    FailureKind,
    IncidentRaised,
    Outcome,
    incident_from_exception,
)

logger = logging.getLogger(__name__)


def _never_cancelled() -> bool:
    return False


@dataclass(frozen=True, slots=True)
class RobotRuntime:
    """Process-wide robot configuration shared by every robot handler."""

    executable: Path
    supervisor: ProcessSupervisor = field(default_factory=ProcessSupervisor)
    timeout_seconds: float = 600.0
    robot_name: str = "UiPath Robot"
    working_directory: Path | None = None
    output_encoding: str = "utf-8"
    cancel_requested: Callable[[], bool] = _never_cancelled


class RunRobotHandler:
    """Start a robot for each task and translate its result into an outcome.

    The robot runs either a package file (``--file``) or a process published
    to the local robot assistant (``--process``); exactly one is required.
    """

    def __init__(
        self,
        runtime: RobotRuntime,
        *,
        package_path: Path | None = None,
        process_name: str | None = None,
    ) -> None:
        if (package_path is None) == (process_name is None):
            raise StartupConfigError(
                "Robot handler needs exactly one of package_path or process_name",
            )
        if package_path is not None:
            if not package_path.exists():
                raise StartupConfigError(f"{package_path} does not exist")
            if not package_path.is_file():
                raise StartupConfigError(f"{package_path} is not a regular file")
            package_path = package_path.absolute()
        self.runtime = runtime
        self.package_path = package_path
        self.process_name = process_name

    def execute(self, task: ExternalTask) -> Outcome:
        logger.info(
            "Handling external task (Task ID: %s - Process Instance ID %s)",
            task.id,
            task.process_instance_id,
        )
        invocation = self.build_invocation(task)
        try:
            result = self.runtime.supervisor.run(
                invocation,
                self.runtime.timeout_seconds,
                cancel_requested=self.runtime.cancel_requested,
            )
        except RobotLaunchError as error:
            logger.error("Failed to start %s: %s", self.runtime.robot_name, error)
            return incident_from_exception(
                f"Failed to Start {self.runtime.robot_name}",
                error,
                kind=FailureKind.LAUNCH_FAILURE,
            )

        if result.timed_out:
            return self._timed_out(result)
        if result.exit_code != 0:
            return self._failed(result)
        return self._succeeded(result)

    def build_invocation(self, task: ExternalTask) -> ProcessInvocation:
        arguments: list[str] = ["execute"]
        if self.package_path is not None:
            arguments += ["--file", str(self.package_path)]
        elif self.process_name is not None:
            arguments += ["--process", self.process_name]
        arguments += ["--input", to_process_input(task.variables)]
        return ProcessInvocation(
            executable=self.runtime.executable,
            arguments=tuple(arguments),
            working_directory=self.runtime.working_directory,
        )

    def _succeeded(self, result: ProcessResult) -> Completed:
        logger.info("%s successfully executed", self.runtime.robot_name)
        parsed = parse_process_output(result.stdout, encoding=self.runtime.output_encoding)
        if parsed.defect is not None:
            logger.warning("Could not read output variables: %s", parsed.defect.value)
        logger.info("Completing task with variables = %s", parsed.variables)
        return Completed(variables=parsed.variables, output_defect=parsed.defect)

    def _timed_out(self, result: ProcessResult) -> IncidentRaised:
        return IncidentRaised(
            message=f"{self.runtime.robot_name} Timeout",
            details=f"Command: {result.command_line}",
            kind=FailureKind.TIMEOUT,
        )

    def _failed(self, result: ProcessResult) -> IncidentRaised:
        logger.error("%s failed with exit value %s", self.runtime.robot_name, result.exit_code)
        return IncidentRaised(
            message=f"{self.runtime.robot_name} Failed",
            details=format_failure_details(result, encoding=self.runtime.output_encoding),
            kind=FailureKind.NON_ZERO_EXIT,
        )


def format_failure_details(result: ProcessResult, *, encoding: str = "utf-8") -> str:
    """Render command, exit value and both streams in a fixed section order."""

    stdout = result.stdout.decode(encoding, errors="replace")
    stderr = result.stderr.decode(encoding, errors="replace")
    return (
        f"Command: {result.command_line}\n"
        f"Exit Value: {result.exit_code}\n"
        "\n"
        f"Output:\n{stdout}\n"
        f"Error:\n{stderr}"
    )
