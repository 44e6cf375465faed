from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import allure
import pytest
from conftest import make_task

from robot_worker.engine.models import OpaqueValue
from robot_worker.errors import RobotLaunchError, StartupConfigError, SupervisionCancelled
from robot_worker.robot.handler import RobotRuntime, RunRobotHandler, format_failure_details
from robot_worker.robot.supervisor import ProcessInvocation, ProcessResult, ProcessSupervisor
from robot_worker.worker.outcomes import Completed, FailureKind, IncidentRaised, OutputDefect

pytestmark = [
    allure.epic("Robot Execution"),
    allure.feature("Run Robot Handler"),
]


class RecordingSupervisor:
    def __init__(
        self,
        result: ProcessResult | None = None,
        error: Exception | None = None,
    ) -> None:
        self.result = result
        self.error = error
        self.invocations: list[tuple[ProcessInvocation, float]] = []

    def run(
        self,
        invocation: ProcessInvocation,
        timeout_seconds: float,
        *,
        cancel_requested: Callable[[], bool] | None = None,
    ) -> ProcessResult:
        self.invocations.append((invocation, timeout_seconds))
        if self.error is not None:
            raise self.error
        assert self.result is not None
        return self.result


def _result(
    *,
    exit_code: int | None = 0,
    stdout: bytes = b"",
    stderr: bytes = b"",
    timed_out: bool = False,
) -> ProcessResult:
    return ProcessResult(
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        timed_out=timed_out,
        command_line="UiRobot.exe execute --process Invoices",
    )


def _handler(
    supervisor: RecordingSupervisor,
    *,
    robot_name: str = "UiPath Robot",
    package_path: Path | None = None,
    process_name: str | None = "Invoices",
) -> RunRobotHandler:
    runtime = RobotRuntime(
        executable=Path("UiRobot.exe"),
        supervisor=supervisor,  # type: ignore[arg-type]
        timeout_seconds=42,
        robot_name=robot_name,
    )
    return RunRobotHandler(runtime, package_path=package_path, process_name=process_name)


def test_successful_run_completes_with_parsed_variables(tmp_path: Path) -> None:
    package = tmp_path / "Main.nupkg"
    package.write_bytes(b"PK")
    supervisor = RecordingSupervisor(_result(stdout=b'{"x":"ok","y":2}'))
    handler = _handler(supervisor, package_path=package, process_name=None)

    outcome = handler.execute(make_task(variables={"a": 1}))

    assert outcome == Completed(variables={"x": "ok", "y": 2})
    invocation, timeout = supervisor.invocations[0]
    assert timeout == 42
    assert invocation.arguments == (
        "execute",
        "--file",
        str(package.absolute()),
        "--input",
        "{'a':1}",
    )


def test_process_target_uses_process_flag_and_filters_input() -> None:
    supervisor = RecordingSupervisor(_result(stdout=b"{}"))
    handler = _handler(supervisor)

    handler.execute(
        make_task(
            variables={
                "a": 1,
                "empty": None,
                "document": OpaqueValue(type_name="Json", raw="{}"),
            },
        ),
    )

    invocation, _ = supervisor.invocations[0]
    assert invocation.arguments == ("execute", "--process", "Invoices", "--input", "{'a':1}")


def test_empty_output_completes_without_variables() -> None:
    handler = _handler(RecordingSupervisor(_result(stdout=b"")))

    outcome = handler.execute(make_task())

    assert isinstance(outcome, Completed)
    assert dict(outcome.variables) == {}
    assert outcome.output_defect is OutputDefect.EMPTY


def test_unparsable_output_completes_without_variables() -> None:
    handler = _handler(RecordingSupervisor(_result(stdout=b"Done.")))

    outcome = handler.execute(make_task())

    assert isinstance(outcome, Completed)
    assert dict(outcome.variables) == {}
    assert outcome.output_defect is OutputDefect.INVALID_JSON


def test_timeout_raises_incident_with_command() -> None:
    handler = _handler(RecordingSupervisor(_result(exit_code=-15, timed_out=True)))

    outcome = handler.execute(make_task())

    assert outcome == IncidentRaised(
        message="UiPath Robot Timeout",
        details="Command: UiRobot.exe execute --process Invoices",
        kind=FailureKind.TIMEOUT,
    )


def test_non_zero_exit_raises_incident_with_streams_in_order() -> None:
    handler = _handler(
        RecordingSupervisor(_result(exit_code=1, stdout=b"partial", stderr=b"Selector not found")),
        robot_name="Invoice Bot",
    )

    outcome = handler.execute(make_task())

    assert isinstance(outcome, IncidentRaised)
    assert outcome.message == "Invoice Bot Failed"
    assert outcome.kind is FailureKind.NON_ZERO_EXIT
    assert outcome.details == (
        "Command: UiRobot.exe execute --process Invoices\n"
        "Exit Value: 1\n"
        "\n"
        "Output:\npartial\n"
        "Error:\nSelector not found"
    )


def test_launch_failure_raises_incident() -> None:
    error = RobotLaunchError("Could not start UiRobot.exe: not found", command_line="UiRobot.exe")
    handler = _handler(RecordingSupervisor(error=error))

    outcome = handler.execute(make_task())

    assert isinstance(outcome, IncidentRaised)
    assert outcome.message == "Failed to Start UiPath Robot"
    assert outcome.kind is FailureKind.LAUNCH_FAILURE
    assert "Could not start UiRobot.exe" in outcome.details


def test_cancellation_propagates_to_caller() -> None:
    handler = _handler(RecordingSupervisor(error=SupervisionCancelled("stop")))

    with pytest.raises(SupervisionCancelled):
        handler.execute(make_task())


def test_handler_requires_exactly_one_target(tmp_path: Path) -> None:
    runtime = RobotRuntime(executable=Path("UiRobot.exe"))
    package = tmp_path / "Main.nupkg"
    package.write_bytes(b"PK")

    with pytest.raises(StartupConfigError, match="exactly one"):
        RunRobotHandler(runtime)
    with pytest.raises(StartupConfigError, match="exactly one"):
        RunRobotHandler(runtime, package_path=package, process_name="Invoices")


def test_handler_rejects_missing_or_non_regular_package(tmp_path: Path) -> None:
    runtime = RobotRuntime(executable=Path("UiRobot.exe"))

    with pytest.raises(StartupConfigError, match="does not exist"):
        RunRobotHandler(runtime, package_path=tmp_path / "absent.nupkg")
    with pytest.raises(StartupConfigError, match="is not a regular file"):
        RunRobotHandler(runtime, package_path=tmp_path)


def test_format_failure_details_replaces_undecodable_bytes() -> None:
    details = format_failure_details(_result(exit_code=2, stdout=b"\xff", stderr=b""))

    assert "Exit Value: 2" in details
    assert "\ufffd" in details


def test_demo_robot_round_trip_completes_task(demo_robot_executable: Path) -> None:
    runtime = RobotRuntime(
        executable=demo_robot_executable,
        supervisor=ProcessSupervisor(kill_grace_seconds=1.0),
        timeout_seconds=30,
    )
    handler = RunRobotHandler(runtime, process_name="Invoices")

    outcome = handler.execute(make_task(variables={"x": "ok", "y": 2}))

    assert outcome == Completed(variables={"x": "ok", "y": 2, "process": "Invoices"})


def test_demo_robot_timeout_raises_incident(demo_robot_executable: Path) -> None:
    runtime = RobotRuntime(
        executable=demo_robot_executable,
        supervisor=ProcessSupervisor(kill_grace_seconds=1.0),
        timeout_seconds=0.5,
    )
    handler = RunRobotHandler(runtime, process_name="Invoices")

    outcome = handler.execute(make_task(variables={"demo_sleep": 30}))

    assert isinstance(outcome, IncidentRaised)
    assert outcome.message == "UiPath Robot Timeout"
    assert outcome.details.startswith("Command: ")
    assert outcome.kind is FailureKind.TIMEOUT


def test_demo_robot_non_zero_exit_raises_incident(demo_robot_executable: Path) -> None:
    runtime = RobotRuntime(
        executable=demo_robot_executable,
        supervisor=ProcessSupervisor(kill_grace_seconds=1.0),
        timeout_seconds=30,
    )
    handler = RunRobotHandler(runtime, process_name="Invoices")

    outcome = handler.execute(
        make_task(variables={"demo_exit": 4, "demo_stdout": "half", "demo_stderr": "crash"}),
    )

    assert isinstance(outcome, IncidentRaised)
    assert outcome.kind is FailureKind.NON_ZERO_EXIT
    assert "Exit Value: 4" in outcome.details
    assert outcome.details.index("Output:\nhalf") < outcome.details.index("Error:\ncrash")
