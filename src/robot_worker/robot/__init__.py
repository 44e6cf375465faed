"""Robot process supervision and variable marshalling."""

from robot_worker.robot.executable import resolve_robot_executable
from robot_worker.robot.handler import RobotRuntime, RunRobotHandler
from robot_worker.robot.marshaller import (
    from_process_output,
    parse_process_output,
    to_process_input,
)
from robot_worker.robot.supervisor import (
    ProcessInvocation,
    ProcessResult,
    ProcessSupervisor,
    RobotProcessHandle,
)

__all__ = [
    "ProcessInvocation",
    "ProcessResult",
    "ProcessSupervisor",
    "RobotProcessHandle",
    "RobotRuntime",
    "RunRobotHandler",
    "from_process_output",
    "parse_process_output",
    "resolve_robot_executable",
    "to_process_input",
]
