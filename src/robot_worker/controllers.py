"""Controllers for worker CLI commands."""

from __future__ import annotations

from dataclasses import dataclass

from robot_worker.bootstrap import build_registry, build_worker
from robot_worker.config import Settings
from robot_worker.errors import StartupConfigError
from robot_worker.robot.executable import installation_folders, resolve_robot_executable
from robot_worker.robot.handler import RunRobotHandler
from robot_worker.worker.poller import WorkerRunSummary


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for the polling worker."""

    once: bool
    max_polls: int | None = None
    engine_url: str | None = None
    idle_timeout_seconds: float | None = None


@dataclass(slots=True)
class LocateRobotCommand:
    """CLI input for robot executable discovery."""

    verbose: bool = False


class WorkerCliController:
    """Runs worker use cases and renders their results as output lines."""

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = _settings(engine_url=command.engine_url)
        with build_worker(settings) as app:
            summary = app.run(
                once=command.once,
                max_polls=command.max_polls,
                idle_timeout_seconds=command.idle_timeout_seconds,
            )
        return [_render_summary(summary)]

    def locate_robot(self, command: LocateRobotCommand) -> list[str]:
        settings = _settings()
        lines: list[str] = []
        if command.verbose:
            folders = installation_folders()
            lines.append("Searched installation folders:")
            lines.extend(f"  {folder}" for folder in folders)
        executable = resolve_robot_executable(settings.robot.executable_override)
        lines.append(str(executable))
        return lines

    def list_topics(self) -> list[str]:
        settings = _settings()
        try:
            settings.validate()
        except ValueError as error:
            raise StartupConfigError(str(error)) from error
        registry = build_registry(settings)
        lines: list[str] = []
        for subscription in registry.subscriptions():
            handler = subscription.handler
            if isinstance(handler, RunRobotHandler):
                target = (
                    f"file {handler.package_path}"
                    if handler.package_path is not None
                    else f"process {handler.process_name}"
                )
                lines.append(f"{subscription.topic}: robot ({target})")
            else:
                lines.append(f"{subscription.topic}: {type(handler).__name__}")
        return lines


def _settings(*, engine_url: str | None = None) -> Settings:
    try:
        settings = Settings.from_env()
    except ValueError as error:
        raise StartupConfigError(str(error)) from error
    if engine_url:
        settings.engine.base_url = engine_url.rstrip("/")
    return settings


def _render_summary(summary: WorkerRunSummary) -> str:
    return (
        "Worker summary: "
        f"polls={summary.polls} fetched={summary.fetched} dispatched={summary.dispatched} "
        f"completed={summary.completed} incidents={summary.incidents} "
        f"failed={summary.failed} cancelled={summary.cancelled} "
        f"skipped={summary.skipped} transient_errors={summary.transient_errors}"
    )
