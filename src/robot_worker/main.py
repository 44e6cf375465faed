"""CLI entrypoint for robot-worker."""

import logging
import os

import rich_click as click
from rich.logging import RichHandler

from robot_worker import __version__
from robot_worker.controllers import LocateRobotCommand, WorkerCliController, WorkerRunCommand
from robot_worker.errors import StartupConfigError

click.rich_click.USE_MARKDOWN = True
WORKER_CONTROLLER = WorkerCliController()
STARTUP_FAILURE_EXIT_CODE = 2


@click.group()
@click.version_option(version=__version__, prog_name="robot-worker")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=lambda: os.getenv("ROBOT_WORKER_LOG_LEVEL", "INFO").upper(),
    show_default="ROBOT_WORKER_LOG_LEVEL or INFO",
    help="Root log level.",
)
def robot_worker(log_level: str) -> None:
    """External-task worker that runs desktop-automation robots."""

    _configure_logging(log_level)


@robot_worker.command("run")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run one fetch-and-dispatch cycle or poll until stopped.",
)
@click.option(
    "--max-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for poll cycles in loop mode.",
)
@click.option(
    "--engine-url",
    default=None,
    help="Engine REST base URL, overrides ROBOT_WORKER_ENGINE_URL.",
)
def run(once: bool, max_polls: int | None, engine_url: str | None) -> None:
    """Poll the engine and handle locked external tasks."""

    _emit_lines(
        _guard_startup(
            WORKER_CONTROLLER.run_worker,
            WorkerRunCommand(once=once, max_polls=max_polls, engine_url=engine_url),
        ),
    )


@robot_worker.command("locate-robot")
@click.option("--verbose", is_flag=True, default=False, help="Also list searched folders.")
def locate_robot(verbose: bool) -> None:
    """Print the robot executable the worker would use."""

    _emit_lines(_guard_startup(WORKER_CONTROLLER.locate_robot, LocateRobotCommand(verbose=verbose)))


@robot_worker.command("topics")
def topics() -> None:
    """List subscribed topics and their handlers."""

    _emit_lines(_guard_startup(WORKER_CONTROLLER.list_topics))


def _guard_startup(action, *args):
    try:
        return action(*args)
    except StartupConfigError as error:
        click.echo(f"Startup failed: {error}", err=True)
        raise SystemExit(STARTUP_FAILURE_EXIT_CODE) from error


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(threadName)s %(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    robot_worker()
