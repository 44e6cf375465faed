"""Wire settings, handlers, engine client and poller together at startup."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path

import httpx

from robot_worker.config import Settings
from robot_worker.engine.client import EngineClient
from robot_worker.errors import StartupConfigError
from robot_worker.handlers import PrintVariablesHandler, SendMailHandler
from robot_worker.robot.executable import resolve_robot_executable
from robot_worker.robot.handler import RobotRuntime, RunRobotHandler
from robot_worker.robot.supervisor import ProcessSupervisor
from robot_worker.worker.poller import TaskPoller, WorkerRunSummary
from robot_worker.worker.registry import HandlerRegistry
from robot_worker.worker.reporter import OutcomeReporter

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerApp:
    """Fully wired worker ready to poll."""

    settings: Settings
    engine: EngineClient
    registry: HandlerRegistry
    reporter: OutcomeReporter
    poller: TaskPoller

    def run(
        self,
        *,
        once: bool = False,
        max_polls: int | None = None,
        idle_timeout_seconds: float | None = None,
    ) -> WorkerRunSummary:
        """Poll, let dispatched tasks finish unless a stop was requested, then shut down."""

        if once:
            self.poller.run_once()
        else:
            self.poller.run_loop(max_polls=max_polls)
        if not self.poller.stop_event.is_set():
            self.poller.wait_idle(timeout=idle_timeout_seconds)
        self.poller.close(wait=True)
        return self.poller.stats

    def close(self) -> None:
        self.poller.close(wait=True)
        self.engine.close()

    def __enter__(self) -> WorkerApp:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def build_robot_runtime(
    settings: Settings,
    *,
    stop_event: threading.Event,
    executable: Path | None = None,
) -> RobotRuntime:
    """Resolve the robot executable once and freeze the shared robot configuration."""

    robot = settings.robot
    return RobotRuntime(
        executable=executable or resolve_robot_executable(robot.executable_override),
        supervisor=ProcessSupervisor(kill_grace_seconds=robot.kill_grace_seconds),
        timeout_seconds=robot.timeout_seconds,
        robot_name=robot.robot_name,
        working_directory=robot.working_directory,
        output_encoding=robot.output_encoding,
        cancel_requested=stop_event.is_set,
    )


def build_registry(
    settings: Settings,
    *,
    stop_event: threading.Event | None = None,
    robot_executable: Path | None = None,
) -> HandlerRegistry:
    """Subscribe every configured handler kind to its topic."""

    registry = HandlerRegistry()
    topics = settings.handler_topics
    if topics.print_variables:
        registry.subscribe(topics.print_variables, PrintVariablesHandler())
    if settings.mail.enabled and topics.send_mail:
        registry.subscribe(topics.send_mail, SendMailHandler(settings.mail))

    if settings.robot.topics:
        runtime = build_robot_runtime(
            settings,
            stop_event=stop_event or threading.Event(),
            executable=robot_executable,
        )
        for robot_topic in settings.robot.topics:
            registry.subscribe(
                robot_topic.topic,
                RunRobotHandler(
                    runtime,
                    package_path=robot_topic.package_path,
                    process_name=robot_topic.process_name,
                ),
            )

    if not len(registry):
        raise StartupConfigError("No topics configured; nothing to poll.")
    logger.info("Subscribed topics: %s", ", ".join(registry.topics()))
    return registry


def build_worker(
    settings: Settings,
    *,
    transport: httpx.BaseTransport | None = None,
    robot_executable: Path | None = None,
) -> WorkerApp:
    """Validate settings and build the worker; configuration problems are fatal."""

    try:
        settings.validate()
    except ValueError as error:
        raise StartupConfigError(str(error)) from error

    stop_event = threading.Event()
    registry = build_registry(
        settings,
        stop_event=stop_event,
        robot_executable=robot_executable,
    )
    engine = EngineClient(settings.engine, transport=transport)
    reporter = OutcomeReporter(engine, settings.reporting)
    poller = TaskPoller(
        engine=engine,
        registry=registry,
        reporter=reporter,
        settings=settings.poller,
        stop_event=stop_event,
    )
    return WorkerApp(
        settings=settings,
        engine=engine,
        registry=registry,
        reporter=reporter,
        poller=poller,
    )
