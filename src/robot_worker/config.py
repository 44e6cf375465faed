"""Runtime configuration for the external-task worker."""

from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EngineSettings:
    """Workflow engine REST connection settings."""

    base_url: str = "http://localhost:8080/engine-rest"
    worker_id: str = field(default_factory=lambda: f"robot-worker-{socket.gethostname()}")
    request_timeout_seconds: float = 30.0
    async_response_timeout_ms: int = 0
    use_priority: bool = True
    transport_retries: int = 0


@dataclass(slots=True)
class PollerSettings:
    """Fetch-and-lock loop settings."""

    poll_interval_seconds: float = 1.0
    max_tasks: int = 1
    lock_duration_ms: int = 10_000
    max_concurrent_per_topic: int = 1
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 60.0


@dataclass(slots=True)
class RobotTopic:
    """One robot-backed topic: either a package file or a published process."""

    topic: str
    package_path: Path | None = None
    process_name: str | None = None


@dataclass(slots=True)
class RobotSettings:
    """Robot process supervision settings."""

    timeout_seconds: float = 600.0
    kill_grace_seconds: float = 5.0
    robot_name: str = "UiPath Robot"
    working_directory: Path | None = None
    executable_override: Path | None = None
    output_encoding: str = "utf-8"
    topics: tuple[RobotTopic, ...] = ()


@dataclass(slots=True)
class ReportingSettings:
    """Outcome reporting settings."""

    incident_retries: int = 0
    incident_retry_timeout_ms: int = 0
    report_max_attempts: int = 3
    report_backoff_seconds: float = 1.0
    reported_ids_capacity: int = 10_000


@dataclass(slots=True)
class MailSettings:
    """SMTP settings for the send-mail handler."""

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    starttls: bool = True
    timeout_seconds: float = 30.0

    @property
    def enabled(self) -> bool:
        return bool(self.smtp_host)


@dataclass(slots=True)
class HandlerTopics:
    """Topic names of the built-in non-robot handlers."""

    print_variables: str = "print-variables"
    send_mail: str = "send-mail"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    engine: EngineSettings = field(default_factory=EngineSettings)
    poller: PollerSettings = field(default_factory=PollerSettings)
    robot: RobotSettings = field(default_factory=RobotSettings)
    reporting: ReportingSettings = field(default_factory=ReportingSettings)
    mail: MailSettings = field(default_factory=MailSettings)
    handler_topics: HandlerTopics = field(default_factory=HandlerTopics)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults for a local engine."""

        engine_defaults = EngineSettings()
        working_directory = os.getenv("ROBOT_WORKER_ROBOT_WORKING_DIRECTORY", "").strip()
        executable_override = os.getenv("ROBOT_WORKER_ROBOT_EXECUTABLE", "").strip()
        return cls(
            engine=EngineSettings(
                base_url=os.getenv(
                    "ROBOT_WORKER_ENGINE_URL",
                    "http://localhost:8080/engine-rest",
                ).rstrip("/"),
                worker_id=os.getenv("ROBOT_WORKER_WORKER_ID", engine_defaults.worker_id),
                request_timeout_seconds=float(
                    os.getenv("ROBOT_WORKER_ENGINE_REQUEST_TIMEOUT_SECONDS", "30.0"),
                ),
                async_response_timeout_ms=int(
                    os.getenv("ROBOT_WORKER_ASYNC_RESPONSE_TIMEOUT_MS", "0"),
                ),
                use_priority=_env_bool("ROBOT_WORKER_USE_PRIORITY", default=True),
                transport_retries=int(os.getenv("ROBOT_WORKER_ENGINE_TRANSPORT_RETRIES", "0")),
            ),
            poller=PollerSettings(
                poll_interval_seconds=float(os.getenv("ROBOT_WORKER_POLL_INTERVAL_SECONDS", "1.0")),
                max_tasks=int(os.getenv("ROBOT_WORKER_MAX_TASKS", "1")),
                lock_duration_ms=int(os.getenv("ROBOT_WORKER_LOCK_DURATION_MS", "10000")),
                max_concurrent_per_topic=int(
                    os.getenv("ROBOT_WORKER_MAX_CONCURRENT_PER_TOPIC", "1"),
                ),
                backoff_base_seconds=float(
                    os.getenv("ROBOT_WORKER_BACKOFF_BASE_SECONDS", "1.0"),
                ),
                backoff_max_seconds=float(os.getenv("ROBOT_WORKER_BACKOFF_MAX_SECONDS", "60.0")),
            ),
            robot=RobotSettings(
                timeout_seconds=float(os.getenv("ROBOT_WORKER_ROBOT_TIMEOUT_SECONDS", "600")),
                kill_grace_seconds=float(
                    os.getenv("ROBOT_WORKER_ROBOT_KILL_GRACE_SECONDS", "5"),
                ),
                robot_name=os.getenv("ROBOT_WORKER_ROBOT_NAME", "UiPath Robot"),
                working_directory=Path(working_directory) if working_directory else None,
                executable_override=Path(executable_override) if executable_override else None,
                output_encoding=os.getenv("ROBOT_WORKER_ROBOT_OUTPUT_ENCODING", "utf-8"),
                topics=_collect_robot_topics(),
            ),
            reporting=ReportingSettings(
                incident_retries=int(os.getenv("ROBOT_WORKER_INCIDENT_RETRIES", "0")),
                incident_retry_timeout_ms=int(
                    os.getenv("ROBOT_WORKER_INCIDENT_RETRY_TIMEOUT_MS", "0"),
                ),
                report_max_attempts=int(os.getenv("ROBOT_WORKER_REPORT_MAX_ATTEMPTS", "3")),
                report_backoff_seconds=float(
                    os.getenv("ROBOT_WORKER_REPORT_BACKOFF_SECONDS", "1.0"),
                ),
                reported_ids_capacity=int(
                    os.getenv("ROBOT_WORKER_REPORTED_IDS_CAPACITY", "10000"),
                ),
            ),
            mail=MailSettings(
                smtp_host=os.getenv("ROBOT_WORKER_MAIL_SMTP_HOST", "").strip(),
                smtp_port=int(os.getenv("ROBOT_WORKER_MAIL_SMTP_PORT", "587")),
                smtp_user=os.getenv("ROBOT_WORKER_MAIL_SMTP_USER", ""),
                smtp_password=os.getenv("ROBOT_WORKER_MAIL_SMTP_PASSWORD", ""),
                starttls=_env_bool("ROBOT_WORKER_MAIL_STARTTLS", default=True),
                timeout_seconds=float(os.getenv("ROBOT_WORKER_MAIL_TIMEOUT_SECONDS", "30")),
            ),
            handler_topics=HandlerTopics(
                print_variables=os.getenv(
                    "ROBOT_WORKER_PRINT_VARIABLES_TOPIC",
                    "print-variables",
                ).strip(),
                send_mail=os.getenv("ROBOT_WORKER_SEND_MAIL_TOPIC", "send-mail").strip(),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        _validate_engine_url(self.engine.base_url)
        if not self.engine.worker_id.strip():
            raise ValueError("ROBOT_WORKER_WORKER_ID must not be empty.")
        if self.engine.async_response_timeout_ms < 0:
            raise ValueError("ROBOT_WORKER_ASYNC_RESPONSE_TIMEOUT_MS must be >= 0.")
        if self.poller.poll_interval_seconds < 0:
            raise ValueError("ROBOT_WORKER_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.poller.max_tasks <= 0:
            raise ValueError("ROBOT_WORKER_MAX_TASKS must be a positive integer.")
        if self.poller.lock_duration_ms <= 0:
            raise ValueError("ROBOT_WORKER_LOCK_DURATION_MS must be a positive integer.")
        if self.poller.max_concurrent_per_topic <= 0:
            raise ValueError("ROBOT_WORKER_MAX_CONCURRENT_PER_TOPIC must be a positive integer.")
        if self.robot.timeout_seconds <= 0:
            raise ValueError("ROBOT_WORKER_ROBOT_TIMEOUT_SECONDS must be > 0.")
        if self.robot.kill_grace_seconds < 0:
            raise ValueError("ROBOT_WORKER_ROBOT_KILL_GRACE_SECONDS must be >= 0.")
        if self.reporting.incident_retries < 0:
            raise ValueError("ROBOT_WORKER_INCIDENT_RETRIES must be >= 0.")
        if self.reporting.incident_retry_timeout_ms < 0:
            raise ValueError("ROBOT_WORKER_INCIDENT_RETRY_TIMEOUT_MS must be >= 0.")
        if self.reporting.report_max_attempts <= 0:
            raise ValueError("ROBOT_WORKER_REPORT_MAX_ATTEMPTS must be a positive integer.")
        if self.reporting.reported_ids_capacity <= 0:
            raise ValueError("ROBOT_WORKER_REPORTED_IDS_CAPACITY must be a positive integer.")

        seen: set[str] = set()
        for robot_topic in self.robot.topics:
            if robot_topic.topic in seen:
                raise ValueError(
                    f"Duplicate robot topic in ROBOT_WORKER_ROBOTS: {robot_topic.topic!r}",
                )
            seen.add(robot_topic.topic)
            if (robot_topic.package_path is None) == (robot_topic.process_name is None):
                raise ValueError(
                    f"Robot topic {robot_topic.topic!r} needs exactly one of a package file "
                    "or a process name.",
                )

        robot_timeout_ms = self.robot.timeout_seconds * 1000
        if self.robot.topics and self.poller.lock_duration_ms < robot_timeout_ms:
            logger.warning(
                "ROBOT_WORKER_LOCK_DURATION_MS (%d ms) is shorter than "
                "ROBOT_WORKER_ROBOT_TIMEOUT_SECONDS (%.0f ms); robot tasks may be "
                "fetched again by another worker while still running",
                self.poller.lock_duration_ms,
                robot_timeout_ms,
            )


def _collect_robot_topics() -> tuple[RobotTopic, ...]:
    raw = os.getenv("ROBOT_WORKER_ROBOTS", "").strip()
    if not raw:
        return ()

    topics: list[RobotTopic] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "|" not in token:
            raise ValueError(
                "Invalid ROBOT_WORKER_ROBOTS entry: "
                f"{token!r}. Expected format '<topic>|file:<path>' or '<topic>|process:<name>'.",
            )
        topic, target = token.split("|", 1)
        topic = topic.strip()
        target = target.strip()
        if not topic:
            raise ValueError(f"Invalid ROBOT_WORKER_ROBOTS entry: {token!r} (empty topic)")
        kind, _, value = target.partition(":")
        value = value.strip()
        if not value:
            raise ValueError(f"Invalid ROBOT_WORKER_ROBOTS entry: {token!r} (empty target)")
        if kind == "file":
            topics.append(RobotTopic(topic=topic, package_path=Path(value)))
        elif kind == "process":
            topics.append(RobotTopic(topic=topic, process_name=value))
        else:
            raise ValueError(
                f"Invalid ROBOT_WORKER_ROBOTS target kind {kind!r} for topic {topic!r}; "
                "use 'file' or 'process'.",
            )
    return tuple(topics)


def _validate_engine_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid ROBOT_WORKER_ENGINE_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
