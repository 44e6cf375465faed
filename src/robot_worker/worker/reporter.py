"""Translate handler outcomes into engine complete/failure calls."""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Mapping
from typing import Protocol

from robot_worker.config import ReportingSettings
from robot_worker.engine.models import ExternalTask
from robot_worker.errors import EngineRequestError, TransientEngineError
from robot_worker.worker.outcomes import Completed, Failed, IncidentRaised, Outcome

logger = logging.getLogger(__name__)


class TaskCompletionService(Protocol):
    """Engine calls needed to settle a task."""

    def complete(self, task: ExternalTask, variables: Mapping[str, object] | None = None) -> None:
        """Complete the task with optional output variables."""

    def handle_failure(  # noqa: PLR0913
        self,
        task: ExternalTask,
        *,
        error_message: str,
        error_details: str,
        retries: int,
        retry_timeout_ms: int,
    ) -> None:
        """Report a failure; zero retries creates an incident."""


class OutcomeReporter:
    """Single reporting path for every handler; settles each task at most once."""

    def __init__(
        self,
        engine: TaskCompletionService,
        settings: ReportingSettings | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.engine = engine
        self.settings = settings or ReportingSettings()
        self._sleep = sleep
        # Insertion ordered, the oldest settled ids are evicted first.
        self._reported: OrderedDict[str, None] = OrderedDict()
        self._in_progress: set[str] = set()
        self._lock = threading.Lock()

    def report(self, task: ExternalTask, outcome: Outcome) -> bool:
        """Send ``outcome`` to the engine; return True once the engine accepted it."""

        with self._lock:
            if task.id in self._reported or task.id in self._in_progress:
                logger.warning("Task %s was already reported, ignoring %s", task.id, outcome)
                return False
            self._in_progress.add(task.id)

        accepted = False
        try:
            accepted = self._report_with_retry(task, outcome)
        finally:
            with self._lock:
                self._in_progress.discard(task.id)
                if accepted:
                    self._remember(task.id)
        return accepted

    def was_reported(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._reported

    @property
    def reported_count(self) -> int:
        with self._lock:
            return len(self._reported)

    def _remember(self, task_id: str) -> None:
        self._reported[task_id] = None
        while len(self._reported) > self.settings.reported_ids_capacity:
            self._reported.popitem(last=False)

    def _report_with_retry(self, task: ExternalTask, outcome: Outcome) -> bool:
        attempts = max(1, self.settings.report_max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                self._send(task, outcome)
            except TransientEngineError as error:
                if attempt >= attempts:
                    logger.error(
                        "Giving up reporting task %s after %d attempts: %s",
                        task.id,
                        attempt,
                        error,
                    )
                    return False
                delay = self.settings.report_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Reporting task %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    task.id,
                    attempt,
                    attempts,
                    delay,
                    error,
                )
                self._sleep(delay)
            except EngineRequestError as error:
                logger.error("Engine rejected outcome for task %s: %s", task.id, error)
                return False
            else:
                return True
        return False

    def _send(self, task: ExternalTask, outcome: Outcome) -> None:
        if isinstance(outcome, Completed):
            logger.info("Completing task %s with variables = %s", task.id, dict(outcome.variables))
            self.engine.complete(task, dict(outcome.variables))
            return

        if isinstance(outcome, IncidentRaised):
            retries = self.settings.incident_retries
            retry_timeout_ms = self.settings.incident_retry_timeout_ms
        elif isinstance(outcome, Failed):
            retries = outcome.retries
            retry_timeout_ms = outcome.retry_timeout_ms
        else:
            raise TypeError(f"Unsupported outcome type: {type(outcome).__name__}")

        if retries == 0:
            logger.info(
                "Creating incident for process instance %s with message '%s'",
                task.process_instance_id,
                outcome.message,
            )
        else:
            logger.info(
                "Reporting failure for task %s with message '%s' (retries=%d, retry_timeout=%dms)",
                task.id,
                outcome.message,
                retries,
                retry_timeout_ms,
            )
        self.engine.handle_failure(
            task,
            error_message=outcome.message,
            error_details=outcome.details,
            retries=retries,
            retry_timeout_ms=retry_timeout_ms,
        )
