"""Fetch-and-lock loop dispatching tasks to their topic handlers."""

from __future__ import annotations

import logging
import random
import signal
import threading
from collections.abc import Iterator, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Protocol

from robot_worker.config import PollerSettings
from robot_worker.engine.client import TopicRequest
from robot_worker.engine.models import ExternalTask
from robot_worker.errors import EngineRequestError, SupervisionCancelled, TransientEngineError
from robot_worker.worker.outcomes import (
    Completed,
    Failed,
    IncidentRaised,
    Outcome,
    incident_from_exception,
)
from robot_worker.worker.registry import HandlerRegistry, Subscription
from robot_worker.worker.reporter import OutcomeReporter

logger = logging.getLogger(__name__)


class TaskFetcher(Protocol):
    """Engine call that hands out locked tasks."""

    def fetch_and_lock(
        self,
        topics: Sequence[TopicRequest],
        *,
        max_tasks: int,
    ) -> list[ExternalTask]:
        """Fetch and lock tasks for the given topics."""


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate poll and execution counters for CLI reporting."""

    polls: int = 0
    fetched: int = 0
    dispatched: int = 0
    skipped: int = 0
    transient_errors: int = 0
    request_errors: int = 0
    completed: int = 0
    failed: int = 0
    incidents: int = 0
    cancelled: int = 0

    def merge(self, other: WorkerRunSummary) -> None:
        self.polls += other.polls
        self.fetched += other.fetched
        self.dispatched += other.dispatched
        self.skipped += other.skipped
        self.transient_errors += other.transient_errors
        self.request_errors += other.request_errors


class TaskPoller:
    """Polls subscribed topics and runs each task on its topic's thread pool."""

    def __init__(
        self,
        *,
        engine: TaskFetcher,
        registry: HandlerRegistry,
        reporter: OutcomeReporter,
        settings: PollerSettings | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.engine = engine
        self.registry = registry
        self.reporter = reporter
        self.settings = settings or PollerSettings()
        self.stop_event = stop_event or threading.Event()
        self.stats = WorkerRunSummary()
        self._executors: dict[str, ThreadPoolExecutor] = {}
        self._in_flight: dict[str, Future[Outcome | None]] = {}
        self._in_flight_by_topic: dict[str, set[str]] = {}
        self._lock = threading.Lock()
        self._consecutive_transient_errors = 0
        self._random = random.Random()  # noqa: S311
        self._stop_signal_name: str | None = None

    def run_once(self) -> WorkerRunSummary:
        """Fetch for every topic with free capacity and dispatch what was locked."""

        summary = WorkerRunSummary()
        if self.stop_event.is_set():
            return summary

        self.registry.freeze()
        summary.polls = 1
        for subscription in self.registry.subscriptions():
            if self.stop_event.is_set():
                break
            free = self._free_slots(subscription)
            if free <= 0:
                continue

            try:
                tasks = self.engine.fetch_and_lock(
                    [TopicRequest(subscription.topic, self._lock_duration_ms(subscription))],
                    max_tasks=min(self.settings.max_tasks, free),
                )
            except TransientEngineError as error:
                logger.warning(
                    "Engine unreachable while fetching %s: %s",
                    subscription.topic,
                    error,
                )
                summary.transient_errors += 1
                break
            except EngineRequestError as error:
                logger.error("Fetching tasks for %s was rejected: %s", subscription.topic, error)
                summary.request_errors += 1
                continue

            summary.fetched += len(tasks)
            for task in tasks:
                if self._dispatch(subscription, task):
                    summary.dispatched += 1
                else:
                    summary.skipped += 1

        with self._lock:
            self.stats.merge(summary)
        return summary

    def run_loop(self, *, max_polls: int | None = None) -> WorkerRunSummary:
        """Poll until stopped; engine outages back off instead of ending the loop."""

        aggregate = WorkerRunSummary()
        with self._signal_handlers():
            while not self.stop_event.is_set():
                if max_polls is not None and aggregate.polls >= max_polls:
                    break

                summary = self.run_once()
                aggregate.merge(summary)

                if summary.transient_errors:
                    self._consecutive_transient_errors += 1
                    delay = self._backoff_delay()
                    logger.info("Backing off for %.1fs before polling again", delay)
                    self.stop_event.wait(delay)
                    continue

                self._consecutive_transient_errors = 0
                if self.settings.poll_interval_seconds > 0:
                    self.stop_event.wait(self.settings.poll_interval_seconds)
        if self._stop_signal_name is not None:
            logger.info("Stop requested by %s", self._stop_signal_name)
        return aggregate

    def stop(self) -> None:
        self.stop_event.set()

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait for dispatched tasks to finish; return False on timeout."""

        with self._lock:
            pending = list(self._in_flight.values())
        if not pending:
            return True
        _, not_done = wait_futures(pending, timeout=timeout)
        return not not_done

    def in_flight(self, topic: str | None = None) -> int:
        with self._lock:
            if topic is None:
                return len(self._in_flight)
            return len(self._in_flight_by_topic.get(topic, ()))

    def close(self, *, wait: bool = True) -> None:
        """Stop polling and shut the topic thread pools down."""

        self.stop()
        with self._lock:
            executors = list(self._executors.values())
            self._executors.clear()
        for executor in executors:
            executor.shutdown(wait=wait, cancel_futures=True)

    def _free_slots(self, subscription: Subscription) -> int:
        return self._max_concurrent(subscription) - self.in_flight(subscription.topic)

    def _max_concurrent(self, subscription: Subscription) -> int:
        return subscription.max_concurrent or self.settings.max_concurrent_per_topic

    def _lock_duration_ms(self, subscription: Subscription) -> int:
        return subscription.lock_duration_ms or self.settings.lock_duration_ms

    def _executor(self, subscription: Subscription) -> ThreadPoolExecutor:
        executor = self._executors.get(subscription.topic)
        if executor is None:
            executor = ThreadPoolExecutor(
                max_workers=self._max_concurrent(subscription),
                thread_name_prefix=f"topic-{subscription.topic}",
            )
            self._executors[subscription.topic] = executor
        return executor

    def _dispatch(self, subscription: Subscription, task: ExternalTask) -> bool:
        target = self.registry.get(task.topic) if task.topic else None
        target = target or subscription
        with self._lock:
            if task.id in self._in_flight:
                logger.warning("Task %s is already being handled, skipping duplicate", task.id)
                return False
            future = self._executor(target).submit(self._execute, target, task)
            self._in_flight[task.id] = future
            self._in_flight_by_topic.setdefault(target.topic, set()).add(task.id)
        future.add_done_callback(
            lambda done, task_id=task.id, topic=target.topic: self._release(topic, task_id, done),
        )
        return True

    def _release(self, topic: str, task_id: str, future: Future[Outcome | None]) -> None:
        with self._lock:
            self._in_flight.pop(task_id, None)
            self._in_flight_by_topic.get(topic, set()).discard(task_id)
        if not future.cancelled() and future.exception() is not None:
            logger.error(
                "Task %s crashed outside its handler",
                task_id,
                exc_info=future.exception(),
            )

    def _execute(self, subscription: Subscription, task: ExternalTask) -> Outcome | None:
        if self.stop_event.is_set():
            logger.info("Worker stopping, leaving task %s to lock expiry", task.id)
            self._count(cancelled=1)
            return None

        try:
            outcome = subscription.handler.execute(task)
        except SupervisionCancelled:
            logger.info("Task %s was cancelled, leaving it to lock expiry", task.id)
            self._count(cancelled=1)
            return None
        except Exception as error:
            logger.exception("Handler for topic %s failed on task %s", subscription.topic, task.id)
            outcome = incident_from_exception(f"Handler for {subscription.topic} Failed", error)

        if self.reporter.report(task, outcome):
            if isinstance(outcome, Completed):
                self._count(completed=1)
            elif isinstance(outcome, IncidentRaised):
                self._count(incidents=1)
            elif isinstance(outcome, Failed):
                self._count(failed=1)
        return outcome

    def _count(
        self,
        *,
        completed: int = 0,
        failed: int = 0,
        incidents: int = 0,
        cancelled: int = 0,
    ) -> None:
        with self._lock:
            self.stats.completed += completed
            self.stats.failed += failed
            self.stats.incidents += incidents
            self.stats.cancelled += cancelled

    def _backoff_delay(self) -> float:
        exponent = max(self._consecutive_transient_errors - 1, 0)
        max_delay = min(
            self.settings.backoff_max_seconds,
            self.settings.backoff_base_seconds * (2**exponent),
        )
        return self._random.uniform(max_delay / 2, max_delay)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                self._stop_signal_name = signal.Signals(signum).name
            except ValueError:
                self._stop_signal_name = str(signum)
            self.stop_event.set()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return

        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
