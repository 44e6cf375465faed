"""Shared test fixtures."""

from __future__ import annotations

import os
import stat
import sys
import threading
from collections import defaultdict
from collections.abc import Mapping, Sequence
from pathlib import Path

import pytest

from robot_worker.engine.client import TopicRequest
from robot_worker.engine.models import ExternalTask
from robot_worker.errors import TransientEngineError


def make_task(
    task_id: str = "task-1",
    *,
    topic: str = "robot",
    variables: Mapping[str, object] | None = None,
    process_instance_id: str = "pi-1",
) -> ExternalTask:
    return ExternalTask(
        id=task_id,
        process_instance_id=process_instance_id,
        topic=topic,
        variables=dict(variables or {}),
    )


class FakeEngine:
    """In-memory engine double recording every settle call."""

    def __init__(self) -> None:
        self.queues: dict[str, list[ExternalTask]] = defaultdict(list)
        self.completed: list[tuple[str, dict[str, object]]] = []
        self.failures: list[dict[str, object]] = []
        self.fetch_calls: list[tuple[tuple[str, ...], int]] = []
        self.fetch_errors: list[Exception] = []
        self._lock = threading.Lock()

    def enqueue(self, *tasks: ExternalTask) -> None:
        with self._lock:
            for task in tasks:
                self.queues[task.topic].append(task)

    def remaining(self) -> int:
        with self._lock:
            return sum(len(queue) for queue in self.queues.values())

    def fetch_and_lock(
        self,
        topics: Sequence[TopicRequest],
        *,
        max_tasks: int,
    ) -> list[ExternalTask]:
        with self._lock:
            self.fetch_calls.append((tuple(topic.topic_name for topic in topics), max_tasks))
            if self.fetch_errors:
                raise self.fetch_errors.pop(0)
            locked: list[ExternalTask] = []
            for topic in topics:
                queue = self.queues[topic.topic_name]
                while queue and len(locked) < max_tasks:
                    locked.append(queue.pop(0))
            return locked

    def complete(self, task: ExternalTask, variables: Mapping[str, object] | None = None) -> None:
        with self._lock:
            self.completed.append((task.id, dict(variables or {})))

    def handle_failure(  # noqa: PLR0913
        self,
        task: ExternalTask,
        *,
        error_message: str,
        error_details: str,
        retries: int,
        retry_timeout_ms: int,
    ) -> None:
        with self._lock:
            self.failures.append(
                {
                    "task_id": task.id,
                    "message": error_message,
                    "details": error_details,
                    "retries": retries,
                    "retry_timeout_ms": retry_timeout_ms,
                },
            )

    def settled_ids(self) -> list[str]:
        with self._lock:
            return [task_id for task_id, _ in self.completed] + [
                str(failure["task_id"]) for failure in self.failures
            ]


@pytest.fixture()
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture()
def transient_error() -> TransientEngineError:
    return TransientEngineError("connection refused")


@pytest.fixture()
def demo_robot_executable(tmp_path: Path) -> Path:
    """Executable wrapper that behaves like the robot CLI."""

    if os.name == "nt":
        script = tmp_path / "demo_robot.cmd"
        script.write_text(
            f'@"{sys.executable}" -m robot_worker.robot.demo_robot %*\r\n',
            "utf-8",
        )
        return script

    script = tmp_path / "demo_robot"
    script.write_text(
        f'#!/bin/sh\nexec "{sys.executable}" -m robot_worker.robot.demo_robot "$@"\n',
        "utf-8",
    )
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script
