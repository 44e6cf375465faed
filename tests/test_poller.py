from __future__ import annotations

import threading
import time

import allure
import pytest
from conftest import FakeEngine, make_task

from robot_worker.config import PollerSettings
from robot_worker.engine.models import ExternalTask
from robot_worker.errors import EngineRequestError, SupervisionCancelled, TransientEngineError
from robot_worker.worker.outcomes import Completed, IncidentRaised, Outcome
from robot_worker.worker.poller import TaskPoller
from robot_worker.worker.registry import HandlerRegistry
from robot_worker.worker.reporter import OutcomeReporter

pytestmark = [
    allure.epic("Task Polling"),
    allure.feature("Fetch, Dispatch, Settle"),
]


class TrackingHandler:
    """Records peak concurrency and echoes the task id back as a variable."""

    def __init__(self, delay_seconds: float = 0.02) -> None:
        self.delay_seconds = delay_seconds
        self.active = 0
        self.peak = 0
        self.seen: list[str] = []
        self._lock = threading.Lock()

    def execute(self, task: ExternalTask) -> Outcome:
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
            self.seen.append(task.id)
        try:
            time.sleep(self.delay_seconds)
            if task.variable("fail"):
                return IncidentRaised(f"Task {task.id} Failed")
            return Completed(variables={"handled": task.id})
        finally:
            with self._lock:
                self.active -= 1


class RaisingHandler:
    def __init__(self, error: Exception) -> None:
        self.error = error

    def execute(self, task: ExternalTask) -> Outcome:
        raise self.error


def _poller(
    engine: FakeEngine,
    registry: HandlerRegistry,
    **settings: object,
) -> TaskPoller:
    return TaskPoller(
        engine=engine,
        registry=registry,
        reporter=OutcomeReporter(engine, sleep=lambda _: None),
        settings=PollerSettings(poll_interval_seconds=0, **settings),  # type: ignore[arg-type]
    )


def _drain(poller: TaskPoller, engine: FakeEngine, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while engine.remaining() and time.monotonic() < deadline:
        poller.run_once()
        time.sleep(0.005)
    assert poller.wait_idle(timeout)


def test_every_task_is_settled_exactly_once_with_its_own_result(fake_engine: FakeEngine) -> None:
    handler = TrackingHandler()
    registry = HandlerRegistry()
    registry.subscribe("invoice", handler, max_concurrent=3)
    tasks = [
        make_task(f"task-{index}", topic="invoice", variables={"fail": index % 4 == 0})
        for index in range(12)
    ]
    fake_engine.enqueue(*tasks)
    poller = _poller(fake_engine, registry, max_tasks=5)

    _drain(poller, fake_engine)
    poller.close()

    settled = fake_engine.settled_ids()
    assert sorted(settled) == sorted(task.id for task in tasks)
    assert len(settled) == len(set(settled))
    for task_id, variables in fake_engine.completed:
        assert variables == {"handled": task_id}
    assert {failure["message"] for failure in fake_engine.failures} == {
        "Task task-0 Failed",
        "Task task-4 Failed",
        "Task task-8 Failed",
    }
    assert poller.stats.completed == 9
    assert poller.stats.incidents == 3


def test_topic_concurrency_never_exceeds_its_limit(fake_engine: FakeEngine) -> None:
    handler = TrackingHandler(delay_seconds=0.05)
    registry = HandlerRegistry()
    registry.subscribe("invoice", handler, max_concurrent=2)
    fake_engine.enqueue(*(make_task(f"task-{index}", topic="invoice") for index in range(6)))
    poller = _poller(fake_engine, registry, max_tasks=10)

    _drain(poller, fake_engine)
    poller.close()

    assert handler.peak <= 2
    assert all(max_tasks <= 2 for _, max_tasks in fake_engine.fetch_calls)
    assert len(fake_engine.completed) == 6


def test_default_topic_limit_serializes_tasks(fake_engine: FakeEngine) -> None:
    handler = TrackingHandler(delay_seconds=0.03)
    registry = HandlerRegistry()
    registry.subscribe("invoice", handler)
    fake_engine.enqueue(*(make_task(f"task-{index}", topic="invoice") for index in range(4)))
    poller = _poller(fake_engine, registry, max_tasks=4)

    _drain(poller, fake_engine)
    poller.close()

    assert handler.peak == 1
    assert len(fake_engine.completed) == 4


def test_different_topics_run_in_parallel(fake_engine: FakeEngine) -> None:
    barrier = threading.Barrier(2, timeout=5)

    class BarrierHandler:
        def execute(self, task: ExternalTask) -> Outcome:
            barrier.wait()
            return Completed()

    registry = HandlerRegistry()
    registry.subscribe("invoice", BarrierHandler())
    registry.subscribe("mail", BarrierHandler())
    fake_engine.enqueue(make_task("task-a", topic="invoice"), make_task("task-b", topic="mail"))
    poller = _poller(fake_engine, registry)

    poller.run_once()
    assert poller.wait_idle(10)
    poller.close()

    assert sorted(task_id for task_id, _ in fake_engine.completed) == ["task-a", "task-b"]


def test_handler_exception_becomes_incident(fake_engine: FakeEngine) -> None:
    registry = HandlerRegistry()
    registry.subscribe("invoice", RaisingHandler(RuntimeError("boom")))
    fake_engine.enqueue(make_task("task-1", topic="invoice"))
    poller = _poller(fake_engine, registry)

    poller.run_once()
    assert poller.wait_idle(5)
    poller.close()

    assert len(fake_engine.failures) == 1
    failure = fake_engine.failures[0]
    assert failure["message"] == "Handler for invoice Failed"
    assert failure["retries"] == 0
    assert "RuntimeError: boom" in str(failure["details"])
    assert poller.stats.incidents == 1


def test_cancelled_task_is_not_reported(fake_engine: FakeEngine) -> None:
    registry = HandlerRegistry()
    registry.subscribe("invoice", RaisingHandler(SupervisionCancelled("stopping")))
    fake_engine.enqueue(make_task("task-1", topic="invoice"))
    poller = _poller(fake_engine, registry)

    poller.run_once()
    assert poller.wait_idle(5)
    poller.close()

    assert fake_engine.settled_ids() == []
    assert poller.stats.cancelled == 1


def test_duplicate_task_in_flight_is_skipped(fake_engine: FakeEngine) -> None:
    release = threading.Event()

    class BlockingHandler:
        def execute(self, task: ExternalTask) -> Outcome:
            release.wait(5)
            return Completed()

    registry = HandlerRegistry()
    registry.subscribe("invoice", BlockingHandler(), max_concurrent=2)
    task = make_task("task-1", topic="invoice")
    fake_engine.enqueue(task, task)
    poller = _poller(fake_engine, registry, max_tasks=2)

    summary = poller.run_once()
    release.set()
    assert poller.wait_idle(5)
    poller.close()

    assert summary.dispatched == 1
    assert summary.skipped == 1
    assert fake_engine.settled_ids() == ["task-1"]


def test_transient_fetch_error_backs_off_and_keeps_polling(
    fake_engine: FakeEngine,
    transient_error: TransientEngineError,
) -> None:
    registry = HandlerRegistry()
    registry.subscribe("invoice", TrackingHandler())
    fake_engine.fetch_errors.append(transient_error)
    poller = _poller(fake_engine, registry, backoff_base_seconds=0.01, backoff_max_seconds=0.01)

    summary = poller.run_loop(max_polls=3)
    poller.close()

    assert summary.polls == 3
    assert summary.transient_errors == 1
    assert len(fake_engine.fetch_calls) == 3


def test_rejected_fetch_for_one_topic_does_not_block_others(fake_engine: FakeEngine) -> None:
    registry = HandlerRegistry()
    registry.subscribe("invoice", TrackingHandler())
    registry.subscribe("mail", TrackingHandler())
    fake_engine.fetch_errors.append(EngineRequestError("bad topic", status_code=400))
    fake_engine.enqueue(make_task("task-m", topic="mail"))
    poller = _poller(fake_engine, registry)

    summary = poller.run_once()
    assert poller.wait_idle(5)
    poller.close()

    assert summary.request_errors == 1
    assert summary.dispatched == 1
    assert fake_engine.settled_ids() == ["task-m"]


def test_first_poll_freezes_registry(fake_engine: FakeEngine) -> None:
    registry = HandlerRegistry()
    registry.subscribe("invoice", TrackingHandler())
    poller = _poller(fake_engine, registry)

    poller.run_once()
    poller.close()

    with pytest.raises(RuntimeError, match="frozen"):
        registry.subscribe("mail", TrackingHandler())


def test_stopped_poller_neither_fetches_nor_loops(fake_engine: FakeEngine) -> None:
    registry = HandlerRegistry()
    registry.subscribe("invoice", TrackingHandler())
    fake_engine.enqueue(make_task("task-1", topic="invoice"))
    poller = _poller(fake_engine, registry)
    poller.stop()

    assert poller.run_once().polls == 0
    assert poller.run_loop().polls == 0
    assert fake_engine.fetch_calls == []
    assert fake_engine.remaining() == 1
