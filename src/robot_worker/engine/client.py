"""HTTP client for the workflow engine external-task REST API."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from robot_worker.config import EngineSettings
from robot_worker.engine.models import ExternalTask, serialize_variables
from robot_worker.errors import EngineRequestError, TransientEngineError

logger = logging.getLogger(__name__)

# Camunda stores errorMessage in a VARCHAR(666) column.
MAX_ERROR_MESSAGE_CHARS = 666


@dataclass(frozen=True, slots=True)
class TopicRequest:
    """One topic entry of a fetchAndLock request."""

    topic_name: str
    lock_duration_ms: int

    def to_payload(self) -> dict[str, Any]:
        return {"topicName": self.topic_name, "lockDuration": self.lock_duration_ms}


class EngineClient:
    """Thin wrapper around fetchAndLock, complete and failure endpoints."""

    def __init__(
        self,
        settings: EngineSettings,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.worker_id = settings.worker_id
        self._async_response_timeout_ms = settings.async_response_timeout_ms
        self._use_priority = settings.use_priority
        read_timeout = settings.request_timeout_seconds + settings.async_response_timeout_ms / 1000
        self._client = httpx.Client(
            base_url=settings.base_url.rstrip("/"),
            timeout=httpx.Timeout(read_timeout, connect=10.0),
            headers={"Accept": "application/json"},
            transport=transport or httpx.HTTPTransport(retries=settings.transport_retries),
        )

    def fetch_and_lock(
        self,
        topics: Sequence[TopicRequest],
        *,
        max_tasks: int,
    ) -> list[ExternalTask]:
        """Fetch and lock up to ``max_tasks`` tasks for the given topics."""

        body: dict[str, Any] = {
            "workerId": self.worker_id,
            "maxTasks": max_tasks,
            "usePriority": self._use_priority,
            "topics": [topic.to_payload() for topic in topics],
        }
        if self._async_response_timeout_ms > 0:
            body["asyncResponseTimeout"] = self._async_response_timeout_ms

        payload = self._post("/external-task/fetchAndLock", body)
        if not isinstance(payload, list):
            raise EngineRequestError(f"Unexpected fetchAndLock response: {type(payload).__name__}")
        tasks = [ExternalTask.from_payload(item) for item in payload]
        logger.debug(
            "Fetched %d task(s) for topics %s",
            len(tasks),
            [topic.topic_name for topic in topics],
        )
        return tasks

    def complete(self, task: ExternalTask, variables: Mapping[str, object] | None = None) -> None:
        body: dict[str, Any] = {"workerId": self.worker_id}
        if variables:
            body["variables"] = serialize_variables(variables)
        self._post(f"/external-task/{task.id}/complete", body)

    def handle_failure(  # noqa: PLR0913
        self,
        task: ExternalTask,
        *,
        error_message: str,
        error_details: str,
        retries: int,
        retry_timeout_ms: int,
    ) -> None:
        body = {
            "workerId": self.worker_id,
            "errorMessage": error_message[:MAX_ERROR_MESSAGE_CHARS],
            "errorDetails": error_details,
            "retries": retries,
            "retryTimeout": retry_timeout_ms,
        }
        self._post(f"/external-task/{task.id}/failure", body)

    def _post(self, path: str, body: dict[str, Any]) -> Any:
        try:
            response = self._client.post(path, json=body)
        except httpx.TimeoutException as error:
            raise TransientEngineError(f"Timeout calling engine {path}") from error
        except httpx.TransportError as error:
            raise TransientEngineError(f"Engine unreachable at {path}: {error}") from error

        if response.status_code >= 500:
            raise TransientEngineError(
                f"Engine error {response.status_code} at {path}: {_error_text(response)}",
            )
        if not response.is_success:
            raise EngineRequestError(
                f"Engine rejected {path} with {response.status_code}: {_error_text(response)}",
                status_code=response.status_code,
            )
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> EngineClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _error_text(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(payload, dict) and "message" in payload:
        return str(payload["message"])
    return response.text[:500]
