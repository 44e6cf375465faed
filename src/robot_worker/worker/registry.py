"""Topic to handler table, fixed before polling starts."""

from __future__ import annotations

import threading
from dataclasses import dataclass

from robot_worker.worker.outcomes import TaskHandler


@dataclass(frozen=True, slots=True)
class Subscription:
    """One topic with its handler and optional per-topic overrides."""

    topic: str
    handler: TaskHandler
    lock_duration_ms: int | None = None
    max_concurrent: int | None = None


class HandlerRegistry:
    """Maps each topic to exactly one handler."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._frozen = False
        self._lock = threading.Lock()

    def subscribe(
        self,
        topic: str,
        handler: TaskHandler,
        *,
        lock_duration_ms: int | None = None,
        max_concurrent: int | None = None,
    ) -> Subscription:
        """Register ``handler`` for ``topic``; repeating the same call is a no-op."""

        topic = topic.strip()
        if not topic:
            raise ValueError("Topic name must not be empty.")
        if max_concurrent is not None and max_concurrent <= 0:
            raise ValueError(f"max_concurrent for topic {topic!r} must be positive.")
        if lock_duration_ms is not None and lock_duration_ms <= 0:
            raise ValueError(f"lock_duration_ms for topic {topic!r} must be positive.")

        subscription = Subscription(
            topic=topic,
            handler=handler,
            lock_duration_ms=lock_duration_ms,
            max_concurrent=max_concurrent,
        )
        with self._lock:
            existing = self._subscriptions.get(topic)
            if existing is not None:
                if existing == subscription:
                    return existing
                raise ValueError(f"Topic {topic!r} is already subscribed to another handler.")
            if self._frozen:
                raise RuntimeError(
                    f"Cannot subscribe to {topic!r}: registry is frozen once polling started.",
                )
            self._subscriptions[topic] = subscription
            return subscription

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, topic: str) -> Subscription | None:
        return self._subscriptions.get(topic)

    def subscriptions(self) -> tuple[Subscription, ...]:
        with self._lock:
            return tuple(self._subscriptions.values())

    def topics(self) -> tuple[str, ...]:
        return tuple(subscription.topic for subscription in self.subscriptions())

    def __len__(self) -> int:
        return len(self._subscriptions)

    def __contains__(self, topic: object) -> bool:
        return topic in self._subscriptions
