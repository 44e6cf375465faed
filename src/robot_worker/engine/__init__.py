"""Workflow engine REST client and task model."""

from robot_worker.engine.client import EngineClient, TopicRequest
from robot_worker.engine.models import (
    ExternalTask,
    OpaqueValue,
    convertible_subset,
    is_convertible,
)

__all__ = [
    "EngineClient",
    "ExternalTask",
    "OpaqueValue",
    "TopicRequest",
    "convertible_subset",
    "is_convertible",
]
