"""Engine-side data model: locked external tasks and typed variables."""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1

_SCALAR_TYPES = {"string", "boolean", "short", "integer", "long", "double", "null"}


@dataclass(frozen=True, slots=True)
class OpaqueValue:
    """Engine variable that cannot be exchanged with an external process."""

    type_name: str
    raw: Any = None
    value_info: Mapping[str, Any] = field(default_factory=dict)


def is_convertible(value: object) -> bool:
    """Return True for String, Number and Boolean values."""

    if isinstance(value, bool | str | int):
        return True
    if isinstance(value, float):
        return math.isfinite(value)
    return False


def convertible_subset(variables: Mapping[str, object]) -> dict[str, object]:
    """Keep only values that may cross the process boundary."""

    return {name: value for name, value in variables.items() if is_convertible(value)}


@dataclass(frozen=True, slots=True)
class ExternalTask:
    """Immutable snapshot of a task locked by this worker."""

    id: str
    process_instance_id: str
    topic: str
    variables: Mapping[str, object] = field(default_factory=dict)
    worker_id: str | None = None
    lock_expiration_time: str | None = None
    retries: int | None = None
    business_key: str | None = None
    activity_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))

    def variable(self, name: str, default: object = None) -> object:
        return self.variables.get(name, default)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ExternalTask:
        """Build a task from one element of the fetchAndLock response."""

        return cls(
            id=str(payload["id"]),
            process_instance_id=str(payload.get("processInstanceId") or ""),
            topic=str(payload.get("topicName") or ""),
            variables=deserialize_variables(payload.get("variables") or {}),
            worker_id=payload.get("workerId"),
            lock_expiration_time=payload.get("lockExpirationTime"),
            retries=payload.get("retries"),
            business_key=payload.get("businessKey"),
            activity_id=payload.get("activityId"),
        )


def deserialize_variables(raw: Mapping[str, Any]) -> dict[str, object]:
    """Convert engine typed variables into plain Python values."""

    variables: dict[str, object] = {}
    for name, typed in raw.items():
        variables[name] = _deserialize_value(typed)
    return variables


def _deserialize_value(typed: Any) -> object:
    if not isinstance(typed, Mapping):
        return OpaqueValue(type_name="Unknown", raw=typed)

    type_name = str(typed.get("type") or "Null")
    value = typed.get("value")
    normalized = type_name.lower()
    if normalized not in _SCALAR_TYPES:
        return OpaqueValue(
            type_name=type_name,
            raw=value,
            value_info=dict(typed.get("valueInfo") or {}),
        )
    if normalized == "null" or value is None:
        return None
    if normalized == "string":
        return str(value)
    if normalized == "boolean":
        return bool(value)
    if normalized == "double":
        return float(value)
    return int(value)


def serialize_variables(variables: Mapping[str, object]) -> dict[str, dict[str, Any]]:
    """Convert plain values into engine typed variables."""

    serialized: dict[str, dict[str, Any]] = {}
    for name, value in variables.items():
        serialized[name] = _serialize_value(name, value)
    return serialized


def _serialize_value(name: str, value: object) -> dict[str, Any]:
    if value is None:
        return {"value": None, "type": "Null"}
    if isinstance(value, bool):
        return {"value": value, "type": "Boolean"}
    if isinstance(value, int):
        type_name = "Integer" if _INT32_MIN <= value <= _INT32_MAX else "Long"
        return {"value": value, "type": type_name}
    if isinstance(value, float):
        return {"value": value, "type": "Double"}
    if isinstance(value, str):
        return {"value": value, "type": "String"}
    if isinstance(value, OpaqueValue):
        payload: dict[str, Any] = {"value": value.raw, "type": value.type_name}
        if value.value_info:
            payload["valueInfo"] = dict(value.value_info)
        return payload
    raise TypeError(f"Unsupported variable type for {name!r}: {type(value).__name__}")
