"""
Storable encodings for errors, recovery markers, job arguments and context values.

Every structured payload is a tagged union ``{"v": 1, "kind": ..., ...}``.
Decoding understands a closed set of kinds (``error``, ``finished``,
``recovery_point``) and falls back to ``OpaqueError`` for anything it does not
recognise, so rows written by a newer release never break an older reader.
"""

import json
import traceback
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

SERIALIZER_VERSION = 1
FINISHED = "FINISHED"

# Bounds the size of a stored causal chain
MAX_CAUSE_DEPTH = 5

_VALUE_TAG = "__jobflow__"


@dataclass(frozen=True)
class FinishedPoint:
    """Terminal marker of a workflow."""

    name: str = FINISHED


@dataclass(frozen=True)
class RecoveryPoint:
    """Marker naming the step a workflow resumes from."""

    name: str


class StoredError(Exception):
    """
    An error reconstructed from its stored form.

    Only ``kind`` (the qualified class name of the original error) and
    ``message`` are guaranteed to match the error that was captured.
    """

    def __init__(
        self,
        kind: str,
        message: str,
        cause: "StoredError | OpaqueError | None" = None,
        backtrace: dict[str, str] | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.cause = cause
        self.backtrace = backtrace or {}

    def is_instance_of(self, error_class: type[BaseException]) -> bool:
        """True when the captured error was an instance of exactly ``error_class``."""
        return self.kind == qualified_name(error_class)

    def __repr__(self) -> str:
        return f"StoredError(kind={self.kind!r}, message={self.message!r})"


class OpaqueError(Exception):
    """A stored payload whose kind this release does not understand."""

    def __init__(self, payload: Any):
        super().__init__(f"Unrecognised stored payload: {payload!r}")
        self.payload = payload
        self.kind = "opaque"
        self.message = str(self)


def qualified_name(cls: type) -> str:
    if cls.__module__ == "builtins":
        return cls.__qualname__
    return f"{cls.__module__}.{cls.__qualname__}"


# Errors


def _deduplicated_backtrace(exc: BaseException) -> dict[str, str]:
    """Innermost frame per source file, innermost file first."""
    frames = traceback.extract_tb(exc.__traceback__)
    backtrace: dict[str, str] = {}
    for frame in reversed(frames):
        if frame.filename in backtrace:
            continue
        backtrace[frame.filename] = f"{frame.lineno}:{frame.name}"
    return backtrace


def _cause_of(exc: BaseException) -> BaseException | None:
    if exc.__cause__ is not None:
        return exc.__cause__
    if exc.__context__ is not None and not exc.__suppress_context__:
        return exc.__context__
    return None


def dump_error(exc: BaseException, _depth: int = 0) -> dict[str, Any]:
    """Encode an exception with its causal chain and a bounded backtrace."""
    cause = _cause_of(exc)
    return {
        "v": SERIALIZER_VERSION,
        "kind": "error",
        "class": qualified_name(type(exc)),
        "message": getattr(exc, "message", None) or str(exc),
        "cause": (
            dump_error(cause, _depth + 1)
            if cause is not None and _depth < MAX_CAUSE_DEPTH
            else None
        ),
        "backtrace": _deduplicated_backtrace(exc),
    }


def _load_error(payload: dict[str, Any]) -> StoredError:
    cause_payload = payload.get("cause")
    cause = load(cause_payload) if cause_payload else None
    return StoredError(
        kind=payload.get("class") or "Exception",
        message=payload.get("message") or "",
        cause=cause if isinstance(cause, (StoredError, OpaqueError)) else None,
        backtrace=payload.get("backtrace") or {},
    )


# Markers


def dump_marker(marker: FinishedPoint | RecoveryPoint) -> dict[str, Any]:
    if isinstance(marker, FinishedPoint):
        return {"v": SERIALIZER_VERSION, "kind": "finished"}
    return {"v": SERIALIZER_VERSION, "kind": "recovery_point", "name": marker.name}


def dump(obj: BaseException | FinishedPoint | RecoveryPoint) -> dict[str, Any]:
    """Encode an error or a marker."""
    if isinstance(obj, BaseException):
        return dump_error(obj)
    if isinstance(obj, (FinishedPoint, RecoveryPoint)):
        return dump_marker(obj)
    raise TypeError(f"Cannot serialize object of type {type(obj).__name__}")


def load(payload: Any) -> StoredError | OpaqueError | FinishedPoint | RecoveryPoint | None:
    """Decode a payload produced by ``dump``."""
    if payload is None:
        return None
    if not isinstance(payload, dict) or payload.get("v") != SERIALIZER_VERSION:
        return OpaqueError(payload)

    kind = payload.get("kind")
    if kind == "error":
        return _load_error(payload)
    if kind == "finished":
        return FinishedPoint()
    if kind == "recovery_point" and isinstance(payload.get("name"), str):
        return RecoveryPoint(payload["name"])
    return OpaqueError(payload)


# Context values and job arguments


def dump_value(value: Any) -> Any:
    """Encode a context value or job argument into JSON-compatible data."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, datetime):
        return {_VALUE_TAG: "datetime", "value": value.isoformat()}
    if isinstance(value, date):
        return {_VALUE_TAG: "date", "value": value.isoformat()}
    if isinstance(value, UUID):
        return {_VALUE_TAG: "uuid", "value": str(value)}
    if isinstance(value, Decimal):
        return {_VALUE_TAG: "decimal", "value": str(value)}
    if isinstance(value, (list, tuple)):
        return [dump_value(item) for item in value]
    if isinstance(value, dict):
        encoded = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(
                    f"Mapping keys must be strings, got {type(key).__name__}"
                )
            encoded[key] = dump_value(item)
        return encoded
    raise TypeError(f"Value of type {type(value).__name__} is not serializable")


def load_value(data: Any) -> Any:
    if isinstance(data, list):
        return [load_value(item) for item in data]
    if not isinstance(data, dict):
        return data

    tag = data.get(_VALUE_TAG)
    if tag is not None and set(data) == {_VALUE_TAG, "value"}:
        raw = data["value"]
        if tag == "datetime":
            return datetime.fromisoformat(raw)
        if tag == "date":
            return date.fromisoformat(raw)
        if tag == "uuid":
            return UUID(raw)
        if tag == "decimal":
            return Decimal(raw)
        # Unknown tags are kept verbatim
        return data
    return {key: load_value(item) for key, item in data.items()}


def canonical_json(value: Any) -> str:
    """Stable string form: sorted keys, compact separators, encoded values."""
    return json.dumps(dump_value(value), sort_keys=True, separators=(",", ":"))


def dump_args(args: list[Any] | tuple[Any, ...], kwargs: dict[str, Any]) -> str:
    return canonical_json({"args": list(args), "kwargs": kwargs})


def load_args(text: str | None) -> tuple[list[Any], dict[str, Any]]:
    if not text:
        return [], {}
    data = load_value(json.loads(text))
    return list(data.get("args", [])), dict(data.get("kwargs", {}))
