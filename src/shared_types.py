"""Shared enums and types for the fact engine."""

from datetime import datetime, timezone
from enum import StrEnum


class FactType(StrEnum):
    """Value types a fact schema may declare."""

    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    STRING = "string"
    SET = "set"  # set of strings
    DATETIME = "datetime"

    def accepts(self, value) -> bool:
        """Whether a raw handler value conforms to this type."""
        if self is FactType.INTEGER:
            return isinstance(value, int) and not isinstance(value, bool)
        if self is FactType.FLOAT:
            return isinstance(value, (int, float)) and not isinstance(value, bool)
        if self is FactType.BOOLEAN:
            return isinstance(value, bool)
        if self is FactType.STRING:
            return isinstance(value, str)
        if self is FactType.SET:
            return isinstance(value, (set, frozenset, list, tuple)) and all(
                isinstance(v, str) for v in value
            )
        return isinstance(value, datetime)

    def normalize(self, value):
        """Canonical in-memory form of an accepted value."""
        if self is FactType.FLOAT:
            return float(value)
        if self is FactType.SET:
            return frozenset(value)
        if self is FactType.DATETIME:
            if value.tzinfo is None:
                return value.replace(tzinfo=timezone.utc)
            return value.astimezone(timezone.utc)
        return value

    def to_json(self, value):
        """JSON-safe encoding of a normalized value."""
        if self is FactType.SET:
            return sorted(value)
        if self is FactType.DATETIME:
            return value.isoformat()
        return value

    def from_json(self, raw):
        """Inverse of to_json."""
        if self is FactType.SET:
            return frozenset(raw)
        if self is FactType.DATETIME:
            return datetime.fromisoformat(raw)
        if self is FactType.FLOAT:
            return float(raw)
        return raw


class RunStatus(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class RetrieverState(StrEnum):
    IDLE = "idle"
    TRIGGERED = "triggered"
    RUNNING = "running"
