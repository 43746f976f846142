"""Core value types: entity refs, fact schemas, results, snapshots, retention policies."""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

from shared_types import FactType

from .errors import InvalidRetentionError, InvalidSchemaError

DEFAULT_NAMESPACE = "default"

_DURATION_KEYS = {"weeks", "days", "hours", "minutes", "seconds", "milliseconds"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    """Aware UTC datetime; naive input is taken to be UTC already."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True, order=True)
class EntityRef:
    """Case-normalized catalog entity reference."""

    kind: str
    name: str
    namespace: str = DEFAULT_NAMESPACE

    def __post_init__(self):
        for attr in ("kind", "name", "namespace"):
            value = getattr(self, attr)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"EntityRef.{attr} must be a non-empty string, got {value!r}")
            object.__setattr__(self, attr, value.strip().lower())

    @classmethod
    def parse(cls, ref: Union[str, "EntityRef"]) -> "EntityRef":
        """Parse ``kind:namespace/name`` or ``kind:name``."""
        if isinstance(ref, EntityRef):
            return ref
        if not isinstance(ref, str) or ":" not in ref:
            raise ValueError(f"Invalid entity ref: {ref!r} (expected kind:namespace/name)")
        kind, _, rest = ref.partition(":")
        namespace, sep, name = rest.partition("/")
        if not sep:
            namespace, name = DEFAULT_NAMESPACE, rest
        return cls(kind=kind, name=name, namespace=namespace)

    def __str__(self) -> str:
        return f"{self.kind}:{self.namespace}/{self.name}"


@dataclass(frozen=True)
class FactField:
    type: FactType
    description: str = ""


class FactSchema(Mapping):
    """Immutable mapping of fact name -> FactField."""

    def __init__(self, fields: Optional[Mapping[str, FactField]] = None):
        self._fields = dict(fields or {})

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FactSchema":
        """Build from ``{"name": {"type": "integer", "description": "..."}}``."""
        if isinstance(data, FactSchema):
            return data
        fields = {}
        for name, declared in data.items():
            if isinstance(declared, FactField):
                fields[name] = declared
                continue
            if isinstance(declared, (str, FactType)):
                declared = {"type": declared}
            if not isinstance(declared, Mapping) or "type" not in declared:
                raise InvalidSchemaError(f"Fact {name!r} needs a 'type'")
            try:
                fact_type = FactType(declared["type"])
            except ValueError:
                raise InvalidSchemaError(
                    f"Fact {name!r} has unknown type {declared['type']!r}. "
                    f"Must be one of {[t.value for t in FactType]}"
                )
            fields[name] = FactField(fact_type, declared.get("description", ""))
        if not fields:
            raise InvalidSchemaError("Fact schema declares no facts")
        return cls(fields)

    def to_dict(self) -> dict:
        return {
            name: {"type": f.type.value, "description": f.description}
            for name, f in sorted(self._fields.items())
        }

    def __getitem__(self, key: str) -> FactField:
        return self._fields[key]

    def __iter__(self):
        return iter(self._fields)

    def __len__(self) -> int:
        return len(self._fields)

    def __repr__(self) -> str:
        return f"FactSchema({self.to_dict()!r})"


@dataclass
class FactRetrievalResult:
    """One handler output item."""

    entity: EntityRef
    facts: dict[str, Any]
    timestamp: Optional[datetime] = None

    @classmethod
    def coerce(cls, item: Union["FactRetrievalResult", Mapping]) -> "FactRetrievalResult":
        """Accept a result object or a plain dict with entity/facts/timestamp."""
        if isinstance(item, cls):
            entity = EntityRef.parse(item.entity)
            return cls(entity, item.facts, item.timestamp)
        if not isinstance(item, Mapping):
            raise ValueError(f"Unsupported result item type: {type(item).__name__}")
        facts = item.get("facts")
        if not isinstance(facts, Mapping):
            raise ValueError("Result item is missing a 'facts' mapping")
        timestamp = item.get("timestamp")
        if timestamp is not None and not isinstance(timestamp, datetime):
            raise ValueError("Result timestamp must be a datetime")
        return cls(EntityRef.parse(item.get("entity")), dict(facts), timestamp)


@dataclass(frozen=True)
class FactSnapshot:
    """Stored row. Never mutated after insert."""

    fact_source_id: str
    entity: EntityRef
    timestamp: datetime
    values: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MaxItems:
    """Keep only the n most recent snapshots per key."""

    n: int

    def __post_init__(self):
        if isinstance(self.n, bool) or not isinstance(self.n, int) or self.n < 0:
            raise InvalidRetentionError(f"MaxItems needs a non-negative integer, got {self.n!r}")


@dataclass(frozen=True)
class TimeToLive:
    """Delete snapshots older than now - duration."""

    duration: timedelta

    def __post_init__(self):
        if not isinstance(self.duration, timedelta) or self.duration < timedelta(0):
            raise InvalidRetentionError(
                f"TimeToLive needs a non-negative timedelta, got {self.duration!r}"
            )


RetentionPolicy = Union[MaxItems, TimeToLive]


def parse_duration(value: Any) -> timedelta:
    """timedelta, seconds as a number, or a dict of duration fields."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return timedelta(seconds=value)
    if isinstance(value, Mapping) and value and set(value) <= _DURATION_KEYS:
        if not all(
            isinstance(v, (int, float)) and not isinstance(v, bool) for v in value.values()
        ):
            raise InvalidRetentionError(f"Duration fields must be numbers: {dict(value)!r}")
        return timedelta(**value)
    raise InvalidRetentionError(f"Unsupported duration: {value!r}")


def parse_retention(value: Any) -> Optional[RetentionPolicy]:
    """Normalize a retention literal into MaxItems / TimeToLive (None = unlimited)."""
    if value is None or isinstance(value, (MaxItems, TimeToLive)):
        return value
    if isinstance(value, bool):
        raise InvalidRetentionError(f"Unsupported retention: {value!r}")
    if isinstance(value, int):
        return MaxItems(value)
    if isinstance(value, timedelta):
        return TimeToLive(value)
    if isinstance(value, Mapping):
        for key in ("max_items", "maxItems"):
            if key in value:
                if len(value) != 1:
                    raise InvalidRetentionError(f"Ambiguous retention: {dict(value)!r}")
                return MaxItems(value[key])
        for key in ("ttl", "time_to_live", "timeToLive"):
            if key in value:
                if len(value) != 1:
                    raise InvalidRetentionError(f"Ambiguous retention: {dict(value)!r}")
                return TimeToLive(parse_duration(value[key]))
        return TimeToLive(parse_duration(value))
    raise InvalidRetentionError(f"Unsupported retention: {value!r}")


@dataclass(frozen=True)
class DateRange:
    """Inclusive timestamp bounds; either side may be open."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def __post_init__(self):
        if self.start and self.end and to_utc(self.start) > to_utc(self.end):
            raise ValueError("DateRange start is after end")


@dataclass(frozen=True)
class CatalogEntity:
    """Entity as returned by the catalog collaborator."""

    ref: EntityRef
    type: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    spec: Mapping[str, Any] = field(default_factory=dict)


def _lowered(values: Optional[Iterable[str]]) -> Optional[frozenset]:
    if values is None:
        return None
    if isinstance(values, str):
        values = [values]
    return frozenset(v.lower() for v in values)


@dataclass(frozen=True)
class EntityFilter:
    """Entity predicate over kind/type/name. Unset dimensions match anything."""

    kinds: Optional[frozenset] = None
    types: Optional[frozenset] = None
    names: Optional[frozenset] = None
    alternatives: tuple = ()

    def __post_init__(self):
        object.__setattr__(self, "kinds", _lowered(self.kinds))
        object.__setattr__(self, "types", _lowered(self.types))
        object.__setattr__(self, "names", _lowered(self.names))

    @classmethod
    def from_config(cls, value: Any) -> Optional["EntityFilter"]:
        """Dict (``{"kind": [...], "type": [...]}``), list of dicts (OR), or None."""
        if value is None or isinstance(value, EntityFilter):
            return value
        if isinstance(value, Mapping):
            return cls(
                kinds=value.get("kind", value.get("kinds")),
                types=value.get("type", value.get("types")),
                names=value.get("name", value.get("names")),
            )
        if isinstance(value, (list, tuple)) and value:
            return cls(alternatives=tuple(cls.from_config(v) for v in value))
        raise ValueError(f"Unsupported entity filter: {value!r}")

    def _matches_self(self, kind: str, type_: Optional[str], name: str) -> bool:
        if self.kinds is not None and kind not in self.kinds:
            return False
        if self.types is not None and (type_ or "").lower() not in self.types:
            return False
        if self.names is not None and name not in self.names:
            return False
        return True

    def admits_kind(self, kind: str) -> bool:
        kind = kind.lower()
        if self.alternatives:
            return any(alt.admits_kind(kind) for alt in self.alternatives)
        return self.kinds is None or kind in self.kinds

    def matches(self, entity: CatalogEntity) -> bool:
        if self.alternatives:
            return any(alt.matches(entity) for alt in self.alternatives)
        return self._matches_self(entity.ref.kind, entity.type, entity.ref.name)
