"""Fact retriever registrations and the registry that validates them at startup."""

import re
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

import structlog
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger

from .errors import (
    DuplicateIdError,
    InvalidRegistrationError,
    InvalidScheduleError,
    UnknownRetrieverError,
)
from .models import EntityFilter, FactSchema, RetentionPolicy, parse_retention

logger = structlog.get_logger().bind(source="registry")

_SEMVER = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)

_DOW_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]
_DOW_TOKEN = re.compile(r"^(\*|\d+)(?:-(\d+))?(?:/(\d+))?$")


def _translate_day_of_week(field_expr: str) -> str:
    """Map standard cron day-of-week numbers (0/7 = Sunday) to day names.

    APScheduler numbers weekdays from Monday, so numeric values are expanded to
    explicit name lists. Names and a bare ``*`` pass through unchanged.
    """
    if field_expr == "*":
        return field_expr
    days: list[str] = []
    for token in field_expr.split(","):
        match = _DOW_TOKEN.match(token)
        if not match:
            days.append(token.lower())
            continue
        start, end, step = match.groups()
        if start == "*":
            lo, hi = 0, 6
        else:
            lo = int(start)
            hi = int(end) if end is not None else (6 if step else lo)
        if not (0 <= lo <= 7 and 0 <= hi <= 7) or lo > hi:
            raise ValueError(f"Invalid day-of-week range: {token}")
        for n in range(lo, hi + 1, int(step) if step else 1):
            name = _DOW_NAMES[n % 7]
            if name not in days:
                days.append(name)
    return ",".join(days)


def _restricted(field_expr: str) -> bool:
    # Cron treats a day field starting with "*" (including "*/n") as unrestricted
    return not field_expr.startswith("*")


def parse_cadence(expr: str, timezone: str = "UTC") -> BaseTrigger:
    """Parse a standard five-field cron expression (min hour day month dow).

    When both day-of-month and day-of-week are restricted, cron fires on a day
    matching either one. APScheduler's ``CronTrigger`` requires both, so that case
    becomes an ``OrTrigger`` over one trigger per day field.
    """
    if not isinstance(expr, str):
        raise InvalidScheduleError(f"Cadence must be a cron string, got {expr!r}")
    parts = expr.split()
    if len(parts) != 5:
        raise InvalidScheduleError(f"Cron must have 5 fields, got {len(parts)}: {expr!r}")
    minute, hour, day, month, dow = parts
    try:
        weekdays = _translate_day_of_week(dow)
        fields = dict(minute=minute, hour=hour, month=month, timezone=timezone)
        if _restricted(day) and _restricted(dow):
            return OrTrigger([
                CronTrigger(day=day, **fields),
                CronTrigger(day_of_week=weekdays, **fields),
            ])
        return CronTrigger(day=day, day_of_week=weekdays, **fields)
    except (ValueError, TypeError) as e:
        raise InvalidScheduleError(f"Invalid cron expression {expr!r}: {e}") from e
    except KeyError as e:
        # Unknown time zone names surface as KeyError subclasses
        raise InvalidScheduleError(f"Unknown time zone {timezone!r} for {expr!r}") from e


@dataclass(frozen=True)
class FactRetrieverRegistration:
    """A registered fact source: what it collects, how often, and how long it is kept."""

    id: str
    version: str
    schema: FactSchema
    cadence: str
    handler: Callable[..., Any]
    entity_filter: Optional[EntityFilter] = None
    retention: Optional[RetentionPolicy] = None
    description: str = ""
    timeout: Optional[timedelta] = None
    bulk: bool = False

    def __post_init__(self):
        if not isinstance(self.id, str) or not self.id.strip():
            raise InvalidRegistrationError(f"Registration id must be a non-empty string: {self.id!r}")
        if not isinstance(self.version, str) or not _SEMVER.match(self.version):
            raise InvalidRegistrationError(
                f"Registration {self.id!r} version must be semver, got {self.version!r}"
            )
        if not callable(self.handler):
            raise InvalidRegistrationError(f"Registration {self.id!r} handler is not callable")
        object.__setattr__(self, "schema", FactSchema.from_dict(self.schema))
        object.__setattr__(self, "entity_filter", EntityFilter.from_config(self.entity_filter))
        object.__setattr__(self, "retention", parse_retention(self.retention))
        if self.timeout is not None and self.timeout <= timedelta(0):
            raise InvalidRegistrationError(f"Registration {self.id!r} timeout must be positive")


class RegistrationRegistry:
    """Validated, immutable set of registrations for the process lifetime."""

    def __init__(self, registrations: Iterable[FactRetrieverRegistration], timezone: str = "UTC"):
        self.timezone = timezone
        self._registrations: dict[str, FactRetrieverRegistration] = {}
        self._triggers: dict[str, BaseTrigger] = {}

        for reg in registrations:
            if reg.id in self._registrations:
                raise DuplicateIdError(f"Duplicate fact retriever id: {reg.id!r}")
            # Bad cadence is rejected now, not at fire time
            self._triggers[reg.id] = parse_cadence(reg.cadence, timezone)
            self._registrations[reg.id] = reg

        logger.info("registry_loaded", count=len(self._registrations))

    def get(self, registration_id: str) -> FactRetrieverRegistration:
        try:
            return self._registrations[registration_id]
        except KeyError:
            raise UnknownRetrieverError(registration_id) from None

    def trigger_for(self, registration_id: str) -> BaseTrigger:
        self.get(registration_id)
        return self._triggers[registration_id]

    def all(self) -> list[FactRetrieverRegistration]:
        return list(self._registrations.values())

    def for_kind(self, kind: str) -> list[FactRetrieverRegistration]:
        """Registrations whose entity filter admits this kind (or that have none)."""
        return [
            reg
            for reg in self._registrations.values()
            if reg.entity_filter is None or reg.entity_filter.admits_kind(kind)
        ]

    def __contains__(self, registration_id: object) -> bool:
        return registration_id in self._registrations

    def __iter__(self) -> Iterator[FactRetrieverRegistration]:
        return iter(self._registrations.values())

    def __len__(self) -> int:
        return len(self._registrations)
