"""Tests for registrations, cadence parsing and the registry."""

from datetime import datetime, timedelta, timezone

import pytest

from facts.errors import (
    DuplicateIdError,
    InvalidRegistrationError,
    InvalidRetentionError,
    InvalidScheduleError,
    InvalidSchemaError,
    UnknownRetrieverError,
)
from facts.models import EntityFilter, MaxItems, TimeToLive
from facts.registry import RegistrationRegistry, _translate_day_of_week, parse_cadence


def _next(trigger, after):
    return trigger.get_next_fire_time(None, after)


class TestParseCadence:
    def test_every_minute(self):
        start = datetime(2024, 1, 1, 0, 0, 30, tzinfo=timezone.utc)
        assert _next(parse_cadence("* * * * *"), start) == datetime(2024, 1, 1, 0, 1, tzinfo=timezone.utc)

    def test_hourly_at_minute(self):
        start = datetime(2024, 1, 1, 0, 20, tzinfo=timezone.utc)
        assert _next(parse_cadence("17 * * * *"), start) == datetime(2024, 1, 1, 1, 17, tzinfo=timezone.utc)

    def test_sunday_is_zero(self):
        # 2024-01-01 is a Monday
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        fire = _next(parse_cadence("0 9 * * 0"), start)
        assert fire == datetime(2024, 1, 7, 9, 0, tzinfo=timezone.utc)

    def test_seven_is_also_sunday(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert _next(parse_cadence("0 9 * * 7"), start).weekday() == 6

    def test_weekday_range(self):
        assert _translate_day_of_week("1-5") == "mon,tue,wed,thu,fri"
        assert _translate_day_of_week("*/2") == "sun,tue,thu,sat"
        assert _translate_day_of_week("0,6") == "sun,sat"
        assert _translate_day_of_week("mon-fri") == "mon-fri"

    @pytest.mark.parametrize(
        "expr",
        ["", "* * * *", "* * * * * *", "61 * * * *", "* 25 * * *", "* * * * 9", "every minute", None],
    )
    def test_invalid_rejected(self, expr):
        with pytest.raises(InvalidScheduleError):
            parse_cadence(expr)

    def test_day_of_month_or_day_of_week(self):
        # 13th of the month or any Friday, whichever comes first
        trigger = parse_cadence("0 0 13 * 5")
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert _next(trigger, start) == datetime(2024, 1, 5, tzinfo=timezone.utc)
        assert _next(trigger, datetime(2024, 1, 10, tzinfo=timezone.utc)) == datetime(
            2024, 1, 12, tzinfo=timezone.utc
        )
        assert _next(trigger, datetime(2024, 1, 12, 1, tzinfo=timezone.utc)) == datetime(
            2024, 1, 13, tzinfo=timezone.utc
        )

    def test_stepped_day_field_still_intersects(self):
        # "*/2" counts as unrestricted, so only Mondays fire
        trigger = parse_cadence("0 0 */2 * 1")
        fire = _next(trigger, datetime(2024, 1, 1, 1, tzinfo=timezone.utc))
        assert fire.weekday() == 0

    def test_unknown_timezone_rejected(self):
        with pytest.raises(InvalidScheduleError, match="Unknown time zone"):
            parse_cadence("0 9 * * *", "Mars/Olympus_Mons")

    def test_timezone_applied(self):
        trigger = parse_cadence("0 9 * * *", "Europe/Berlin")
        fire = _next(trigger, datetime(2024, 1, 1, tzinfo=timezone.utc))
        assert fire.astimezone(timezone.utc).hour == 8


class TestRegistration:
    def test_normalizes_schema_filter_and_retention(self, make_registration):
        reg = make_registration(
            schema={"n": "integer"},
            entity_filter={"kind": "component"},
            retention=5,
        )
        assert reg.schema["n"].type == "integer"
        assert isinstance(reg.entity_filter, EntityFilter)
        assert reg.retention == MaxItems(5)

    def test_duration_retention(self, make_registration):
        reg = make_registration(retention={"seconds": 10})
        assert reg.retention == TimeToLive(timedelta(seconds=10))

    @pytest.mark.parametrize("version", ["1", "1.0", "v1.0.0", "", None])
    def test_version_must_be_semver(self, make_registration, version):
        with pytest.raises(InvalidRegistrationError):
            make_registration(version=version)

    def test_prerelease_version_accepted(self, make_registration):
        assert make_registration(version="2.0.0-beta.1").version == "2.0.0-beta.1"

    def test_blank_id_rejected(self, make_registration):
        with pytest.raises(InvalidRegistrationError):
            make_registration(id="  ")

    def test_handler_must_be_callable(self, make_registration):
        with pytest.raises(InvalidRegistrationError):
            make_registration(handler="not callable")

    def test_bad_schema_rejected(self, make_registration):
        with pytest.raises(InvalidSchemaError):
            make_registration(schema={"x": "decimal"})

    def test_bad_retention_rejected(self, make_registration):
        with pytest.raises(InvalidRetentionError):
            make_registration(retention="forever")

    def test_non_positive_timeout_rejected(self, make_registration):
        with pytest.raises(InvalidRegistrationError):
            make_registration(timeout=timedelta(0))


class TestRegistrationRegistry:
    def test_lookup(self, make_registration):
        registry = RegistrationRegistry([make_registration(id="a"), make_registration(id="b")])
        assert len(registry) == 2
        assert "a" in registry
        assert registry.get("b").id == "b"
        assert [r.id for r in registry] == ["a", "b"]

    def test_unknown_id(self, make_registration):
        registry = RegistrationRegistry([make_registration()])
        with pytest.raises(UnknownRetrieverError):
            registry.get("missing")

    def test_duplicate_id_fatal(self, make_registration):
        with pytest.raises(DuplicateIdError):
            RegistrationRegistry([make_registration(id="a"), make_registration(id="a", version="2.0.0")])

    def test_bad_cadence_fatal_at_startup(self, make_registration):
        with pytest.raises(InvalidScheduleError):
            RegistrationRegistry([make_registration(cadence="*/90 * * *")])

    def test_for_kind(self, make_registration):
        registry = RegistrationRegistry(
            [
                make_registration(id="any"),
                make_registration(id="apis", entity_filter={"kind": "api"}),
            ]
        )
        assert [r.id for r in registry.for_kind("api")] == ["any", "apis"]
        assert [r.id for r in registry.for_kind("component")] == ["any"]

    def test_trigger_for(self, make_registration):
        registry = RegistrationRegistry([make_registration(cadence="0 * * * *")])
        fire = registry.trigger_for("r1").get_next_fire_time(
            None, datetime(2024, 1, 1, 0, 30, tzinfo=timezone.utc)
        )
        assert fire == datetime(2024, 1, 1, 1, 0, tzinfo=timezone.utc)
