"""Tests for FactQueryFacade."""

from datetime import datetime, timedelta, timezone

import pytest

from facts.models import DateRange, EntityRef, FactSchema, FactSnapshot
from facts.query import FactQueryFacade

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def facade(store, entity):
    for s in range(3):
        store.insert(FactSnapshot("r1", entity, T0 + timedelta(hours=s), {"count": s}))
    store.insert(FactSnapshot("r2", entity, T0, {"ok": True}))
    return FactQueryFacade(store)


class TestFactQueryFacade:
    def test_get_latest_accepts_string_ref(self, facade):
        latest = facade.get_latest("r1", "component:default/payments")
        assert latest.values == {"count": 2}

    def test_get_latest_missing(self, facade):
        assert facade.get_latest("r1", EntityRef("api", "nope")) is None

    def test_get_latest_for_entity(self, facade, entity):
        latest = facade.get_latest_for_entity(entity)
        assert set(latest) == {"r1", "r2"}
        assert facade.get_latest_for_entity("component:payments", ["r2"])["r2"].values == {"ok": True}

    def test_get_history(self, facade, entity):
        history = facade.get_history("r1", entity, DateRange(start=T0 + timedelta(hours=1)))
        assert [h.values["count"] for h in history] == [2, 1]

    def test_get_schemas(self, store, facade):
        store.save_schema("r1", "1.0.0", FactSchema.from_dict({"count": "integer"}))
        schemas = facade.get_schemas()
        assert schemas["r1"]["version"] == "1.0.0"

    def test_facade_has_no_write_path(self, facade):
        assert not any(hasattr(facade, name) for name in ("insert", "delete_ids", "apply"))
