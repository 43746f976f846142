"""Tests for the retrieval executor."""

import asyncio
import threading
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from facts.catalog import StaticCatalog
from facts.errors import CatalogError, StorageError
from facts.executor import RetrievalExecutor, validate_results
from facts.health import RetrieverHealthTracker
from facts.models import EntityRef, FactRetrievalResult, FactSnapshot
from observability import metrics
from shared_types import RunStatus

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)

SCHEMA = {
    "count": "integer",
    "ratio": "float",
    "ok": "boolean",
    "tags": "set",
}


@pytest.fixture
def executor(store, retention, catalog_entities, db_path):
    return RetrievalExecutor(
        store,
        retention,
        catalog=StaticCatalog(catalog_entities),
        config={"team": "platform"},
        health=RetrieverHealthTracker(db_path),
    )


def _result(entity="component:default/payments", ts=T0, **facts):
    return FactRetrievalResult(EntityRef.parse(entity), facts, ts)


class TestValidateResults:
    def test_undeclared_fact_dropped(self, make_registration, catalog_entities):
        reg = make_registration(schema=SCHEMA)
        snapshots, violations = validate_results(
            reg, [_result(count=1, ok=True, extra="x")], catalog_entities, T0
        )
        assert snapshots[0].values == {"count": 1, "ok": True}
        assert [(v.fact, v.reason) for v in violations] == [("extra", "undeclared_fact")]

    def test_type_mismatch_drops_only_that_fact(self, make_registration, catalog_entities):
        reg = make_registration(schema=SCHEMA)
        snapshots, violations = validate_results(
            reg, [_result(count="three", ok=True, ratio=2)], catalog_entities, T0
        )
        assert snapshots[0].values == {"ok": True, "ratio": 2.0}
        assert violations[0].reason == "type_mismatch"
        assert violations[0].fact == "count"
        assert violations[0].value_type == "str"

    def test_item_with_no_valid_facts_dropped(self, make_registration, catalog_entities):
        reg = make_registration(schema=SCHEMA)
        snapshots, violations = validate_results(reg, [_result(count=1.5)], catalog_entities, T0)
        assert snapshots == []
        assert [v.reason for v in violations] == ["type_mismatch", "no_valid_facts"]

    def test_unknown_entity_dropped(self, make_registration, catalog_entities):
        reg = make_registration(schema=SCHEMA)
        snapshots, violations = validate_results(
            reg, [_result("component:default/ghost", count=1)], catalog_entities, T0
        )
        assert snapshots == []
        assert violations[0].reason == "unknown_entity"
        assert violations[0].entity == "component:default/ghost"

    def test_bulk_accepts_any_entity(self, make_registration):
        reg = make_registration(schema=SCHEMA, bulk=True)
        snapshots, violations = validate_results(
            reg, [_result("component:default/ghost", count=1)], [], T0
        )
        assert len(snapshots) == 1
        assert violations == []

    def test_malformed_item_recorded(self, make_registration, catalog_entities):
        reg = make_registration(schema=SCHEMA)
        snapshots, violations = validate_results(reg, ["garbage"], catalog_entities, T0)
        assert snapshots == []
        assert violations[0].reason.startswith("malformed_item")

    def test_missing_timestamp_stamped_with_collection_time(self, make_registration, catalog_entities):
        reg = make_registration(schema=SCHEMA)
        collected = datetime(2024, 6, 1, 12, tzinfo=timezone.utc)
        snapshots, _ = validate_results(reg, [_result(ts=None, count=1)], catalog_entities, collected)
        assert snapshots[0].timestamp == collected

    def test_set_values_normalized(self, make_registration, catalog_entities):
        reg = make_registration(schema=SCHEMA)
        snapshots, _ = validate_results(reg, [_result(tags=["a", "b", "a"])], catalog_entities, T0)
        assert snapshots[0].values["tags"] == frozenset({"a", "b"})


class TestExecute:
    @pytest.mark.asyncio
    async def test_handler_sees_filtered_entities_and_config(self, executor, make_registration):
        seen = {}

        async def handler(ctx):
            seen["refs"] = [str(r) for r in ctx.entity_refs]
            seen["config"] = ctx.config
            return []

        reg = make_registration(handler=handler, entity_filter={"kind": "component"})
        report = await executor.run(reg)

        assert report.ok
        assert report.entities == 2
        assert seen["refs"] == ["component:default/payments", "component:default/search"]
        assert seen["config"] == {"team": "platform"}

    @pytest.mark.asyncio
    async def test_successful_run_persists(self, executor, store, make_registration):
        async def handler(ctx):
            return [
                FactRetrievalResult(ref, {"count": i}, T0)
                for i, ref in enumerate(ctx.entity_refs)
            ]

        report = await executor.run(make_registration(handler=handler))

        assert report.status is RunStatus.SUCCEEDED
        assert report.inserted == 3
        assert store.query_latest("r1", EntityRef("api", "payments-api")).values == {"count": 2}
        assert metrics.get("snapshots_inserted") == 3
        assert metrics.get("retriever_run_success") == 1

    @pytest.mark.asyncio
    async def test_sync_handler_supported(self, executor, store, make_registration):
        def handler(ctx):
            return [{"entity": "component:payments", "facts": {"count": 4}, "timestamp": T0}]

        report = await executor.run(make_registration(handler=handler))

        assert report.inserted == 1
        assert store.query_latest("r1", EntityRef("component", "payments")).values == {"count": 4}

    @pytest.mark.asyncio
    async def test_partial_success_with_violations(self, executor, store, make_registration):
        async def handler(ctx):
            return [
                _result(count=1, bogus=True),
                _result("component:default/ghost", count=2),
            ]

        report = await executor.run(make_registration(handler=handler))

        assert report.ok
        assert report.inserted == 1
        assert len(report.violations) == 2
        assert metrics.get("schema_violation") == 2

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, executor, store, make_registration, entity):
        async def handler(ctx):
            return [_result(count=1)]

        reg = make_registration(handler=handler)
        await executor.run(reg)
        report = await executor.run(reg)

        assert report.inserted == 0
        assert report.duplicates == 1
        assert store.count("r1", entity) == 1

    @pytest.mark.asyncio
    async def test_retention_applied_after_insert(self, executor, store, make_registration, entity):
        calls = iter(range(1, 10))

        async def handler(ctx):
            n = next(calls)
            return [_result(ts=T0 + timedelta(seconds=n), count=n)]

        reg = make_registration(handler=handler, retention=2)
        for _ in range(3):
            await executor.run(reg)

        assert store.count("r1", entity) == 2
        assert store.query_latest("r1", entity).values == {"count": 3}


class TestRunFailures:
    @pytest.mark.asyncio
    async def test_timeout_keeps_prior_snapshot(self, executor, store, make_registration, entity):
        store.insert(FactSnapshot("r3", entity, T0, {"count": 1}))

        async def slow(ctx):
            await asyncio.sleep(5)
            return [_result(count=99)]

        reg = make_registration(id="r3", handler=slow, timeout=timedelta(seconds=0.05))
        report = await executor.run(reg)

        assert report.status is RunStatus.FAILED
        assert "exceeded" in report.error
        assert store.query_latest("r3", entity).values == {"count": 1}
        assert store.count("r3", entity) == 1
        assert metrics.get("retriever_run_failure") == 1

    @pytest.mark.asyncio
    async def test_sync_handler_timeout(self, executor, make_registration):
        def blocking(ctx):
            time.sleep(0.5)
            return []

        reg = make_registration(handler=blocking, timeout=timedelta(seconds=0.05))
        report = await executor.run(reg)
        assert report.status is RunStatus.FAILED

    def test_abandoned_sync_handler_does_not_hold_event_loop(self, executor, make_registration):
        release = threading.Event()

        def stuck(ctx):
            release.wait(5)
            return []

        reg = make_registration(handler=stuck, timeout=timedelta(seconds=0.05))
        started = time.monotonic()
        try:
            report = asyncio.run(executor.run(reg))
            elapsed = time.monotonic() - started
        finally:
            release.set()

        assert report.status is RunStatus.FAILED
        assert elapsed < 2

    @pytest.mark.asyncio
    async def test_hung_sync_handlers_do_not_starve_others(self, executor, make_registration):
        release = threading.Event()

        def stuck(ctx):
            release.wait(30)
            return []

        def quick(ctx):
            return [_result(count=1)]

        hung = make_registration(id="hung", handler=stuck, timeout=timedelta(seconds=0.1))
        other = make_registration(id="other", handler=quick, timeout=timedelta(seconds=2))
        try:
            for _ in range(12):
                assert (await executor.run(hung)).status is RunStatus.FAILED
            report = await executor.run(other)
        finally:
            release.set()

        assert report.status is RunStatus.SUCCEEDED
        assert report.inserted == 1

    @pytest.mark.asyncio
    async def test_handler_exception(self, executor, store, make_registration, entity):
        async def broken(ctx):
            raise RuntimeError("upstream 500")

        report = await executor.run(make_registration(handler=broken))

        assert report.status is RunStatus.FAILED
        assert "RuntimeError: upstream 500" in report.error
        assert store.query_latest("r1", entity) is None

    @pytest.mark.asyncio
    async def test_failure_recorded_in_health(self, executor, make_registration):
        async def broken(ctx):
            raise ValueError("bad data")

        await executor.run(make_registration(handler=broken))

        health = executor.health.get_source_health("r1")
        assert health["consecutive_errors"] == 1
        assert "bad data" in health["last_error"]

    @pytest.mark.asyncio
    async def test_catalog_failure_fails_run(self, store, retention, make_registration):
        catalog = MagicMock()

        async def explode(entity_filter):
            raise CatalogError("catalog down")

        catalog.get_entities = explode
        executor = RetrievalExecutor(store, retention, catalog=catalog)
        handler = MagicMock()

        report = await executor.run(make_registration(handler=handler))

        assert report.status is RunStatus.FAILED
        assert "catalog down" in report.error
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_storage_failure_stops_persistence(self, executor, store, make_registration):
        async def handler(ctx):
            return [FactRetrievalResult(ref, {"count": 1}, T0) for ref in ctx.entity_refs]

        real_insert = store.insert
        calls = []

        def failing_insert(snapshot):
            calls.append(snapshot)
            if len(calls) == 2:
                raise StorageError("disk full")
            return real_insert(snapshot)

        with patch.object(store, "insert", side_effect=failing_insert):
            report = await executor.run(make_registration(handler=handler))

        assert report.status is RunStatus.FAILED
        assert report.error == "disk full"
        assert report.inserted == 1
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_prune_failure_does_not_fail_run(self, executor, store, make_registration, entity):
        async def handler(ctx):
            return [_result(count=1)]

        with patch.object(store, "delete_ids", side_effect=StorageError("locked")):
            report = await executor.run(make_registration(handler=handler, retention=0))

        assert report.ok
        assert store.count("r1", entity) == 1
        assert metrics.get("retention_failure") == 1

    @pytest.mark.asyncio
    async def test_default_timeout_used(self, store, retention, make_registration):
        executor = RetrievalExecutor(store, retention, default_timeout=timedelta(seconds=0.05))

        async def slow(ctx):
            await asyncio.sleep(5)

        report = await executor.execute(make_registration(handler=slow), [])
        assert report.status is RunStatus.FAILED
