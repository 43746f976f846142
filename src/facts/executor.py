"""Retrieval execution: invoke a handler, validate its output, persist snapshots."""

import asyncio
import inspect
from concurrent.futures import ThreadPoolExecutor
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

import structlog

from observability import metrics
from shared_types import RunStatus

from .catalog import CatalogClient
from .errors import (
    CatalogError,
    HandlerExecutionError,
    HandlerTimeoutError,
    RetrievalError,
    SchemaViolation,
    StorageError,
)
from .health import RetrieverHealthTracker
from .models import CatalogEntity, EntityRef, FactRetrievalResult, FactSnapshot, to_utc, utcnow
from .registry import FactRetrieverRegistration
from .retention import RetentionManager
from .store import FactStore

logger = structlog.get_logger().bind(source="executor")

DEFAULT_TIMEOUT = timedelta(minutes=5)


@dataclass
class HandlerContext:
    """What a handler sees: its entities, read-only config, and a bound logger."""

    fact_source_id: str
    entities: list[CatalogEntity]
    config: Mapping[str, Any]
    logger: Any

    @property
    def entity_refs(self) -> list[EntityRef]:
        return [e.ref for e in self.entities]


@dataclass
class RunReport:
    """Outcome of one retriever run."""

    fact_source_id: str
    status: RunStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    entities: int = 0
    results: int = 0
    inserted: int = 0
    duplicates: int = 0
    pruned: int = 0
    violations: list[SchemaViolation] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def duration_s(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def ok(self) -> bool:
        return self.status is RunStatus.SUCCEEDED


def validate_results(
    registration: FactRetrieverRegistration,
    results: Iterable[Any],
    entities: Iterable[CatalogEntity],
    collected_at: datetime,
) -> tuple[list[FactSnapshot], list[SchemaViolation]]:
    """Check handler output against the registration's schema and entity set.

    Unknown entities drop the whole item; undeclared or mistyped facts drop only
    that fact. Items without a timestamp are stamped with ``collected_at``.
    """
    allowed = {e.ref for e in entities}
    snapshots: list[FactSnapshot] = []
    violations: list[SchemaViolation] = []

    def violation(entity: str, reason: str, fact: str = None, value_type: str = None):
        violations.append(
            SchemaViolation(
                fact_source_id=registration.id,
                entity=entity,
                reason=reason,
                fact=fact,
                value_type=value_type,
            )
        )

    for raw in results:
        try:
            item = FactRetrievalResult.coerce(raw)
        except (TypeError, ValueError) as e:
            violation("<unknown>", f"malformed_item: {e}")
            continue

        entity = str(item.entity)
        if not registration.bulk and item.entity not in allowed:
            violation(entity, "unknown_entity")
            continue

        values = {}
        for name, value in item.facts.items():
            declared = registration.schema.get(name)
            if declared is None:
                violation(entity, "undeclared_fact", fact=name)
                continue
            if not declared.type.accepts(value):
                violation(entity, "type_mismatch", fact=name, value_type=type(value).__name__)
                continue
            values[name] = declared.type.normalize(value)

        if not values:
            violation(entity, "no_valid_facts")
            continue

        snapshots.append(
            FactSnapshot(
                fact_source_id=registration.id,
                entity=item.entity,
                timestamp=to_utc(item.timestamp or collected_at),
                values=values,
            )
        )

    return snapshots, violations


class RetrievalExecutor:
    """Runs one registration's handler end to end.

    Run-level failures (timeout, handler error, catalog error, storage insert error)
    come back in the RunReport and are never raised to the caller.
    """

    def __init__(
        self,
        store: FactStore,
        retention: RetentionManager,
        catalog: Optional[CatalogClient] = None,
        config: Optional[Mapping[str, Any]] = None,
        default_timeout: timedelta = DEFAULT_TIMEOUT,
        health: Optional[RetrieverHealthTracker] = None,
    ):
        self.store = store
        self.retention = retention
        self.catalog = catalog
        self.config = dict(config or {})
        self.default_timeout = default_timeout
        self.health = health

    def timeout_for(self, registration: FactRetrieverRegistration) -> timedelta:
        return registration.timeout or self.default_timeout

    async def run(self, registration: FactRetrieverRegistration) -> RunReport:
        """Fetch applicable entities from the catalog, then execute."""
        started = utcnow()
        try:
            entities = await self._fetch_entities(registration)
        except CatalogError as e:
            report = RunReport(registration.id, RunStatus.FAILED, started, error=str(e))
            return self._finish(report)
        return await self.execute(registration, entities, started_at=started)

    async def _fetch_entities(
        self, registration: FactRetrieverRegistration
    ) -> list[CatalogEntity]:
        if self.catalog is None:
            return []
        try:
            return await self.catalog.get_entities(registration.entity_filter)
        except CatalogError:
            raise
        except Exception as e:
            raise CatalogError(f"Catalog lookup failed: {e}") from e

    @staticmethod
    async def _call_sync(handler: Callable[..., Any], ctx: HandlerContext) -> Any:
        """Run a sync handler on a single-use thread.

        Each call gets its own pool, shut down without waiting, so a handler that
        outlives its timeout holds only its own thread. The loop's default
        executor is avoided because ``asyncio.run`` joins it on exit.
        """
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="fact-handler")
        try:
            return await asyncio.get_running_loop().run_in_executor(pool, handler, ctx)
        finally:
            pool.shutdown(wait=False)

    async def _invoke(self, registration: FactRetrieverRegistration, ctx: HandlerContext) -> list:
        handler = registration.handler
        timeout = self.timeout_for(registration).total_seconds()

        async def call():
            if inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(
                getattr(handler, "__call__", None)
            ):
                results = await handler(ctx)
            else:
                results = await self._call_sync(handler, ctx)
            return list(results or [])

        try:
            return await asyncio.wait_for(call(), timeout=timeout)
        except asyncio.TimeoutError:
            raise HandlerTimeoutError(
                f"Handler for {registration.id!r} exceeded {timeout:.1f}s"
            ) from None
        except Exception as e:
            raise HandlerExecutionError(
                f"Handler for {registration.id!r} failed: {type(e).__name__}: {e}"
            ) from e

    async def execute(
        self,
        registration: FactRetrieverRegistration,
        entities: list[CatalogEntity],
        started_at: Optional[datetime] = None,
    ) -> RunReport:
        """Invoke the handler for ``entities``, validate, then persist. A storage error stops persistence."""
        report = RunReport(
            registration.id, RunStatus.SUCCEEDED, started_at or utcnow(), entities=len(entities)
        )
        ctx = HandlerContext(
            fact_source_id=registration.id,
            entities=list(entities),
            config=self.config,
            logger=structlog.get_logger().bind(source="retriever", fact_source_id=registration.id),
        )

        collected_at = utcnow()
        try:
            results = await self._invoke(registration, ctx)
        except RetrievalError as e:
            report.status = RunStatus.FAILED
            report.error = str(e)
            return self._finish(report)

        report.results = len(results)
        snapshots, report.violations = validate_results(
            registration, results, entities, collected_at
        )
        for v in report.violations:
            logger.warning(
                "schema_violation",
                fact_source_id=v.fact_source_id,
                entity=v.entity,
                fact=v.fact,
                reason=v.reason,
                value_type=v.value_type,
            )

        for snapshot in snapshots:
            try:
                with self.store.key_lock(registration.id, snapshot.entity):
                    row_id = self.store.insert(snapshot)
                    if row_id is None:
                        report.duplicates += 1
                        continue
                    report.inserted += 1
                    report.pruned += self.retention.after_insert(
                        registration.id,
                        snapshot.entity,
                        registration.retention,
                        just_inserted_id=row_id,
                    )
            except StorageError as e:
                report.status = RunStatus.FAILED
                report.error = str(e)
                break

        return self._finish(report)

    def _finish(self, report: RunReport) -> RunReport:
        report.finished_at = utcnow()
        metrics.counter("schema_violation", len(report.violations), report.fact_source_id)
        metrics.counter("snapshots_inserted", report.inserted, report.fact_source_id)

        if report.ok:
            metrics.counter("retriever_run_success", fact_source_id=report.fact_source_id)
            logger.info(
                "retriever_run_complete",
                fact_source_id=report.fact_source_id,
                entities=report.entities,
                results=report.results,
                inserted=report.inserted,
                duplicates=report.duplicates,
                pruned=report.pruned,
                violations=len(report.violations),
            )
        else:
            metrics.counter("retriever_run_failure", fact_source_id=report.fact_source_id)
            logger.error(
                "retriever_run_failed",
                fact_source_id=report.fact_source_id,
                error=report.error,
                inserted=report.inserted,
            )

        if self.health is not None:
            try:
                self.health.record(report)
            except Exception as e:
                logger.warning("health_record_failed", fact_source_id=report.fact_source_id, error=str(e))
        return report
