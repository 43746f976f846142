"""Retention pruning for stored fact snapshots."""

from collections.abc import Iterable
from datetime import datetime
from typing import Optional

import structlog

from observability import metrics

from .errors import StorageError
from .models import EntityRef, MaxItems, RetentionPolicy, TimeToLive, to_utc, utcnow
from .registry import FactRetrieverRegistration
from .store import FactStore

logger = structlog.get_logger().bind(source="retention")


class RetentionManager:
    """Applies MaxItems / TimeToLive policies to one (fact source, entity) key at a time."""

    def __init__(self, store: FactStore):
        self.store = store

    def apply(
        self,
        fact_source_id: str,
        entity: EntityRef,
        policy: Optional[RetentionPolicy],
        now: Optional[datetime] = None,
        just_inserted_id: Optional[int] = None,
    ) -> int:
        """Prune one key under ``policy``. Returns rows deleted.

        MaxItems keeps the n newest rows; on equal timestamps the earliest insert goes
        first. TimeToLive deletes rows older than ``now - duration``, except the row
        identified by ``just_inserted_id``.

        Raises:
            StorageError: the store could not be read or written.
        """
        if policy is None:
            return 0

        if isinstance(policy, MaxItems):
            doomed = self.store.ids_beyond(fact_source_id, entity, policy.n)
        elif isinstance(policy, TimeToLive):
            cutoff = to_utc(now or utcnow()) - policy.duration
            doomed = self.store.ids_older_than(
                fact_source_id, entity, cutoff, exclude_id=just_inserted_id
            )
        else:
            raise TypeError(f"Unknown retention policy: {policy!r}")

        deleted = self.store.delete_ids(doomed)
        if deleted:
            metrics.counter("retention_pruned", deleted, fact_source_id)
            logger.debug(
                "retention_pruned",
                fact_source_id=fact_source_id,
                entity=str(entity),
                deleted=deleted,
            )
        return deleted

    def after_insert(
        self,
        fact_source_id: str,
        entity: EntityRef,
        policy: Optional[RetentionPolicy],
        just_inserted_id: Optional[int] = None,
    ) -> int:
        """Best-effort post-insert prune. A failure is logged; the next insert retries it."""
        try:
            return self.apply(
                fact_source_id, entity, policy, just_inserted_id=just_inserted_id
            )
        except StorageError as e:
            metrics.counter("retention_failure", fact_source_id=fact_source_id)
            logger.warning(
                "retention_deferred",
                fact_source_id=fact_source_id,
                entity=str(entity),
                error=str(e),
            )
            return 0

    def sweep(
        self, registrations: Iterable[FactRetrieverRegistration], now: Optional[datetime] = None
    ) -> dict[str, int]:
        """Prune every stored key of every registration that has a policy."""
        now = now or utcnow()
        results: dict[str, int] = {}
        for reg in registrations:
            if reg.retention is None:
                continue
            deleted = 0
            try:
                entities = self.store.keys(reg.id)
            except StorageError as e:
                metrics.counter("retention_failure", fact_source_id=reg.id)
                logger.warning("retention_sweep_failed", fact_source_id=reg.id, error=str(e))
                continue
            for entity in entities:
                try:
                    with self.store.key_lock(reg.id, entity):
                        deleted += self.apply(reg.id, entity, reg.retention, now=now)
                except StorageError as e:
                    metrics.counter("retention_failure", fact_source_id=reg.id)
                    logger.warning(
                        "retention_deferred", fact_source_id=reg.id, entity=str(entity), error=str(e)
                    )
            results[reg.id] = deleted
        logger.info("retention_sweep_complete", pruned=sum(results.values()), sources=len(results))
        return results
