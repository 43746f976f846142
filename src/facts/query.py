"""Read-only fact access for rule engines and API layers."""

from typing import Optional, Union

from .models import DateRange, EntityRef, FactSnapshot
from .store import FactStore

EntityLike = Union[EntityRef, str]


class FactQueryFacade:
    """Read-only view over the fact store. Never touches the write path."""

    def __init__(self, store: FactStore):
        self._store = store

    def get_latest(self, fact_source_id: str, entity: EntityLike) -> Optional[FactSnapshot]:
        return self._store.query_latest(fact_source_id, EntityRef.parse(entity))

    def get_latest_for_entity(
        self, entity: EntityLike, fact_source_ids: Optional[list[str]] = None
    ) -> dict[str, FactSnapshot]:
        return self._store.query_latest_for_entity(EntityRef.parse(entity), fact_source_ids)

    def get_history(
        self,
        fact_source_id: str,
        entity: EntityLike,
        date_range: Optional[DateRange] = None,
        limit: Optional[int] = None,
    ) -> list[FactSnapshot]:
        """Snapshots newest first; re-querying gives a consistent post-commit view."""
        return self._store.query_history(
            fact_source_id, EntityRef.parse(entity), date_range=date_range, limit=limit
        )

    def get_schemas(self) -> dict[str, dict]:
        """Latest registered schema and version per fact source."""
        return self._store.latest_schemas()
