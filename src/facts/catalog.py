"""Catalog boundary: where retrievers get the entities they collect facts for."""

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from typing import Any, Optional

import httpx
import structlog

from cli.retry import catalog_retry

from .errors import CatalogError
from .models import CatalogEntity, EntityFilter, EntityRef

logger = structlog.get_logger().bind(source="catalog")


def entity_from_json(data: Mapping[str, Any]) -> CatalogEntity:
    """Convert a catalog entity document (kind/metadata/spec) into a CatalogEntity."""
    metadata = data.get("metadata") or {}
    spec = data.get("spec") or {}
    ref = EntityRef(
        kind=data["kind"],
        name=metadata["name"],
        namespace=metadata.get("namespace") or "default",
    )
    return CatalogEntity(ref=ref, type=spec.get("type"), metadata=metadata, spec=spec)


def _apply_filter(
    entities: Iterable[CatalogEntity], entity_filter: Optional[EntityFilter]
) -> list[CatalogEntity]:
    if entity_filter is None:
        return list(entities)
    return [e for e in entities if entity_filter.matches(e)]


class CatalogClient(ABC):
    """Read-only access to catalog entities."""

    @abstractmethod
    async def get_entities(
        self, entity_filter: Optional[EntityFilter] = None
    ) -> list[CatalogEntity]:
        """Return entities admitted by ``entity_filter`` (all when None)."""
        pass


class StaticCatalog(CatalogClient):
    """In-memory catalog, for tests and for configs that list entities directly."""

    def __init__(self, entities: Iterable[CatalogEntity | Mapping[str, Any]] = ()):
        self._entities = [
            e if isinstance(e, CatalogEntity) else entity_from_json(e) for e in entities
        ]

    async def get_entities(
        self, entity_filter: Optional[EntityFilter] = None
    ) -> list[CatalogEntity]:
        return _apply_filter(self._entities, entity_filter)


class HttpCatalogClient(CatalogClient):
    """Async client for a catalog REST API exposing ``GET {base_url}/entities``."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_attempts: int = 3,
        min_wait: float = 2.0,
        max_wait: float = 10.0,
    ):
        headers = {"User-Agent": "fact-engine/1.0"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.base_url = base_url.rstrip("/")
        self._client_kwargs = {"timeout": timeout, "headers": headers, "transport": transport}
        self._retry = catalog_retry(max_attempts=max_attempts, min_wait=min_wait, max_wait=max_wait)

    @staticmethod
    def _filter_params(entity_filter: Optional[EntityFilter]) -> list[tuple[str, str]]:
        """Server-side pre-filter on kind; everything else is matched locally."""
        if entity_filter is None:
            return []
        filters = entity_filter.alternatives or (entity_filter,)
        if any(f.kinds is None for f in filters):
            return []
        return [("filter", f"kind={kind}") for f in filters for kind in sorted(f.kinds)]

    async def _fetch(self, params: list[tuple[str, str]]) -> list[dict]:
        # One client per call: each scheduled run drives its own event loop
        async with httpx.AsyncClient(**self._client_kwargs) as client:
            response = await client.get(f"{self.base_url}/entities", params=params)
        response.raise_for_status()
        payload = response.json()
        if isinstance(payload, Mapping):
            payload = payload.get("items", [])
        return payload

    async def get_entities(
        self, entity_filter: Optional[EntityFilter] = None
    ) -> list[CatalogEntity]:
        try:
            payload = await self._retry(self._fetch)(self._filter_params(entity_filter))
        except httpx.HTTPStatusError as e:
            raise CatalogError(
                f"Catalog returned HTTP {e.response.status_code} for {e.request.url}"
            ) from e
        except httpx.RequestError as e:
            raise CatalogError(f"Catalog request failed: {e}") from e

        entities = []
        for doc in payload:
            try:
                entities.append(entity_from_json(doc))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("catalog_entity_skipped", error=str(e))
        logger.debug("catalog_entities_fetched", count=len(entities))
        return _apply_filter(entities, entity_filter)
