"""Fact retrieval: scheduled collection, validation, storage and retention of entity facts."""

from .catalog import CatalogClient, HttpCatalogClient, StaticCatalog
from .coordination import RunCoordinator, SqliteLeaseCoordinator, StaticCoordinator
from .executor import HandlerContext, RetrievalExecutor, RunReport
from .health import RetrieverHealthTracker
from .models import (
    CatalogEntity,
    DateRange,
    EntityFilter,
    EntityRef,
    FactRetrievalResult,
    FactSchema,
    FactSnapshot,
    MaxItems,
    TimeToLive,
    parse_retention,
)
from .query import FactQueryFacade
from .registry import FactRetrieverRegistration, RegistrationRegistry
from .retention import RetentionManager
from .scheduler import FactRetrieverScheduler
from .store import FactStore

__all__ = [
    "CatalogClient",
    "CatalogEntity",
    "DateRange",
    "EntityFilter",
    "EntityRef",
    "FactQueryFacade",
    "FactRetrievalResult",
    "FactRetrieverRegistration",
    "FactRetrieverScheduler",
    "FactSchema",
    "FactSnapshot",
    "FactStore",
    "HandlerContext",
    "HttpCatalogClient",
    "MaxItems",
    "RegistrationRegistry",
    "RetentionManager",
    "RetrievalExecutor",
    "RetrieverHealthTracker",
    "RunCoordinator",
    "RunReport",
    "SqliteLeaseCoordinator",
    "StaticCatalog",
    "StaticCoordinator",
    "TimeToLive",
    "parse_retention",
]
