"""Shared test fixtures for the fact engine."""

import sys
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from facts.models import CatalogEntity, EntityRef
from facts.registry import FactRetrieverRegistration
from facts.retention import RetentionManager
from facts.store import FactStore
from observability import metrics


@pytest.fixture(autouse=True)
def reset_metrics():
    """Metrics are a process-wide singleton."""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "facts.db"


@pytest.fixture
def store(db_path):
    return FactStore(db_path)


@pytest.fixture
def retention(store):
    return RetentionManager(store)


@pytest.fixture
def entity():
    return EntityRef(kind="component", name="payments")


@pytest.fixture
def catalog_entities():
    """Two components and an API, shaped like catalog documents."""
    return [
        CatalogEntity(
            ref=EntityRef("component", "payments"),
            type="service",
            metadata={"name": "payments", "title": "Payments", "tags": ["java", "pci"]},
            spec={"type": "service", "owner": "group:default/team-a"},
        ),
        CatalogEntity(
            ref=EntityRef("component", "search"),
            type="website",
            metadata={"name": "search", "description": "Search UI"},
            spec={"type": "website", "owner": "user:jdoe"},
        ),
        CatalogEntity(
            ref=EntityRef("api", "payments-api"),
            type="openapi",
            metadata={"name": "payments-api"},
            spec={"type": "openapi"},
        ),
    ]


async def _empty_handler(ctx):
    return []


@pytest.fixture
def make_registration():
    """Factory for registrations with sensible defaults."""

    def _make(**overrides):
        fields = {
            "id": "r1",
            "version": "1.0.0",
            "schema": {"count": {"type": "integer", "description": "Item count"}},
            "cadence": "* * * * *",
            "handler": _empty_handler,
        }
        fields.update(overrides)
        return FactRetrieverRegistration(**fields)

    return _make
