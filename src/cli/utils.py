"""Shared CLI utilities."""

import sys
from datetime import timedelta
from pathlib import Path
from typing import Optional

import structlog
from rich.console import Console

from cli.config import load_config_model
from cli.config_models import FactsConfig

console = Console()
logger = structlog.get_logger()


def build_catalog(config: FactsConfig):
    """HTTP catalog when a base URL is configured, else the static entity list."""
    from facts.catalog import HttpCatalogClient, StaticCatalog

    if config.catalog.base_url:
        return HttpCatalogClient(
            config.catalog.base_url,
            token=config.catalog.token,
            timeout=config.catalog.timeout_seconds,
            max_attempts=config.retry.max_attempts,
            min_wait=config.retry.min_wait,
            max_wait=config.retry.max_wait,
        )
    return StaticCatalog(config.catalog.static_entities)


def build_coordinator(config: FactsConfig):
    from facts.coordination import SqliteLeaseCoordinator, StaticCoordinator

    if config.coordination.mode == "lease":
        return SqliteLeaseCoordinator(config.paths.db_path, config.coordination.instance_id)
    return StaticCoordinator(is_main_instance=config.coordination.main_instance)


def get_components(config: FactsConfig, registrations: Optional[list] = None) -> dict:
    """Wire store, registry, executor and scheduler from config.

    Raises:
        ConfigurationError: duplicate ids, bad cadences, or an unversioned schema change.
    """
    from facts.executor import RetrievalExecutor
    from facts.health import RetrieverHealthTracker
    from facts.loader import load_registrations, persist_schemas
    from facts.query import FactQueryFacade
    from facts.registry import RegistrationRegistry
    from facts.retention import RetentionManager
    from facts.retrievers import BUILTIN_RETRIEVERS
    from facts.scheduler import FactRetrieverScheduler
    from facts.store import FactStore

    if registrations is None:
        overrides = {
            rid: o.model_dump(exclude_none=True)
            for rid, o in config.retrievers.overrides.items()
        }
        registrations = load_registrations(
            config.retrievers.modules,
            overrides=overrides,
            extra=BUILTIN_RETRIEVERS if config.retrievers.builtin else (),
        )

    registry = RegistrationRegistry(registrations, timezone=config.scheduler.timezone)
    store = FactStore(config.paths.db_path)
    persist_schemas(store, registry)

    retention = RetentionManager(store)
    health = RetrieverHealthTracker(config.paths.db_path)
    executor = RetrievalExecutor(
        store,
        retention,
        catalog=build_catalog(config),
        config=config.handler_config,
        default_timeout=timedelta(seconds=config.scheduler.default_timeout_seconds),
        health=health,
    )
    scheduler = FactRetrieverScheduler(
        registry,
        executor,
        coordinator=build_coordinator(config),
        max_workers=config.scheduler.max_workers,
        misfire_grace_seconds=config.scheduler.misfire_grace_seconds,
        retention_sweep_cadence=config.scheduler.retention_sweep_cadence,
    )

    return {
        "config": config,
        "registry": registry,
        "store": store,
        "retention": retention,
        "health": health,
        "executor": executor,
        "scheduler": scheduler,
        "query": FactQueryFacade(store),
    }


def load_components(config_path: Optional[Path] = None) -> dict:
    """Load config and wire components; print and exit 1 on a startup error."""
    try:
        return get_components(load_config_model(config_path))
    except ValueError as e:
        # ConfigurationError is a ValueError too
        logger.error("startup_failed", error=str(e))
        console.print(f"[red]Config error:[/] {e}")
        sys.exit(1)
