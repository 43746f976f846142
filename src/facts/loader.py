"""Load registrations from ``module:attribute`` references and apply config overrides."""

import dataclasses
import importlib
from collections.abc import Iterable, Mapping
from datetime import timedelta
from typing import Any, Optional

import structlog

from .errors import InvalidRegistrationError
from .registry import FactRetrieverRegistration
from .store import FactStore

logger = structlog.get_logger().bind(source="loader")


def import_reference(ref: str) -> Any:
    """Resolve ``package.module:attribute``."""
    module_name, sep, attr = ref.partition(":")
    if not sep or not module_name or not attr:
        raise InvalidRegistrationError(f"Expected 'module:attribute', got {ref!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise InvalidRegistrationError(f"Cannot import {module_name!r}: {e}") from e
    try:
        return getattr(module, attr)
    except AttributeError:
        raise InvalidRegistrationError(f"{module_name!r} has no attribute {attr!r}") from None


def _as_registrations(ref: str, obj: Any) -> list[FactRetrieverRegistration]:
    if callable(obj) and not isinstance(obj, FactRetrieverRegistration):
        obj = obj()
    if isinstance(obj, FactRetrieverRegistration):
        return [obj]
    if isinstance(obj, (list, tuple)) and all(isinstance(o, FactRetrieverRegistration) for o in obj):
        return list(obj)
    raise InvalidRegistrationError(f"{ref!r} did not yield fact retriever registrations")


def apply_override(
    registration: FactRetrieverRegistration, override: Mapping[str, Any]
) -> FactRetrieverRegistration:
    """New registration with cadence/retention/timeout/entity filter replaced from config."""
    changes: dict[str, Any] = {}
    if override.get("cadence") is not None:
        changes["cadence"] = override["cadence"]
    if override.get("retention") is not None:
        changes["retention"] = override["retention"]
    if override.get("timeout_seconds") is not None:
        changes["timeout"] = timedelta(seconds=override["timeout_seconds"])
    if override.get("entity_filter") is not None:
        changes["entity_filter"] = override["entity_filter"]
    return dataclasses.replace(registration, **changes) if changes else registration


def load_registrations(
    references: Iterable[str],
    overrides: Optional[Mapping[str, Mapping[str, Any]]] = None,
    extra: Iterable[FactRetrieverRegistration] = (),
) -> list[FactRetrieverRegistration]:
    """Import registrations, apply per-id overrides, and drop disabled ones."""
    overrides = overrides or {}
    registrations = list(extra)
    for ref in references:
        registrations.extend(_as_registrations(ref, import_reference(ref)))

    result = []
    for reg in registrations:
        override = overrides.get(reg.id) or {}
        if override.get("enabled", True) is False:
            logger.info("retriever_disabled", fact_source_id=reg.id)
            continue
        result.append(apply_override(reg, override))

    unknown = set(overrides) - {r.id for r in registrations}
    if unknown:
        logger.warning("override_for_unknown_retriever", ids=sorted(unknown))
    return result


def persist_schemas(store: FactStore, registrations: Iterable[FactRetrieverRegistration]) -> None:
    """Record each retriever's schema under its version. Fails on an unversioned change."""
    for reg in registrations:
        store.save_schema(reg.id, reg.version, reg.schema)
