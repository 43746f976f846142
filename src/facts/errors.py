"""Exception taxonomy for the fact engine."""

from dataclasses import dataclass
from typing import Optional


class FactEngineError(Exception):
    """Base class for fact engine errors."""


class ConfigurationError(FactEngineError, ValueError):
    """Startup-time configuration problem. Fatal: must halt startup."""


class InvalidScheduleError(ConfigurationError):
    """Cadence expression could not be parsed."""


class DuplicateIdError(ConfigurationError):
    """Two registrations share an id."""


class InvalidRegistrationError(ConfigurationError):
    """Registration fields are malformed (bad version, empty id, missing handler)."""


class InvalidSchemaError(ConfigurationError):
    """Fact schema declares an unknown type or is malformed."""


class InvalidRetentionError(ConfigurationError):
    """Retention configuration has an unsupported shape."""


class SchemaVersionConflictError(ConfigurationError):
    """A schema changed without a version bump."""


class UnknownRetrieverError(FactEngineError, KeyError):
    """No registration with the requested id."""


class RetrievalError(FactEngineError):
    """Run-level failure. Aborts one run, never the scheduler loop."""


class HandlerTimeoutError(RetrievalError):
    """Handler ran past its configured timeout."""


class HandlerExecutionError(RetrievalError):
    """Handler raised."""


class CatalogError(RetrievalError):
    """Entity lookup against the catalog failed."""


class StorageError(FactEngineError):
    """Insert, query or prune against the fact store failed."""


class CoordinationDeniedError(FactEngineError):
    """This instance may not run the registration right now. A skip, not a failure."""


@dataclass(frozen=True)
class SchemaViolation:
    """Record of a dropped result item or fact. Collected, never raised."""

    fact_source_id: str
    entity: str
    reason: str
    fact: Optional[str] = None
    value_type: Optional[str] = None
