"""Built-in fact retrievers."""

from .entity_metadata import ENTITY_METADATA_RETRIEVER
from .entity_ownership import ENTITY_OWNERSHIP_RETRIEVER

BUILTIN_RETRIEVERS = [ENTITY_METADATA_RETRIEVER, ENTITY_OWNERSHIP_RETRIEVER]

__all__ = [
    "BUILTIN_RETRIEVERS",
    "ENTITY_METADATA_RETRIEVER",
    "ENTITY_OWNERSHIP_RETRIEVER",
]
