"""Entity metadata completeness facts."""

from facts.executor import HandlerContext
from facts.models import FactRetrievalResult
from facts.registry import FactRetrieverRegistration


async def entity_metadata_handler(ctx: HandlerContext) -> list[FactRetrievalResult]:
    """Whether each entity has a title, description and tags."""
    results = []
    for entity in ctx.entities:
        metadata = entity.metadata or {}
        tags = [t for t in metadata.get("tags") or [] if isinstance(t, str)]
        results.append(
            FactRetrievalResult(
                entity=entity.ref,
                facts={
                    "hasTitle": bool(metadata.get("title")),
                    "hasDescription": bool(metadata.get("description")),
                    "hasTags": bool(tags),
                    "tags": set(tags),
                },
            )
        )
    ctx.logger.debug("entity_metadata_collected", count=len(results))
    return results


ENTITY_METADATA_RETRIEVER = FactRetrieverRegistration(
    id="entityMetadataFactRetriever",
    version="0.1.0",
    description="Checks entities for title, description and tags",
    schema={
        "hasTitle": {"type": "boolean", "description": "Entity has a title in metadata"},
        "hasDescription": {"type": "boolean", "description": "Entity has a description in metadata"},
        "hasTags": {"type": "boolean", "description": "Entity has at least one tag"},
        "tags": {"type": "set", "description": "Tags declared on the entity"},
    },
    cadence="0 */6 * * *",
    handler=entity_metadata_handler,
    retention={"max_items": 10},
)
