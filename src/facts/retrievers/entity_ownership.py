"""Entity ownership facts."""

from facts.executor import HandlerContext
from facts.models import EntityRef, FactRetrievalResult
from facts.registry import FactRetrieverRegistration


def _owner_kind(owner: str) -> str:
    """Kind of an owner ref; bare names are groups."""
    if ":" not in owner:
        return "group"
    try:
        return EntityRef.parse(owner).kind
    except ValueError:
        return ""


async def entity_ownership_handler(ctx: HandlerContext) -> list[FactRetrievalResult]:
    results = []
    for entity in ctx.entities:
        owner = (entity.spec or {}).get("owner")
        has_owner = isinstance(owner, str) and bool(owner.strip())
        results.append(
            FactRetrievalResult(
                entity=entity.ref,
                facts={
                    "hasOwner": has_owner,
                    "hasGroupOwner": has_owner and _owner_kind(owner.strip()) == "group",
                },
            )
        )
    return results


ENTITY_OWNERSHIP_RETRIEVER = FactRetrieverRegistration(
    id="entityOwnershipFactRetriever",
    version="0.1.0",
    description="Checks that entities declare an owner, and that it is a group",
    schema={
        "hasOwner": {"type": "boolean", "description": "Entity has an owner in spec"},
        "hasGroupOwner": {"type": "boolean", "description": "Entity owner is a group"},
    },
    cadence="0 */6 * * *",
    handler=entity_ownership_handler,
    entity_filter=[{"kind": ["component", "api", "system", "resource"]}],
    retention={"ttl": {"days": 30}},
)
