"""
src/entities/diagnostics.py

Built-in introspection tools. Add `diagnostics_namespace()` to a provider's
namespaces and `install(provider)` its handlers; then select the tools with
`ToolSelection(tools="diagnostics")`.

- list_entities: names and descriptions of every entity the provider knows
- describe_entity: public fields, relationships and operations of one entity
"""


from typing import Any, Dict, List

from entities.errors import InvalidError
from entities.metadata import EntityMeta, FieldMeta, Kind, Namespace, OperationMeta, UnknownEntityError
from tools.definition import ToolDefinition


NAMESPACE = "diagnostics"
ENTITY = "Diagnostics"
TOOL_NAMES = ("list_entities", "describe_entity")


DIAGNOSTICS_ENTITY = EntityMeta(
    name=ENTITY,
    description="Introspection over the entities exposed to the assistant.",
    fields=[FieldMeta(name="id", type="string")],
    operations=[
        OperationMeta(
            name="list_entities",
            kind=Kind.CUSTOM,
            description="List every entity with its description.",
            returns="array",
        ),
        OperationMeta(
            name="describe_entity",
            kind=Kind.CUSTOM,
            description="Describe the public fields, relationships and operations of an entity.",
            arguments=[FieldMeta(name="entity", type="string", allow_nil=False, description="Entity name.")],
            returns="map",
        ),
    ],
)


def diagnostics_namespace() -> Namespace:

    return Namespace(
        name=NAMESPACE,
        entities=(DIAGNOSTICS_ENTITY,),
        tools=tuple(ToolDefinition(name=n, entity=ENTITY, operation=n) for n in TOOL_NAMES),
    )


# --- Handlers ------------------------------------------------------------------
def list_entities(provider: Any, args: Dict[str, Any], ctx: Any) -> List[Dict[str, Any]]:

    out = []

    for ns in provider.namespaces():
        if ns.name == NAMESPACE:
            continue
        for ent in ns.entities:
            out.append({"namespace": ns.name, "name": ent.name, "description": ent.description})

    return out

def describe_entity(provider: Any, args: Dict[str, Any], ctx: Any) -> Dict[str, Any]:

    try:
        ent: EntityMeta = provider.entity(args["entity"])
    except UnknownEntityError:
        raise InvalidError.single("entity", f"no entity named '{args['entity']}'")

    return {
        "name": ent.name,
        "description": ent.description,
        "primary_key": list(ent.primary_key),
        "fields": [
            {"name": f.name, "type": f.type, "description": f.description, "allow_nil": f.allow_nil}
            for f in ent.public_fields
        ],
        "relationships": [
            {"name": r.name, "destination": r.destination, "many": r.many}
            for r in ent.relationships if r.public
        ],
        "operations": [
            {"name": o.name, "kind": o.kind.value, "description": o.description}
            for o in ent.operations
        ],
    }

def install(provider: Any) -> None:
    """Register the diagnostic handlers on an InMemoryActionProvider."""

    provider.register_handler(ENTITY, "list_entities", list_entities)
    provider.register_handler(ENTITY, "describe_entity", describe_entity)
