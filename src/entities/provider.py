"""
src/entities/provider.py

Interface between the tool layer and whatever framework owns the entities.

The tool layer never touches records directly: it builds a `Query` (or an
input map) and hands it to an ActionProvider together with the caller's
context. Providers enforce their own policies and raise the exceptions in
entities.errors; the tool layer turns those into error envelopes.

See entities/memory.py for the reference in-memory implementation.
"""


from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

from entities.metadata import EntityMeta, Namespace
from entities.query import Query


class CallContext(Protocol):
    """Who is calling, on behalf of which tenant, with what extra context."""

    actor: Any
    tenant: Any
    context: Mapping[str, Any]


@runtime_checkable
class ActionProvider(Protocol):

    # --- Metadata ---------------------------------------------------------------
    def namespaces(self) -> List[Namespace]:
        """Root namespaces used when a tool selection names none."""

    def namespace(self, name: str) -> Namespace:
        """Raise UnknownEntityError for an unknown namespace."""

    def entity(self, name: str) -> EntityMeta:
        """Raise UnknownEntityError for an unknown entity."""

    # --- Queries ----------------------------------------------------------------
    def read(self, query: Query, ctx: CallContext) -> List[Dict[str, Any]]:
        ...

    def count(self, query: Query, ctx: CallContext) -> int:
        ...

    def exists(self, query: Query, ctx: CallContext) -> bool:
        ...

    def aggregate(self, query: Query, kind: str, field: str, ctx: CallContext) -> Any:
        ...

    # --- Mutations --------------------------------------------------------------
    def create(self, entity: str, operation: str, input: Dict[str, Any], ctx: CallContext) -> Dict[str, Any]:
        ...

    def update(self, query: Query, ctx: CallContext) -> List[Dict[str, Any]]:
        """Apply `query.input` to the matched records (at most `query.limit`) and return them."""

    def delete(self, query: Query, ctx: CallContext) -> List[Dict[str, Any]]:
        """Remove the matched records (at most `query.limit`) and return them."""

    def run_custom(self, entity: str, operation: str, input: Dict[str, Any], ctx: CallContext) -> Any:
        ...

    # --- Policy & output --------------------------------------------------------
    def can(self, actor: Any, tenant: Any, entity: str, operation: str, input: Dict[str, Any]) -> bool:
        ...

    def serialize(self, value: Any, returns: Optional[str], load: Sequence[str] = (), ctx: Optional[CallContext] = None) -> Any:
        """
        Turn a provider value into JSON-ready data.

        Args:
            value: A record, a list of records, or a scalar.
            returns: Entity name for records, a scalar type name, or None.
            load: Extra (private or relationship) fields to include on records.
            ctx: The caller; related records are limited to what it may read.
        """
