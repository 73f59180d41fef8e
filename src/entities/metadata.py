"""
src/entities/metadata.py

Read-only metadata describing entities, their fields and the operations
exposed on them. Supplied by the action provider; consumed by schema
generation, execution and tool discovery.
"""


from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from tools.definition import ToolDefinition


class Kind(str, Enum):

    QUERY = "query"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    CUSTOM = "custom"


FIELD_TYPES = ("string", "integer", "number", "boolean", "uuid", "date", "datetime", "map", "array")
ORDERABLE_TYPES = ("string", "integer", "number", "date", "datetime")


class FieldMeta(BaseModel):
    """An entity attribute or an operation argument."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: str = "string"
    description: Optional[str] = None
    public: bool = True
    filterable: bool = True
    sortable: bool = True
    allow_nil: bool = True
    writable: bool = True
    default: Any = None
    enum: Optional[List[str]] = None
    items: Optional[str] = None     # item type for "array"

    @property
    def required(self) -> bool:

        return not self.allow_nil and self.default is None


class RelationshipMeta(BaseModel):

    model_config = ConfigDict(frozen=True)

    name: str
    destination: str
    source_field: str
    destination_field: str
    many: bool = True
    public: bool = True


class OperationMeta(BaseModel):

    model_config = ConfigDict(frozen=True)

    name: str
    kind: Kind
    description: Optional[str] = None
    arguments: List[FieldMeta] = Field(default_factory=list)
    accept: List[str] = Field(default_factory=list)     # writable fields accepted (create/update)
    default_limit: Optional[int] = None
    max_page_size: Optional[int] = None
    returns: Optional[str] = None                        # custom only: scalar type or entity name
    filter: Optional[Dict[str, Any]] = None              # static filter applied by the provider

    def argument(self, name: str) -> Optional[FieldMeta]:

        return next((a for a in self.arguments if a.name == name), None)

    @property
    def public_arguments(self) -> List[FieldMeta]:

        return [a for a in self.arguments if a.public]


class EntityMeta(BaseModel):

    model_config = ConfigDict(frozen=True)

    name: str
    description: Optional[str] = None
    fields: List[FieldMeta] = Field(default_factory=list)
    primary_key: List[str] = Field(default_factory=lambda: ["id"])
    identities: Dict[str, List[str]] = Field(default_factory=dict)
    relationships: List[RelationshipMeta] = Field(default_factory=list)
    operations: List[OperationMeta] = Field(default_factory=list)
    tenant_field: Optional[str] = None

    def field(self, name: str) -> Optional[FieldMeta]:

        return next((f for f in self.fields if f.name == name), None)

    def relationship(self, name: str) -> Optional[RelationshipMeta]:

        return next((r for r in self.relationships if r.name == name), None)

    def operation(self, name: str) -> OperationMeta:

        op = next((o for o in self.operations if o.name == name), None)

        if op is None:
            raise UnknownOperationError(f"Entity '{self.name}' has no operation '{name}'.")

        return op

    @property
    def public_fields(self) -> List[FieldMeta]:

        return [f for f in self.fields if f.public]

    def writable_fields(self, operation: OperationMeta) -> List[FieldMeta]:
        """Fields the operation accepts as input, in declaration order."""

        return [f for f in self.fields if f.name in operation.accept and f.writable]


@dataclass(frozen=True)
class Namespace:
    """A group of entities plus the tools declared over them."""

    name: str
    entities: Tuple[EntityMeta, ...] = ()
    tools: Tuple["ToolDefinition", ...] = ()
    show_raised_errors: Optional[bool] = None

    def entity(self, name: str) -> Optional[EntityMeta]:

        return next((e for e in self.entities if e.name == name), None)


class UnknownEntityError(LookupError):
    pass


class UnknownOperationError(LookupError):
    pass
