"""
src/tools/definition.py

Declarations that turn entity operations into LLM tools:
- ToolDefinition: which operation a tool runs and how (load, identity, params)
- IdentitySpec: how update/delete tools pick their single target record
- ToolDescriptor: what the model sees (name, description, JSON schema)
- ToolStartEvent / ToolEndEvent: payloads for the lifecycle callbacks
"""


from typing import Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from entities.metadata import EntityMeta
from entities.query import IdentityFilter


LoadSpec = Union[List[str], Callable[[Dict[str, Any]], List[str]]]


class UnknownIdentityError(ValueError):
    pass


class IdentitySpec(BaseModel):
    """
    Identity selector for update/delete tools.

    - default: the entity's primary key
    - named: one of the entity's named identities (e.g. "unique_email")
    - disabled: no identity; the operation selects its record by other means
    """

    model_config = ConfigDict(frozen=True)

    mode: Literal["default", "named", "disabled"] = "default"
    name: Optional[str] = None

    @classmethod
    def default(cls) -> "IdentitySpec":

        return cls()

    @classmethod
    def named(cls, name: str) -> "IdentitySpec":

        return cls(mode="named", name=name)

    @classmethod
    def disabled(cls) -> "IdentitySpec":

        return cls(mode="disabled")

    def keys(self, entity: EntityMeta) -> List[str]:

        if self.mode == "disabled":
            return []

        if self.mode == "named":
            if self.name not in entity.identities:
                raise UnknownIdentityError(f"Entity '{entity.name}' has no identity '{self.name}'.")
            return list(entity.identities[self.name])

        return list(entity.primary_key)

    def build_filter(self, entity: EntityMeta, arguments: Dict[str, Any]) -> Optional[IdentityFilter]:
        """
        Build the equality filter from top-level tool arguments.

        Returns None when identity is disabled. Missing keys are kept as None
        so the lookup fails with not-found instead of matching everything.
        """

        keys = self.keys(entity)

        if not keys:
            return None

        return IdentityFilter(conditions=tuple((k, arguments.get(k)) for k in keys))


class ToolDefinition(BaseModel):
    """One named tool over one entity operation. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    name: str
    entity: str
    operation: str
    namespace: Optional[str] = None
    description: Optional[str] = None
    load: LoadSpec = Field(default_factory=list)
    identity: IdentitySpec = Field(default_factory=IdentitySpec)
    action_parameters: Optional[List[str]] = None      # None = every query parameter

    def resolve_load(self, input: Dict[str, Any]) -> List[str]:

        if callable(self.load):
            return list(self.load(input) or [])

        return list(self.load)


class ToolDescriptor(BaseModel):

    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    parameters: Dict[str, Any]

    def to_openai(self) -> Dict[str, Any]:
        """Build an OpenAI function spec."""

        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolStartEvent(BaseModel):

    model_config = ConfigDict(frozen=True)

    tool_name: str
    entity: str
    operation: str
    arguments: Dict[str, Any]
    actor: Any = None
    tenant: Any = None


class ToolEndEvent(BaseModel):

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    tool_name: str
    result: Any
