"""
src/tools/schema.py

JSON-schema generation for tool parameters.

Pure functions of entity/operation metadata: no provider calls except in
`for_tool`, which only resolves metadata. The same metadata always gives the
same schema, key order included.

Shape per operation kind:
- query:  input? filter sort limit offset result_type
- create: input (accepted writable fields + public arguments)
- update: input + identity keys at the top level
- delete: identity keys only
- custom: input (public arguments only)
"""


from typing import Any, Callable, Dict, List, Optional, Sequence

from config import AGGREGATE_KINDS, DEFAULT_ACTION_PARAMETERS, DEFAULT_PAGE_SIZE, QUERY_RESULT_TYPES
from entities.metadata import ORDERABLE_TYPES, EntityMeta, FieldMeta, Kind, OperationMeta
from tools.definition import IdentitySpec, ToolDefinition


_FORMATS = {"uuid": "uuid", "date": "date", "datetime": "date-time"}
_JSON_TYPES = {
    "string": "string",
    "uuid": "string",
    "date": "string",
    "datetime": "string",
    "integer": "integer",
    "number": "number",
    "boolean": "boolean",
    "map": "object",
    "array": "array",
}


# --- Field types ---------------------------------------------------------------
def _value_type(type_name: str, items: Optional[str] = None) -> Dict[str, Any]:

    out: Dict[str, Any] = {"type": _JSON_TYPES.get(type_name, "string")}

    if type_name in _FORMATS:
        out["format"] = _FORMATS[type_name]

    if type_name == "array":
        out["items"] = _value_type(items or "string")

    return out

def field_type(f: FieldMeta) -> Dict[str, Any]:
    """JSON schema for writing a value to `f` (attribute or argument)."""

    out = _value_type(f.type, f.items)

    if f.enum is not None:
        out["enum"] = list(f.enum)

    if f.description:
        out["description"] = f.description

    if f.default is not None:
        out["default"] = f.default

    return out

def filter_type(f: FieldMeta) -> Dict[str, Any]:
    """Operator object accepted for one field inside `filter`."""

    value = _value_type(f.type, f.items)
    if f.enum is not None:
        value["enum"] = list(f.enum)

    ops: Dict[str, Any] = {
        "eq": value,
        "not_eq": value,
        "in": {"type": "array", "items": value},
        "is_nil": {"type": "boolean"},
    }

    if f.type in ORDERABLE_TYPES:
        for op in ("gt", "gte", "lt", "lte"):
            ops[op] = value

    if f.type == "string":
        ops["contains"] = {"type": "string"}

    out: Dict[str, Any] = {"type": "object", "properties": ops, "additionalProperties": False}

    if f.description:
        out["description"] = f.description

    return out


# --- Input object --------------------------------------------------------------
def _input_schema(fields: List[FieldMeta], required: List[str]) -> Optional[Dict[str, Any]]:

    if not fields:
        return None

    return {
        "type": "object",
        "properties": {f.name: field_type(f) for f in fields},
        "required": required,
        "additionalProperties": False,
    }

def _root(properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:

    return {
        "type": "object",
        "properties": properties,
        "required": required,
        "additionalProperties": False,
    }

def _merge_fields(*groups: List[FieldMeta]) -> List[FieldMeta]:
    """Concatenate field lists, first occurrence of a name wins."""

    seen = set()
    out = []

    for group in groups:
        for f in group:
            if f.name not in seen:
                out.append(f)
                seen.add(f.name)

    return out

def _identity_properties(entity: EntityMeta, identity: IdentitySpec) -> Dict[str, Any]:

    props = {}

    for key in identity.keys(entity):
        f = entity.field(key) or FieldMeta(name=key)
        props[key] = field_type(f)

    return props


# --- Per-kind builders ---------------------------------------------------------
def _query(entity: EntityMeta, op: OperationMeta, restriction: Sequence[str], identity: IdentitySpec) -> Dict[str, Any]:

    args = op.public_arguments
    props: Dict[str, Any] = {}

    input_schema = _input_schema(args, [a.name for a in args if a.required])
    if input_schema is not None:
        props["input"] = input_schema

    public = entity.public_fields
    filterable = [f for f in public if f.filterable]
    sortable = [f.name for f in public if f.sortable]

    params: Dict[str, Any] = {
        "filter": {
            "type": "object",
            "description": "Filter results",
            "properties": {f.name: filter_type(f) for f in filterable},
            "additionalProperties": False,
        },
    }

    if sortable:
        params["sort"] = {
            "type": "array",
            "description": "Sort order, first entry wins",
            "items": {
                "type": "object",
                "properties": {
                    "field": {"type": "string", "description": "The field to sort by", "enum": sortable},
                    "direction": {
                        "type": "string",
                        "description": "The direction to sort by",
                        "enum": ["asc", "desc"],
                        "default": "asc",
                    },
                },
                "required": ["field"],
                "additionalProperties": False,
            },
        }

    params["limit"] = {
        "type": "integer",
        "description": "The maximum number of records to return",
        "default": op.default_limit or DEFAULT_PAGE_SIZE,
    }
    params["offset"] = {
        "type": "integer",
        "description": "The number of records to skip",
        "default": 0,
    }

    variants: List[Dict[str, Any]] = [{
        "type": "string",
        "description": "Run the query returning all results, or return a count of results, or check if any results exist",
        "enum": list(QUERY_RESULT_TYPES),
    }]
    if public:
        variants.append({
            "type": "object",
            "properties": {
                "aggregate": {"type": "string", "description": "The aggregate function to use", "enum": list(AGGREGATE_KINDS)},
                "field": {"type": "string", "description": "The field to aggregate", "enum": [f.name for f in public]},
            },
            "required": ["aggregate", "field"],
            "additionalProperties": False,
        })
    params["result_type"] = {
        "description": "The type of result to return",
        "default": "run_query",
        "oneOf": variants,
    }

    for name in DEFAULT_ACTION_PARAMETERS:
        if name in params and name in restriction:
            props[name] = params[name]

    return _root(props, [])

def _create(entity: EntityMeta, op: OperationMeta, restriction: Sequence[str], identity: IdentitySpec) -> Dict[str, Any]:

    fields = _merge_fields(entity.writable_fields(op), op.public_arguments)
    input_schema = _input_schema(fields, [f.name for f in fields if f.required])

    if input_schema is None:
        return _root({}, [])

    return _root({"input": input_schema}, ["input"])

def _update(entity: EntityMeta, op: OperationMeta, restriction: Sequence[str], identity: IdentitySpec) -> Dict[str, Any]:

    args = op.public_arguments
    fields = _merge_fields(entity.writable_fields(op), args)
    input_schema = _input_schema(fields, [a.name for a in args if a.required])

    props: Dict[str, Any] = {}
    required: List[str] = []

    if input_schema is not None:
        props["input"] = input_schema
        required.append("input")

    for key, schema in _identity_properties(entity, identity).items():
        props.setdefault(key, schema)

    return _root(props, required)

def _delete(entity: EntityMeta, op: OperationMeta, restriction: Sequence[str], identity: IdentitySpec) -> Dict[str, Any]:

    return _root(_identity_properties(entity, identity), [])

def _custom(entity: EntityMeta, op: OperationMeta, restriction: Sequence[str], identity: IdentitySpec) -> Dict[str, Any]:

    args = op.public_arguments
    input_schema = _input_schema(args, [a.name for a in args if a.required])

    if input_schema is None:
        return _root({}, [])

    return _root({"input": input_schema}, ["input"])


_BUILDERS: Dict[Kind, Callable[[EntityMeta, OperationMeta, Sequence[str], IdentitySpec], Dict[str, Any]]] = {
    Kind.QUERY: _query,
    Kind.CREATE: _create,
    Kind.UPDATE: _update,
    Kind.DELETE: _delete,
    Kind.CUSTOM: _custom,
}

_missing = set(Kind) - set(_BUILDERS)
if _missing:
    raise ImportError(f"schema builders missing for kinds: {sorted(k.value for k in _missing)}")


# --- Public API ----------------------------------------------------------------
def for_operation(
        entity: EntityMeta,
        operation: OperationMeta,
        restriction: Optional[Sequence[str]] = None,
        identity: Optional[IdentitySpec] = None,
) -> Dict[str, Any]:
    """
    Build the parameter schema for one operation.

    Args:
        entity: Metadata of the entity owning the operation.
        operation: The operation to describe.
        restriction: Query parameters to expose (defaults to all of
            filter/sort/limit/offset/result_type). Ignored for other kinds.
        identity: Identity selector for update/delete (defaults to the primary key).

    Returns:
        A JSON-schema dict with `additionalProperties: false` at the root.
    """

    restriction = DEFAULT_ACTION_PARAMETERS if restriction is None else tuple(restriction)
    identity = identity or IdentitySpec.default()

    return _BUILDERS[operation.kind](entity, operation, restriction, identity)

def for_tool(definition: ToolDefinition, provider: Any) -> Dict[str, Any]:
    """Resolve a tool definition's metadata through the provider, then build its schema."""

    entity = provider.entity(definition.entity)
    operation = entity.operation(definition.operation)

    return for_operation(entity, operation, definition.action_parameters, definition.identity)
