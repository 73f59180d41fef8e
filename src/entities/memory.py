"""
src/entities/memory.py

Reference ActionProvider that keeps records in plain lists of dicts.

Used by the tests and the demo app. It does just enough of what a real entity
framework does for the tool layer to be exercised end to end:
- casts and validates input against field metadata (InvalidError)
- enforces a policy callable on every operation (ForbiddenError)
- scopes records by tenant when the entity declares a tenant field
- applies an operation's static filter to every query it runs
- runs custom operations through registered handler functions
"""


import copy
import logging
import uuid
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from entities import query as q
from entities.errors import FieldError, ForbiddenError, InvalidError
from entities.metadata import EntityMeta, FieldMeta, Kind, Namespace, OperationMeta, UnknownEntityError
from entities.provider import CallContext


logger = logging.getLogger(__name__)

Record = Dict[str, Any]
Policy = Callable[[Any, Any, str, str, Dict[str, Any]], bool]
Handler = Callable[["InMemoryActionProvider", Dict[str, Any], CallContext], Any]


class InMemoryActionProvider:

    def __init__(
            self,
            namespaces: Iterable[Namespace],
            records: Optional[Dict[str, List[Record]]] = None,
            *,
            policy: Optional[Policy] = None,
            handlers: Optional[Dict[Tuple[str, str], Handler]] = None,
    ):

        self._namespaces: Dict[str, Namespace] = {}
        self._entities: Dict[str, EntityMeta] = {}

        for ns in namespaces:
            self._namespaces[ns.name] = ns
            for ent in ns.entities:
                self._entities[ent.name] = ent

        self._records: Dict[str, List[Record]] = {name: [] for name in self._entities}
        for name, rows in (records or {}).items():
            self._records.setdefault(name, []).extend(copy.deepcopy(rows))

        self.policy = policy
        self._handlers: Dict[Tuple[str, str], Handler] = dict(handlers or {})

    def register_handler(self, entity: str, operation: str, handler: Handler) -> None:

        self._handlers[(entity, operation)] = handler

    def records(self, entity: str) -> List[Record]:
        """Live record list for an entity (handlers mutate it directly)."""

        self.entity(entity)

        return self._records.setdefault(entity, [])

    # --- Metadata ----------------------------------------------------------------
    def namespaces(self) -> List[Namespace]:

        return list(self._namespaces.values())

    def namespace(self, name: str) -> Namespace:

        if name not in self._namespaces:
            raise UnknownEntityError(f"Unknown namespace '{name}'.")

        return self._namespaces[name]

    def entity(self, name: str) -> EntityMeta:

        if name not in self._entities:
            raise UnknownEntityError(f"Unknown entity '{name}'.")

        return self._entities[name]

    # --- Policy ------------------------------------------------------------------
    def can(self, actor: Any, tenant: Any, entity: str, operation: str, input: Dict[str, Any]) -> bool:

        if self.policy is None:
            return True

        return bool(self.policy(actor, tenant, entity, operation, input))

    def _authorize(self, ctx: CallContext, entity: str, operation: str, input: Dict[str, Any]) -> None:

        if not self.can(ctx.actor, ctx.tenant, entity, operation, input):
            raise ForbiddenError(entity, operation)

    # --- Queries -----------------------------------------------------------------
    def read(self, query: q.Query, ctx: CallContext) -> List[Record]:

        return [dict(r) for r in self._select(query, ctx)]

    def count(self, query: q.Query, ctx: CallContext) -> int:

        return len(self._select(query.without_pagination(), ctx))

    def exists(self, query: q.Query, ctx: CallContext) -> bool:

        return bool(self._select(query, ctx))

    def aggregate(self, query: q.Query, kind: str, field: str, ctx: CallContext) -> Any:

        return q.aggregate(self._select(query, ctx), kind, field)

    # --- Mutations ---------------------------------------------------------------
    def create(self, entity: str, operation: str, input: Dict[str, Any], ctx: CallContext) -> Record:

        ent = self.entity(entity)
        op = ent.operation(operation)
        self._authorize(ctx, entity, operation, input)

        record: Record = {}
        errors: List[FieldError] = []
        _cast_arguments(op, input, errors)

        for f in ent.fields:
            if f.name in input and f.name in op.accept:
                value = input[f.name]
            elif f.default is not None:
                value = copy.deepcopy(f.default)
            else:
                value = None
            record[f.name] = _cast(f, value, errors)

        for key in ent.primary_key:
            if record.get(key) is None and _field_type(ent, key) in ("uuid", "string"):
                record[key] = str(uuid.uuid4())

        if ent.tenant_field:
            record[ent.tenant_field] = self._require_tenant(ent, ctx)

        errors.extend(_required_errors(ent, record))

        if errors:
            raise InvalidError(errors)

        self._records[entity].append(record)
        logger.debug("Created %s %s", entity, {k: record.get(k) for k in ent.primary_key})

        return dict(record)

    def update(self, query: q.Query, ctx: CallContext) -> List[Record]:

        ent = self.entity(query.entity)
        op = ent.operation(query.operation)
        matched = self._select(query, ctx)

        changes: Record = {}
        errors: List[FieldError] = []
        _cast_arguments(op, query.input, errors)

        for f in ent.fields:
            if f.name in query.input and f.name in op.accept:
                changes[f.name] = _cast(f, query.input[f.name], errors)

        if errors:
            raise InvalidError(errors)

        out = []
        for record in matched:
            candidate = {**record, **changes}
            problems = _required_errors(ent, candidate)
            if problems:
                raise InvalidError(problems)
            record.update(changes)
            out.append(dict(record))

        return out

    def delete(self, query: q.Query, ctx: CallContext) -> List[Record]:

        matched = self._select(query, ctx)
        store = self._records[query.entity]
        doomed = {id(r) for r in matched}
        store[:] = [r for r in store if id(r) not in doomed]

        return [dict(r) for r in matched]

    def run_custom(self, entity: str, operation: str, input: Dict[str, Any], ctx: CallContext) -> Any:

        ent = self.entity(entity)
        op = ent.operation(operation)
        self._authorize(ctx, entity, operation, input)

        errors: List[FieldError] = []
        args = _cast_arguments(op, input, errors)

        if errors:
            raise InvalidError(errors)

        handler = self._handlers.get((entity, operation))

        if handler is None:
            raise NotImplementedError(f"No handler registered for {entity}.{operation}")

        return handler(self, args, ctx)

    # --- Output ------------------------------------------------------------------
    def serialize(
            self,
            value: Any,
            returns: Optional[str],
            load: Sequence[str] = (),
            ctx: Optional[CallContext] = None,
    ) -> Any:

        if returns in self._entities:
            ent = self._entities[returns]
            if isinstance(value, list):
                return [self._serialize_record(ent, r, load, ctx) for r in value]
            if value is None:
                return None
            return self._serialize_record(ent, value, load, ctx)

        return _jsonable(value)

    def _serialize_record(self, ent: EntityMeta, record: Record, load: Sequence[str], ctx: Optional[CallContext]) -> Record:

        out = {f.name: _jsonable(record.get(f.name)) for f in ent.public_fields}

        for name in load:
            f = ent.field(name)
            rel = ent.relationship(name)
            if f is not None:
                out[name] = _jsonable(record.get(name))
            elif rel is not None:
                dest = self._entities[rel.destination]
                related = [
                    self._serialize_record(dest, r, (), ctx)
                    for r in self._related(dest, ctx)
                    if r.get(rel.destination_field) == record.get(rel.source_field)
                ]
                out[name] = related if rel.many else (related[0] if related else None)

        return out

    def _related(self, dest: EntityMeta, ctx: Optional[CallContext]) -> List[Record]:
        """Destination rows the caller may read: same tenant, and the policy allows a read."""

        actor = getattr(ctx, "actor", None)
        tenant = getattr(ctx, "tenant", None)
        reads = [op.name for op in dest.operations if op.kind == Kind.QUERY]

        if not reads or not self.can(actor, tenant, dest.name, reads[0], {}):
            return []

        pool = self._records.get(dest.name, [])

        if dest.tenant_field:
            if tenant is None:
                return []
            pool = [r for r in pool if r.get(dest.tenant_field) == tenant]

        return pool

    # --- Internals ---------------------------------------------------------------
    def _select(self, query: q.Query, ctx: CallContext) -> List[Record]:
        """Authorize, then return the live records the query matches."""

        ent = self.entity(query.entity)
        op = ent.operation(query.operation)
        self._authorize(ctx, query.entity, query.operation, query.input)

        if op.kind in (Kind.UPDATE, Kind.DELETE) and query.identity is None and not op.filter and not query.filter:
            raise InvalidError.single(
                None,
                f"{ent.name}.{op.name} needs an identity or a filter to select a record",
                code="invalid_query",
            )

        pool = self._records.get(query.entity, [])

        if ent.tenant_field:
            tenant = self._require_tenant(ent, ctx)
            pool = [r for r in pool if r.get(ent.tenant_field) == tenant]

        clauses = [c for c in (op.filter, query.filter) if c]
        combined = {"and": clauses} if clauses else None

        return q.apply(pool, q.Query(
            entity=query.entity,
            operation=query.operation,
            filter=combined,
            identity=query.identity,
            sort=query.sort,
            limit=query.limit,
            offset=query.offset,
        ))

    def _require_tenant(self, ent: EntityMeta, ctx: CallContext) -> Any:

        if ctx.tenant is None:
            raise InvalidError.single(
                None,
                f"{ent.name} is multitenant; a tenant is required",
                code="tenant_required",
                title="TenantRequired",
            )

        return ctx.tenant


# --- Casting -------------------------------------------------------------------
def _field_type(ent: EntityMeta, name: str) -> Optional[str]:

    f = ent.field(name)

    return f.type if f else None

def _cast_arguments(op: OperationMeta, input: Dict[str, Any], errors: List[FieldError]) -> Dict[str, Any]:
    """Cast operation arguments, defaults included; collect problems into `errors`."""

    args = {}

    for a in op.arguments:
        value = _cast(a, input.get(a.name, copy.deepcopy(a.default)), errors)
        if value is None and not a.allow_nil:
            errors.append(FieldError(a.name, "is required", code="required", title="Required"))
        args[a.name] = value

    return args

def _required_errors(ent: EntityMeta, record: Record) -> List[FieldError]:

    return [
        FieldError(f.name, "is required", code="required", title="Required")
        for f in ent.fields
        if not f.allow_nil and record.get(f.name) is None and f.name not in ent.primary_key
    ]

def _cast(f: FieldMeta, value: Any, errors: List[FieldError]) -> Any:
    """Cast a JSON value to the field's type; append a FieldError and return None on failure."""

    if value is None:
        return None

    try:
        out = _CASTERS[f.type](value)
    except (KeyError, TypeError, ValueError):
        errors.append(FieldError(f.name, f"is not a valid {f.type}"))
        return None

    if f.enum is not None and out not in f.enum:
        errors.append(FieldError(f.name, f"must be one of {', '.join(f.enum)}", meta={"enum": list(f.enum)}))
        return None

    return out

def _to_int(value: Any) -> int:

    if isinstance(value, bool):
        raise TypeError("booleans are not integers")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError("not a whole number")

    return int(value)

def _to_number(value: Any) -> float:

    if isinstance(value, bool):
        raise TypeError("booleans are not numbers")

    return value if isinstance(value, (int, float)) else float(value)

def _to_bool(value: Any) -> bool:

    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"

    raise ValueError("not a boolean")

def _to_uuid(value: Any) -> str:

    return str(uuid.UUID(str(value)))

def _to_date(value: Any) -> str:

    if isinstance(value, date):
        return value.isoformat()

    return date.fromisoformat(str(value)).isoformat()

def _to_datetime(value: Any) -> str:

    if isinstance(value, datetime):
        return value.isoformat()

    return datetime.fromisoformat(str(value)).isoformat()

def _to_map(value: Any) -> Dict[str, Any]:

    if not isinstance(value, dict):
        raise TypeError("not an object")

    return value

def _to_array(value: Any) -> List[Any]:

    if not isinstance(value, list):
        raise TypeError("not an array")

    return value


_CASTERS: Dict[str, Callable[[Any], Any]] = {
    "string": str,
    "integer": _to_int,
    "number": _to_number,
    "boolean": _to_bool,
    "uuid": _to_uuid,
    "date": _to_date,
    "datetime": _to_datetime,
    "map": _to_map,
    "array": _to_array,
}

def _jsonable(value: Any) -> Any:

    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]

    return value
