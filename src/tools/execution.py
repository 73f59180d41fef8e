"""
src/tools/execution.py

Run one tool call against the action provider.

    engine = ExecutionEngine(provider)
    result = engine.run("Post", "read", {"filter": {"title": {"eq": "Hello"}}}, ctx)
    result.ok, result.json

Every outcome is a value: Success(json, raw) or Failure(json). Provider
exceptions are classified into the error envelope (tools/errors.py) and never
escape `run`. There is no retry here; callers decide what a Failure means.
"""


import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import config
from entities.errors import FieldError, InvalidError, NotFoundError
from entities.metadata import EntityMeta, Kind, OperationMeta
from entities.query import OPERATORS, Query, SortSpec, iter_filter_fields, normalize_filter
from tools.definition import IdentitySpec, LoadSpec, ToolEndEvent, ToolStartEvent
from tools.errors import serialize_errors, to_error_entries


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionContext:
    """Per-call context. Built fresh for every tool call, never shared."""

    actor: Any = None
    tenant: Any = None
    context: Mapping[str, Any] = field(default_factory=dict)
    on_tool_start: Optional[Callable[[ToolStartEvent], None]] = None
    on_tool_end: Optional[Callable[[ToolEndEvent], None]] = None
    load: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Success:

    json: str
    raw: Any = None

    @property
    def ok(self) -> bool:

        return True


@dataclass(frozen=True)
class Failure:

    json: str

    @property
    def ok(self) -> bool:

        return False

    @property
    def errors(self) -> List[Dict[str, Any]]:
        """The decoded error envelope."""

        return json.loads(self.json)


ToolResult = Union[Success, Failure]


# --- Argument helpers ----------------------------------------------------------
def decode_arguments(arguments: Any) -> Dict[str, Any]:
    """
    Normalise raw tool-call arguments into a dict.

    None and "" become {}; strings are parsed as JSON. Anything that is not a
    JSON object raises InvalidError so it ends up as a Failure result.
    """

    if arguments is None:
        return {}

    if isinstance(arguments, (str, bytes)):
        if not arguments.strip():
            return {}
        try:
            arguments = json.loads(arguments)
        except json.JSONDecodeError as e:
            raise InvalidError.single(
                None,
                f"tool arguments are not valid JSON ({e.msg} at position {e.pos})",
                pointer="/",
                code="invalid_json",
                title="InvalidJson",
            )

    if not isinstance(arguments, Mapping):
        raise InvalidError.single(None, "tool arguments must be a JSON object", pointer="/", code="invalid_json", title="InvalidJson")

    return dict(arguments)

def build_limit(limit: Any, operation: OperationMeta) -> int:
    """
    Effective page size for a query.

    - limit and max page size both set: the smaller of the two
    - limit set, no max: the limit as given
    - no limit: the operation's default limit, else config.DEFAULT_PAGE_SIZE
    """

    if limit is None:
        return operation.default_limit or config.DEFAULT_PAGE_SIZE

    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
        raise InvalidError.single(None, "limit must be a non-negative integer", pointer="/limit")

    if operation.max_page_size is not None:
        return min(limit, operation.max_page_size)

    return limit

def _build_offset(offset: Any) -> int:

    if offset is None:
        return 0

    if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
        raise InvalidError.single(None, "offset must be a non-negative integer", pointer="/offset")

    return offset

def _build_sort(entity: EntityMeta, sort: Any) -> Tuple[SortSpec, ...]:

    if not sort:
        return ()

    if not isinstance(sort, list):
        raise InvalidError.single(None, "sort must be a list of {field, direction}", pointer="/sort")

    out = []
    errors = []

    for i, item in enumerate(sort):
        name = item.get("field") if isinstance(item, dict) else None
        direction = (item.get("direction") or "asc") if isinstance(item, dict) else "asc"
        f = entity.field(name) if isinstance(name, str) else None

        if f is None or not f.public or not f.sortable:
            errors.append(FieldError(name, "is not a sortable field", pointer=f"/sort/{i}/field", code="invalid_sort", title="InvalidSort"))
        elif direction not in ("asc", "desc"):
            errors.append(FieldError(name, "direction must be asc or desc", pointer=f"/sort/{i}/direction", code="invalid_sort", title="InvalidSort"))
        else:
            out.append(SortSpec(field=name, descending=direction == "desc"))

    if errors:
        raise InvalidError(errors)

    return tuple(out)

def _check_filter(entity: EntityMeta, flt: Optional[Dict[str, Any]]) -> None:

    errors = []

    for name, op, pointer in iter_filter_fields(flt):
        f = entity.field(name)
        if f is None or not f.public or not f.filterable:
            errors.append(FieldError(name, "is not a filterable field", pointer=pointer, code="invalid_filter", title="InvalidFilter"))
        elif op not in OPERATORS:
            errors.append(FieldError(name, f"unknown operator '{op}'", pointer=pointer, code="invalid_filter", title="InvalidFilter"))

    if errors:
        raise InvalidError(errors)

def _accepted_inputs(entity: EntityMeta, operation: OperationMeta) -> List[str]:

    names = [f.name for f in entity.writable_fields(operation)]

    return names + [a.name for a in operation.public_arguments if a.name not in names]

def _validate_input(entity: EntityMeta, operation: OperationMeta, input: Any) -> Dict[str, Any]:

    if not isinstance(input, dict):
        raise InvalidError.single(None, "input must be an object", pointer="/input")

    allowed = _accepted_inputs(entity, operation)
    unknown = [k for k in input if k not in allowed]

    if unknown:
        valid = ", ".join(allowed) or "none"
        raise InvalidError([
            FieldError(k, f"is not an input of {entity.name}.{operation.name} (valid inputs: {valid})", code="invalid_argument", title="InvalidArgument")
            for k in unknown
        ])

    return {k: v for k, v in input.items() if k in allowed}


# --- Engine --------------------------------------------------------------------
class ExecutionEngine:

    def __init__(self, provider: Any, show_raised_errors: Optional[bool] = None):

        self.provider = provider
        self.show_raised_errors = show_raised_errors

    def run(
            self,
            entity: str,
            operation: str,
            arguments: Any,
            exec_ctx: Optional[ExecutionContext] = None,
            *,
            identity: Optional[IdentitySpec] = None,
            load: LoadSpec = (),
            action_parameters: Optional[Sequence[str]] = None,
            show_raised_errors: Optional[bool] = None,
    ) -> ToolResult:
        """
        Execute one operation from tool-call arguments.

        Args:
            entity: Entity name.
            operation: Operation name on that entity.
            arguments: Mapping, raw JSON text, or None.
            exec_ctx: Actor/tenant/context for the call.
            identity: Identity selector for update/delete (primary key by default).
            load: Extra output fields, or a callable receiving `input`.
            action_parameters: Query parameters honoured (others are ignored).
            show_raised_errors: Override for including tracebacks in 500 entries.

        Returns:
            Success(json, raw) or Failure(json).
        """

        exec_ctx = exec_ctx or ExecutionContext()

        try:
            args = decode_arguments(arguments)
            ent = self.provider.entity(entity)
            op = ent.operation(operation)
            input = _validate_input(ent, op, args.get("input") or {})

            resolved = load(input) if callable(load) else load
            ctx = replace(exec_ctx, load=tuple(resolved or ()))

            raw, payload = _RUNNERS[op.kind](self, ent, op, args, input, ctx, identity or IdentitySpec.default(), action_parameters)

            return Success(json=json.dumps(payload, default=str), raw=raw)

        except Exception as error:
            show = show_raised_errors
            if show is None:
                show = self.show_raised_errors if self.show_raised_errors is not None else config.SHOW_RAISED_ERRORS
            return Failure(json=serialize_errors(to_error_entries(error, show)))

    # --- Runners ---------------------------------------------------------------
    def _run_query(self, ent, op, args, input, ctx, identity, action_parameters):

        allowed = set(config.DEFAULT_ACTION_PARAMETERS if action_parameters is None else action_parameters)

        def param(name: str, default: Any = None) -> Any:

            return args.get(name, default) if name in allowed else default

        flt = normalize_filter(param("filter"))
        _check_filter(ent, flt)

        query = Query(
            entity=ent.name,
            operation=op.name,
            filter=flt,
            sort=_build_sort(ent, param("sort")),
            limit=build_limit(param("limit"), op),
            offset=_build_offset(param("offset")),
            input=input,
            load=ctx.load,
        )
        result_type = param("result_type") or "run_query"

        if result_type == "run_query":
            raw = self.provider.read(query, ctx)
            return raw, self.provider.serialize(raw, ent.name, ctx.load, ctx)

        if result_type == "count":
            raw = self.provider.count(query.without_pagination(), ctx)
            return raw, raw

        if result_type == "exists":
            raw = self.provider.exists(query.without_pagination(), ctx)
            return raw, raw

        if isinstance(result_type, dict) and "aggregate" in result_type:
            kind, name = result_type.get("aggregate"), result_type.get("field")
            if kind not in config.AGGREGATE_KINDS:
                raise InvalidError.single(None, f"invalid aggregate function '{kind}'", pointer="/result_type/aggregate")
            f = ent.field(name) if isinstance(name, str) else None
            if f is None or not f.public:
                raise InvalidError.single(name, "no such field", pointer="/result_type/field")
            raw = self.provider.aggregate(query, kind, name, ctx)
            return raw, self.provider.serialize(raw, None, ())

        raise InvalidError.single(None, f"unknown result_type {result_type!r}", pointer="/result_type")

    def _run_create(self, ent, op, args, input, ctx, identity, action_parameters):

        raw = self.provider.create(ent.name, op.name, input, ctx)

        return raw, self.provider.serialize(raw, ent.name, ctx.load, ctx)

    def _run_single(self, mutate, ent, op, args, input, ctx, identity):

        identity_filter = identity.build_filter(ent, args)
        query = Query(
            entity=ent.name,
            operation=op.name,
            identity=identity_filter,
            limit=1,
            input=input,
            load=ctx.load,
        )
        records = mutate(query, ctx)

        if not records:
            raise NotFoundError(ent.name, identity_filter.as_dict() if identity_filter else {})

        raw = records[0]

        return raw, self.provider.serialize(raw, ent.name, ctx.load, ctx)

    def _run_update(self, ent, op, args, input, ctx, identity, action_parameters):

        return self._run_single(self.provider.update, ent, op, args, input, ctx, identity)

    def _run_delete(self, ent, op, args, input, ctx, identity, action_parameters):

        return self._run_single(self.provider.delete, ent, op, args, input, ctx, identity)

    def _run_custom(self, ent, op, args, input, ctx, identity, action_parameters):

        raw = self.provider.run_custom(ent.name, op.name, input, ctx)

        if op.returns is None:
            return raw, "success"

        return raw, self.provider.serialize(raw, op.returns, ctx.load, ctx)


_RUNNERS: Dict[Kind, Callable[..., Tuple[Any, Any]]] = {
    Kind.QUERY: ExecutionEngine._run_query,
    Kind.CREATE: ExecutionEngine._run_create,
    Kind.UPDATE: ExecutionEngine._run_update,
    Kind.DELETE: ExecutionEngine._run_delete,
    Kind.CUSTOM: ExecutionEngine._run_custom,
}

_missing = set(Kind) - set(_RUNNERS)
if _missing:
    raise ImportError(f"execution runners missing for kinds: {sorted(k.value for k in _missing)}")
