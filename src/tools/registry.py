"""
src/tools/registry.py

Discover tool definitions from the provider's namespaces and turn them into
(descriptor, callback) pairs for the loop.

Discovery order:
    1) source: explicit (entity, operations) pairs, else named namespaces,
       else every root namespace the provider reports
    2) filter by entity/operation pairs
    3) filter by tool names ("diagnostics" = the built-in diagnostic tools)
    4) drop excluded (entity, operation) pairs
    5) caller predicate
    6) authorization pre-check with an empty input
    7) de-duplicate, keeping the first occurrence

The resulting toolkit is bound to one actor/tenant/context: callbacks refuse
to run for anyone else.
"""


import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple, Union

from entities import diagnostics
from entities.errors import InvalidError
from entities.metadata import Namespace
from tools import schema
from tools.definition import ToolDefinition, ToolDescriptor, ToolEndEvent, ToolStartEvent
from tools.errors import ErrorEntry, serialize_errors
from tools.execution import ExecutionContext, ExecutionEngine, Failure, ToolResult, decode_arguments


logger = logging.getLogger(__name__)

DIAGNOSTICS = "diagnostics"
ALL = "*"

ActionSelector = Tuple[str, Union[str, Sequence[str]]]


class DuplicateToolError(ValueError):
    pass


class NoMatchingToolsError(ValueError):
    pass


@dataclass
class ToolSelection:
    """
    What to expose and on whose behalf.

    Args:
        actions: [(entity, "*" | [operation, ...]), ...]
        namespaces: Namespace names to source from.
        tools: Tool name(s) to keep, or "diagnostics".
        exclude: [(entity, operation), ...] pairs to drop ("*" drops all of an entity).
        predicate: Arbitrary keep/drop function over ToolDefinition.
        actor, tenant, context: Identity the toolkit is bound to.
        on_tool_start, on_tool_end: Lifecycle callbacks.
    """

    actions: Optional[Sequence[ActionSelector]] = None
    namespaces: Optional[Sequence[str]] = None
    tools: Optional[Union[str, Sequence[str]]] = None
    exclude: Sequence[Tuple[str, str]] = ()
    predicate: Optional[Callable[[ToolDefinition], bool]] = None
    actor: Any = None
    tenant: Any = None
    context: Optional[Mapping[str, Any]] = None
    on_tool_start: Optional[Callable[[ToolStartEvent], None]] = None
    on_tool_end: Optional[Callable[[ToolEndEvent], None]] = None


class Toolkit(NamedTuple):

    tools: List[ToolDescriptor]
    registry: Dict[str, "ToolCallback"]

    def openai_tools(self) -> List[Dict[str, Any]]:

        return [t.to_openai() for t in self.tools]

    @property
    def names(self) -> List[str]:

        return [t.name for t in self.tools]


# --- Discovery -----------------------------------------------------------------
def _stamp(ns: Namespace) -> List[ToolDefinition]:

    return [t if t.namespace else t.model_copy(update={"namespace": ns.name}) for t in ns.tools]

def _selects(selector: Union[str, Sequence[str]], operation: str) -> bool:

    if selector == ALL:
        return True

    if isinstance(selector, str):
        return operation == selector

    return operation in selector

def _source(provider: Any, selection: ToolSelection) -> List[ToolDefinition]:

    if selection.actions:
        available = [t for ns in provider.namespaces() for t in _stamp(ns)]
        out = []
        for entity, ops in selection.actions:
            matched = [t for t in available if t.entity == entity and _selects(ops, t.operation)]
            if not matched:
                raise NoMatchingToolsError(
                    f"No tools found for {entity} with operations {ops!r}. "
                    "Ensure the operations are exposed as tools in a namespace."
                )
            out.extend(matched)
        return out

    if selection.namespaces:
        return [t for name in selection.namespaces for t in _stamp(provider.namespace(name))]

    roots = provider.namespaces()

    if not roots:
        logger.warning("Provider reports no namespaces; no tools will be exposed.")

    return [t for ns in roots for t in _stamp(ns)]

def _filter_by_actions(defs: List[ToolDefinition], selection: ToolSelection) -> List[ToolDefinition]:

    if not selection.actions:
        return defs

    return [
        d for d in defs
        if any(d.entity == entity and _selects(ops, d.operation) for entity, ops in selection.actions)
    ]

def _filter_by_tools(defs: List[ToolDefinition], selection: ToolSelection) -> List[ToolDefinition]:

    wanted = selection.tools

    if wanted is None:
        return defs

    if wanted == DIAGNOSTICS:
        allowed = set(diagnostics.TOOL_NAMES)
    elif isinstance(wanted, str):
        allowed = {wanted}
    else:
        allowed = set(wanted)

    return [d for d in defs if d.name in allowed]

def _filter_by_exclude(defs: List[ToolDefinition], selection: ToolSelection) -> List[ToolDefinition]:

    if not selection.exclude:
        return defs

    return [
        d for d in defs
        if not any(d.entity == entity and _selects(op, d.operation) for entity, op in selection.exclude)
    ]

def _filter_by_predicate(defs: List[ToolDefinition], selection: ToolSelection) -> List[ToolDefinition]:

    if selection.predicate is None:
        return defs

    return [d for d in defs if selection.predicate(d)]

def _can_execute(provider: Any, selection: ToolSelection, d: ToolDefinition) -> bool:

    try:
        return bool(provider.can(selection.actor, selection.tenant, d.entity, d.operation, {}))
    except Exception:
        logger.error(
            "Error raised while checking permissions for %s.%s. "
            "Permission checks run with an empty input; the operation should tolerate that.",
            d.entity, d.operation,
            exc_info=True,
        )
        return False

def _dedupe(defs: List[ToolDefinition]) -> List[ToolDefinition]:

    out: List[ToolDefinition] = []

    for d in defs:
        if d not in out:
            out.append(d)

    return out

def discover(provider: Any, selection: Optional[ToolSelection] = None) -> List[ToolDefinition]:
    """
    Return the tool definitions the selection exposes, in discovery order.

    Raises:
        NoMatchingToolsError: an explicit (entity, operations) pair matched nothing.
        UnknownEntityError: a named namespace does not exist.
    """

    selection = selection or ToolSelection()
    defs = _source(provider, selection)

    for step in (_filter_by_actions, _filter_by_tools, _filter_by_exclude, _filter_by_predicate):
        defs = step(defs, selection)

    defs = [d for d in defs if _can_execute(provider, selection, d)]

    return _dedupe(defs)


# --- Build ---------------------------------------------------------------------
def describe(definition: ToolDefinition, provider: Any) -> str:

    if definition.description:
        return definition.description.strip()

    op = provider.entity(definition.entity).operation(definition.operation)

    if op.description:
        return op.description.strip()

    return f"Call the {definition.operation} operation on the {definition.entity} entity"


class ToolCallback:
    """
    Callable registered under a tool name: (arguments, exec_ctx=None) -> ToolResult.

    Fires on_tool_start, runs the engine, fires on_tool_end. Bound to the
    actor/tenant/context of the selection it was built from.
    """

    def __init__(
            self,
            definition: ToolDefinition,
            engine: ExecutionEngine,
            selection: ToolSelection,
            show_raised_errors: Optional[bool] = None,
    ):

        self.definition = definition
        self.engine = engine
        self.show_raised_errors = show_raised_errors
        self.bound = ExecutionContext(
            actor=selection.actor,
            tenant=selection.tenant,
            context=dict(selection.context or {}),
            on_tool_start=selection.on_tool_start,
            on_tool_end=selection.on_tool_end,
        )

    @property
    def name(self) -> str:

        return self.definition.name

    def __call__(self, arguments: Any, exec_ctx: Optional[ExecutionContext] = None) -> ToolResult:

        ctx = self.bound

        if exec_ctx is not None:
            extra = dict(exec_ctx.context or {})
            clashes = sorted(k for k, v in extra.items() if k in ctx.context and ctx.context[k] != v)
            if exec_ctx.actor != ctx.actor or exec_ctx.tenant != ctx.tenant or clashes:
                logger.warning("Refusing %s: called with a different actor, tenant or context than it was built for", self.name)
                return Failure(json=serialize_errors([ErrorEntry(
                    status=403,
                    code="forbidden",
                    title="Forbidden",
                    detail="this tool is bound to a different actor, tenant or context",
                    meta={"context": clashes} if clashes else None,
                )]))
            ctx = ExecutionContext(
                actor=ctx.actor,
                tenant=ctx.tenant,
                context={**extra, **ctx.context},
                on_tool_start=exec_ctx.on_tool_start or ctx.on_tool_start,
                on_tool_end=exec_ctx.on_tool_end or ctx.on_tool_end,
            )

        d = self.definition

        if ctx.on_tool_start is not None:
            ctx.on_tool_start(ToolStartEvent(
                tool_name=d.name,
                entity=d.entity,
                operation=d.operation,
                arguments=_event_arguments(arguments),
                actor=ctx.actor,
                tenant=ctx.tenant,
            ))

        result = self.engine.run(
            d.entity,
            d.operation,
            arguments,
            ctx,
            identity=d.identity,
            load=d.load,
            action_parameters=d.action_parameters,
            show_raised_errors=self.show_raised_errors,
        )

        if ctx.on_tool_end is not None:
            ctx.on_tool_end(ToolEndEvent(tool_name=d.name, result=result))

        return result


def _event_arguments(arguments: Any) -> Dict[str, Any]:

    try:
        return decode_arguments(arguments)
    except InvalidError:
        return {"raw": arguments}

def build(provider: Any, selection: Optional[ToolSelection] = None, engine: Optional[ExecutionEngine] = None) -> Toolkit:
    """
    Discover tools and wrap each one as (descriptor, callback).

    Args:
        provider: The ActionProvider owning the entities.
        selection: What to expose and for whom (defaults to everything, anonymous).
        engine: Execution engine to run calls with (defaults to a new one over `provider`).

    Returns:
        Toolkit(tools=[ToolDescriptor, ...], registry={name: ToolCallback}).

    Raises:
        DuplicateToolError: two different definitions share a name.
    """

    selection = selection or ToolSelection()
    engine = engine or ExecutionEngine(provider)

    descriptors: List[ToolDescriptor] = []
    registry: Dict[str, ToolCallback] = {}
    seen: Dict[str, ToolDefinition] = {}

    for d in discover(provider, selection):
        if d.name in seen:
            raise DuplicateToolError(
                f"Tool name '{d.name}' is used by both {seen[d.name].entity}.{seen[d.name].operation} "
                f"and {d.entity}.{d.operation}."
            )
        seen[d.name] = d

        show = provider.namespace(d.namespace).show_raised_errors if d.namespace else None

        descriptors.append(ToolDescriptor(
            name=d.name,
            description=describe(d, provider),
            parameters=schema.for_tool(d, provider),
        ))
        registry[d.name] = ToolCallback(d, engine, selection, show_raised_errors=show)

    return Toolkit(tools=descriptors, registry=registry)
