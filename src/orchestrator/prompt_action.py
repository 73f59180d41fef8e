"""
src/orchestrator/prompt_action.py

Custom operations fulfilled by the model instead of code.

    action = PromptAction("Task", "summarize_backlog", llm, tools=True)
    action.install(provider)

The handler asks the LLM for a JSON object {"result": ...} whose value matches
the operation's return type. With `tools` set, the tool loop runs first (bound
to the caller's actor/tenant) and its conversation is what the final
structured call sees. Loop failures surface as LLMProviderError, i.e. a 500
envelope of the operation.
"""


import dataclasses
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from entities.metadata import FIELD_TYPES, EntityMeta, FieldMeta, OperationMeta
from orchestrator.loop import LoopOptions, ToolLoop, ToolLoopError
from orchestrator.models import Message
from orchestrator.provider import LLMProviderError
from tools import registry as tool_registry
from tools.schema import field_type


logger = logging.getLogger(__name__)

PromptSpec = Union[
    str,
    Tuple[str, str],
    Callable[[Dict[str, Any], Any], Sequence[Message]],
]


# --- Prompt --------------------------------------------------------------------
def default_prompt(op: OperationMeta, args: Dict[str, Any]) -> List[Message]:
    """System message from the operation description, user message listing the inputs."""

    lines = [f"You are responsible for performing the `{op.name}` action."]

    if op.description:
        lines += ["", "# Description", op.description.strip()]

    if op.public_arguments:
        lines += ["", "## Inputs"]
        for a in op.public_arguments:
            lines.append(f"- {a.name}: {a.description}" if a.description else f"- {a.name}")

    inputs = ["# Action Inputs", ""]
    inputs += [f"- {name}: {json.dumps(value, default=str)}" for name, value in args.items()]

    return [Message.system("\n".join(lines)), Message.user("\n".join(inputs))]

def render_prompt(prompt: Optional[PromptSpec], op: OperationMeta, args: Dict[str, Any], ctx: Any) -> List[Message]:
    """
    Build the opening messages.

    - None:               default_prompt
    - "template {x}":     one user message, str.format over the arguments
    - (system, user):     two templates
    - callable(args, ctx): returns the messages itself
    """

    if prompt is None:
        return default_prompt(op, args)

    if callable(prompt):
        return [m if isinstance(m, Message) else Message.model_validate(m) for m in prompt(args, ctx)]

    if isinstance(prompt, tuple):
        system, user = prompt
        return [Message.system(system.format(**args)), Message.user(user.format(**args))]

    return [Message.user(prompt.format(**args))]


# --- Result schema -------------------------------------------------------------
def _entity_schema(ent: EntityMeta) -> Dict[str, Any]:

    props = {f.name: field_type(f) for f in ent.public_fields}

    return {
        "type": "object",
        "properties": props,
        "required": [f.name for f in ent.public_fields if not f.allow_nil],
        "additionalProperties": False,
    }

def result_schema(provider: Any, op: OperationMeta) -> Dict[str, Any]:
    """{"result": <return type>} as a closed object schema."""

    returns = op.returns or "string"

    if returns in FIELD_TYPES:
        inner = {"type": "object"} if returns == "map" else field_type(FieldMeta(name="result", type=returns))
    else:
        inner = _entity_schema(provider.entity(returns))

    return {
        "type": "object",
        "properties": {"result": inner},
        "required": ["result"],
        "additionalProperties": False,
    }


# --- Handler -------------------------------------------------------------------
class PromptAction:
    """
    Handler for a custom operation, callable as (provider, args, ctx).

    Args:
        entity, operation: The operation this handler fulfils.
        llm: LLMProvider.
        prompt: See render_prompt.
        tools: False (no loop), True (every tool the provider exposes) or a
            ToolSelection. The selection is always re-bound to the caller.
        options: LoopOptions for both the loop and the structured call's model.
    """

    def __init__(
            self,
            entity: str,
            operation: str,
            llm: Any,
            *,
            prompt: Optional[PromptSpec] = None,
            tools: Union[bool, tool_registry.ToolSelection] = False,
            options: Optional[LoopOptions] = None,
    ):

        self.entity = entity
        self.operation = operation
        self.llm = llm
        self.prompt = prompt
        self.tools = tools
        self.options = options or LoopOptions()

    def install(self, provider: Any) -> None:

        provider.register_handler(self.entity, self.operation, self)

    def __call__(self, provider: Any, args: Dict[str, Any], ctx: Any) -> Any:

        op = provider.entity(self.entity).operation(self.operation)
        messages = render_prompt(self.prompt, op, args, ctx)

        if self.tools:
            messages = self._run_tools(provider, messages, ctx)

        out = self.llm.generate_object(self.options.model, messages, result_schema(provider, op))

        if "result" not in out:
            raise LLMProviderError(f"Structured output for {self.entity}.{self.operation} had no 'result' key")

        return out["result"]

    def _run_tools(self, provider: Any, messages: List[Message], ctx: Any) -> List[Message]:

        base = self.tools if isinstance(self.tools, tool_registry.ToolSelection) else tool_registry.ToolSelection()
        selection = dataclasses.replace(
            base,
            actor=getattr(ctx, "actor", None),
            tenant=getattr(ctx, "tenant", None),
            context=dict(getattr(ctx, "context", None) or {}),
        )
        toolkit = tool_registry.build(provider, selection)
        options = self.options.model_copy(update={"include_messages": True})

        try:
            result = ToolLoop(self.llm, toolkit, options).run(messages)
        except ToolLoopError as e:
            logger.debug("Prompt action %s.%s: tool loop failed (%s)", self.entity, self.operation, e.reason.value)
            raise LLMProviderError(f"Tool loop failed in prompt action: {e}") from e

        return list(result.messages or [])
