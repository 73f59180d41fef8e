"""
src/orchestrator/llm_openai.py

OpenAI client wrapper implementing the LLMProvider interface.
- generate(): one shot chat completion, tool calls returned unexecuted
- stream(): the same call streamed as StreamChunks
- generate_object(): structured output constrained by a JSON schema
"""


import json
from typing import Any, Dict, Iterator, List, Optional, Sequence

import openai
from openai import OpenAI

import config
from orchestrator.models import ChunkType, Message, Role, StreamChunk, ToolCall
from orchestrator.provider import LLMProviderError
from tools.definition import ToolDescriptor


def to_openai_message(message: Message) -> Dict[str, Any]:
    """Convert a history message to the Chat Completions wire shape."""

    if message.role == Role.TOOL:
        return {"role": "tool", "tool_call_id": message.tool_call_id, "content": message.content or ""}

    if message.role == Role.ASSISTANT:
        out: Dict[str, Any] = {"role": "assistant", "content": message.text}
        if message.tool_calls:
            out["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": _arguments_text(tc.arguments)},
                }
                for tc in message.tool_calls
            ]
        return out

    if message.parts:
        content = []
        for p in message.parts:
            if p.type == "image_url":
                content.append({"type": "image_url", "image_url": {"url": p.image_url}})
            else:
                content.append({"type": "text", "text": p.text or ""})
        return {"role": message.role.value, "content": content}

    return {"role": message.role.value, "content": message.content or ""}

def _arguments_text(arguments: Any) -> str:

    if arguments is None:
        return "{}"

    if isinstance(arguments, str):
        return arguments

    return json.dumps(arguments)

def extract_tool_calls(choice) -> List[ToolCall]:
    """
    Normalize tool calls from the OpenAI response choice.

    Arguments are kept as the raw JSON text; the execution engine decodes them
    so malformed JSON turns into a tool Failure rather than an exception here.
    """

    out = []
    tcs = getattr(choice.message, "tool_calls", None)

    if not tcs:
        return out

    for tc in tcs:
        if tc.type == "function" and tc.function:
            out.append(ToolCall(id=tc.id, name=tc.function.name, arguments=tc.function.arguments or None))

    return out


class OpenAIProvider:

    def __init__(self, client: Optional[OpenAI] = None, temperature: float = config.DEFAULT_TEMPERATURE):

        self._client = client
        self.temperature = temperature

    @property
    def client(self) -> OpenAI:

        if self._client is None:
            self._client = OpenAI(api_key=config.OPENAI_API_KEY)

        return self._client

    def call_model(self, model: str, messages: Sequence[Message], tools: Sequence[ToolDescriptor] = (), **extra: Any):
        """
        Low-level call to OpenAI Chat Completions with optional tool specs.
        Returns the raw response object (or stream).
        """

        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": [to_openai_message(m) for m in messages],
            "temperature": self.temperature,
            **extra,
        }

        if tools:
            kwargs["tools"] = [t.to_openai() for t in tools]
            kwargs["tool_choice"] = "auto"

        try:
            return self.client.chat.completions.create(**kwargs)
        except openai.OpenAIError as e:
            raise LLMProviderError(f"OpenAI request failed: {e}") from e

    def generate(self, model: str, messages: Sequence[Message], tools: Sequence[ToolDescriptor]) -> Message:

        resp = self.call_model(model, messages, tools)

        if not resp.choices:
            raise LLMProviderError("OpenAI returned no choices")

        choice = resp.choices[0]

        return Message.assistant(choice.message.content, extract_tool_calls(choice))

    def stream(self, model: str, messages: Sequence[Message], tools: Sequence[ToolDescriptor]) -> Iterator[StreamChunk]:

        resp = self.call_model(model, messages, tools, stream=True)

        try:
            for chunk in resp:
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta

                if delta is not None and delta.content:
                    yield StreamChunk(type=ChunkType.CONTENT, text=delta.content)

                for tc in (delta.tool_calls if delta is not None else None) or []:
                    fn = tc.function
                    if tc.id or (fn is not None and fn.name):
                        yield StreamChunk(type=ChunkType.TOOL_CALL, index=tc.index, tool_call_id=tc.id, name=fn.name if fn else None)
                    if fn is not None and fn.arguments:
                        yield StreamChunk(type=ChunkType.TOOL_CALL_ARGS, index=tc.index, arguments=fn.arguments)

                if choice.finish_reason:
                    yield StreamChunk(type=ChunkType.FINISH, finish_reason=choice.finish_reason)
        except openai.OpenAIError as e:
            raise LLMProviderError(f"OpenAI stream failed: {e}") from e

    def generate_object(self, model: str, messages: Sequence[Message], schema: Dict[str, Any]) -> Dict[str, Any]:

        resp = self.call_model(
            model,
            messages,
            response_format={
                "type": "json_schema",
                "json_schema": {"name": "result", "schema": schema},
            },
        )

        if not resp.choices:
            raise LLMProviderError("OpenAI returned no choices")

        text = resp.choices[0].message.content or ""

        try:
            out = json.loads(text)
        except json.JSONDecodeError as e:
            raise LLMProviderError(f"Structured output was not valid JSON: {e.msg}") from e

        if not isinstance(out, dict):
            raise LLMProviderError("Structured output was not a JSON object")

        return out
