"""
src/orchestrator/provider.py

Interface the loop expects from an LLM backend. See llm_openai.py for the
OpenAI implementation; tests use small scripted fakes.
"""


from typing import Any, Dict, Iterator, Protocol, Sequence, runtime_checkable

from orchestrator.models import Message, StreamChunk
from tools.definition import ToolDescriptor


class LLMProviderError(Exception):
    """Raised by providers for any backend failure (network, auth, bad response)."""


@runtime_checkable
class LLMProvider(Protocol):

    def generate(self, model: str, messages: Sequence[Message], tools: Sequence[ToolDescriptor]) -> Message:
        """Return the assistant message for the history (text and/or tool calls)."""

    def stream(self, model: str, messages: Sequence[Message], tools: Sequence[ToolDescriptor]) -> Iterator[StreamChunk]:
        """Yield content / tool_call / tool_call_args chunks, then a finish chunk."""

    def generate_object(self, model: str, messages: Sequence[Message], schema: Dict[str, Any]) -> Dict[str, Any]:
        """Return a JSON object matching `schema` (structured output)."""
