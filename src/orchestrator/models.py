"""
src/orchestrator/models.py

Pydantic models for conversation messages, streamed chunks, loop events and
loop results.
"""


from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Sequence, Union
from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ContentPart(BaseModel):

    model_config = ConfigDict(frozen=True)

    type: Literal["text", "image_url"] = "text"
    text: Optional[str] = None
    image_url: Optional[str] = None


class ToolCall(BaseModel):
    """A tool call requested by the model. `arguments` may be raw JSON text."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    arguments: Union[Dict[str, Any], str, None] = None


class Message(BaseModel):
    """One entry of the conversation history. Never mutated once created."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: Optional[str] = None
    parts: List[ContentPart] = Field(default_factory=list)
    tool_calls: List[ToolCall] = Field(default_factory=list)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    @classmethod
    def system(cls, text: str) -> "Message":

        return cls(role=Role.SYSTEM, content=text)

    @classmethod
    def user(cls, text: str, image_urls: Sequence[str] = ()) -> "Message":

        if not image_urls:
            return cls(role=Role.USER, content=text)

        parts = [ContentPart(type="text", text=text)]
        parts += [ContentPart(type="image_url", image_url=url) for url in image_urls]

        return cls(role=Role.USER, parts=parts)

    @classmethod
    def assistant(cls, text: Optional[str] = None, tool_calls: Sequence[ToolCall] = ()) -> "Message":

        return cls(role=Role.ASSISTANT, content=text, tool_calls=list(tool_calls))

    @classmethod
    def tool_result(cls, call_id: str, content: str, name: Optional[str] = None) -> "Message":

        return cls(role=Role.TOOL, content=content, tool_call_id=call_id, name=name)

    @property
    def text(self) -> Optional[str]:

        if self.content is not None:
            return self.content

        texts = [p.text for p in self.parts if p.type == "text" and p.text]

        return "".join(texts) if texts else None


# --- Streaming chunks (provider -> loop) ---------------------------------------
class ChunkType(str, Enum):

    CONTENT = "content"
    TOOL_CALL = "tool_call"
    TOOL_CALL_ARGS = "tool_call_args"
    FINISH = "finish"


class StreamChunk(BaseModel):
    """
    One increment from a streaming provider.

    content:        text fragment
    tool_call:      start of a tool call (id and name; arguments may follow)
    tool_call_args: argument-text fragment for the call at `index`
    finish:         end of the response
    """

    model_config = ConfigDict(frozen=True)

    type: ChunkType
    text: Optional[str] = None
    index: int = 0
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    arguments: Optional[str] = None
    finish_reason: Optional[str] = None


# --- Loop results --------------------------------------------------------------
class LoopMetadata(BaseModel):

    model: str
    tool_calls: int = 0
    max_iterations_reached: bool = False


class ToolTraceEntry(BaseModel):

    iteration: int
    call_id: str
    name: str
    arguments: Union[Dict[str, Any], str, None] = None
    ok: bool
    result: str


class LoopResult(BaseModel):

    message: Message
    text: Optional[str] = None
    iterations: int
    metadata: LoopMetadata
    messages: Optional[List[Message]] = None
    tool_results: Optional[List[ToolTraceEntry]] = None


# --- Stream events (loop -> caller) --------------------------------------------
class TextEvent(BaseModel):

    type: Literal["text"] = "text"
    text: str


class ToolCallEvent(BaseModel):

    type: Literal["tool_call"] = "tool_call"
    call: ToolCall


class ToolResultEvent(BaseModel):

    type: Literal["tool_result"] = "tool_result"
    call_id: str
    name: str
    ok: bool
    result: str


class IterationEvent(BaseModel):

    type: Literal["iteration"] = "iteration"
    iteration: int


class DoneEvent(BaseModel):

    type: Literal["done"] = "done"
    result: LoopResult


class ErrorEvent(BaseModel):

    type: Literal["error"] = "error"
    reason: str
    detail: str
    iterations: int


LoopEvent = Union[TextEvent, ToolCallEvent, ToolResultEvent, IterationEvent, DoneEvent, ErrorEvent]
