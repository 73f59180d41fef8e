"""
src/orchestrator/loop.py

The tool-calling loop: call the model, run the tools it asks for, feed the
results back, repeat until it answers without tool calls.

    AwaitingModel -> (tool calls? -> ExecutingTools -> AwaitingModel) | Done | Failed

- every model call runs on a worker thread bounded by `timeout`
- `max_iterations` caps the number of model rounds that request tools
- by default any tool failure ends the loop (on_tool_error="halt");
  "continue" feeds the failure back to the model, "retry" re-runs the call
- failures raise ToolLoopError with a FailureReason

`stream()` runs the same state machine on a producer thread and yields
typed events (text, tool_call, tool_result, iteration, done, error).
"""


import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, wait
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Union

from pydantic import BaseModel, Field
from rapidfuzz import fuzz, process

import config
from orchestrator.channel import Channel
from orchestrator.models import (
    ChunkType,
    DoneEvent,
    ErrorEvent,
    IterationEvent,
    LoopEvent,
    LoopMetadata,
    LoopResult,
    Message,
    TextEvent,
    ToolCall,
    ToolCallEvent,
    ToolResultEvent,
    ToolTraceEntry,
)
from tools import registry as tool_registry
from tools.definition import ToolDescriptor
from tools.errors import serialize_errors, to_error_entries
from tools.execution import Failure, ToolResult


logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.05


class OnToolError(str, Enum):

    HALT = "halt"
    CONTINUE = "continue"
    RETRY = "retry"


class OnMaxIterations(str, Enum):

    FAIL = "fail"
    SUMMARIZE = "summarize"


class FailureReason(str, Enum):

    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    TIMEOUT = "timeout"
    PROVIDER_ERROR = "provider_error"
    UNKNOWN_TOOL = "unknown_tool"
    TOOL_FAILED = "tool_failed"
    CANCELLED = "cancelled"


class LoopOptions(BaseModel):

    model: str = config.DEFAULT_MODEL
    max_iterations: int = Field(default=config.DEFAULT_MAX_ITERATIONS, ge=1)
    timeout: Optional[float] = Field(default=config.DEFAULT_TIMEOUT_SECONDS, gt=0)   # Seconds per model call; None = unbounded
    on_tool_error: OnToolError = OnToolError.HALT
    tool_retries: int = Field(default=config.DEFAULT_TOOL_RETRIES, ge=0)
    on_max_iterations: OnMaxIterations = OnMaxIterations.FAIL
    include_messages: bool = True
    include_tool_results: bool = False
    stream_buffer: int = Field(default=config.STREAM_BUFFER_SIZE, ge=1)


class ToolLoopError(Exception):
    """The loop ended in the Failed state."""

    def __init__(self, reason: FailureReason, detail: str, iterations: int = 0, messages: Optional[List[Message]] = None):

        self.reason = reason
        self.detail = detail
        self.iterations = iterations
        self.messages = list(messages or [])
        super().__init__(f"{reason.value}: {detail}")


MessagesInput = Union[str, Sequence[Union[Message, Dict[str, Any]]]]


def _coerce_messages(messages: MessagesInput) -> List[Message]:

    if isinstance(messages, str):
        return [Message.user(messages)]

    return [m if isinstance(m, Message) else Message.model_validate(m) for m in messages]

def _new_call_id() -> str:

    return f"call_{uuid.uuid4().hex[:12]}"


# --- Session -------------------------------------------------------------------
class ToolLoopSession:
    """
    State for one run/stream invocation. Not reused after it terminates.

    Args:
        llm: LLMProvider.
        toolkit: Toolkit from tools.registry.build (actor-bound).
        options: LoopOptions.
        messages: Initial history.
        emit: Event sink; returns False once the consumer has gone away.
        cancelled: Set by the consumer to stop the session.
        streaming: Use llm.stream() instead of llm.generate().
    """

    def __init__(
            self,
            llm: Any,
            toolkit: tool_registry.Toolkit,
            options: LoopOptions,
            messages: Sequence[Message],
            *,
            emit: Optional[Callable[[LoopEvent], bool]] = None,
            cancelled: Optional[threading.Event] = None,
            streaming: bool = False,
    ):

        self.llm = llm
        self.toolkit = toolkit
        self.options = options
        self.history: List[Message] = list(messages)
        self.iteration = 1
        self.tool_calls = 0
        self.trace: List[ToolTraceEntry] = []
        self.streaming = streaming
        self._emit_sink = emit
        self._cancelled = cancelled or threading.Event()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="tool-loop-llm")
        self._emit_lock = threading.Lock()

    # --- Public API ------------------------------------------------------------
    def run(self) -> LoopResult:

        try:
            while True:
                self._check_cancelled()

                if self.iteration > self.options.max_iterations:
                    if self.options.on_max_iterations == OnMaxIterations.SUMMARIZE:
                        return self._summarize()
                    raise self._fail(
                        FailureReason.MAX_ITERATIONS_REACHED,
                        f"stopped after {self.options.max_iterations} iterations",
                        iterations=self.iteration - 1,
                    )

                logger.debug("Tool loop iteration %d (%d messages)", self.iteration, len(self.history))
                self._emit(IterationEvent(iteration=self.iteration))

                reply = self._call_model(self.toolkit.tools)
                self.history.append(reply)

                if not reply.tool_calls:
                    return self._finish(reply, self.iteration)

                for call in reply.tool_calls:
                    self._emit(ToolCallEvent(call=call))
                    self._execute(call)

                self.iteration += 1
        finally:
            self._executor.shutdown(wait=False, cancel_futures=True)

    # --- Model calls -----------------------------------------------------------
    def _call_model(self, tools: Sequence[ToolDescriptor]) -> Message:
        """Run one model call on the worker thread, bounded by the timeout."""

        abandoned = threading.Event()

        if self.streaming:
            future = self._executor.submit(self._collect_stream, list(self.history), list(tools), abandoned)
        else:
            future = self._executor.submit(self._generate, list(self.history), list(tools))

        timeout = self.options.timeout
        deadline = None if timeout is None else time.monotonic() + timeout

        while not future.done():
            self._check_cancelled()
            remaining = _POLL_SECONDS if deadline is None else deadline - time.monotonic()
            if remaining <= 0:
                with self._emit_lock:
                    abandoned.set()
                future.cancel()
                raise self._fail(FailureReason.TIMEOUT, f"model call exceeded {timeout} seconds")
            wait([future], timeout=min(_POLL_SECONDS, remaining))

        error = future.exception()

        if error is None:
            return future.result()

        if isinstance(error, ToolLoopError):
            raise error

        raise self._fail(FailureReason.PROVIDER_ERROR, f"{type(error).__name__}: {error}") from error

    def _generate(self, history: List[Message], tools: List[ToolDescriptor]) -> Message:

        reply = self.llm.generate(self.options.model, history, tools)

        if not isinstance(reply, Message):
            raise TypeError(f"provider returned {type(reply).__name__}, expected Message")

        return reply

    def _collect_stream(self, history: List[Message], tools: List[ToolDescriptor], abandoned: threading.Event) -> Message:
        """
        Accumulate streamed chunks into one assistant message, emitting text as it arrives.

        Stops emitting once `abandoned` is set (the call timed out).
        """

        text: List[str] = []
        calls: Dict[int, Dict[str, Any]] = {}

        for chunk in self.llm.stream(self.options.model, history, tools):
            if abandoned.is_set():
                break
            self._check_cancelled()

            if chunk.type == ChunkType.CONTENT and chunk.text:
                text.append(chunk.text)
                with self._emit_lock:
                    if abandoned.is_set():
                        break
                    self._emit(TextEvent(text=chunk.text))

            elif chunk.type in (ChunkType.TOOL_CALL, ChunkType.TOOL_CALL_ARGS):
                entry = calls.setdefault(chunk.index, {"id": None, "name": None, "args": []})
                if chunk.tool_call_id:
                    entry["id"] = chunk.tool_call_id
                if chunk.name:
                    entry["name"] = chunk.name
                if chunk.arguments:
                    entry["args"].append(chunk.arguments)

            elif chunk.type == ChunkType.FINISH:
                break

        tool_calls = [
            ToolCall(id=e["id"] or _new_call_id(), name=e["name"] or "", arguments="".join(e["args"]) or None)
            for _, e in sorted(calls.items())
        ]

        return Message.assistant("".join(text) or None, tool_calls)

    # --- Tools -----------------------------------------------------------------
    def _execute(self, call: ToolCall) -> None:

        callback = self.toolkit.registry.get(call.name)

        if callback is None:
            raise self._fail(FailureReason.UNKNOWN_TOOL, self._unknown_tool_detail(call.name))

        attempts = 1 + (self.options.tool_retries if self.options.on_tool_error == OnToolError.RETRY else 0)
        result: ToolResult = Failure(json="[]")

        for attempt in range(1, attempts + 1):
            self._check_cancelled()
            logger.debug("Calling tool %s (call %s, attempt %d)", call.name, call.id, attempt)
            try:
                result = callback(call.arguments)
            except Exception as e:
                result = Failure(json=serialize_errors(to_error_entries(e)))
            if result.ok:
                break

        self.tool_calls += 1
        self.trace.append(ToolTraceEntry(
            iteration=self.iteration,
            call_id=call.id,
            name=call.name,
            arguments=call.arguments,
            ok=result.ok,
            result=result.json,
        ))
        self._emit(ToolResultEvent(call_id=call.id, name=call.name, ok=result.ok, result=result.json))

        if not result.ok and self.options.on_tool_error != OnToolError.CONTINUE:
            raise self._fail(FailureReason.TOOL_FAILED, f"tool '{call.name}' failed: {result.json}")

        self.history.append(Message.tool_result(call.id, result.json, name=call.name))

    def _unknown_tool_detail(self, name: str) -> str:

        detail = f"unknown tool '{name}'"
        names = list(self.toolkit.registry)
        match = process.extractOne(name, names, scorer=fuzz.WRatio) if names and name else None

        if match and match[1] >= 60:
            detail += f"; did you mean '{match[0]}'?"

        return detail

    # --- Termination -----------------------------------------------------------
    def _summarize(self) -> LoopResult:
        """Safety stop: one last model call without tools."""

        logger.info("Tool loop hit %d iterations; asking the model to summarise", self.options.max_iterations)
        reply = self._call_model([])
        self.history.append(reply)

        return self._finish(reply, self.iteration - 1, max_iterations_reached=True)

    def _finish(self, reply: Message, iterations: int, max_iterations_reached: bool = False) -> LoopResult:

        return LoopResult(
            message=reply,
            text=reply.text,
            iterations=iterations,
            metadata=LoopMetadata(
                model=self.options.model,
                tool_calls=self.tool_calls,
                max_iterations_reached=max_iterations_reached,
            ),
            messages=list(self.history) if self.options.include_messages else None,
            tool_results=list(self.trace) if self.options.include_tool_results else None,
        )

    def _fail(self, reason: FailureReason, detail: str, iterations: Optional[int] = None) -> ToolLoopError:

        logger.info("Tool loop failed (%s): %s", reason.value, detail)

        return ToolLoopError(reason, detail, self.iteration if iterations is None else iterations, self.history)

    def _check_cancelled(self) -> None:

        if self._cancelled.is_set():
            raise ToolLoopError(FailureReason.CANCELLED, "stream closed by caller", self.iteration, self.history)

    def _emit(self, event: LoopEvent) -> None:

        if self._emit_sink is not None and not self._emit_sink(event):
            self._check_cancelled()


# --- Streaming -----------------------------------------------------------------
class LoopStream:
    """
    Iterable of loop events. Closing it stops the producer and abandons any
    in-flight model call; leaving the iteration early closes it.

    A failed loop ends with an ErrorEvent; `result` holds the LoopResult after
    a DoneEvent.
    """

    def __init__(self, session: ToolLoopSession, channel: Channel):

        self._session = session
        self._channel = channel
        self._thread: Optional[threading.Thread] = None
        self._error: Optional[BaseException] = None
        self.result: Optional[LoopResult] = None

    def _produce(self) -> None:

        try:
            self.result = self._session.run()
            self._channel.put(DoneEvent(result=self.result))
        except ToolLoopError as e:
            if e.reason != FailureReason.CANCELLED:
                self._channel.put(ErrorEvent(reason=e.reason.value, detail=e.detail, iterations=e.iterations))
        except Exception as e:
            self._error = e
        finally:
            self._channel.close()

    def __iter__(self) -> Iterator[LoopEvent]:

        if self._thread is None:
            self._thread = threading.Thread(target=self._produce, name="tool-loop-stream", daemon=True)
            self._thread.start()

        try:
            yield from self._channel
        finally:
            self.close()

        if self._error is not None:
            raise self._error

    def close(self) -> None:

        self._channel.cancel()

    def __enter__(self) -> "LoopStream":

        return self

    def __exit__(self, exc_type, exc, tb) -> None:

        self.close()


# --- Loop ----------------------------------------------------------------------
class ToolLoop:

    def __init__(self, llm: Any, toolkit: tool_registry.Toolkit, options: Optional[LoopOptions] = None, **overrides: Any):

        base = options or LoopOptions()
        self.llm = llm
        self.toolkit = toolkit
        self.options = LoopOptions(**{**base.model_dump(), **overrides}) if overrides else base

    def run(self, messages: MessagesInput) -> LoopResult:
        """
        Run the loop to completion.

        Raises:
            ToolLoopError: with reason max_iterations_reached, timeout,
                provider_error, unknown_tool or tool_failed.
        """

        return ToolLoopSession(self.llm, self.toolkit, self.options, _coerce_messages(messages)).run()

    def stream(self, messages: MessagesInput) -> LoopStream:

        channel = Channel(self.options.stream_buffer)
        session = ToolLoopSession(
            self.llm,
            self.toolkit,
            self.options,
            _coerce_messages(messages),
            emit=channel.put,
            cancelled=channel.cancelled,
            streaming=True,
        )

        return LoopStream(session, channel)


def run_loop(
        messages: MessagesInput,
        llm: Any,
        provider: Any,
        selection: Optional[tool_registry.ToolSelection] = None,
        options: Optional[LoopOptions] = None,
        **overrides: Any,
) -> LoopResult:
    """Build an actor-bound toolkit from `selection`, then run the loop."""

    toolkit = tool_registry.build(provider, selection)

    return ToolLoop(llm, toolkit, options, **overrides).run(messages)

def stream_loop(
        messages: MessagesInput,
        llm: Any,
        provider: Any,
        selection: Optional[tool_registry.ToolSelection] = None,
        options: Optional[LoopOptions] = None,
        **overrides: Any,
) -> LoopStream:
    """Build an actor-bound toolkit from `selection`, then stream the loop."""

    toolkit = tool_registry.build(provider, selection)

    return ToolLoop(llm, toolkit, options, **overrides).stream(messages)
