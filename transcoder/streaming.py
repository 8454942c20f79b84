"""Stateful SSE → canonical chunk transcoder.

Every upstream's event vocabulary is first normalized into :class:`StreamEvent`
values by a per-protocol adapter; :func:`apply_event` is the single state
machine that turns those events into canonical chunks. One
:class:`StreamState` exists per upstream connection and is owned by the
generator processing it.
"""

from __future__ import annotations

import json
import sys
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Callable, Dict, List, Optional

from .config import WireProtocol, settings
from .framing import iter_lines, sse_data
from .responses import (
    cloudcode_annotations,
    cloudcode_finish_reason,
    cloudcode_usage,
    first_candidate,
    responses_finish_reason,
    responses_usage,
    unwrap_cloudcode,
)
from .schemas.anthropic import (
    ContentBlockDeltaEvent,
    ContentBlockStartEvent,
    ErrorEvent,
    MessageDeltaEvent,
    MessageStartEvent,
)
from .schemas.canonical import (
    CanonicalChunk,
    Delta,
    ToolCallDelta,
    ToolCallFunctionDelta,
    Usage,
)
from .transform import json_dumps_safe, map_finish_reason


class BlockType(str, Enum):
    TEXT = "text"
    THINKING = "thinking"
    TOOL_USE = "tool_use"
    NONE = "none"


class EventKind(str, Enum):
    MESSAGE_START = "message_start"
    BLOCK_START = "content_block_start"
    BLOCK_DELTA = "content_block_delta"
    BLOCK_STOP = "content_block_stop"
    MESSAGE_DELTA = "message_delta"
    MESSAGE_STOP = "message_stop"
    PING = "ping"
    ERROR = "error"
    UNKNOWN = "unknown"


class DeltaKind(str, Enum):
    TEXT = "text"
    THINKING = "thinking"
    TOOL_INPUT = "tool_input"
    CITATION = "citation"
    SIGNATURE = "signature"
    OTHER = "other"


@dataclass
class StreamEvent:
    kind: EventKind
    message_id: Optional[str] = None
    model: Optional[str] = None
    index: Optional[int] = None
    block_type: BlockType = BlockType.NONE
    tool_id: Optional[str] = None
    tool_name: Optional[str] = None
    delta_kind: DeltaKind = DeltaKind.OTHER
    fragment: str = ""
    annotations: Optional[List[Dict[str, Any]]] = None
    stop_reason: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    error: Any = None


@dataclass
class ToolCallBuffer:
    id: str
    name: str
    arguments: str = ""


@dataclass
class StreamState:
    message_id: str = field(default_factory=lambda: f"chatcmpl-{uuid.uuid4().hex}")
    model: str = ""
    created: int = field(default_factory=lambda: int(time.time()))
    block_index: int = -1
    block_type: BlockType = BlockType.NONE
    tool_calls: List[ToolCallBuffer] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    started: bool = False
    role_emitted: bool = False
    finished: bool = False

    def usage(self) -> Usage:
        return Usage.of(self.input_tokens, self.output_tokens)


# State machine


def _chunk(
    state: StreamState,
    delta: Delta,
    finish_reason: Optional[str] = None,
    usage: Optional[Usage] = None,
) -> CanonicalChunk:
    if not state.role_emitted:
        delta.role = "assistant"
        state.role_emitted = True
    return CanonicalChunk(
        id=state.message_id,
        model=state.model,
        created=state.created,
        delta=delta,
        finish_reason=finish_reason,
        usage=usage,
    )


def _update_usage(state: StreamState, event: StreamEvent) -> None:
    if event.input_tokens is not None:
        state.input_tokens = max(state.input_tokens, int(event.input_tokens))
    if event.output_tokens is not None:
        state.output_tokens = max(state.output_tokens, int(event.output_tokens))


def _enter_block(state: StreamState, event: StreamEvent) -> None:
    if event.index is not None:
        state.block_index = max(state.block_index, event.index)
    else:
        state.block_index += 1
    state.block_type = event.block_type


def _finish(state: StreamState, reason: str) -> List[CanonicalChunk]:
    state.finished = True
    return [_chunk(state, Delta(), finish_reason=reason, usage=state.usage())]


def apply_event(state: StreamState, event: StreamEvent) -> List[CanonicalChunk]:
    """Advance ``state`` by one event and return the chunks it produces."""
    kind = event.kind

    if kind is EventKind.MESSAGE_START:
        if event.message_id:
            state.message_id = event.message_id
        if event.model:
            state.model = event.model
        _update_usage(state, event)
        state.started = True
        if state.role_emitted:
            return []
        return [_chunk(state, Delta(content=""))]

    if kind is EventKind.BLOCK_START:
        _enter_block(state, event)
        if event.block_type is not BlockType.TOOL_USE:
            return []
        entry = ToolCallBuffer(id=event.tool_id or f"call_{uuid.uuid4().hex}", name=event.tool_name or "")
        state.tool_calls.append(entry)
        announce = ToolCallDelta(
            index=len(state.tool_calls) - 1,
            id=entry.id,
            type="function",
            function=ToolCallFunctionDelta(name=entry.name, arguments=""),
        )
        return [_chunk(state, Delta(tool_calls=[announce]))]

    if kind is EventKind.BLOCK_DELTA:
        dk = event.delta_kind
        if dk is DeltaKind.TEXT:
            return [_chunk(state, Delta(content=event.fragment))]
        if dk is DeltaKind.THINKING:
            return [_chunk(state, Delta(reasoning_content=event.fragment))]
        if dk is DeltaKind.TOOL_INPUT:
            if len(state.tool_calls) == 0 or state.block_type is not BlockType.TOOL_USE:
                if settings.debug:
                    print("[transcoder] tool input fragment outside a tool block; dropped", file=sys.stderr)
                return []
            index = len(state.tool_calls) - 1
            state.tool_calls[index].arguments += event.fragment
            fragment = ToolCallDelta(index=index, function=ToolCallFunctionDelta(arguments=event.fragment))
            return [_chunk(state, Delta(tool_calls=[fragment]))]
        if dk is DeltaKind.CITATION:
            if not event.annotations:
                return []
            delta = Delta()
            delta.annotations = event.annotations
            return [_chunk(state, delta)]
        # signature and other deltas have no canonical representation
        return []

    if kind is EventKind.BLOCK_STOP:
        state.block_type = BlockType.NONE
        return []

    if kind is EventKind.MESSAGE_DELTA:
        _update_usage(state, event)
        reason = map_finish_reason(event.stop_reason)
        if reason is None or state.finished:
            return []
        return _finish(state, reason)

    if kind is EventKind.ERROR:
        print(f"[transcoder] upstream error event: {event.error}", file=sys.stderr)
        return []

    # message_stop, ping and unknown events emit nothing
    return []


def finish_stream(state: StreamState) -> List[CanonicalChunk]:
    """Terminal chunk for a stream that ended cleanly without a stop reason."""
    if state.finished:
        return []
    reason = "tool_calls" if len(state.tool_calls) > 0 else "stop"
    return _finish(state, reason)


# Upstream adapters


_ANTHROPIC_BLOCK_TYPES = {
    "text": BlockType.TEXT,
    "thinking": BlockType.THINKING,
    "redacted_thinking": BlockType.THINKING,
    "tool_use": BlockType.TOOL_USE,
}

_ANTHROPIC_DELTAS = {
    "text_delta": (DeltaKind.TEXT, "text"),
    "thinking_delta": (DeltaKind.THINKING, "thinking"),
    "input_json_delta": (DeltaKind.TOOL_INPUT, "partial_json"),
    "signature_delta": (DeltaKind.SIGNATURE, "signature"),
}


def anthropic_events(payload: Dict[str, Any], state: Optional[StreamState] = None) -> List[StreamEvent]:
    etype = payload.get("type")
    if etype == "message_start":
        msg = MessageStartEvent.model_validate(payload).message
        return [
            StreamEvent(
                EventKind.MESSAGE_START,
                message_id=msg.id,
                model=msg.model,
                input_tokens=msg.usage.input_tokens,
                output_tokens=msg.usage.output_tokens,
            )
        ]
    if etype == "content_block_start":
        ev = ContentBlockStartEvent.model_validate(payload)
        block = ev.content_block
        return [
            StreamEvent(
                EventKind.BLOCK_START,
                index=ev.index,
                block_type=_ANTHROPIC_BLOCK_TYPES.get(block.type, BlockType.NONE),
                tool_id=block.id,
                tool_name=block.name,
            )
        ]
    if etype == "content_block_delta":
        ev = ContentBlockDeltaEvent.model_validate(payload)
        kind, key = _ANTHROPIC_DELTAS.get(str(ev.delta.get("type")), (DeltaKind.OTHER, ""))
        fragment = ev.delta.get(key) if key else None
        return [
            StreamEvent(
                EventKind.BLOCK_DELTA,
                index=ev.index,
                delta_kind=kind,
                fragment=fragment if isinstance(fragment, str) else "",
            )
        ]
    if etype == "content_block_stop":
        return [StreamEvent(EventKind.BLOCK_STOP, index=payload.get("index"))]
    if etype == "message_delta":
        ev = MessageDeltaEvent.model_validate(payload)
        usage = ev.usage
        return [
            StreamEvent(
                EventKind.MESSAGE_DELTA,
                stop_reason=ev.delta.get("stop_reason"),
                # cumulative counters; a missing or null counter leaves the running value alone
                input_tokens=usage.input_tokens if usage is not None else None,
                output_tokens=usage.output_tokens if usage is not None else None,
            )
        ]
    if etype == "message_stop":
        return [StreamEvent(EventKind.MESSAGE_STOP)]
    if etype == "ping":
        return [StreamEvent(EventKind.PING)]
    if etype == "error":
        return [StreamEvent(EventKind.ERROR, error=ErrorEvent.model_validate(payload).error.model_dump())]
    return [StreamEvent(EventKind.UNKNOWN)]


def cloudcode_events(payload: Dict[str, Any], state: StreamState) -> List[StreamEvent]:
    """Each Cloud Code chunk is a whole partial response; synthesize block events from its parts."""
    body = unwrap_cloudcode(payload)
    candidate = first_candidate(body)
    usage = cloudcode_usage(body)
    events: List[StreamEvent] = []

    if not state.started:
        events.append(
            StreamEvent(
                EventKind.MESSAGE_START,
                message_id=body.get("responseId"),
                model=body.get("modelVersion"),
                input_tokens=usage.prompt_tokens if usage else None,
            )
        )

    current = state.block_type
    index = state.block_index
    calls = len(state.tool_calls)

    def open_block(block_type: BlockType, **kw: Any) -> None:
        nonlocal current, index
        if current is not BlockType.NONE:
            events.append(StreamEvent(EventKind.BLOCK_STOP, index=index))
        index += 1
        current = block_type
        events.append(StreamEvent(EventKind.BLOCK_START, index=index, block_type=block_type, **kw))

    content = candidate.get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    for part in parts if isinstance(parts, list) else []:
        if not isinstance(part, dict):
            continue
        call = part.get("functionCall")
        if isinstance(call, dict):
            open_block(BlockType.TOOL_USE, tool_id=call.get("id"), tool_name=call.get("name"))
            events.append(
                StreamEvent(
                    EventKind.BLOCK_DELTA,
                    index=index,
                    delta_kind=DeltaKind.TOOL_INPUT,
                    fragment=json_dumps_safe(call.get("args") or {}),
                )
            )
            calls += 1
            continue
        text = part.get("text")
        if text is None:
            continue
        block_type = BlockType.THINKING if part.get("thought") else BlockType.TEXT
        if current is not block_type:
            open_block(block_type)
        events.append(
            StreamEvent(
                EventKind.BLOCK_DELTA,
                index=index,
                delta_kind=DeltaKind.THINKING if block_type is BlockType.THINKING else DeltaKind.TEXT,
                fragment=text,
            )
        )

    annotations = cloudcode_annotations(candidate)
    if annotations:
        events.append(StreamEvent(EventKind.BLOCK_DELTA, delta_kind=DeltaKind.CITATION, annotations=annotations))

    reason = candidate.get("finishReason")
    if reason:
        if current is not BlockType.NONE:
            events.append(StreamEvent(EventKind.BLOCK_STOP, index=index))
        events.append(
            StreamEvent(
                EventKind.MESSAGE_DELTA,
                stop_reason=cloudcode_finish_reason(reason, calls > 0),
                input_tokens=usage.prompt_tokens if usage else None,
                output_tokens=usage.completion_tokens if usage else None,
            )
        )
        events.append(StreamEvent(EventKind.MESSAGE_STOP))
    return events


_RESPONSES_ITEM_BLOCKS = {
    "message": BlockType.TEXT,
    "reasoning": BlockType.THINKING,
    "function_call": BlockType.TOOL_USE,
}

_RESPONSES_DELTAS = {
    "response.output_text.delta": DeltaKind.TEXT,
    "response.reasoning_summary_text.delta": DeltaKind.THINKING,
    "response.reasoning_text.delta": DeltaKind.THINKING,
    "response.function_call_arguments.delta": DeltaKind.TOOL_INPUT,
}


def responses_events(payload: Dict[str, Any], state: StreamState) -> List[StreamEvent]:
    etype = payload.get("type") or ""
    if etype in ("response.created", "response.in_progress"):
        response = payload.get("response") or {}
        return [StreamEvent(EventKind.MESSAGE_START, message_id=response.get("id"), model=response.get("model"))]
    if etype == "response.output_item.added":
        item = payload.get("item") or {}
        block_type = _RESPONSES_ITEM_BLOCKS.get(item.get("type"), BlockType.NONE)
        return [
            StreamEvent(
                EventKind.BLOCK_START,
                index=payload.get("output_index"),
                block_type=block_type,
                tool_id=item.get("call_id") or item.get("id"),
                tool_name=item.get("name"),
            )
        ]
    if etype in _RESPONSES_DELTAS:
        delta = payload.get("delta")
        return [
            StreamEvent(
                EventKind.BLOCK_DELTA,
                index=payload.get("output_index"),
                delta_kind=_RESPONSES_DELTAS[etype],
                fragment=delta if isinstance(delta, str) else "",
            )
        ]
    if etype == "response.output_item.done":
        return [StreamEvent(EventKind.BLOCK_STOP, index=payload.get("output_index"))]
    if etype in ("response.completed", "response.incomplete"):
        response = payload.get("response") or {}
        usage = responses_usage(response)
        return [
            StreamEvent(
                EventKind.MESSAGE_DELTA,
                stop_reason=responses_finish_reason(response, len(state.tool_calls) > 0),
                input_tokens=usage.prompt_tokens if usage else None,
                output_tokens=usage.completion_tokens if usage else None,
            ),
            StreamEvent(EventKind.MESSAGE_STOP),
        ]
    if etype == "response.failed":
        response = payload.get("response") or {}
        usage = responses_usage(response)
        return [
            StreamEvent(EventKind.ERROR, error=response.get("error")),
            StreamEvent(
                EventKind.MESSAGE_DELTA,
                stop_reason=responses_finish_reason({**response, "status": "failed"}, False),
                input_tokens=usage.prompt_tokens if usage else None,
                output_tokens=usage.completion_tokens if usage else None,
            ),
            StreamEvent(EventKind.MESSAGE_STOP),
        ]
    if etype == "error":
        return [StreamEvent(EventKind.ERROR, error=payload)]
    return [StreamEvent(EventKind.UNKNOWN)]


EventAdapter = Callable[[Dict[str, Any], StreamState], List[StreamEvent]]

_ADAPTERS: Dict[WireProtocol, EventAdapter] = {
    WireProtocol.ANTHROPIC: anthropic_events,
    WireProtocol.CLOUDCODE: cloudcode_events,
    WireProtocol.RESPONSES: responses_events,
}


# Driver


async def transcode_stream(
    protocol: WireProtocol, chunks: AsyncIterable[bytes]
) -> AsyncIterator[CanonicalChunk]:
    """Yield canonical chunks for an upstream SSE byte stream, in arrival order.

    Malformed event lines are logged and skipped. Transport errors propagate
    and no terminal chunk is produced for them.
    """
    adapter = _ADAPTERS[WireProtocol(protocol)]
    state = StreamState()
    lines = iter_lines(chunks)
    try:
        async for line in lines:
            data = sse_data(line)
            if data is None:
                continue
            if settings.debug_sse:
                print(f"[sse] {data}", file=sys.stderr)
            try:
                payload = json.loads(data)
                if not isinstance(payload, dict):
                    raise ValueError(f"expected a JSON object, got {type(payload).__name__}")
                events = adapter(payload, state)
            except (ValueError, TypeError, AttributeError) as e:
                print(f"[transcoder] skipping malformed event line: {e}", file=sys.stderr)
                continue
            for event in events:
                for chunk in apply_event(state, event):
                    yield chunk
    finally:
        await lines.aclose()
    for chunk in finish_stream(state):
        yield chunk
