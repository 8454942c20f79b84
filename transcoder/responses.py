from __future__ import annotations

import uuid
from typing import Any, Dict, Iterable, List, Optional

from .config import WireProtocol
from .schemas.anthropic import MessageResponse
from .schemas.canonical import (
    CanonicalChunk,
    Delta,
    ToolCallDelta,
    ToolCallFunctionDelta,
    Usage,
)
from .transform import json_dumps_safe, map_finish_reason


def _tool_delta(index: int, call_id: Optional[str], name: Optional[str], arguments: Any) -> ToolCallDelta:
    if not isinstance(arguments, str):
        arguments = json_dumps_safe(arguments if arguments is not None else {})
    return ToolCallDelta(
        index=index,
        id=call_id or f"call_{uuid.uuid4().hex}",
        type="function",
        function=ToolCallFunctionDelta(name=name or "", arguments=arguments),
    )


def _delta(text: List[str], reasoning: List[str], tool_calls: List[ToolCallDelta]) -> Delta:
    return Delta(
        role="assistant",
        content="\n".join(text),
        reasoning_content="\n".join(reasoning) if reasoning else None,
        tool_calls=tool_calls or None,
    )


# Anthropic Messages


def from_anthropic(data: Dict[str, Any]) -> List[CanonicalChunk]:
    msg = MessageResponse.model_validate(data)
    text: List[str] = []
    reasoning: List[str] = []
    tool_calls: List[ToolCallDelta] = []
    for block in msg.content:
        if block.type == "text":
            text.append(block.text or "")
        elif block.type == "thinking":
            reasoning.append(block.thinking or "")
        elif block.type == "tool_use":
            tool_calls.append(_tool_delta(len(tool_calls), block.id, block.name, block.input))
    chunk = CanonicalChunk(
        id=msg.id or f"chatcmpl-{uuid.uuid4().hex}",
        model=msg.model or "",
        delta=_delta(text, reasoning, tool_calls),
        finish_reason=map_finish_reason(msg.stop_reason),
        usage=Usage.of(msg.usage.input_tokens or 0, msg.usage.output_tokens or 0),
    )
    return [chunk]


# Cloud Code


def unwrap_cloudcode(data: Dict[str, Any]) -> Dict[str, Any]:
    """Cloud Code wraps the GenAI payload in a ``response`` envelope."""
    inner = data.get("response")
    return inner if isinstance(inner, dict) else data


def first_candidate(payload: Dict[str, Any]) -> Dict[str, Any]:
    candidates = payload.get("candidates") or []
    return candidates[0] if candidates and isinstance(candidates[0], dict) else {}


def cloudcode_usage(payload: Dict[str, Any]) -> Optional[Usage]:
    meta = payload.get("usageMetadata")
    if not isinstance(meta, dict):
        return None
    prompt = int(meta.get("promptTokenCount") or 0)
    completion = int(meta.get("candidatesTokenCount") or 0) + int(meta.get("thoughtsTokenCount") or 0)
    total = int(meta.get("totalTokenCount") or 0) or prompt + completion
    return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def cloudcode_finish_reason(reason: Optional[str], has_tool_calls: bool) -> Optional[str]:
    if not reason:
        return None
    # STOP / MAX_TOKENS lower-case onto the shared table
    mapped = map_finish_reason(reason.lower())
    if mapped == "stop" and has_tool_calls:
        return "tool_calls"
    return mapped


def cloudcode_annotations(candidate: Dict[str, Any]) -> Optional[List[Dict[str, Any]]]:
    """Render search grounding as ``url_citation`` annotations."""
    grounding = candidate.get("groundingMetadata") or {}
    sources = grounding.get("groundingChunks") or []
    if not sources:
        return None
    supports = grounding.get("groundingSupports") or []
    annotations = []
    for index, source in enumerate(sources):
        web = source.get("web") or {}
        citation: Dict[str, Any] = {"url": web.get("uri"), "title": web.get("title")}
        support = next(
            (s for s in supports if index in (s.get("groundingChunkIndices") or [])),
            None,
        )
        if support:
            segment = support.get("segment") or {}
            citation["content"] = segment.get("text")
            citation["start_index"] = segment.get("startIndex")
            citation["end_index"] = segment.get("endIndex")
        annotations.append({"type": "url_citation", "url_citation": citation})
    return annotations


def from_cloudcode(data: Dict[str, Any]) -> List[CanonicalChunk]:
    payload = unwrap_cloudcode(data)
    candidate = first_candidate(payload)
    content = candidate.get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    text: List[str] = []
    reasoning: List[str] = []
    tool_calls: List[ToolCallDelta] = []
    for part in parts if isinstance(parts, list) else []:
        if not isinstance(part, dict):
            continue
        call = part.get("functionCall")
        if isinstance(call, dict):
            tool_calls.append(_tool_delta(len(tool_calls), call.get("id"), call.get("name"), call.get("args")))
        elif part.get("text") is not None:
            (reasoning if part.get("thought") else text).append(part["text"])

    delta = _delta(text, reasoning, tool_calls)
    annotations = cloudcode_annotations(candidate)
    if annotations:
        delta.annotations = annotations
    chunk = CanonicalChunk(
        id=payload.get("responseId") or f"chatcmpl-{uuid.uuid4().hex}",
        model=payload.get("modelVersion") or "",
        delta=delta,
        finish_reason=cloudcode_finish_reason(candidate.get("finishReason"), bool(tool_calls)),
        usage=cloudcode_usage(payload) or Usage(),
    )
    return [chunk]


# Responses / Codex


def responses_usage(response: Dict[str, Any]) -> Optional[Usage]:
    usage = response.get("usage")
    if not isinstance(usage, dict):
        return None
    prompt = int(usage.get("input_tokens") or 0)
    completion = int(usage.get("output_tokens") or 0)
    total = int(usage.get("total_tokens") or 0) or prompt + completion
    return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def responses_finish_reason(response: Dict[str, Any], has_tool_calls: bool) -> Optional[str]:
    status = response.get("status")
    if status == "incomplete":
        reason = (response.get("incomplete_details") or {}).get("reason")
        return "length" if reason in (None, "max_output_tokens") else reason
    if status == "completed":
        return "tool_calls" if has_tool_calls else "stop"
    return status


def _dicts(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, dict)]


def from_responses(data: Dict[str, Any]) -> List[CanonicalChunk]:
    response = data.get("response") if isinstance(data.get("response"), dict) else data
    text: List[str] = []
    reasoning: List[str] = []
    tool_calls: List[ToolCallDelta] = []
    for item in _dicts(response.get("output")):
        kind = item.get("type")
        if kind == "message":
            for part in _dicts(item.get("content")):
                if part.get("type") == "output_text":
                    text.append(part.get("text") or "")
        elif kind == "reasoning":
            for part in _dicts(item.get("summary")):
                if part.get("text"):
                    reasoning.append(part["text"])
        elif kind == "function_call":
            tool_calls.append(
                _tool_delta(len(tool_calls), item.get("call_id") or item.get("id"), item.get("name"), item.get("arguments"))
            )
    chunk = CanonicalChunk(
        id=response.get("id") or f"chatcmpl-{uuid.uuid4().hex}",
        model=response.get("model") or "",
        delta=_delta(text, reasoning, tool_calls),
        finish_reason=responses_finish_reason(response, bool(tool_calls)),
        usage=responses_usage(response) or Usage(),
    )
    return [chunk]


_TRANSCODERS = {
    WireProtocol.ANTHROPIC: from_anthropic,
    WireProtocol.CLOUDCODE: from_cloudcode,
    WireProtocol.RESPONSES: from_responses,
}


def transcode_response(protocol: WireProtocol, data: Dict[str, Any]) -> List[CanonicalChunk]:
    """One upstream JSON document → a list holding exactly one canonical chunk."""
    return _TRANSCODERS[WireProtocol(protocol)](data)


# Helpers for the transport layer


def merge_chunks(chunks: Iterable[CanonicalChunk]) -> CanonicalChunk:
    """Fold a chunk stream into a single chunk (used when an upstream only streams)."""
    merged: Optional[CanonicalChunk] = None
    content: List[str] = []
    reasoning: List[str] = []
    annotations: List[Dict[str, Any]] = []
    calls: Dict[int, ToolCallDelta] = {}
    finish_reason: Optional[str] = None
    usage: Optional[Usage] = None
    for chunk in chunks:
        if merged is None:
            merged = CanonicalChunk(id=chunk.id, model=chunk.model, created=chunk.created)
        if chunk.model and not merged.model:
            merged.model = chunk.model
        d = chunk.delta
        if d.content:
            content.append(d.content)
        if d.reasoning_content:
            reasoning.append(d.reasoning_content)
        annotations.extend((d.model_extra or {}).get("annotations") or [])
        for tc in d.tool_calls or []:
            entry = calls.get(tc.index)
            if entry is None:
                calls[tc.index] = tc.model_copy(deep=True)
                continue
            if tc.id and not entry.id:
                entry.id = tc.id
            if tc.function.name and not entry.function.name:
                entry.function.name = tc.function.name
            if tc.function.arguments:
                entry.function.arguments = (entry.function.arguments or "") + tc.function.arguments
        if chunk.finish_reason is not None:
            finish_reason = chunk.finish_reason
        if chunk.usage is not None:
            usage = chunk.usage
    if merged is None:
        merged = CanonicalChunk()
    merged.delta = Delta(
        role="assistant",
        content="".join(content),
        reasoning_content="".join(reasoning) or None,
        tool_calls=[calls[i] for i in sorted(calls)] or None,
    )
    if annotations:
        merged.delta.annotations = annotations
    merged.finish_reason = finish_reason
    merged.usage = usage or Usage()
    return merged


def as_completion(chunk: CanonicalChunk) -> Dict[str, Any]:
    """Render a chunk as a non-streaming ``chat.completion`` object."""
    d = chunk.delta
    message: Dict[str, Any] = {"role": "assistant", "content": d.content or ""}
    if d.reasoning_content:
        message["reasoning_content"] = d.reasoning_content
    if d.tool_calls:
        message["tool_calls"] = [
            {
                "id": tc.id,
                "type": tc.type or "function",
                "function": {"name": tc.function.name or "", "arguments": tc.function.arguments or "{}"},
            }
            for tc in d.tool_calls
        ]
    annotations = (d.model_extra or {}).get("annotations")
    if annotations:
        message["annotations"] = annotations
    return {
        "id": chunk.id,
        "object": "chat.completion",
        "created": chunk.created,
        "model": chunk.model,
        "choices": [{"index": 0, "message": message, "finish_reason": chunk.finish_reason}],
        "usage": (chunk.usage or Usage()).model_dump(),
    }
