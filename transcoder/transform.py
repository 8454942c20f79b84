from __future__ import annotations

import json
import mimetypes
import re
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .config import UpstreamConfig, WireProtocol
from .errors import CredentialError
from .json_schema import transform_tool
from .schemas.canonical import (
    BlockKind,
    CanonicalMessage,
    CanonicalRequest,
    ToolCall,
    ToolDefinition,
    classify_block,
)


WEB_SEARCH_TOOL = "web_search"

ANTHROPIC_PATH = "/v1/messages"
CLOUDCODE_PATH = "/v1internal"
RESPONSES_PATH = "/responses"

DEFAULT_INSTRUCTIONS = "You are a helpful assistant."

_KNOWN_ROLES = ("system", "user", "assistant", "tool", "function")


@dataclass
class UpstreamRequest:
    body: Dict[str, Any]
    url: str
    headers: Dict[str, str]

    def to_dict(self) -> Dict[str, Any]:
        return {"body": self.body, "config": {"url": self.url, "headers": self.headers}}


# Shared helpers


def _to_text(content: Any) -> str:
    """Collapse canonical content (string or list of text blocks) into a plain string."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            str(block.get("text") or "") for block in content if classify_block(block) is BlockKind.TEXT
        )
    return json_dumps_safe(content)


def _tool_result_text(content: Any) -> str:
    if isinstance(content, list) and all(classify_block(b) is BlockKind.TEXT for b in content):
        return _to_text(content)
    if isinstance(content, str):
        return content
    return json_dumps_safe(content)


def normalize_role(role: Optional[str]) -> str:
    r = (role or "").lower()
    return r if r in _KNOWN_ROLES else "user"


def endpoint_url(base_url: str, path: str) -> str:
    base = (base_url or "").rstrip("/")
    if base.endswith(path):
        return base
    return f"{base}{path}"


def resolve_api_key(cfg: UpstreamConfig, override: Optional[str] = None) -> str:
    """Pick the credential: request override, then configured key, then environment."""
    for candidate in (override, cfg.api_key, cfg.env_api_key):
        if candidate and candidate.strip():
            return candidate.strip()
    raise CredentialError(f"no credentials configured for upstream '{cfg.kind.value}'")


def thinking_budget(req: CanonicalRequest, cfg: UpstreamConfig) -> Optional[int]:
    """Token budget when thinking applies to this request, else None."""
    model = (req.model or cfg.default_model or "").lower()
    if not any(marker.lower() in model for marker in cfg.thinking_markers):
        return None
    if req.thinking is not None and req.thinking.budget_tokens:
        return int(req.thinking.budget_tokens)
    return cfg.thinking_budget


def split_system(messages: List[CanonicalMessage]) -> Tuple[str, List[CanonicalMessage]]:
    system_parts: List[str] = []
    rest: List[CanonicalMessage] = []
    for m in messages:
        if normalize_role(m.role) == "system":
            text = m.text()
            if text:
                system_parts.append(text)
            continue
        rest.append(m)
    return "\n\n".join(system_parts), rest


def image_url_of(block: Dict[str, Any]) -> str:
    image = block.get("image_url")
    if isinstance(image, dict):
        return str(image.get("url") or "")
    if isinstance(image, str):
        return image
    source = block.get("source") or {}
    return str(source.get("url") or "") if isinstance(source, dict) else ""


_DATA_URI_RE = re.compile(r"^data:([^;,]+)?(?:;[^,]*)?,(.*)$", re.DOTALL)


def parse_data_uri(url: str) -> Optional[Tuple[str, str]]:
    """Split ``data:<mime>;base64,<payload>`` into (mime, payload)."""
    m = _DATA_URI_RE.match(url or "")
    if not m:
        return None
    return (m.group(1) or "image/png"), m.group(2)


def is_remote_url(url: str) -> bool:
    return url.startswith("http://") or url.startswith("https://")


def guess_mime_type(block: Dict[str, Any], url: str) -> str:
    explicit = block.get("media_type") or block.get("mime_type")
    if explicit:
        return str(explicit)
    guessed, _ = mimetypes.guess_type(url.split("?", 1)[0])
    return guessed or "image/jpeg"


def parse_arguments(arguments: Any) -> Dict[str, Any]:
    if arguments is None or arguments == "":
        return {}
    if isinstance(arguments, dict):
        return arguments
    parsed = json_loads_safe(arguments)
    return parsed if isinstance(parsed, dict) else {}


def arguments_string(arguments: Any) -> str:
    if isinstance(arguments, str):
        return arguments or "{}"
    return json_dumps_safe(arguments or {})


def _call_id(call: ToolCall) -> str:
    return call.id or f"call_{uuid.uuid4().hex}"


def _split_tools(tools: Optional[List[ToolDefinition]]) -> Tuple[List[ToolDefinition], bool]:
    functions: List[ToolDefinition] = []
    web_search = False
    for t in tools or []:
        if t.function.name == WEB_SEARCH_TOOL:
            web_search = True
        else:
            functions.append(t)
    return functions, web_search


def _tool_names_by_id(messages: List[CanonicalMessage]) -> Dict[str, str]:
    names: Dict[str, str] = {}
    for m in messages:
        for call in m.tool_calls or []:
            if call.id:
                names[call.id] = call.function.name
    return names


# Anthropic Messages


def _anthropic_block(block: Dict[str, Any]) -> Dict[str, Any]:
    kind = classify_block(block)
    if kind is BlockKind.TEXT:
        return {"type": "text", "text": block.get("text") or ""}
    if kind is BlockKind.IMAGE and block.get("type") == "image_url":
        url = image_url_of(block)
        inline = parse_data_uri(url) if url.startswith("data:") else None
        if inline:
            media_type, data = inline
            return {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}}
        return {"type": "image", "source": {"type": "url", "url": url}}
    # thinking, native image blocks and unknown block types pass through
    return block


def _anthropic_messages(messages: List[CanonicalMessage]) -> Tuple[str, List[Dict[str, Any]]]:
    system, rest = split_system(messages)
    out: List[Dict[str, Any]] = []
    for m in rest:
        role = normalize_role(m.role)
        if role in ("tool", "function"):
            out.append(
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": m.tool_call_id or m.name,
                            "content": _tool_result_text(m.content),
                        }
                    ],
                }
            )
            continue
        if role == "assistant" and m.tool_calls:
            content: List[Dict[str, Any]] = []
            text = m.text()
            if text:
                content.append({"type": "text", "text": text})
            for call in m.tool_calls:
                content.append(
                    {
                        "type": "tool_use",
                        "id": _call_id(call),
                        "name": call.function.name,
                        "input": parse_arguments(call.function.arguments),
                    }
                )
            out.append({"role": "assistant", "content": content})
            continue
        if isinstance(m.content, list):
            out.append({"role": role, "content": [_anthropic_block(b) for b in m.content]})
        else:
            out.append({"role": role, "content": m.content or ""})
    return system, out


def _anthropic_tools(tools: Optional[List[ToolDefinition]]) -> List[Dict[str, Any]]:
    functions, web_search = _split_tools(tools)
    out = [
        {
            "name": t.function.name,
            "description": t.function.description or "",
            "input_schema": t.function.parameters or {"type": "object"},
        }
        for t in functions
    ]
    if web_search:
        out.append({"type": "web_search_20250305", "name": WEB_SEARCH_TOOL})
    return out


def to_anthropic_request(
    req: CanonicalRequest, cfg: UpstreamConfig, api_key: Optional[str] = None
) -> UpstreamRequest:
    """Map a canonical chat request to an Anthropic v1/messages call."""
    key = resolve_api_key(cfg, api_key)
    system, messages = _anthropic_messages(req.messages)

    body: Dict[str, Any] = {
        "model": req.model or cfg.default_model,
        "messages": messages,
        "max_tokens": req.max_tokens or cfg.default_max_tokens,
        "stream": bool(req.stream),
    }
    if system:
        body["system"] = system
    tools = _anthropic_tools(req.tools)
    if tools:
        body["tools"] = tools
    budget = thinking_budget(req, cfg)
    if budget is not None:
        body["thinking"] = {"type": "enabled", "budget_tokens": budget}
        # max_tokens must exceed the thinking budget
        if body["max_tokens"] <= budget:
            body["max_tokens"] = budget + cfg.default_max_tokens
    if req.temperature is not None:
        body["temperature"] = req.temperature
    if req.top_p is not None:
        body["top_p"] = req.top_p
    if req.top_k is not None:
        body["top_k"] = req.top_k
    stops = req.stop_sequences()
    if stops:
        body["stop_sequences"] = stops

    headers = {
        "Content-Type": "application/json",
        "anthropic-version": cfg.anthropic_version,
        "x-api-key": key,
    }
    if req.stream:
        headers["Accept"] = "text/event-stream"
    return UpstreamRequest(body=body, url=endpoint_url(cfg.base_url, ANTHROPIC_PATH), headers=headers)


# Cloud Code (v1internal generateContent)


def _cloudcode_part(block: Dict[str, Any]) -> Dict[str, Any]:
    kind = classify_block(block)
    if kind is BlockKind.TEXT:
        return {"text": block.get("text") or ""}
    if kind is BlockKind.THINKING:
        return {"text": block.get("thinking") or "", "thought": True}
    if kind is BlockKind.IMAGE:
        url = image_url_of(block)
        if is_remote_url(url):
            return {"fileData": {"mimeType": guess_mime_type(block, url), "fileUri": url}}
        inline = parse_data_uri(url)
        if inline:
            mime, data = inline
            return {"inlineData": {"mimeType": mime, "data": data}}
        return {"inlineData": {"mimeType": guess_mime_type(block, url), "data": url}}
    return block


def _cloudcode_contents(messages: List[CanonicalMessage]) -> List[Dict[str, Any]]:
    names = _tool_names_by_id(messages)
    contents: List[Dict[str, Any]] = []
    for m in messages:
        role = normalize_role(m.role)
        parts: List[Dict[str, Any]] = []
        if role in ("tool", "function"):
            call_id = m.tool_call_id or ""
            parts.append(
                {
                    "functionResponse": {
                        "id": call_id,
                        "name": names.get(call_id) or m.name or "",
                        "response": {"output": _tool_result_text(m.content)},
                    }
                }
            )
        else:
            parts.extend(_cloudcode_part(b) for b in m.blocks())
            for call in m.tool_calls or []:
                parts.append(
                    {
                        "functionCall": {
                            "id": _call_id(call),
                            "name": call.function.name,
                            "args": parse_arguments(call.function.arguments),
                        }
                    }
                )
        if not parts:
            continue
        contents.append({"role": "model" if role == "assistant" else "user", "parts": parts})
    return contents


def _cloudcode_tools(tools: Optional[List[ToolDefinition]]) -> List[Dict[str, Any]]:
    functions, web_search = _split_tools(tools)
    out: List[Dict[str, Any]] = []
    if functions:
        declarations = []
        for t in functions:
            decl: Dict[str, Any] = {"name": t.function.name, "description": t.function.description or ""}
            if t.function.parameters:
                decl["parameters"] = t.function.parameters
            if t.function.response:
                decl["response"] = t.function.response
            declarations.append(decl)
        out.append(transform_tool({"functionDeclarations": declarations}))
    if web_search:
        out.append({"googleSearch": {}})
    return out


def to_cloudcode_request(
    req: CanonicalRequest, cfg: UpstreamConfig, api_key: Optional[str] = None
) -> UpstreamRequest:
    """Map a canonical chat request to a Cloud Code generateContent call.

    Tool parameter schemas are converted to the GenAI dialect here, so a
    SchemaConflictError surfaces before any network call.
    """
    token = resolve_api_key(cfg, api_key)
    system, rest = split_system(req.messages)

    inner: Dict[str, Any] = {"contents": _cloudcode_contents(rest)}
    if system:
        inner["systemInstruction"] = {"role": "user", "parts": [{"text": system}]}
    tools = _cloudcode_tools(req.tools)
    if tools:
        inner["tools"] = tools

    generation: Dict[str, Any] = {}
    if req.temperature is not None:
        generation["temperature"] = req.temperature
    if req.top_p is not None:
        generation["topP"] = req.top_p
    if req.top_k is not None:
        generation["topK"] = req.top_k
    if req.max_tokens is not None:
        generation["maxOutputTokens"] = req.max_tokens
    stops = req.stop_sequences()
    if stops:
        generation["stopSequences"] = stops
    budget = thinking_budget(req, cfg)
    if budget is not None:
        generation["thinkingConfig"] = {"thinkingBudget": budget, "includeThoughts": True}
    if generation:
        inner["generationConfig"] = generation

    body: Dict[str, Any] = {"model": req.model or cfg.default_model, "request": inner}
    if cfg.project:
        body["project"] = cfg.project

    method = ":streamGenerateContent?alt=sse" if req.stream else ":generateContent"
    headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
    if req.stream:
        headers["Accept"] = "text/event-stream"
    return UpstreamRequest(
        body=body, url=endpoint_url(cfg.base_url, CLOUDCODE_PATH) + method, headers=headers
    )


# Responses / Codex


def reasoning_effort(budget: int) -> str:
    if budget <= 4096:
        return "low"
    if budget <= 16384:
        return "medium"
    return "high"


def _responses_user_content(m: CanonicalMessage) -> Any:
    if isinstance(m.content, str) or m.content is None:
        return m.content or ""
    content: List[Dict[str, Any]] = []
    for block in m.content:
        kind = classify_block(block)
        if kind is BlockKind.TEXT:
            content.append({"type": "input_text", "text": block.get("text") or ""})
        elif kind is BlockKind.IMAGE:
            content.append({"type": "input_image", "image_url": image_url_of(block)})
        elif kind is BlockKind.UNKNOWN:
            content.append(block)
    return content


def _responses_input(messages: List[CanonicalMessage]) -> List[Dict[str, Any]]:
    items: List[Dict[str, Any]] = []
    for m in messages:
        role = normalize_role(m.role)
        if role in ("tool", "function"):
            items.append(
                {
                    "type": "function_call_output",
                    "call_id": m.tool_call_id or m.name,
                    "output": _tool_result_text(m.content),
                }
            )
        elif role == "assistant":
            text = m.text()
            if text:
                items.append({"role": "assistant", "content": text})
            for call in m.tool_calls or []:
                items.append(
                    {
                        "type": "function_call",
                        "call_id": _call_id(call),
                        "name": call.function.name,
                        "arguments": arguments_string(call.function.arguments),
                    }
                )
        else:
            content = _responses_user_content(m)
            if content:
                items.append({"role": role, "content": content})
    return items


def _responses_tools(tools: Optional[List[ToolDefinition]]) -> List[Dict[str, Any]]:
    functions, web_search = _split_tools(tools)
    out: List[Dict[str, Any]] = [
        {
            "type": "function",
            "name": t.function.name,
            "description": t.function.description or "",
            "parameters": t.function.parameters or {"type": "object", "properties": {}},
        }
        for t in functions
    ]
    if web_search:
        out.append({"type": "web_search"})
    return out


def to_responses_request(
    req: CanonicalRequest, cfg: UpstreamConfig, api_key: Optional[str] = None
) -> UpstreamRequest:
    token = resolve_api_key(cfg, api_key)
    system, rest = split_system(req.messages)
    stream = True if cfg.always_stream else bool(req.stream)

    body: Dict[str, Any] = {
        "model": req.model or cfg.default_model,
        "instructions": system or DEFAULT_INSTRUCTIONS,
        "input": _responses_input(rest),
        "store": False,
        "stream": stream,
    }
    tools = _responses_tools(req.tools)
    if tools:
        body["tools"] = tools
    budget = thinking_budget(req, cfg)
    if budget is not None:
        body["reasoning"] = {"effort": reasoning_effort(budget), "summary": "auto"}

    headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
    if stream:
        headers["Accept"] = "text/event-stream"
    return UpstreamRequest(body=body, url=endpoint_url(cfg.base_url, RESPONSES_PATH), headers=headers)


_REQUEST_BUILDERS = {
    WireProtocol.ANTHROPIC: to_anthropic_request,
    WireProtocol.CLOUDCODE: to_cloudcode_request,
    WireProtocol.RESPONSES: to_responses_request,
}


def build_upstream_request(
    req: CanonicalRequest, cfg: UpstreamConfig, api_key: Optional[str] = None
) -> UpstreamRequest:
    return _REQUEST_BUILDERS[cfg.protocol](req, cfg, api_key)


# Finish reasons and JSON helpers


_STOP_REASONS = {
    "end_turn": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
    "stop_sequence": "stop",
}


def map_finish_reason(stop_reason: Optional[str]) -> Optional[str]:
    """Upstream stop reason → canonical finish_reason; unknown values pass through."""
    if stop_reason is None:
        return None
    return _STOP_REASONS.get(stop_reason, stop_reason)


def json_dumps_safe(obj: Any) -> str:
    try:
        return json.dumps(obj, ensure_ascii=False)
    except Exception:
        return "{}"


def json_loads_safe(s: Any) -> Any:
    try:
        if isinstance(s, str):
            return json.loads(s)
        return s
    except Exception:
        if isinstance(s, str):
            try:
                repaired = _repair_invalid_json_escapes(s)
                if repaired != s:
                    return json.loads(repaired)
            except Exception:
                ...
        return {}


_INVALID_ESCAPE_RE = re.compile(r"\\(?![\\\"/bfnrtu])")


def _repair_invalid_json_escapes(raw: str) -> str:
    """Best-effort fix for JSON strings containing invalid escape sequences."""
    try:
        return _INVALID_ESCAPE_RE.sub("", raw)
    except Exception:
        return raw
