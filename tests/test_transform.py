import json

import pytest

from transcoder.config import UpstreamConfig, UpstreamKind
from transcoder.errors import CredentialError, SchemaConflictError
from transcoder.schemas.canonical import CanonicalRequest
from transcoder.transform import (
    build_upstream_request,
    endpoint_url,
    map_finish_reason,
    parse_data_uri,
    reasoning_effort,
    resolve_api_key,
    to_anthropic_request,
    to_cloudcode_request,
    to_responses_request,
)


def _anthropic_cfg(**kw) -> UpstreamConfig:
    kw.setdefault("api_key", "sk-test")
    return UpstreamConfig(
        kind=UpstreamKind.ANTHROPIC,
        base_url="https://api.anthropic.com",
        default_model="claude-sonnet-4-20250514",
        **kw,
    )


def _cloudcode_cfg(**kw) -> UpstreamConfig:
    kw.setdefault("api_key", "ya29.token")
    kw.setdefault("base_url", "https://cloudcode-pa.googleapis.com")
    return UpstreamConfig(
        kind=UpstreamKind.CLOUDCODE,
        project="proj-1",
        **kw,
    )


def _codex_cfg(**kw) -> UpstreamConfig:
    kw.setdefault("api_key", "codex-token")
    return UpstreamConfig(
        kind=UpstreamKind.CODEX,
        base_url="https://chatgpt.com/backend-api/codex",
        default_model="gpt-5.2-codex",
        always_stream=True,
        **kw,
    )


def test_text_only_request_mapping():
    req = CanonicalRequest.model_validate(
        {
            "model": "claude-3-sonnet",
            "max_tokens": 32,
            "messages": [
                {"role": "system", "content": "Be brief."},
                {"role": "system", "content": [{"type": "text", "text": "Answer in English."}]},
                {"role": "user", "content": "Hello"},
            ],
            "temperature": 0.1,
            "top_p": 0.9,
            "top_k": 5,
            "stop": "\n\n",
        }
    )
    out = to_anthropic_request(req, _anthropic_cfg())
    body = out.body
    assert body["model"] == "claude-3-sonnet"
    assert body["max_tokens"] == 32
    assert body["system"] == "Be brief.\n\nAnswer in English."
    assert body["messages"] == [{"role": "user", "content": "Hello"}]
    assert body["temperature"] == 0.1
    assert body["top_p"] == 0.9
    assert body["top_k"] == 5
    assert body["stop_sequences"] == ["\n\n"]
    assert body["stream"] is False
    assert "thinking" not in body
    assert out.url == "https://api.anthropic.com/v1/messages"
    assert out.headers["x-api-key"] == "sk-test"
    assert out.headers["anthropic-version"] == "2023-06-01"
    assert "Accept" not in out.headers


def test_defaults_fill_model_and_max_tokens():
    req = CanonicalRequest.model_validate({"messages": [{"role": "user", "content": "hi"}], "stream": True})
    out = to_anthropic_request(req, _anthropic_cfg())
    assert out.body["model"] == "claude-sonnet-4-20250514"
    assert out.body["max_tokens"] == 4096
    assert out.headers["Accept"] == "text/event-stream"
    assert out.to_dict()["config"]["url"] == out.url


def test_tool_round_trip_messages_mapping():
    req = CanonicalRequest.model_validate(
        {
            "model": "claude-3-sonnet",
            "messages": [
                {"role": "user", "content": "Weather in Seoul?"},
                {
                    "role": "assistant",
                    "content": "Let me check.",
                    "tool_calls": [
                        {
                            "id": "call_1",
                            "type": "function",
                            "function": {"name": "get_weather", "arguments": "{\"city\": \"Seoul\"}"},
                        }
                    ],
                },
                {"role": "tool", "tool_call_id": "call_1", "content": "sunny"},
                {"role": "developer", "content": "odd role"},
            ],
            "tools": [
                {
                    "type": "function",
                    "function": {
                        "name": "get_weather",
                        "description": "Get weather",
                        "parameters": {"type": "object", "properties": {"city": {"type": "string"}}},
                    },
                },
                {"type": "function", "function": {"name": "web_search"}},
            ],
        }
    )
    body = to_anthropic_request(req, _anthropic_cfg()).body
    assistant = body["messages"][1]
    assert assistant["role"] == "assistant"
    assert assistant["content"][0] == {"type": "text", "text": "Let me check."}
    assert assistant["content"][1] == {
        "type": "tool_use",
        "id": "call_1",
        "name": "get_weather",
        "input": {"city": "Seoul"},
    }
    assert body["messages"][2] == {
        "role": "user",
        "content": [{"type": "tool_result", "tool_use_id": "call_1", "content": "sunny"}],
    }
    # unrecognized roles default to user
    assert body["messages"][3]["role"] == "user"
    assert body["tools"][0]["name"] == "get_weather"
    assert body["tools"][0]["input_schema"]["properties"]["city"]["type"] == "string"
    assert body["tools"][1] == {"type": "web_search_20250305", "name": "web_search"}


def test_image_block_mapping():
    req = CanonicalRequest.model_validate(
        {
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": "What is this?"},
                        {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64,AAAA"}},
                        {"type": "image_url", "image_url": {"url": "https://example.com/cat.png"}},
                        {"type": "document", "source": {"id": 7}},
                    ],
                }
            ]
        }
    )
    content = to_anthropic_request(req, _anthropic_cfg()).body["messages"][0]["content"]
    assert content[0] == {"type": "text", "text": "What is this?"}
    assert content[1] == {
        "type": "image",
        "source": {"type": "base64", "media_type": "image/jpeg", "data": "AAAA"},
    }
    assert content[2] == {"type": "image", "source": {"type": "url", "url": "https://example.com/cat.png"}}
    # unknown block types pass through unchanged
    assert content[3] == {"type": "document", "source": {"id": 7}}


def test_thinking_enabled_by_model_marker():
    req = CanonicalRequest.model_validate(
        {"model": "claude-opus-thinking", "messages": [{"role": "user", "content": "hi"}]}
    )
    body = to_anthropic_request(req, _anthropic_cfg()).body
    assert body["thinking"] == {"type": "enabled", "budget_tokens": 10000}
    assert body["max_tokens"] > 10000

    override = CanonicalRequest.model_validate(
        {
            "model": "claude-opus-thinking",
            "max_tokens": 8000,
            "thinking": {"type": "enabled", "budget_tokens": 2048},
            "messages": [{"role": "user", "content": "hi"}],
        }
    )
    body = to_anthropic_request(override, _anthropic_cfg()).body
    assert body["thinking"]["budget_tokens"] == 2048
    assert body["max_tokens"] == 8000


def test_kimi_marker_enables_thinking():
    cfg = UpstreamConfig(
        kind=UpstreamKind.KIMI,
        base_url="https://api.kimi.com/coding/",
        api_key="kimi-key",
        default_model="kimi-for-coding",
        thinking_markers=["thinking", "k2"],
    )
    req = CanonicalRequest.model_validate({"model": "kimi-k2", "messages": [{"role": "user", "content": "hi"}]})
    out = build_upstream_request(req, cfg)
    assert out.url == "https://api.kimi.com/coding/v1/messages"
    assert out.body["thinking"]["type"] == "enabled"


def test_endpoint_url_is_not_doubled():
    assert endpoint_url("https://host/v1/messages", "/v1/messages") == "https://host/v1/messages"
    assert endpoint_url("https://host/v1/messages/", "/v1/messages") == "https://host/v1/messages"
    assert endpoint_url("https://host/api", "/v1/messages") == "https://host/api/v1/messages"


def test_credential_precedence():
    cfg = _anthropic_cfg(api_key="configured", env_api_key="from-env")
    assert resolve_api_key(cfg, "override") == "override"
    assert resolve_api_key(cfg) == "configured"
    cfg.api_key = None
    assert resolve_api_key(cfg) == "from-env"
    cfg.env_api_key = None
    with pytest.raises(CredentialError):
        resolve_api_key(cfg)


def test_missing_credentials_fail_before_request():
    req = CanonicalRequest.model_validate({"messages": [{"role": "user", "content": "hi"}]})
    with pytest.raises(CredentialError):
        to_anthropic_request(req, _anthropic_cfg(api_key=None))


def test_parse_data_uri():
    assert parse_data_uri("data:image/webp;base64,QUJD") == ("image/webp", "QUJD")
    assert parse_data_uri("https://example.com/x.png") is None


def test_cloudcode_request_mapping():
    req = CanonicalRequest.model_validate(
        {
            "model": "gemini-2.5-pro",
            "stream": True,
            "temperature": 0.3,
            "max_tokens": 512,
            "stop": ["END"],
            "messages": [
                {"role": "system", "content": "You are terse."},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": "Describe"},
                        {"type": "image_url", "image_url": {"url": "https://example.com/a.png"}},
                        {"type": "image_url", "image_url": {"url": "data:image/png;base64,iVBO"}},
                    ],
                },
                {
                    "role": "assistant",
                    "tool_calls": [
                        {"id": "fc_1", "function": {"name": "lookup", "arguments": "{\"q\": \"x\"}"}}
                    ],
                },
                {"role": "tool", "tool_call_id": "fc_1", "content": "result"},
            ],
            "tools": [
                {
                    "type": "function",
                    "function": {
                        "name": "lookup",
                        "description": "Lookup",
                        "parameters": {
                            "type": "object",
                            "properties": {"q": {"type": ["string", "null"]}},
                            "additionalProperties": False,
                        },
                    },
                },
                {"type": "function", "function": {"name": "web_search"}},
            ],
        }
    )
    out = to_cloudcode_request(req, _cloudcode_cfg())
    assert out.url == "https://cloudcode-pa.googleapis.com/v1internal:streamGenerateContent?alt=sse"
    assert out.headers["Authorization"] == "Bearer ya29.token"
    body = out.body
    assert body["model"] == "gemini-2.5-pro"
    assert body["project"] == "proj-1"
    inner = body["request"]
    assert inner["systemInstruction"]["parts"] == [{"text": "You are terse."}]
    user, model, tool = inner["contents"]
    assert user["role"] == "user"
    assert user["parts"][0] == {"text": "Describe"}
    assert user["parts"][1] == {"fileData": {"mimeType": "image/png", "fileUri": "https://example.com/a.png"}}
    assert user["parts"][2] == {"inlineData": {"mimeType": "image/png", "data": "iVBO"}}
    assert model == {"role": "model", "parts": [{"functionCall": {"id": "fc_1", "name": "lookup", "args": {"q": "x"}}}]}
    assert tool["parts"][0]["functionResponse"] == {"id": "fc_1", "name": "lookup", "response": {"output": "result"}}

    decl = inner["tools"][0]["functionDeclarations"][0]
    assert decl["parameters"] == {
        "type": "OBJECT",
        "properties": {"q": {"type": "STRING", "nullable": True}},
    }
    assert inner["tools"][1] == {"googleSearch": {}}
    assert inner["generationConfig"] == {"temperature": 0.3, "maxOutputTokens": 512, "stopSequences": ["END"]}


def test_cloudcode_non_stream_endpoint_and_thinking():
    req = CanonicalRequest.model_validate(
        {"model": "gemini-2.5-pro-thinking", "messages": [{"role": "user", "content": "hi"}]}
    )
    out = to_cloudcode_request(req, _cloudcode_cfg(base_url="https://cloudcode-pa.googleapis.com/v1internal"))
    assert out.url == "https://cloudcode-pa.googleapis.com/v1internal:generateContent"
    assert out.body["request"]["generationConfig"]["thinkingConfig"] == {
        "thinkingBudget": 10000,
        "includeThoughts": True,
    }


def test_cloudcode_schema_conflict_raises_before_request():
    req = CanonicalRequest.model_validate(
        {
            "messages": [{"role": "user", "content": "hi"}],
            "tools": [
                {
                    "type": "function",
                    "function": {
                        "name": "bad",
                        "parameters": {"type": "object", "anyOf": [{"type": "string"}]},
                    },
                }
            ],
        }
    )
    with pytest.raises(SchemaConflictError):
        to_cloudcode_request(req, _cloudcode_cfg())


def test_cloudcode_schema_marker_forwarded_raw():
    schema = {"$schema": "http://json-schema.org/draft-07/schema#", "type": "object"}
    req = CanonicalRequest.model_validate(
        {
            "messages": [{"role": "user", "content": "hi"}],
            "tools": [{"type": "function", "function": {"name": "raw", "parameters": schema}}],
        }
    )
    decl = to_cloudcode_request(req, _cloudcode_cfg()).body["request"]["tools"][0]["functionDeclarations"][0]
    assert "parameters" not in decl
    assert decl["parametersJsonSchema"] == schema


def test_responses_request_mapping():
    req = CanonicalRequest.model_validate(
        {
            "messages": [
                {"role": "user", "content": "List files"},
                {
                    "role": "assistant",
                    "content": "Running ls",
                    "tool_calls": [{"id": "call_9", "function": {"name": "shell", "arguments": {"cmd": "ls"}}}],
                },
                {"role": "tool", "tool_call_id": "call_9", "content": [{"type": "text", "text": "a.txt"}]},
            ],
            "tools": [
                {"type": "function", "function": {"name": "shell", "parameters": {"type": "object"}}},
                {"type": "function", "function": {"name": "web_search"}},
            ],
        }
    )
    out = to_responses_request(req, _codex_cfg())
    body = out.body
    assert out.url == "https://chatgpt.com/backend-api/codex/responses"
    assert out.headers["Authorization"] == "Bearer codex-token"
    assert out.headers["Accept"] == "text/event-stream"
    assert body["model"] == "gpt-5.2-codex"
    assert body["instructions"] == "You are a helpful assistant."
    assert body["store"] is False
    # the Codex backend only streams
    assert body["stream"] is True
    assert body["input"][0] == {"role": "user", "content": "List files"}
    assert body["input"][1] == {"role": "assistant", "content": "Running ls"}
    assert body["input"][2]["type"] == "function_call"
    assert body["input"][2]["call_id"] == "call_9"
    assert json.loads(body["input"][2]["arguments"]) == {"cmd": "ls"}
    assert body["input"][3] == {"type": "function_call_output", "call_id": "call_9", "output": "a.txt"}
    assert body["tools"][0]["type"] == "function"
    assert body["tools"][0]["name"] == "shell"
    assert body["tools"][1] == {"type": "web_search"}
    assert "reasoning" not in body


def test_responses_reasoning_effort_from_budget():
    assert reasoning_effort(1024) == "low"
    assert reasoning_effort(10000) == "medium"
    assert reasoning_effort(32000) == "high"

    req = CanonicalRequest.model_validate(
        {"model": "gpt-5-thinking", "messages": [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}]}
    )
    body = to_responses_request(req, _codex_cfg()).body
    assert body["instructions"] == "sys"
    assert body["reasoning"] == {"effort": "medium", "summary": "auto"}


@pytest.mark.parametrize(
    "stop_reason,expected",
    [
        ("end_turn", "stop"),
        ("max_tokens", "length"),
        ("tool_use", "tool_calls"),
        ("stop_sequence", "stop"),
        ("pause_turn", "pause_turn"),
        (None, None),
    ],
)
def test_finish_reason_table(stop_reason, expected):
    assert map_finish_reason(stop_reason) == expected
