from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# Canonical (OpenAI chat-completions style) request side


class BlockKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    THINKING = "thinking"
    UNKNOWN = "unknown"


_BLOCK_KINDS: Dict[str, BlockKind] = {
    "text": BlockKind.TEXT,
    "input_text": BlockKind.TEXT,
    "image_url": BlockKind.IMAGE,
    "image": BlockKind.IMAGE,
    "tool_call": BlockKind.TOOL_CALL,
    "tool_use": BlockKind.TOOL_CALL,
    "tool_result": BlockKind.TOOL_RESULT,
    "thinking": BlockKind.THINKING,
}


def classify_block(block: Any) -> BlockKind:
    if not isinstance(block, dict):
        return BlockKind.UNKNOWN
    return _BLOCK_KINDS.get(str(block.get("type") or ""), BlockKind.UNKNOWN)


class FunctionCall(BaseModel):
    name: str = ""
    arguments: Union[str, Dict[str, Any], None] = None


class ToolCall(BaseModel):
    id: Optional[str] = None
    type: str = "function"
    function: FunctionCall


class CanonicalMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str
    # Plain string or ordered list of content blocks
    content: Union[str, List[Dict[str, Any]], None] = None
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    def blocks(self) -> List[Dict[str, Any]]:
        if self.content is None:
            return []
        if isinstance(self.content, str):
            return [{"type": "text", "text": self.content}]
        return list(self.content)

    def text(self, sep: str = "\n") -> str:
        if isinstance(self.content, str):
            return self.content
        return sep.join(
            str(b.get("text") or "") for b in self.blocks() if classify_block(b) is BlockKind.TEXT
        )


class FunctionDefinition(BaseModel):
    name: str
    description: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    # Optional output schema; only the Cloud Code upstream uses it
    response: Optional[Dict[str, Any]] = None


class ToolDefinition(BaseModel):
    type: str = "function"
    function: FunctionDefinition


class ThinkingOverride(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    budget_tokens: Optional[int] = Field(default=None, ge=1)


class CanonicalRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: Optional[str] = None
    messages: List[CanonicalMessage] = Field(default_factory=list)
    tools: Optional[List[ToolDefinition]] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    stop: Union[str, List[str], None] = None
    max_tokens: Optional[int] = Field(default=None, ge=1)
    stream: bool = False
    thinking: Optional[ThinkingOverride] = None

    def stop_sequences(self) -> List[str]:
        if not self.stop:
            return []
        if isinstance(self.stop, str):
            return [self.stop]
        return list(self.stop)


# Canonical chunk side


class ToolCallFunctionDelta(BaseModel):
    name: Optional[str] = None
    arguments: Optional[str] = None


class ToolCallDelta(BaseModel):
    index: int
    id: Optional[str] = None
    type: Optional[str] = None
    function: ToolCallFunctionDelta = Field(default_factory=ToolCallFunctionDelta)


class Delta(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Optional[str] = None
    content: Optional[str] = None
    reasoning_content: Optional[str] = None
    tool_calls: Optional[List[ToolCallDelta]] = None


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def of(cls, prompt_tokens: int, completion_tokens: int) -> "Usage":
        return cls(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )


class CanonicalChunk(BaseModel):
    id: str = Field(default_factory=lambda: f"chatcmpl-{uuid.uuid4().hex}")
    model: str = ""
    created: int = Field(default_factory=lambda: int(time.time()))
    delta: Delta = Field(default_factory=Delta)
    finish_reason: Optional[str] = None
    usage: Optional[Usage] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [
                {
                    "index": 0,
                    "delta": self.delta.model_dump(exclude_none=True),
                    "finish_reason": self.finish_reason,
                }
            ],
        }
        if self.usage is not None:
            out["usage"] = self.usage.model_dump()
        return out
