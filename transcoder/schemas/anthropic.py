from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


# Minimal Anthropic v1/messages response schema (what the transcoder reads)


class Usage(BaseModel):
    model_config = ConfigDict(extra="allow")

    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None


class ContentBlock(BaseModel):
    # text | thinking | redacted_thinking | tool_use | server_tool_use | ...
    model_config = ConfigDict(extra="allow")

    type: str
    text: Optional[str] = None
    thinking: Optional[str] = None
    id: Optional[str] = None
    name: Optional[str] = None
    input: Optional[Any] = None


class MessageResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    type: Literal["message"] = "message"
    role: Literal["assistant"] = "assistant"
    model: Optional[str] = None
    content: List[ContentBlock] = Field(default_factory=list)
    stop_reason: Optional[str] = None
    stop_sequence: Optional[str] = None
    usage: Usage = Field(default_factory=Usage)


# Streaming event payloads (subset)


class MessageStart(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    model: Optional[str] = None
    usage: Usage = Field(default_factory=Usage)


class MessageStartEvent(BaseModel):
    type: Literal["message_start"] = "message_start"
    message: MessageStart = Field(default_factory=MessageStart)


class ContentBlockStartEvent(BaseModel):
    type: Literal["content_block_start"] = "content_block_start"
    index: Optional[int] = None
    content_block: ContentBlock


class ContentBlockDeltaEvent(BaseModel):
    type: Literal["content_block_delta"] = "content_block_delta"
    index: Optional[int] = None
    # {"type": "text_delta", "text": ...} | thinking_delta | input_json_delta | signature_delta
    delta: Dict[str, Any] = Field(default_factory=dict)


class MessageDeltaEvent(BaseModel):
    type: Literal["message_delta"] = "message_delta"
    delta: Dict[str, Any] = Field(default_factory=dict)  # {"stop_reason": "end_turn", ...}
    usage: Optional[Usage] = None


class ErrorBody(BaseModel):
    type: str = "api_error"
    message: str = ""


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    error: ErrorBody = Field(default_factory=ErrorBody)
