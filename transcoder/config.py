import json
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class UpstreamKind(str, Enum):
    ANTHROPIC = "anthropic"
    KIMI = "kimi"
    CLOUDCODE = "cloudcode"
    CODEX = "codex"


class WireProtocol(str, Enum):
    ANTHROPIC = "anthropic"
    CLOUDCODE = "cloudcode"
    RESPONSES = "responses"


_PROTOCOLS: Dict[UpstreamKind, WireProtocol] = {
    UpstreamKind.ANTHROPIC: WireProtocol.ANTHROPIC,
    UpstreamKind.KIMI: WireProtocol.ANTHROPIC,
    UpstreamKind.CLOUDCODE: WireProtocol.CLOUDCODE,
    UpstreamKind.CODEX: WireProtocol.RESPONSES,
}


@dataclass
class UpstreamConfig:
    """Endpoint settings for one upstream.

    ``api_key`` is an explicitly configured credential; ``env_api_key`` is the
    value captured from the environment when settings were built. Request
    transcoders never read the environment themselves.
    """

    kind: UpstreamKind
    base_url: str
    api_key: Optional[str] = None
    env_api_key: Optional[str] = None
    default_model: Optional[str] = None
    thinking_markers: List[str] = field(default_factory=lambda: ["thinking"])
    thinking_budget: int = 10000
    default_max_tokens: int = 4096
    project: Optional[str] = None
    always_stream: bool = False
    anthropic_version: str = "2023-06-01"

    @property
    def protocol(self) -> WireProtocol:
        return _PROTOCOLS[self.kind]


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Settings:
    def __init__(self) -> None:
        self.debug: bool = _flag("DEBUG_PROXY", "")
        # Per-event tracing of the upstream SSE stream
        self.debug_sse: bool = _flag("DEBUG_SSE", "")
        self.http2: bool = _flag("PROXY_HTTP2", "1")
        try:
            self.upstream_timeout: float = float(os.environ.get("UPSTREAM_TIMEOUT", "120"))
        except Exception:
            self.upstream_timeout = 120.0
        try:
            self.thinking_budget: int = max(1, int(os.environ.get("THINKING_BUDGET_TOKENS", "10000")))
        except Exception:
            self.thinking_budget = 10000
        try:
            self.default_max_tokens: int = max(1, int(os.environ.get("DEFAULT_MAX_TOKENS", "4096")))
        except Exception:
            self.default_max_tokens = 4096

        default_kind = os.environ.get("DEFAULT_UPSTREAM", UpstreamKind.ANTHROPIC.value).strip().lower()
        try:
            self.default_upstream: UpstreamKind = UpstreamKind(default_kind)
        except ValueError:
            self.default_upstream = UpstreamKind.ANTHROPIC

        # UPSTREAM_API_KEYS expects a JSON object mapping upstream kind → explicit key
        keys_raw = os.environ.get("UPSTREAM_API_KEYS", "{}")
        try:
            keys = json.loads(keys_raw)
            self.configured_keys: Dict[str, str] = keys if isinstance(keys, dict) else {}
        except Exception:
            self.configured_keys = {}

        self.upstreams: Dict[UpstreamKind, UpstreamConfig] = {
            UpstreamKind.ANTHROPIC: UpstreamConfig(
                kind=UpstreamKind.ANTHROPIC,
                base_url=os.environ.get("ANTHROPIC_BASE_URL", "https://api.anthropic.com"),
                env_api_key=os.environ.get("ANTHROPIC_API_KEY"),
                default_model="claude-sonnet-4-20250514",
            ),
            UpstreamKind.KIMI: UpstreamConfig(
                kind=UpstreamKind.KIMI,
                base_url=os.environ.get("KIMI_BASE_URL", "https://api.kimi.com/coding/"),
                env_api_key=os.environ.get("KIMI_API_KEY"),
                default_model="kimi-for-coding",
                thinking_markers=["thinking", "k2"],
            ),
            UpstreamKind.CLOUDCODE: UpstreamConfig(
                kind=UpstreamKind.CLOUDCODE,
                base_url=os.environ.get("CLOUDCODE_BASE_URL", "https://cloudcode-pa.googleapis.com"),
                env_api_key=os.environ.get("CLOUDCODE_ACCESS_TOKEN"),
                project=os.environ.get("CLOUDCODE_PROJECT"),
            ),
            UpstreamKind.CODEX: UpstreamConfig(
                kind=UpstreamKind.CODEX,
                base_url=os.environ.get("CODEX_BASE_URL", "https://chatgpt.com/backend-api/codex"),
                env_api_key=os.environ.get("CODEX_ACCESS_TOKEN"),
                default_model="gpt-5.2-codex",
                # The Codex backend only serves event streams
                always_stream=True,
            ),
        }
        for kind, cfg in self.upstreams.items():
            cfg.api_key = self.configured_keys.get(kind.value) or None
            cfg.thinking_budget = self.thinking_budget
            cfg.default_max_tokens = self.default_max_tokens

    def upstream(self, kind: "UpstreamKind | str") -> UpstreamConfig:
        return self.upstreams[UpstreamKind(kind)]


settings = Settings()
