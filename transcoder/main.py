from __future__ import annotations

import json
import sys
from collections import deque
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from .config import UpstreamConfig, UpstreamKind, settings
from .credentials import TokenProvider, ensure_fresh_token
from .errors import TranscoderError, UpstreamKindError
from .framing import DONE, format_sse
from .responses import as_completion, merge_chunks, transcode_response
from .schemas.canonical import CanonicalRequest
from .streaming import transcode_stream
from .transform import UpstreamRequest, build_upstream_request


app = FastAPI(title="Chat Completions Transcoder")

# Shared HTTP client (HTTP/1.1 + optional HTTP/2) with connection pooling
_HTTPX_CLIENT: Optional[httpx.AsyncClient] = None


def _get_httpx_client() -> httpx.AsyncClient:
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is None:
        limits = httpx.Limits(
            max_connections=100,
            max_keepalive_connections=20,
            keepalive_expiry=30.0,
        )
        try:
            _HTTPX_CLIENT = httpx.AsyncClient(http2=settings.http2, limits=limits)
        except ImportError:
            # If http2 extras not installed, gracefully fall back to HTTP/1.1
            _HTTPX_CLIENT = httpx.AsyncClient(http2=False, limits=limits)
    return _HTTPX_CLIENT


_RECENT = deque(maxlen=64)

# Bearer token sources for upstreams that authenticate with OAuth (Cloud Code, Codex)
_TOKEN_PROVIDERS: Dict[UpstreamKind, TokenProvider] = {}


def register_token_provider(kind: "UpstreamKind | str", provider: TokenProvider) -> None:
    _TOKEN_PROVIDERS[UpstreamKind(kind)] = provider


def _openai_error_for_status(status: int, message: str, error_type: Optional[str] = None) -> Dict[str, Any]:
    t = error_type or "api_error"
    if error_type is None:
        if status == 400:
            t = "invalid_request_error"
        elif status == 401:
            t = "authentication_error"
        elif status == 403:
            t = "permission_error"
        elif status == 404:
            t = "not_found_error"
        elif status == 429:
            t = "rate_limit_error"
    return {"error": {"message": message, "type": t, "code": status}}


def _upstream_error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
        err = data.get("error") if isinstance(data, dict) else None
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str):
            return err
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
        return json.dumps(data)
    except Exception:
        return resp.text


def _resolve_upstream(name: str) -> UpstreamConfig:
    try:
        return settings.upstream(name.lower())
    except ValueError:
        raise UpstreamKindError(f"unknown upstream '{name}'")


async def _credential_override(cfg: UpstreamConfig, inbound: Optional[str]) -> Optional[str]:
    if inbound:
        return inbound
    if cfg.api_key or cfg.env_api_key:
        return None
    provider = _TOKEN_PROVIDERS.get(cfg.kind)
    if provider is None:
        return None
    return await ensure_fresh_token(provider)


def _debug_request(up: UpstreamRequest, label: str) -> None:
    if not settings.debug:
        return
    redacted = {
        k: ("<redacted>" if k.lower() in ("authorization", "x-api-key") else v)
        for k, v in up.headers.items()
    }
    print(
        f"[transcoder] upstream request ({label}):",
        json.dumps({"url": up.url, "headers": redacted}, ensure_ascii=False),
        file=sys.stderr,
    )


@app.post("/v1/chat/completions")
async def chat_completions(
    request: Request,
    x_upstream_api_key: str | None = Header(default=None, alias="x-upstream-api-key"),
):
    return await _handle_chat(request, settings.default_upstream.value, x_upstream_api_key)


@app.post("/{upstream}/v1/chat/completions")
async def upstream_chat_completions(
    upstream: str,
    request: Request,
    x_upstream_api_key: str | None = Header(default=None, alias="x-upstream-api-key"),
):
    return await _handle_chat(request, upstream, x_upstream_api_key)


async def _handle_chat(request: Request, upstream_name: str, api_key: Optional[str]):
    _rec: Dict[str, Any] = {"phase": "start", "upstream": upstream_name}
    try:
        body = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    try:
        parsed = CanonicalRequest.model_validate(body)
    except ValidationError as e:
        return JSONResponse(status_code=400, content=_openai_error_for_status(400, str(e)))
    _rec["request_model"] = parsed.model

    # Schema and credential problems surface here, before any network call
    try:
        cfg = _resolve_upstream(upstream_name)
        override = await _credential_override(cfg, api_key)
        up = build_upstream_request(parsed, cfg, override)
    except TranscoderError as e:
        _rec.update({"phase": "transform_error", "message": e.message})
        _RECENT.append(_rec)
        return JSONResponse(
            status_code=e.status_code,
            content=_openai_error_for_status(e.status_code, e.message, e.error_type),
        )
    _rec["upstream_url"] = up.url
    _rec["upstream_model"] = up.body.get("model")

    client = _get_httpx_client()
    timeout = httpx.Timeout(settings.upstream_timeout)
    upstream_streams = bool(up.body.get("stream")) or parsed.stream

    if not upstream_streams:
        _debug_request(up, "non-stream")
        try:
            resp = await client.post(up.url, json=up.body, headers=up.headers, timeout=timeout)
        except Exception as e:
            raise HTTPException(status_code=502, detail=f"Upstream error: {e}")
        if resp.status_code >= 400:
            message = _upstream_error_message(resp)
            _rec.update({"phase": "non_stream_error", "upstream_status": resp.status_code, "message": message})
            _RECENT.append(_rec)
            return JSONResponse(status_code=resp.status_code, content=_openai_error_for_status(resp.status_code, message))
        chunk = transcode_response(cfg.protocol, resp.json())[0]
        _rec["phase"] = "non_stream_ok"
        _RECENT.append(_rec)
        return JSONResponse(content=as_completion(chunk))

    _debug_request(up, "stream")
    try:
        upstream = await client.send(
            client.build_request("POST", up.url, json=up.body, headers=up.headers, timeout=timeout),
            stream=True,
        )
    except Exception as e:
        raise HTTPException(status_code=502, detail=f"Upstream error: {e}")

    if upstream.status_code >= 400:
        try:
            await upstream.aread()
        finally:
            await upstream.aclose()
        message = _upstream_error_message(upstream)
        _rec.update({"phase": "stream_error", "upstream_status": upstream.status_code, "message": message})
        _RECENT.append(_rec)
        return JSONResponse(
            status_code=upstream.status_code,
            content=_openai_error_for_status(upstream.status_code, message),
        )

    if not parsed.stream:
        # Upstream only streams (Codex); fold its events into one completion
        try:
            chunks = [c async for c in transcode_stream(cfg.protocol, upstream.aiter_bytes())]
        except Exception as e:
            raise HTTPException(status_code=502, detail=f"Upstream error: {e}")
        finally:
            await upstream.aclose()
        _rec["phase"] = "non_stream_ok_merged"
        _RECENT.append(_rec)
        return JSONResponse(content=as_completion(merge_chunks(chunks)))

    async def event_stream() -> AsyncIterator[bytes]:
        chunks = transcode_stream(cfg.protocol, upstream.aiter_bytes())
        emitted = 0
        try:
            async for chunk in chunks:
                if await request.is_disconnected():
                    print("[transcoder] client disconnected during streaming", file=sys.stderr)
                    _rec["phase"] = "stream_client_disconnected"
                    return
                emitted += 1
                yield format_sse(chunk.to_dict())
            yield DONE
            _rec["phase"] = "stream_ok"
        except Exception as e:
            print(f"[transcoder] stream exception: {type(e).__name__}: {e}", file=sys.stderr)
            err = _openai_error_for_status(502, str(e), "upstream_error")
            yield format_sse(err)
            _rec.update({"phase": "stream_exception", "message": str(e), "exception_type": type(e).__name__})
        finally:
            await chunks.aclose()
            await upstream.aclose()
            _rec["chunks"] = emitted
            _RECENT.append(_rec)

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@app.get("/")
async def root():
    return {
        "ok": True,
        "default_upstream": settings.default_upstream.value,
        "upstreams": [k.value for k in settings.upstreams],
    }


@app.get("/_debug/last")
async def debug_last():
    return _RECENT[-1] if _RECENT else {}


@app.on_event("startup")
async def _startup_client():
    # Initialize shared HTTP client eagerly to establish pools
    _ = _get_httpx_client()
    return None


@app.on_event("shutdown")
async def _shutdown_close_client():
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is not None:
        try:
            await _HTTPX_CLIENT.aclose()
        except Exception:
            ...
        _HTTPX_CLIENT = None
