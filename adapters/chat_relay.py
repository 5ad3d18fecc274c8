#!/usr/bin/env python3
"""
chat_relay.py — Chat HTTP Sidecar

FastAPI application between the chat client and an OpenAI-compatible
provider. Prepends the retention-assistant system prompt, requests a
streaming completion and re-emits the decoded deltas as normalized frames.
Binds to 127.0.0.1:{CHAT_PORT} (default: 3001).

Endpoints:
  POST /chat     — Streaming completion (text/event-stream)
  GET  /healthz  — Liveness probe
  GET  /readyz   — Readiness probe

Response frames:
  data: {"choices":[{"delta":{"content":"..."}}]}
  data: [DONE]
"""

import json
import os
import sys
import time
from typing import Any, AsyncIterator, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from chat_config import load_config, redact_config  # noqa: E402
from stream_decoder import DONE_SENTINEL, StreamSession, decode_stream  # noqa: E402

# --- Configuration ---

CHAT_PORT = int(os.environ.get("CHAT_PORT", "3001"))
CONFIG = load_config()

START_TIME = time.monotonic()

ROLES = ("user", "assistant")

# Upstream statuses passed through to the client unchanged
PASSTHROUGH_STATUS = {402, 429}


# --- Upstream Client ---


class UpstreamClient:
    """Pooled httpx.AsyncClient for the configured provider.

    Created lazily on the first relayed request and closed on shutdown.
    Pool: max_connections=20, max_keepalive_connections=10.
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._client: Optional[httpx.AsyncClient] = None
        self._transport = transport

    def get(self, provider: dict[str, Any]) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client

        timeout = httpx.Timeout(
            connect=provider.get("connect_timeout_ms", 5000) / 1000.0,
            read=provider.get("read_timeout_ms", 60000) / 1000.0,
            write=30.0,
            pool=provider.get("total_timeout_ms", 300000) / 1000.0,
        )
        self._client = httpx.AsyncClient(
            base_url=provider["base_url"].rstrip("/"),
            timeout=timeout,
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            transport=self._transport,
        )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def is_open(self) -> bool:
        return self._client is not None


# --- Request Validation ---


def validate_messages(body: Any) -> list[dict[str, str]]:
    """Validate a relay request body and return its chat messages.

    Raises ValueError with a client-facing message on bad input.
    Client-supplied system messages are dropped.
    """
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    messages = body.get("messages")
    if not isinstance(messages, list) or not messages:
        raise ValueError("'messages' must be a non-empty list")

    result = []
    for i, msg in enumerate(messages):
        if not isinstance(msg, dict):
            raise ValueError(f"messages[{i}] must be an object")
        role = msg.get("role")
        content = msg.get("content")
        if role == "system":
            continue
        if role not in ROLES:
            raise ValueError(f"messages[{i}] has unsupported role: {role!r}")
        if not isinstance(content, str):
            raise ValueError(f"messages[{i}] content must be a string")
        result.append({"role": role, "content": content})

    if not result:
        raise ValueError("'messages' has no user or assistant turns")
    return result


def build_upstream_request(messages: list[dict[str, str]], config: dict[str, Any]) -> dict[str, Any]:
    """Build the OpenAI-compatible streaming request body."""
    system_prompt = config.get("chat", {}).get("system_prompt", "")
    upstream_messages = [{"role": "system", "content": system_prompt}] if system_prompt else []
    return {
        "model": config.get("provider", {}).get("model", ""),
        "messages": upstream_messages + messages,
        "stream": True,
    }


def upstream_error_message(response: httpx.Response) -> str:
    """Extract error message from upstream body without exposing sensitive data."""
    if response.status_code == 429:
        return "Rate limit exceeded, please try again later."
    if response.status_code == 402:
        return "Usage credits exhausted, please add funds."
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            error = error.get("message")
        if isinstance(error, str) and error:
            return error[:200]
    return f"HTTP {response.status_code}"


def encode_delta(fragment: str) -> str:
    """Encode one delta as a normalized event-stream frame."""
    chunk = {"choices": [{"delta": {"content": fragment}}]}
    return f"data: {json.dumps(chunk, ensure_ascii=False)}\n\n"


async def relay_frames(response: httpx.Response, trace_id: str) -> AsyncIterator[str]:
    """Decode upstream deltas and re-emit them as normalized frames.

    A transport failure mid-stream sends an error comment and then aborts the
    response without [DONE], so the client sees an abnormal close.
    """
    session = StreamSession()
    try:
        async for fragment in decode_stream(response.aiter_bytes(), session):
            yield encode_delta(fragment)
    except httpx.TransportError as e:
        print(f"[chat-relay] STREAM FAILED {trace_id}: {e}", flush=True)
        yield f": error {str(e)[:200] or type(e).__name__}\n\n"
        raise
    print(f"[chat-relay] DONE {trace_id}: {len(session.deltas)} deltas", flush=True)
    yield f"data: {DONE_SENTINEL}\n\n"


# --- Application ---

app = FastAPI(title="Chat Relay", docs_url=None, redoc_url=None)

upstream = UpstreamClient()


@app.get("/healthz")
async def healthz() -> dict[str, Any]:
    """Liveness probe. Process alive, event loop responsive."""
    return {
        "status": "alive",
        "uptime_s": round(time.monotonic() - START_TIME, 2),
    }


@app.get("/readyz")
async def readyz() -> dict[str, Any]:
    """Readiness probe. Reports whether an upstream provider is configured."""
    provider = CONFIG.get("provider", {})
    return {
        "status": "ready",
        "uptime_s": round(time.monotonic() - START_TIME, 2),
        "provider": bool(provider.get("base_url") and provider.get("api_key")),
        "upstream_open": upstream.is_open,
    }


@app.post("/chat")
async def chat(request: Request):
    """Streaming completion.

    1. Parse and validate {"messages": [...]}
    2. Get the provider client (created on first use)
    3. Prepend the system prompt, request a streaming completion
    4. Map upstream failures to JSON errors before any frame is sent
    5. Relay decoded deltas as normalized frames, then [DONE]
    """
    body = await request.body()
    try:
        messages = validate_messages(json.loads(body))
    except json.JSONDecodeError:
        return JSONResponse(status_code=400, content={"error": "Request body is not valid JSON"})
    except ValueError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})

    provider = CONFIG.get("provider", {})
    base_url = provider.get("base_url", "")
    api_key = provider.get("api_key", "")
    if not base_url or not api_key:
        return JSONResponse(status_code=500, content={"error": "Chat provider is not configured"})

    trace_id = request.headers.get("x-request-id", "") or f"chat-{int(time.time() * 1000)}"
    client = upstream.get(provider)
    upstream_request = client.build_request(
        "POST",
        "/chat/completions",
        json=build_upstream_request(messages, CONFIG),
        headers={
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "X-Request-ID": trace_id,
        },
    )

    try:
        response = await client.send(upstream_request, stream=True)
    except httpx.TimeoutException as e:
        return JSONResponse(status_code=502, content={"error": f"Provider timed out: {e}"})
    except httpx.TransportError as e:
        return JSONResponse(status_code=502, content={"error": f"Provider unreachable: {e}"})

    if not response.is_success:
        await response.aread()
        await response.aclose()
        status = response.status_code if response.status_code in PASSTHROUGH_STATUS else 502
        print(f"[chat-relay] UPSTREAM {response.status_code} {trace_id}", flush=True)
        return JSONResponse(status_code=status, content={"error": upstream_error_message(response)})

    return StreamingResponse(
        relay_frames(response, trace_id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        background=BackgroundTask(response.aclose),
    )


# --- Startup/Shutdown ---


@app.on_event("startup")
async def startup() -> None:
    """Log config on startup (no secrets)."""
    print(f"[chat-relay] Started on 127.0.0.1:{CHAT_PORT}", flush=True)
    print(f"[chat-relay] Provider: {redact_config(CONFIG)['provider']}", flush=True)


@app.on_event("shutdown")
async def shutdown() -> None:
    """Close the provider connection pool."""
    print("[chat-relay] Shutting down, closing upstream client...", flush=True)
    await upstream.close()
    print("[chat-relay] Shutdown complete", flush=True)
