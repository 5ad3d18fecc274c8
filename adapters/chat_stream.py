#!/usr/bin/env python3
"""
chat_stream.py — Streaming chat client for the retention assistant

Sends the conversation to the chat relay, decodes the event-stream reply with
stream_decoder.StreamSession and reports each delta as it arrives.

Human CLI:  python3 chat_stream.py <prompt-file> [--url URL] [--attach NAME]

Exit codes:
  0 = success
  1 = relay/provider returned error (4xx/5xx)
  2 = network/stream error
  4 = invalid usage or config
"""

import asyncio
import logging
import os
import sys
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

import httpx

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from chat_config import load_config, redact_headers  # noqa: E402
from stream_decoder import StreamSession, decode_stream  # noqa: E402

logger = logging.getLogger("chatstream.client")

ROLES = ("user", "assistant")

# Status codes worth retrying at a later time
RETRYABLE_STATUS = {429, 500, 502, 503, 504}


# === Error Classes ===

class ChatStreamError(Exception):
    """Structured error with code, status_code, retryable flag."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.retryable = retryable

    def to_dict(self) -> dict:
        return {
            "error": "ChatStreamError",
            "code": self.code,
            "message": str(self),
            "status_code": self.status_code,
            "retryable": self.retryable,
        }


# === Conversation ===

@dataclass(frozen=True)
class Message:
    role: str
    content: str


@dataclass(frozen=True)
class Conversation:
    """Immutable message history. Appending returns a new Conversation."""

    messages: Tuple[Message, ...] = ()

    @classmethod
    def start(cls, greeting: Optional[str] = None) -> "Conversation":
        if greeting:
            return cls((Message("assistant", greeting),))
        return cls()

    def append(self, role: str, content: str) -> "Conversation":
        if role not in ROLES:
            raise ValueError(f"Unsupported role: {role!r}")
        return Conversation(self.messages + (Message(role, content),))

    @property
    def last_reply(self) -> Optional[str]:
        if self.messages and self.messages[-1].role == "assistant":
            return self.messages[-1].content
        return None

    def __len__(self) -> int:
        return len(self.messages)


def compose_user_message(text: str, attachment_name: Optional[str] = None) -> str:
    """Build user message content; an attachment is noted by name only."""
    if not text.strip() and not attachment_name:
        raise ValueError("Message is empty")
    if attachment_name:
        return f"{text}\n[Attached: {attachment_name}]"
    return text


# === Request Building ===

def build_chat_request(conversation: Conversation) -> dict:
    """Build the relay request body from a conversation."""
    return {
        "messages": [
            {"role": m.role, "content": m.content}
            for m in conversation.messages
            if m.role in ROLES
        ],
    }


def _error_message(response: httpx.Response) -> str:
    """Human-readable failure from an error response body."""
    try:
        data = response.json()
    except Exception:
        return f"HTTP {response.status_code}"
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            error = error.get("message")
        if isinstance(error, str) and error:
            return error[:200]
    return f"HTTP {response.status_code}"


# === Streaming ===

async def stream_chat(
    client: httpx.AsyncClient,
    url: str,
    conversation: Conversation,
    text: str,
    on_delta: Optional[Callable[[str], None]] = None,
    on_done: Optional[Callable[[], None]] = None,
    headers: Optional[dict] = None,
    attachment_name: Optional[str] = None,
    session: Optional[StreamSession] = None,
) -> Conversation:
    """Send one user turn and stream the assistant reply.

    on_delta fires once per fragment, in order; on_done fires exactly once
    when the stream terminates cleanly. Returns the conversation extended with
    the user message and the full reply. Any transport failure raises
    ChatStreamError and leaves `session` FAILED; deltas already dispatched
    stay in `session.deltas`. An empty message raises ChatStreamError with
    code invalid_request before any request is made.
    """
    try:
        content = compose_user_message(text, attachment_name)
    except ValueError as e:
        raise ChatStreamError(code="invalid_request", message=str(e)) from e
    conversation = conversation.append("user", content)
    if session is None:
        session = StreamSession()
    if on_delta is not None:
        session.on_delta = on_delta

    request_headers = {"Content-Type": "application/json", **(headers or {})}
    logger.debug("POST %s headers=%s", url, redact_headers(request_headers))

    try:
        async with client.stream(
            "POST", url, json=build_chat_request(conversation), headers=request_headers,
        ) as response:
            if not response.is_success:
                await response.aread()
                message = _error_message(response)
                session.fail(message)
                raise ChatStreamError(
                    code="provider_error",
                    message=message,
                    status_code=response.status_code,
                    retryable=response.status_code in RETRYABLE_STATUS,
                )
            async for _ in decode_stream(response.aiter_bytes(), session):
                pass
    except httpx.TimeoutException as e:
        session.fail(str(e))
        raise ChatStreamError(code="network_error", message=f"Request timed out: {e}", retryable=True)
    except httpx.ConnectError as e:
        session.fail(str(e))
        raise ChatStreamError(code="network_error", message=f"Connection failed: {e}", retryable=True)
    except httpx.TransportError as e:
        session.fail(str(e))
        raise ChatStreamError(code="stream_error", message=f"Stream interrupted: {e}", retryable=True)
    except asyncio.CancelledError:
        session.fail("cancelled")
        raise

    if on_done is not None:
        on_done()
    return conversation.append("assistant", session.text)


# === Human CLI Mode ===

# Exit code per ChatStreamError.code; anything else is a network/stream error
EXIT_CODES = {
    "provider_error": 1,
    "invalid_request": 4,
}


def run_human_mode(
    prompt_file: str,
    url: Optional[str] = None,
    attachment_name: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> None:
    """Send one prompt to the relay and print the reply as it streams."""
    try:
        config = load_config()
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(4)

    client_cfg = config.get("client", {})
    url = url or client_cfg.get("url", "")
    if not url:
        print("ERROR: No relay URL configured", file=sys.stderr)
        sys.exit(4)

    try:
        with open(prompt_file) as f:
            prompt = f.read()
    except OSError as e:
        print(f"ERROR: Failed to read prompt: {e}", file=sys.stderr)
        sys.exit(4)

    headers: dict[str, Any] = {}
    if client_cfg.get("api_key"):
        headers["Authorization"] = f"Bearer {client_cfg['api_key']}"

    conversation = Conversation.start(config.get("chat", {}).get("greeting"))
    timeout = httpx.Timeout(10.0, read=client_cfg.get("read_timeout_ms", 120000) / 1000.0)

    def on_delta(fragment: str) -> None:
        print(fragment, end="", flush=True)

    async def _send() -> Conversation:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            return await stream_chat(
                client, url, conversation, prompt,
                on_delta=on_delta, on_done=lambda: print(), headers=headers,
                attachment_name=attachment_name,
            )

    try:
        result = asyncio.run(_send())
    except ChatStreamError as e:
        print(f"\nERROR: {e}", file=sys.stderr)
        sys.exit(EXIT_CODES.get(e.code, 2))

    print(f"--- {len(result.last_reply or '')} chars | {len(result)} messages ---", file=sys.stderr)


# === Main Entry Point ===

def _option(args: list, name: str) -> Optional[str]:
    """Value following `name` in args; a flag without a value exits with 4."""
    if name not in args:
        return None
    idx = args.index(name)
    if idx + 1 >= len(args):
        print(f"ERROR: {name} requires an argument", file=sys.stderr)
        sys.exit(4)
    return args[idx + 1]


def main():
    args = sys.argv[1:]

    if not args or args[0].startswith("--"):
        print("Usage:", file=sys.stderr)
        print("  python3 chat_stream.py <prompt-file> [--url URL] [--attach NAME]", file=sys.stderr)
        sys.exit(4)

    run_human_mode(args[0], _option(args, "--url"), _option(args, "--attach"))


if __name__ == "__main__":
    main()
