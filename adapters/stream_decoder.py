"""
stream_decoder.py — Incremental chat delta decoder

Turns a chunked `text/event-stream` response body (httpx response.aiter_bytes())
into an ordered sequence of assistant text deltas.

Handles: multi-byte characters split across chunks, lines split across chunks,
CRLF line endings, comments, the OpenAI-style [DONE] terminator, and JSON
payloads that arrive cut in two by a stray line break.

Wire format:
    : comment
    data: {"choices":[{"delta":{"content":"..."}}]}
    data: [DONE]
"""

from __future__ import annotations

import codecs
import json
import logging
import re
from dataclasses import dataclass, field
from typing import AsyncGenerator, AsyncIterable, Callable, List, Optional, Tuple

logger = logging.getLogger("chatstream.decoder")

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"

# Session states
OPEN = "OPEN"
DONE = "DONE"
FAILED = "FAILED"

# Frame kinds
COMMENT = "comment"
BLANK = "blank"
DATA = "data"
TERMINATOR = "terminator"
UNRECOGNIZED = "unrecognized"

# Payload parse outcomes
PARSED = "parsed"
INCOMPLETE = "incomplete"
INVALID = "invalid"

_LITERALS = ("true", "false", "null", "NaN", "Infinity", "-Infinity")
_NUMBER_TAIL_RE = re.compile(r"[-+.eE0-9]+\Z")

_decoder = json.JSONDecoder(strict=False)


@dataclass(frozen=True)
class Frame:
    """One classified line of the event stream."""
    kind: str
    payload: str = ""


def classify_line(line: str) -> Frame:
    """Classify a single line (trailing CR already stripped)."""
    if line.startswith(":"):
        return Frame(COMMENT)
    if not line.strip():
        return Frame(BLANK)
    if not line.startswith(DATA_PREFIX):
        return Frame(UNRECOGNIZED)
    payload = line[len(DATA_PREFIX):].strip()
    if payload == DONE_SENTINEL:
        return Frame(TERMINATOR, payload)
    return Frame(DATA, payload)


def _is_truncated(payload: str, exc: json.JSONDecodeError) -> bool:
    """True when the parser failed only because input ran out."""
    if exc.msg.startswith("Unterminated string"):
        return True
    if exc.msg.startswith("Extra data"):
        return False
    tail = payload[exc.pos:]
    if not tail:
        return True
    if exc.msg.startswith("Invalid \\uXXXX escape"):
        return '"' not in tail
    if any(lit.startswith(tail) for lit in _LITERALS):
        return True
    return bool(_NUMBER_TAIL_RE.match(tail))


def parse_payload(payload: str) -> Tuple[str, Optional[str]]:
    """Parse a data payload and pull out choices[0].delta.content.

    Returns (outcome, fragment): outcome is PARSED, INCOMPLETE or INVALID;
    fragment is a non-empty string only when PARSED and present.
    """
    try:
        obj = _decoder.decode(payload)
    except json.JSONDecodeError as e:
        return (INCOMPLETE if _is_truncated(payload, e) else INVALID), None

    try:
        content = obj["choices"][0]["delta"]["content"]
    except (KeyError, IndexError, TypeError):
        return PARSED, None
    if isinstance(content, str) and content:
        return PARSED, content
    return PARSED, None


@dataclass
class StreamSession:
    """Decoding state for one streaming exchange.

    Owns the accumulator buffer, the done flag and the append-only delta log.
    `feed()` and `finish()` return the deltas dispatched by that call, after
    passing each one to `on_delta` in order.
    """
    on_delta: Optional[Callable[[str], None]] = None
    encoding: str = "utf-8"
    state: str = field(default=OPEN, init=False)
    deltas: List[str] = field(default_factory=list, init=False)
    error: Optional[str] = field(default=None, init=False)
    _buffer: str = field(default="", init=False, repr=False)
    _pending: Optional[str] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self._text_decoder = codecs.getincrementaldecoder(self.encoding)("replace")

    @property
    def done(self) -> bool:
        return self.state == DONE

    @property
    def buffer(self) -> str:
        """Unconsumed text, including a line held back for retry."""
        if self._pending is not None:
            return self._pending + "\n" + self._buffer
        return self._buffer

    @property
    def text(self) -> str:
        """The assistant message reconstructed so far."""
        return "".join(self.deltas)

    def feed(self, chunk: bytes) -> List[str]:
        if self.state != OPEN:
            return []
        self._buffer += self._text_decoder.decode(chunk)
        return self._drain()

    def finish(self) -> List[str]:
        """Transport closed cleanly: flush trailing bytes and the last line."""
        if self.state != OPEN:
            return []
        self._buffer += self._text_decoder.decode(b"", final=True)
        emitted = self._drain()
        if self.state == OPEN and self._buffer:
            # Stream ended without a final newline
            tail, self._buffer = self._buffer, ""
            emitted.extend(self._interpret(tail))
        if self.state == OPEN and self._pending is not None:
            logger.warning("Stream ended with truncated payload (%d chars), discarded", len(self._pending))
            self._pending = None
        if self.state == OPEN:
            self.state = DONE
        return emitted

    def fail(self, reason: str) -> None:
        """Transport failed or was aborted; no further callbacks fire."""
        if self.state != OPEN:
            return
        self.state = FAILED
        self.error = reason
        logger.warning("Stream session failed after %d deltas: %s", len(self.deltas), reason)

    def _drain(self) -> List[str]:
        emitted: List[str] = []
        while self.state == OPEN:
            idx = self._buffer.find("\n")
            if idx == -1:
                break
            raw = self._buffer[:idx]
            self._buffer = self._buffer[idx + 1:]
            emitted.extend(self._interpret(raw))
        return emitted

    def _interpret(self, raw: str) -> List[str]:
        # raw keeps its trailing CR so a merged payload gets its CRLF back
        line = raw[:-1] if raw.endswith("\r") else raw
        if self._pending is not None:
            if line.startswith((":", DATA_PREFIX)) or not line.strip():
                logger.debug("Abandoning incomplete payload: %.80s", self._pending)
            else:
                raw = self._pending + "\n" + raw
                line = raw[:-1] if raw.endswith("\r") else raw
            self._pending = None

        frame = classify_line(line)
        if frame.kind == TERMINATOR:
            self.state = DONE
            return []
        if frame.kind != DATA:
            return []

        outcome, fragment = parse_payload(frame.payload)
        if outcome == INCOMPLETE:
            # Held in front of the buffer until the next line completes it
            self._pending = raw
            return []
        if outcome == INVALID:
            logger.debug("Discarding malformed data frame: %.80s", frame.payload)
            return []
        if fragment is None:
            return []

        self.deltas.append(fragment)
        if self.on_delta is not None:
            self.on_delta(fragment)
        return [fragment]


async def decode_stream(
    stream: AsyncIterable[bytes],
    session: Optional[StreamSession] = None,
) -> AsyncGenerator[str, None]:
    """Decode text deltas from an async byte stream.

    Yields each delta as soon as the chunk carrying it has been framed.
    Stops at the [DONE] terminator without reading further chunks. If the
    stream raises, the session is marked FAILED and the exception propagates.
    """
    if session is None:
        session = StreamSession()

    try:
        async for chunk in stream:
            for delta in session.feed(chunk):
                yield delta
            if session.state != OPEN:
                return
    except BaseException as e:
        session.fail(str(e) or type(e).__name__)
        raise

    for delta in session.finish():
        yield delta
