"""Tests for the streaming chat client.

Validates:
- Status precondition (no decoding on non-success)
- on_delta ordering and single on_done
- Transport failure mapping (connect, timeout, mid-stream)
- Conversation value semantics and message composition
- Human CLI exit codes and argument handling
"""

import asyncio
import json
import os
import sys

import httpx
import pytest

# Ensure adapters/ is on path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import chat_stream
from chat_stream import (
    ChatStreamError,
    Conversation,
    Message,
    build_chat_request,
    compose_user_message,
    run_human_mode,
    stream_chat,
)
from stream_decoder import DONE, FAILED, StreamSession

URL = "http://relay.test/chat"


class ChunkStream(httpx.AsyncByteStream):
    """Response body delivered as the given chunks, optionally failing after."""

    def __init__(self, chunks, error=None):
        self._chunks = chunks
        self._error = error

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error


def run(coro):
    """Run async test in event loop."""
    return asyncio.new_event_loop().run_until_complete(coro)


def sse(*chunks, error=None, status=200):
    def handler(request):
        return httpx.Response(
            status,
            headers={"content-type": "text/event-stream"},
            stream=ChunkStream(list(chunks), error),
        )
    return handler


def send(handler, conversation=None, text="Where is my order?", **kwargs):
    """Run stream_chat against a mocked relay; returns (result, deltas, done_calls, session)."""
    deltas = []
    done_calls = []
    session = StreamSession()

    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await stream_chat(
                client, URL, conversation or Conversation(), text,
                on_delta=deltas.append, on_done=lambda: done_calls.append(True),
                session=session, **kwargs,
            )

    return run(main()), deltas, done_calls, session


# ── Successful streams ───────────────────────────────────────────────


class TestStreamChat:
    def test_deltas_in_order_and_done_once(self):
        result, deltas, done_calls, session = send(sse(
            b'data: {"choices":[{"delta":{"content":"Hel',
            b'lo"}}]}\n',
            b'data: {"choices":[{"delta":{"content":" there"}}]}\ndata: [DONE]\n',
        ))
        assert deltas == ["Hello", " there"]
        assert done_calls == [True]
        assert session.state == DONE
        assert result.last_reply == "Hello there"

    def test_clean_close_without_terminator(self):
        result, deltas, done_calls, session = send(sse(
            b'data: {"choices":[{"delta":{"content":"ok"}}]}\n',
        ))
        assert deltas == ["ok"]
        assert done_calls == [True]
        assert session.state == DONE

    def test_empty_reply(self):
        result, deltas, done_calls, _ = send(sse(b": ping\n\ndata: [DONE]\n"))
        assert deltas == []
        assert done_calls == [True]
        assert result.last_reply == ""

    def test_request_body_carries_history(self):
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            captured["headers"] = request.headers
            return sse(b"data: [DONE]\n")(request)

        history = Conversation.start("Welcome!").append("user", "hi").append("assistant", "hello")
        send(handler, history, "late delivery", headers={"Authorization": "Bearer k"})
        assert captured["body"] == {"messages": [
            {"role": "assistant", "content": "Welcome!"},
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
            {"role": "user", "content": "late delivery"},
        ]}
        assert captured["headers"]["authorization"] == "Bearer k"
        assert captured["headers"]["content-type"] == "application/json"

    def test_input_conversation_not_mutated(self):
        original = Conversation.start("Welcome!")
        result, _, _, _ = send(sse(b'data: {"choices":[{"delta":{"content":"x"}}]}\n'), original)
        assert len(original) == 1
        assert len(result) == 3
        assert result.messages[1] == Message("user", "Where is my order?")
        assert result.messages[2] == Message("assistant", "x")

    def test_attachment_noted_in_message(self):
        result, _, _, _ = send(sse(b"data: [DONE]\n"), text="see photo", attachment_name="meal.jpg")
        assert result.messages[0].content == "see photo\n[Attached: meal.jpg]"


# ── Failures ─────────────────────────────────────────────────────────


class TestStreamChatFailures:
    def test_non_success_status_fails_before_decoding(self):
        def handler(request):
            return httpx.Response(429, json={"error": "Rate limit exceeded, please try again later."})

        with pytest.raises(ChatStreamError) as exc_info:
            send(handler)
        err = exc_info.value
        assert err.code == "provider_error"
        assert err.status_code == 429
        assert err.retryable is True
        assert str(err) == "Rate limit exceeded, please try again later."

    def test_non_success_body_not_decoded(self):
        deltas = []
        session = StreamSession(on_delta=deltas.append)

        async def main():
            handler = sse(b'data: {"choices":[{"delta":{"content":"no"}}]}\n', status=500)
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                await stream_chat(client, URL, Conversation(), "hi", on_delta=deltas.append, session=session)

        with pytest.raises(ChatStreamError) as exc_info:
            run(main())
        assert str(exc_info.value) == "HTTP 500"
        assert deltas == []
        assert session.state == FAILED

    def test_openai_style_error_object(self):
        def handler(request):
            return httpx.Response(400, json={"error": {"message": "bad request"}})

        with pytest.raises(ChatStreamError, match="bad request") as exc_info:
            send(handler)
        assert exc_info.value.retryable is False

    def test_connect_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(ChatStreamError, match="Connection failed") as exc_info:
            send(handler)
        assert exc_info.value.code == "network_error"

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out")

        with pytest.raises(ChatStreamError, match="timed out") as exc_info:
            send(handler)
        assert exc_info.value.code == "network_error"

    def test_mid_stream_failure_keeps_dispatched_deltas(self):
        deltas = []
        done_calls = []
        session = StreamSession()
        handler = sse(
            b'data: {"choices":[{"delta":{"content":"partial"}}]}\n',
            error=httpx.ReadError("connection reset"),
        )

        async def main():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                await stream_chat(
                    client, URL, Conversation(), "hi",
                    on_delta=deltas.append, on_done=lambda: done_calls.append(True),
                    session=session,
                )

        with pytest.raises(ChatStreamError, match="Stream interrupted") as exc_info:
            run(main())
        assert exc_info.value.code == "stream_error"
        assert deltas == ["partial"]
        assert done_calls == []
        assert session.state == FAILED
        assert session.deltas == ["partial"]

    def test_empty_message_rejected_without_request(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200)

        with pytest.raises(ChatStreamError, match="empty") as exc_info:
            send(handler, text="   ")
        assert exc_info.value.code == "invalid_request"
        assert exc_info.value.retryable is False
        assert calls == []


# ── Conversation & composition ───────────────────────────────────────


class TestConversation:
    def test_start_with_greeting(self):
        conv = Conversation.start("Welcome!")
        assert conv.messages == (Message("assistant", "Welcome!"),)

    def test_start_empty(self):
        assert len(Conversation.start()) == 0
        assert Conversation.start().last_reply is None

    def test_append_returns_new_value(self):
        conv = Conversation()
        updated = conv.append("user", "hi")
        assert len(conv) == 0
        assert len(updated) == 1

    def test_rejects_unknown_role(self):
        with pytest.raises(ValueError, match="Unsupported role"):
            Conversation().append("system", "x")

    def test_build_chat_request(self):
        conv = Conversation().append("user", "a").append("assistant", "b")
        assert build_chat_request(conv) == {"messages": [
            {"role": "user", "content": "a"},
            {"role": "assistant", "content": "b"},
        ]}


class TestComposeUserMessage:
    def test_plain_text(self):
        assert compose_user_message("hello") == "hello"

    def test_attachment_only(self):
        assert compose_user_message("", "receipt.pdf") == "\n[Attached: receipt.pdf]"

    def test_blank_rejected(self):
        with pytest.raises(ValueError):
            compose_user_message("  \n ")


def test_error_to_dict():
    err = ChatStreamError("provider_error", "HTTP 502", status_code=502, retryable=True)
    assert err.to_dict() == {
        "error": "ChatStreamError",
        "code": "provider_error",
        "message": "HTTP 502",
        "status_code": 502,
        "retryable": True,
    }


# ── Human CLI ────────────────────────────────────────────────────────


@pytest.fixture
def prompt_file(tmp_path, monkeypatch):
    """Run the CLI from an empty directory so only built-in defaults apply."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("CHAT_CONFIG", raising=False)
    path = tmp_path / "prompt.txt"
    path.write_text("My order is late")
    return str(path)


def cli_exit_code(*args, **kwargs):
    with pytest.raises(SystemExit) as exc_info:
        run_human_mode(*args, **kwargs)
    return exc_info.value.code


class TestHumanMode:
    def test_streams_reply_to_stdout(self, prompt_file, capsys):
        captured = {}

        def handler(request):
            captured["url"] = str(request.url)
            captured["body"] = json.loads(request.content)
            return sse(b'data: {"choices":[{"delta":{"content":"Sorry"}}]}\n', b"data: [DONE]\n")(request)

        run_human_mode(prompt_file, URL, transport=httpx.MockTransport(handler))
        out, err = capsys.readouterr()
        assert out == "Sorry\n"
        assert "5 chars | 3 messages" in err
        assert captured["url"] == URL
        assert captured["body"]["messages"][-1] == {"role": "user", "content": "My order is late"}

    def test_attachment_name_forwarded(self, prompt_file):
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            return sse(b"data: [DONE]\n")(request)

        run_human_mode(prompt_file, URL, "receipt.pdf", transport=httpx.MockTransport(handler))
        assert captured["body"]["messages"][-1]["content"] == "My order is late\n[Attached: receipt.pdf]"

    @pytest.mark.parametrize("status", [400, 429, 500])
    def test_relay_error_exits_1(self, prompt_file, capsys, status):
        def handler(request):
            return httpx.Response(status, json={"error": "Chat provider is not configured"})

        assert cli_exit_code(prompt_file, URL, transport=httpx.MockTransport(handler)) == 1
        assert "ERROR: Chat provider is not configured" in capsys.readouterr().err

    def test_connect_error_exits_2(self, prompt_file):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        assert cli_exit_code(prompt_file, URL, transport=httpx.MockTransport(handler)) == 2

    def test_mid_stream_failure_exits_2(self, prompt_file):
        handler = sse(
            b'data: {"choices":[{"delta":{"content":"part"}}]}\n',
            error=httpx.ReadError("connection reset"),
        )
        assert cli_exit_code(prompt_file, URL, transport=httpx.MockTransport(handler)) == 2

    def test_empty_prompt_exits_4(self, prompt_file, tmp_path):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200)

        empty = tmp_path / "empty.txt"
        empty.write_text("  \n")
        assert cli_exit_code(str(empty), URL, transport=httpx.MockTransport(handler)) == 4
        assert calls == []

    def test_unreadable_prompt_exits_4(self, prompt_file, tmp_path, capsys):
        assert cli_exit_code(str(tmp_path / "missing.txt"), URL) == 4
        assert "Failed to read prompt" in capsys.readouterr().err

    def test_bad_config_exits_4(self, prompt_file, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("CHAT_CONFIG", str(tmp_path / "absent.yaml"))
        assert cli_exit_code(prompt_file, URL) == 4
        assert "Config not found" in capsys.readouterr().err


class TestMain:
    @pytest.fixture
    def calls(self, monkeypatch):
        recorded = []
        monkeypatch.setattr(chat_stream, "run_human_mode", lambda *args: recorded.append(args))
        return recorded

    def exit_code(self, monkeypatch, argv):
        monkeypatch.setattr(sys, "argv", ["chat_stream.py"] + argv)
        with pytest.raises(SystemExit) as exc_info:
            chat_stream.main()
        return exc_info.value.code

    def test_options_passed_through(self, monkeypatch, calls):
        monkeypatch.setattr(sys, "argv", ["chat_stream.py", "p.txt", "--attach", "a.png", "--url", "http://x/chat"])
        chat_stream.main()
        assert calls == [("p.txt", "http://x/chat", "a.png")]

    def test_defaults(self, monkeypatch, calls):
        monkeypatch.setattr(sys, "argv", ["chat_stream.py", "p.txt"])
        chat_stream.main()
        assert calls == [("p.txt", None, None)]

    @pytest.mark.parametrize("argv", [
        [],
        ["--url", "http://x/chat"],
        ["p.txt", "--url"],
        ["p.txt", "--attach"],
    ])
    def test_usage_errors_exit_4(self, monkeypatch, calls, argv):
        assert self.exit_code(monkeypatch, argv) == 4
        assert calls == []
