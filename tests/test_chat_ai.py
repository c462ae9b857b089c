from __future__ import annotations

import asyncio
import json
import time
from types import SimpleNamespace

import pytest
import requests

from src.composer.domain.chat_models import ContextData
from src.composer.services import chat_ai
from src.composer.services.model_router import ModelRouter
from src.composer.services.response_classifier import classify_text


async def _collect(source, history, intent, context=None):
    return [piece async for piece in source.stream(history, intent, context)]


@pytest.mark.parametrize(
    "text,has_draft,expected",
    [
        ("Write a LinkedIn post about our Series A", False, "draft"),
        ("Rewrite the opening line", True, "edit"),
        ("make it punchier", True, "edit"),
        ("add a stat", True, "edit"),
        ("add a stat", False, "general"),
        ("Can you give me feedback on this post?", False, "feedback"),
        ("Brainstorm some topics for next week", False, "ideate"),
        ("hello", False, "general"),
        ("", False, "general"),
    ],
)
def test_detect_user_intent(text, has_draft, expected):
    assert chat_ai.detect_user_intent(text, has_draft) == expected


def test_system_prompt_includes_only_present_context_sections():
    context = ContextData(summary="We build bikes", engagement_patterns="Top Performing Posts:\nPost: \"x...\"")
    prompt = chat_ai.build_system_prompt(context, "draft")
    assert "## Organization Summary\nWe build bikes" in prompt
    assert "## What Resonates" in prompt
    assert "## Audience Demographics" not in prompt
    assert "## Recent Post Examples" not in prompt


def test_edit_prompt_asks_for_two_sections():
    prompt = chat_ai.build_system_prompt(None, "edit")
    assert "1. Revised post" in prompt
    assert "2. Changes made" in prompt


def test_build_messages_normalizes_roles():
    msgs = chat_ai.build_messages(
        [{"role": "user", "content": "hi"}, {"role": "tool", "content": "x"}],
        "general",
        None,
    )
    assert msgs[0]["role"] == "system"
    assert [m["role"] for m in msgs[1:]] == ["user", "user"]


def test_messages_to_prompt():
    prompt = chat_ai.LocalLLMClient._messages_to_prompt(
        [{"role": "system", "content": "be brief"}, {"role": "user", "content": "hi"}]
    )
    assert prompt == "SYSTEM: be brief\nUSER: hi\nASSISTANT:"


def test_fallback_stream_without_provider_produces_a_draft():
    source = chat_ai.LLMGenerationSource(router=ModelRouter(env={}))
    history = [{"role": "user", "content": "Write a post about our first hire"}]
    pieces = asyncio.run(_collect(source, history, "draft"))
    text = "".join(pieces)
    assert len(pieces) > 5
    assert text == chat_ai._fallback_reply(history, "draft")
    assert "first hire" in text
    assert classify_text(text) == "draft"


def test_fallback_edit_follows_revised_post_format():
    history = [
        {"role": "user", "content": "write a post"},
        {"role": "assistant", "content": "Original post"},
        {"role": "user", "content": "make it shorter"},
    ]
    reply = chat_ai._fallback_reply(history, "edit")
    assert reply.startswith("1. Revised post\nOriginal post")
    assert "2. Changes made" in reply


class _FakeResponse:
    def __init__(self, lines):
        self._lines = lines

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        return None

    def iter_lines(self):
        return iter(self._lines)


class _FakeSession:
    def __init__(self, lines):
        self.lines = lines
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        return _FakeResponse(self.lines)


def test_local_client_parses_openai_sse(monkeypatch):
    monkeypatch.setenv("COMPOSER_LLM_LOCAL_API", "openai")
    client = chat_ai.LocalLLMClient(base_url="http://llm.local/", model="m")
    lines = [
        b"",
        b": keep-alive",
        ("data: " + json.dumps({"choices": [{"delta": {"content": "Hel"}}]})).encode(),
        b"data: not-json",
        ("data: " + json.dumps({"choices": [{"delta": {"content": "lo"}}]})).encode(),
        b"data: [DONE]",
        ("data: " + json.dumps({"choices": [{"delta": {"content": "ignored"}}]})).encode(),
    ]
    session = _FakeSession(lines)
    client._session = session
    frames = list(client.stream([{"role": "user", "content": "hi"}]))
    assert frames == [{"token": "Hel"}, {"token": "lo"}]
    url, kwargs = session.calls[0]
    assert url == "http://llm.local/v1/chat/completions"
    assert kwargs["json"]["stream"] is True


def test_local_client_parses_ollama_stream(monkeypatch):
    monkeypatch.setenv("COMPOSER_LLM_LOCAL_API", "ollama")
    client = chat_ai.LocalLLMClient(base_url="http://llm.local", model="m")
    lines = [
        json.dumps({"response": "Hi", "done": False}).encode(),
        json.dumps({"response": " there", "done": True}).encode(),
        json.dumps({"response": "late", "done": False}).encode(),
    ]
    session = _FakeSession(lines)
    client._session = session
    frames = list(client.stream([{"role": "user", "content": "hi"}]))
    assert frames == [{"token": "Hi"}, {"token": " there"}]
    assert session.calls[0][0] == "http://llm.local/api/generate"
    assert session.calls[0][1]["json"]["prompt"].endswith("ASSISTANT:")


def test_local_client_does_not_switch_endpoints_after_first_token(monkeypatch):
    monkeypatch.delenv("COMPOSER_LLM_LOCAL_API", raising=False)
    client = chat_ai.LocalLLMClient(base_url="http://llm.local", model="m")

    def broken_openai(messages):
        yield {"token": "Half a post "}
        raise requests.exceptions.ChunkedEncodingError("connection dropped")

    def ollama(messages):
        yield {"token": "A whole new post"}

    monkeypatch.setattr(client, "_stream_openai", broken_openai)
    monkeypatch.setattr(client, "_stream_ollama", ollama)

    frames = []
    with pytest.raises(requests.exceptions.ChunkedEncodingError):
        for frame in client.stream([{"role": "user", "content": "hi"}]):
            frames.append(frame)
    assert frames == [{"token": "Half a post "}]
    assert client.api_style == "auto"


def test_local_client_falls_back_to_ollama_before_first_token(monkeypatch):
    monkeypatch.delenv("COMPOSER_LLM_LOCAL_API", raising=False)
    client = chat_ai.LocalLLMClient(base_url="http://llm.local", model="m")

    def refused_openai(messages):
        raise requests.exceptions.ConnectionError("refused")
        yield  # pragma: no cover

    monkeypatch.setattr(client, "_stream_openai", refused_openai)
    monkeypatch.setattr(client, "_stream_ollama", lambda messages: iter([{"token": "Hi"}]))

    assert list(client.stream([{"role": "user", "content": "hi"}])) == [{"token": "Hi"}]
    assert client.api_style == "ollama"


class _FakeChat:
    instances = []

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.seen = None
        _FakeChat.instances.append(self)

    async def astream(self, msgs):
        self.seen = msgs
        for text in ["Draft ", "", "body"]:
            yield SimpleNamespace(content=text)


def test_remote_provider_streams_through_astream(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setattr(chat_ai, "ChatOpenAI", _FakeChat)
    _FakeChat.instances.clear()
    source = chat_ai.LLMGenerationSource(router=ModelRouter(env={"OPENAI_API_KEY": "sk-test"}))
    pieces = asyncio.run(_collect(source, [{"role": "user", "content": "hi"}], "draft"))
    assert pieces == ["Draft ", "body"]
    fake = _FakeChat.instances[-1]
    assert fake.kwargs["model"] == "gpt-4o"
    assert fake.kwargs["streaming"] is True
    assert fake.seen[0]["role"] == "system"


class _FailingLocal:
    def __init__(self, base_url, model):
        self.base_url = base_url
        self.model = model

    def stream(self, messages):
        yield {"token": "partial"}
        raise RuntimeError("socket closed")


class _WorkingLocal(_FailingLocal):
    def stream(self, messages):
        yield {"token": "ok"}


def _local_router():
    return ModelRouter(env={"COMPOSER_ENABLE_LOCAL_PROVIDER": "1"})


class _SlowLocal(_FailingLocal):
    def stream(self, messages):
        for word in ["slow ", "local ", "reply"]:
            time.sleep(0.2)
            yield {"token": word}


def test_local_stream_does_not_block_the_event_loop(monkeypatch):
    monkeypatch.setitem(chat_ai._BREAKER_STATE, "fails", 0)
    monkeypatch.setitem(chat_ai._BREAKER_STATE, "opened_at", 0.0)
    monkeypatch.setattr(chat_ai, "LocalLLMClient", _SlowLocal)
    source = chat_ai.LLMGenerationSource(router=_local_router())

    async def scenario():
        ticks = 0
        done = asyncio.Event()

        async def ticker():
            nonlocal ticks
            while not done.is_set():
                ticks += 1
                await asyncio.sleep(0.02)

        task = asyncio.create_task(ticker())
        pieces = await _collect(source, [{"role": "user", "content": "hi"}], "general")
        done.set()
        await task
        return pieces, ticks

    pieces, ticks = asyncio.run(scenario())
    assert pieces == ["slow ", "local ", "reply"]
    # The other task keeps running while the client blocks between tokens
    assert ticks >= 10


def test_local_stream_failure_propagates_and_opens_breaker(monkeypatch):
    monkeypatch.setattr(chat_ai, "_BREAKER_THRESHOLD", 2)
    monkeypatch.setitem(chat_ai._BREAKER_STATE, "fails", 0)
    monkeypatch.setitem(chat_ai._BREAKER_STATE, "opened_at", 0.0)
    monkeypatch.setattr(chat_ai, "LocalLLMClient", _FailingLocal)
    source = chat_ai.LLMGenerationSource(router=_local_router())

    for _ in range(2):
        with pytest.raises(RuntimeError, match="socket closed"):
            asyncio.run(_collect(source, [{"role": "user", "content": "hi"}], "draft"))
    assert chat_ai._breaker_open() is True

    # With the breaker open the deterministic reply is used instead
    pieces = asyncio.run(_collect(source, [{"role": "user", "content": "hi"}], "general"))
    assert "".join(pieces) == chat_ai._fallback_reply([{"role": "user", "content": "hi"}], "general")


def test_local_stream_success_closes_breaker(monkeypatch):
    monkeypatch.setitem(chat_ai._BREAKER_STATE, "fails", 1)
    monkeypatch.setitem(chat_ai._BREAKER_STATE, "opened_at", 0.0)
    monkeypatch.setattr(chat_ai, "LocalLLMClient", _WorkingLocal)
    source = chat_ai.LLMGenerationSource(router=_local_router())
    assert asyncio.run(_collect(source, [{"role": "user", "content": "hi"}], "general")) == ["ok"]
    assert chat_ai._BREAKER_STATE["fails"] == 0


def test_breaker_resets_after_cooldown(monkeypatch):
    monkeypatch.setattr(chat_ai, "_BREAKER_COOLDOWN", 10.0)
    monkeypatch.setitem(chat_ai._BREAKER_STATE, "fails", 3)
    monkeypatch.setitem(chat_ai._BREAKER_STATE, "opened_at", 100.0)
    monkeypatch.setattr(chat_ai.time, "time", lambda: 105.0)
    assert chat_ai._breaker_open() is True
    monkeypatch.setattr(chat_ai.time, "time", lambda: 111.0)
    assert chat_ai._breaker_open() is False
    assert chat_ai._BREAKER_STATE["fails"] == 0
