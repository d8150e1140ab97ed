"""Tests for the LLM client: response parsing, retry and admission."""

from __future__ import annotations

import asyncio
import http.client
import io
import urllib.error

import pytest

from sagacity import llm as llm_mod
from sagacity.errors import ApiError, TokenLimitError
from sagacity.limiter import CallAdmissionLimiter
from sagacity.llm import LLMClient, estimate_tokens


def _body(text: str) -> dict:
    return {"content": [{"type": "text", "text": text}]}


class ScriptedPost:
    """Stand-in for ``_post_sync`` returning or raising scripted results."""

    def __init__(self, *results) -> None:
        self.results = list(results)
        self.payloads: list[dict] = []

    def __call__(self, payload: dict) -> dict:
        self.payloads.append(payload)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _client(monkeypatch, post: ScriptedPost, **kwargs) -> LLMClient:
    kwargs.setdefault("base_backoff_seconds", 0.0)
    client = LLMClient(api_key="test-key", **kwargs)
    monkeypatch.setattr(client, "_post_sync", post)
    return client


def test_summarize_returns_text(monkeypatch) -> None:
    post = ScriptedPost(_body("  Parses config files.  "))
    client = _client(monkeypatch, post)

    assert asyncio.run(client.summarize("fn main() {}", "rust")) == "Parses config files."
    prompt = post.payloads[0]["messages"][0]["content"]
    assert "rust" in prompt and "fn main() {}" in prompt
    assert post.payloads[0]["model"] == client.model


def test_missing_text_field_is_not_retried(monkeypatch) -> None:
    post = ScriptedPost({"content": []}, _body("unused"))
    client = _client(monkeypatch, post)

    with pytest.raises(ApiError) as info:
        asyncio.run(client.summarize("x", "python"))
    assert not info.value.retryable
    assert len(post.payloads) == 1


def test_empty_summary_is_an_error(monkeypatch) -> None:
    client = _client(monkeypatch, ScriptedPost(_body("   ")))
    with pytest.raises(ApiError):
        asyncio.run(client.summarize("x", "python"))


def test_retryable_error_is_retried(monkeypatch) -> None:
    post = ScriptedPost(
        ApiError("overloaded", status=529, retryable=True),
        _body("answer"),
    )
    client = _client(monkeypatch, post)

    assert asyncio.run(client.generate([{"role": "user", "content": "hi"}])) == "answer"
    assert len(post.payloads) == 2
    stats = asyncio.run(client.get_stats())
    assert stats == {"total_calls": 1, "retries": 1}


def test_retries_are_bounded(monkeypatch) -> None:
    post = ScriptedPost(*[ApiError("down", status=503, retryable=True) for _ in range(5)])
    client = _client(monkeypatch, post, max_retries=2)

    with pytest.raises(ApiError):
        asyncio.run(client.generate([{"role": "user", "content": "hi"}]))
    assert len(post.payloads) == 3


def test_non_retryable_error_is_raised_immediately(monkeypatch) -> None:
    post = ScriptedPost(ApiError("bad request", status=400), _body("unused"))
    client = _client(monkeypatch, post)

    with pytest.raises(ApiError) as info:
        asyncio.run(client.generate([{"role": "user", "content": "hi"}]))
    assert info.value.status == 400
    assert len(post.payloads) == 1


def test_generate_sends_system_and_history(monkeypatch) -> None:
    post = ScriptedPost(_body("ok"))
    client = _client(monkeypatch, post)
    messages = [
        {"role": "user", "content": "q1"},
        {"role": "assistant", "content": "a1"},
        {"role": "user", "content": "q2"},
    ]
    asyncio.run(client.generate(messages, system="be brief"))
    assert post.payloads[0]["messages"] == messages
    assert post.payloads[0]["system"] == "be brief"


def test_score_prompt_contains_query_and_summaries(monkeypatch) -> None:
    post = ScriptedPost(_body("a.rs,0.9"))
    client = _client(monkeypatch, post)

    text = asyncio.run(client.score("where is main?", "Summary for a.rs: entry\n\n"))
    assert text == "a.rs,0.9"
    prompt = post.payloads[0]["messages"][0]["content"]
    assert "Query: where is main?" in prompt
    assert "Summary for a.rs: entry" in prompt


def test_denied_admission_raises_without_calling(monkeypatch) -> None:
    limiter = CallAdmissionLimiter(
        max_requests_per_minute=1,
        max_tokens_per_minute=10_000,
        max_tokens_per_day=10_000,
    )
    assert limiter.admit(1)
    post = ScriptedPost(_body("unused"))
    client = _client(monkeypatch, post, limiter=limiter, admission_wait_seconds=0.0)

    with pytest.raises(TokenLimitError):
        asyncio.run(client.generate([{"role": "user", "content": "hi"}]))
    assert post.payloads == []


def test_every_retry_passes_admission(monkeypatch) -> None:
    limiter = CallAdmissionLimiter(
        max_requests_per_minute=10,
        max_tokens_per_minute=10_000,
        max_tokens_per_day=10_000,
    )
    post = ScriptedPost(
        ApiError("rate limited", status=429, retryable=True),
        ApiError("rate limited", status=429, retryable=True),
        _body("ok"),
    )
    client = _client(monkeypatch, post, limiter=limiter)

    assert asyncio.run(client.generate([{"role": "user", "content": "hi"}])) == "ok"
    assert len(post.payloads) == 3
    assert limiter.snapshot().requests_this_minute == len(post.payloads)


def test_retry_denied_by_limiter_is_not_sent(monkeypatch) -> None:
    limiter = CallAdmissionLimiter(
        max_requests_per_minute=1,
        max_tokens_per_minute=10_000,
        max_tokens_per_day=10_000,
    )
    post = ScriptedPost(
        ApiError("rate limited", status=429, retryable=True),
        _body("unused"),
    )
    client = _client(monkeypatch, post, limiter=limiter, admission_wait_seconds=0.0)

    with pytest.raises(TokenLimitError):
        asyncio.run(client.generate([{"role": "user", "content": "hi"}]))
    assert len(post.payloads) == 1
    assert limiter.snapshot().requests_this_minute == 1


def test_oversized_request_is_rejected(monkeypatch) -> None:
    limiter = CallAdmissionLimiter(
        max_requests_per_minute=10,
        max_tokens_per_minute=5,
        max_tokens_per_day=1000,
    )
    post = ScriptedPost(_body("unused"))
    client = _client(monkeypatch, post, limiter=limiter)

    with pytest.raises(TokenLimitError):
        asyncio.run(client.generate([{"role": "user", "content": "x" * 400}]))
    assert post.payloads == []


def test_calls_are_logged(monkeypatch) -> None:
    logged = []
    post = ScriptedPost(_body("ok"), ApiError("bad", status=400))
    client = _client(monkeypatch, post, on_call=logged.append)

    asyncio.run(client.summarize("x", "go"))
    with pytest.raises(ApiError):
        asyncio.run(client.score("q", ""))

    assert [(c.request_summary, c.response_status) for c in logged] == [
        ("summarize", 200),
        ("search_index", 400),
    ]
    assert all(c.response_time_ms >= 0 for c in logged)


class TestTransportErrors:
    def test_http_429_is_retryable(self, monkeypatch):
        def _urlopen(req, timeout):
            raise urllib.error.HTTPError(
                llm_mod.API_URL, 429, "Too Many Requests", {}, io.BytesIO(b"slow down"),
            )

        monkeypatch.setattr(llm_mod.urllib.request, "urlopen", _urlopen)
        client = LLMClient(api_key="k")
        with pytest.raises(ApiError) as info:
            client._post_sync({"model": "m"})
        assert info.value.status == 429
        assert info.value.retryable
        assert "slow down" in info.value.body

    def test_http_400_is_not_retryable(self, monkeypatch):
        def _urlopen(req, timeout):
            raise urllib.error.HTTPError(llm_mod.API_URL, 400, "Bad", {}, io.BytesIO(b"nope"))

        monkeypatch.setattr(llm_mod.urllib.request, "urlopen", _urlopen)
        with pytest.raises(ApiError) as info:
            LLMClient(api_key="k")._post_sync({})
        assert not info.value.retryable

    def test_connection_failure_is_retryable(self, monkeypatch):
        def _urlopen(req, timeout):
            raise urllib.error.URLError("connection refused")

        monkeypatch.setattr(llm_mod.urllib.request, "urlopen", _urlopen)
        with pytest.raises(ApiError) as info:
            LLMClient(api_key="k")._post_sync({})
        assert info.value.retryable
        assert info.value.status is None


def test_estimate_tokens() -> None:
    assert estimate_tokens("") == 1
    assert estimate_tokens("x" * 400) == 100


class _TruncatedResponse:
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def read(self):
        raise http.client.IncompleteRead(b"partial", 100)


def test_truncated_body_is_retryable(monkeypatch) -> None:
    monkeypatch.setattr(llm_mod.urllib.request, "urlopen", lambda req, timeout: _TruncatedResponse())
    with pytest.raises(ApiError) as info:
        LLMClient(api_key="k")._post_sync({})
    assert info.value.retryable
