"""LLM client -- async wrapper around the Anthropic Messages API."""

from __future__ import annotations

import asyncio
import http.client
import json
import logging
import random
import time
import urllib.error
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .errors import ApiError, TokenLimitError
from .limiter import CallAdmissionLimiter
from .models import DEFAULT_MODEL, ApiCallLog

logger = logging.getLogger(__name__)

API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"

DEFAULT_SYSTEM = (
    "You are an AI assistant helping with a codebase. Use the provided "
    "context and conversation history to answer questions."
)

_SUMMARIZE_PROMPT = """\
Provide a very concise summary (2-3 sentences max) of the following {language} \
code, focusing on its main purpose and key functionalities:

{content}"""

# Max source chars sent for one summary.
_MAX_SUMMARY_SOURCE_CHARS = 12_000


def estimate_tokens(text: str) -> int:
    """Rough token estimate (~4 chars per token)."""
    return max(1, len(text) // 4)


@dataclass
class LLMClient:
    """Async-friendly Anthropic client using stdlib HTTP only.

    Every call passes the optional admission *limiter* before it is issued,
    then runs in a worker thread under a concurrency semaphore.
    Network-class failures are retried with exponential backoff.
    """

    api_key: str
    model: str = DEFAULT_MODEL
    max_tokens: int = 4000
    temperature: float = 0.7
    timeout: float = 120.0
    backoff_enabled: bool = True
    max_retries: int = 3
    base_backoff_seconds: float = 0.5
    adaptive_reduction_factor: float = 0.6
    max_concurrency: int = 4
    limiter: CallAdmissionLimiter | None = None
    admission_wait_seconds: float = 60.0
    on_call: Callable[[ApiCallLog], None] | None = None
    _sem: asyncio.Semaphore = field(init=False, repr=False)
    _stats_lock: asyncio.Lock = field(init=False, repr=False)
    _failure_streak: int = field(default=0, init=False, repr=False)
    _total_calls: int = field(default=0, init=False, repr=False)
    _retry_count: int = field(default=0, init=False, repr=False)

    def __post_init__(self) -> None:
        self._sem = asyncio.Semaphore(max(1, self.max_concurrency))
        self._stats_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def _post_sync(self, payload: dict[str, Any]) -> dict[str, Any]:
        """POST *payload* and return the decoded JSON body. Blocking."""
        req = urllib.request.Request(
            API_URL,
            data=json.dumps(payload).encode("utf-8"),
            headers=self._headers(),
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                raw = resp.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="replace")
            raise ApiError(
                f"API request failed ({exc.code}): {body}",
                status=exc.code,
                body=body,
                retryable=exc.code == 429 or exc.code >= 500,
            ) from exc
        except (urllib.error.URLError, http.client.HTTPException, TimeoutError, ConnectionError) as exc:
            raise ApiError(f"Failed to send request: {exc}", retryable=True) from exc
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ApiError(f"Failed to parse JSON response: {exc}", status=200, body=raw) from exc

    @staticmethod
    def _extract_text(body: dict[str, Any]) -> str:
        """Pull the first text block out of a Messages API response."""
        try:
            text = body["content"][0]["text"]
        except (KeyError, IndexError, TypeError):
            raise ApiError(
                "Missing 'text' field in API response",
                status=200,
                body=json.dumps(body)[:2000],
            ) from None
        if not isinstance(text, str):
            raise ApiError("Non-string 'text' field in API response", status=200)
        return text.strip()

    def _call_sync(self, payload: dict[str, Any], request_summary: str) -> str:
        """Blocking call with API call logging. Meant for asyncio.to_thread."""
        start = time.monotonic()
        status = 0
        try:
            body = self._post_sync(payload)
            status = 200
            return self._extract_text(body)
        except ApiError as exc:
            status = exc.status or 0
            raise
        finally:
            self._record_call(request_summary, status, start)

    def _record_call(self, request_summary: str, status: int, start: float) -> None:
        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.debug("%s -> %s in %dms", request_summary, status, elapsed_ms)
        if self.on_call is not None:
            self.on_call(ApiCallLog(
                endpoint=API_URL,
                request_summary=request_summary,
                response_status=status,
                response_time_ms=elapsed_ms,
            ))

    # ------------------------------------------------------------------
    # Admission + retry
    # ------------------------------------------------------------------

    async def _admit(self, tokens: int) -> None:
        """Block until the limiter admits *tokens* or give up."""
        if self.limiter is None:
            return
        if not self.limiter.could_ever_admit(tokens):
            raise TokenLimitError(f"Request of ~{tokens} tokens exceeds the rate window")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.admission_wait_seconds
        while not self.limiter.admit(tokens):
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise TokenLimitError(
                    f"Rate limit reached; ~{tokens} tokens not admitted. Try again later."
                )
            logger.debug("Admission denied for ~%d tokens; waiting for reset", tokens)
            await self.limiter.wait_for_reset(remaining)

    async def _request(
        self,
        messages: list[dict[str, str]],
        *,
        system: str | None,
        request_summary: str,
    ) -> str:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        if system:
            payload["system"] = system
        prompt_text = (system or "") + "".join(m.get("content", "") for m in messages)
        tokens = estimate_tokens(prompt_text)

        attempt = 0
        while True:
            # Each attempt, retries included, is a separate outbound request.
            await self._admit(tokens)
            try:
                async with self._sem:
                    result = await asyncio.to_thread(self._call_sync, payload, request_summary)
            except ApiError as exc:
                if (
                    not self.backoff_enabled
                    or not exc.retryable
                    or attempt >= self.max_retries
                ):
                    raise
                async with self._stats_lock:
                    self._retry_count += 1
                    self._failure_streak += 1
                    streak = self._failure_streak
                penalty = (1.0 / max(0.1, self.adaptive_reduction_factor)) ** min(streak, 3)
                wait_s = ((self.base_backoff_seconds * (2 ** attempt)) * penalty) + random.uniform(0, 0.01)
                logger.warning(
                    "%s failed (%s); retry %d/%d in %.2fs",
                    request_summary, exc, attempt + 1, self.max_retries, wait_s,
                )
                await asyncio.sleep(wait_s)
                attempt += 1
                continue
            async with self._stats_lock:
                self._total_calls += 1
                # Decay failure streak after successful request.
                self._failure_streak = max(0, self._failure_streak - 1)
            return result

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    async def summarize(self, content: str, language: str) -> str:
        """Return a 2-3 sentence summary of one source file."""
        if len(content) > _MAX_SUMMARY_SOURCE_CHARS:
            content = content[:_MAX_SUMMARY_SOURCE_CHARS] + "\n... (truncated)"
        prompt = _SUMMARIZE_PROMPT.format(language=language, content=content)
        summary = await self._request(
            [{"role": "user", "content": prompt}],
            system=None,
            request_summary="summarize",
        )
        if not summary:
            raise ApiError("Empty summary received from API", status=200)
        return summary

    async def score(self, query: str, labeled_summaries: str) -> str:
        """Ask for newline-delimited ``path,score`` relevance lines."""
        prompt = (
            "Based on the following query, score the relevance of each summary "
            f"on a scale of 0 to 1:\n\nQuery: {query}\n\n{labeled_summaries}"
            "Provide your response in the following format:\n\n"
            "<file_path_1>,<relevance_score_1>\n<file_path_2>,<relevance_score_2>\n...\n"
        )
        return await self._request(
            [{"role": "user", "content": prompt}],
            system=None,
            request_summary="search_index",
        )

    async def generate(
        self,
        messages: list[dict[str, str]],
        system: str | None = DEFAULT_SYSTEM,
    ) -> str:
        """Send an ordered role/content message list and return the answer."""
        return await self._request(messages, system=system, request_summary="generate_response")

    async def get_stats(self) -> dict[str, int]:
        async with self._stats_lock:
            return {
                "total_calls": self._total_calls,
                "retries": self._retry_count,
            }
