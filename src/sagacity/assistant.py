"""Assistant -- wires indexing, batching and chat turns around one session."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path

from .batcher import BatchProcessor
from .cache import load_cache
from .config import SAGACITY_DIR, cache_path
from .context import assemble
from .errors import ConfigError, SagacityError, UnknownError
from .generator import ResponseGenerator
from .indexer import Indexer, IndexReport
from .limiter import CallAdmissionLimiter
from .llm import LLMClient
from .models import SagacityConfig
from .search import SearchResult, search
from .session import SessionState

logger = logging.getLogger(__name__)


@dataclass
class TurnResult:
    question: str
    answer: str
    sources: list[SearchResult] = field(default_factory=list)
    error: str | None = None


class Assistant:
    """Owns the session state and every background task touching it.

    Queries go through the batch processor and are answered one turn at a
    time, so memory is appended in submission order.  Indexing runs as a
    separate task and never blocks a turn or the renderer.
    """

    def __init__(
        self,
        root: Path,
        config: SagacityConfig,
        client: LLMClient,
        *,
        state: SessionState | None = None,
        cache_file: Path | None = None,
        limiter: CallAdmissionLimiter | None = None,
    ) -> None:
        self.root = root.resolve()
        self.config = config
        self.client = client
        self.cache_file = cache_file or cache_path(self.root / SAGACITY_DIR)
        self.state = state if state is not None else SessionState(load_cache(self.cache_file))
        self.limiter = limiter
        self.indexer = Indexer(
            self.root,
            self.state,
            client,
            self.cache_file,
            extensions=config.extensions,
            concurrency=config.concurrency,
        )
        self.generator = ResponseGenerator(client, max_memory=config.max_memory_messages)
        self.batcher: BatchProcessor[tuple[str, asyncio.Future[TurnResult]]] = BatchProcessor(
            self._handle_batch,
            max_batch_size=config.max_batch_size,
            batch_interval=config.batch_interval,
        )
        self._turn_lock = asyncio.Lock()
        self._current_turn: asyncio.Task[TurnResult] | None = None
        self._index_task: asyncio.Task[IndexReport] | None = None
        self._ticker: asyncio.Task[None] | None = None
        self._closing = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self.batcher.start()
        if self.limiter is not None and self._ticker is None:
            self._ticker = asyncio.create_task(self.limiter.run(), name="rate-limit-ticker")

    async def close(self, *, cancel_pending: bool = False) -> None:
        """Shut down background work.

        Buffered queries are always flushed out of the batch processor.
        With *cancel_pending* the in-flight turn is cancelled, flushed
        queries are cancelled instead of answered and indexing is stopped;
        nothing partial is committed to memory.
        """
        self._closing = cancel_pending
        if cancel_pending:
            self.cancel_turn()
            if self._index_task is not None:
                self._index_task.cancel()
        await self.batcher.close()
        if self._index_task is not None:
            try:
                await self._index_task
            except asyncio.CancelledError:
                logger.info("Indexing cancelled")
        if self._ticker is not None:
            self._ticker.cancel()
            try:
                await self._ticker
            except asyncio.CancelledError:
                pass
            self._ticker = None

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def request_reindex(self) -> asyncio.Task[IndexReport]:
        """Start a background indexing run, or return the one in progress."""
        if self._index_task is None or self._index_task.done():
            self._index_task = asyncio.create_task(self.indexer.run(), name="indexer")
        return self._index_task

    async def submit_query(self, text: str) -> asyncio.Future[TurnResult]:
        """Queue *text* for answering; the future resolves when its turn ends."""
        fut: asyncio.Future[TurnResult] = asyncio.get_running_loop().create_future()
        await self.batcher.submit((text, fut))
        return fut

    def cancel_turn(self) -> bool:
        if self._current_turn is not None and not self._current_turn.done():
            return self._current_turn.cancel()
        return False

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def _handle_batch(self, batch: list[tuple[str, asyncio.Future[TurnResult]]]) -> None:
        for text, fut in batch:
            if fut.done():
                continue
            if self._closing:
                fut.cancel()
                continue
            turn = asyncio.create_task(self.ask(text), name="chat-turn")
            self._current_turn = turn
            try:
                result = await turn
            except asyncio.CancelledError:
                if not turn.cancelled():
                    raise
                fut.cancel()
                continue
            finally:
                self._current_turn = None
            fut.set_result(result)

    async def ask(self, question: str) -> TurnResult:
        """Answer one question and commit the user/assistant pair to memory.

        Turns are serialized.  Search or generation failures become an
        ``Error: ...`` assistant message so the user sees what went wrong.
        Cancellation commits nothing.
        """
        async with self._turn_lock:
            self.state.set_busy(True)
            try:
                try:
                    result = await self._run_turn(question)
                except asyncio.CancelledError:
                    logger.info("Turn cancelled; nothing committed")
                    raise
                except SagacityError as exc:
                    logger.error("Query failed: %s", exc)
                    result = TurnResult(question=question, answer=f"Error: {exc}", error=str(exc))
                except Exception as exc:
                    logger.exception("Unexpected error while answering")
                    err = UnknownError(str(exc) or exc.__class__.__name__)
                    result = TurnResult(question=question, answer=f"Error: {err}", error=str(err))
                self.state.append_turn(question, result.answer)
                return result
            finally:
                self.state.set_busy(False)

    async def _run_turn(self, question: str) -> TurnResult:
        cache = self.state.cache
        if not cache.entries:
            raise SagacityError("The index is empty. Run indexing first.")

        results = await search(question, cache, self.client, k=self.config.top_k)
        results = [r for r in results if r.score >= self.config.min_score]
        if not results:
            raise SagacityError("No relevant files found in the index for the given query.")
        logger.info("Relevant files: %s", ", ".join(r.path for r in results))

        prompt = await asyncio.to_thread(
            assemble,
            [r.path for r in results],
            question,
            self.root,
            self.config.context_char_budget,
        )
        memory = self.state.memory()
        answer = await self.generator.generate(prompt, memory)
        return TurnResult(question=question, answer=answer, sources=results)


def create_assistant(root: Path, config: SagacityConfig, *, state: SessionState | None = None) -> Assistant:
    """Build an Assistant with a live LLM client and admission limiter."""
    if not config.api_key:
        raise ConfigError("API key is required (set ANTHROPIC_API_KEY).")
    rpm, tpm, tpd = config.rate_limits()
    limiter = CallAdmissionLimiter(
        max_requests_per_minute=rpm,
        max_tokens_per_minute=tpm,
        max_tokens_per_day=tpd,
    )
    state = state if state is not None else SessionState(load_cache(cache_path(root / SAGACITY_DIR)))
    client = LLMClient(
        api_key=config.api_key,
        model=config.model,
        max_tokens=config.max_tokens,
        temperature=config.temperature,
        timeout=config.timeout,
        max_retries=config.max_retries,
        max_concurrency=config.concurrency,
        limiter=limiter,
        admission_wait_seconds=config.admission_wait_seconds,
        on_call=state.record_call,
    )
    return Assistant(root, config, client, state=state, limiter=limiter)
