"""Indexer -- summarizes new or modified files and maintains the summary cache."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .cache import reconcile, save_cache
from .errors import FileAccessError
from .models import IndexEntry
from .scanner import ChangeSet, detect_language, scan_changes
from .session import FileState, SessionState

logger = logging.getLogger(__name__)

# Chars of raw content kept when summarization fails.
PREVIEW_CHARS = 100
FAILED_PREFIX = "Failed to summarize. File content preview: "


class Summarizer(Protocol):
    async def summarize(self, content: str, language: str) -> str: ...


@dataclass
class IndexReport:
    """Outcome of one indexing run."""

    unchanged: int = 0
    summarized: list[str] = field(default_factory=list)
    degraded: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    """Changed paths left alone because another run was already on them."""

    saved: bool = False


class Indexer:
    """Runs change detection and reindexing against one source tree.

    Summaries are produced with bounded parallelism.  A per-path in-flight
    set guarantees a file is never being reindexed twice at once.
    """

    def __init__(
        self,
        root: Path,
        state: SessionState,
        client: Summarizer,
        cache_file: Path,
        *,
        extensions: list[str],
        concurrency: int = 4,
    ) -> None:
        self.root = root.resolve()
        self.state = state
        self.client = client
        self.cache_file = cache_file
        self.extensions = list(extensions)
        self.concurrency = max(1, concurrency)
        self._in_flight: set[str] = set()

    async def scan(self) -> ChangeSet:
        return await asyncio.to_thread(scan_changes, self.root, self.state.cache, self.extensions)

    async def run(self) -> IndexReport:
        """Scan, reindex what changed, commit and persist the cache."""
        if not self.state.begin_indexing():
            logger.info("Indexing already in progress; request ignored")
            return IndexReport()
        try:
            changes = await self.scan()
            logger.info(
                "Indexing %s: %d changed, %d deleted, %d unchanged",
                self.root, len(changes.changed), len(changes.deleted), len(changes.unchanged),
            )
            report = IndexReport(unchanged=len(changes.unchanged), deleted=list(changes.deleted))
            updated = await self.reindex(changes, report)

            new_cache = reconcile(self.state.cache, changes, updated)
            self.state.commit_cache(new_cache)
            try:
                await asyncio.to_thread(save_cache, self.cache_file, new_cache)
                report.saved = True
            except FileAccessError as exc:
                # In-memory index stays authoritative until the next save.
                logger.error("%s", exc)

            logger.info(
                "Indexing complete. Total files indexed: %d (%d summarized, %d degraded)",
                len(new_cache.entries), len(report.summarized), len(report.degraded),
            )
            return report
        finally:
            self.state.end_indexing()

    async def reindex(
        self,
        changes: ChangeSet,
        report: IndexReport | None = None,
    ) -> dict[str, IndexEntry]:
        """Summarize every changed path; returns the fresh entries by path."""
        report = report if report is not None else IndexReport()
        sem = asyncio.Semaphore(self.concurrency)
        claimed: list[str] = []
        for path in changes.changed:
            if path in self._in_flight:
                logger.debug("Skipping %s: reindex already in flight", path)
                report.skipped.append(path)
                continue
            self._in_flight.add(path)
            claimed.append(path)
            self.state.set_progress(path, FileState.pending)

        async def _one(path: str) -> IndexEntry:
            try:
                async with sem:
                    return await self._index_one(path, changes.mtimes.get(path), report)
            finally:
                self._in_flight.discard(path)

        entries = await asyncio.gather(*[_one(p) for p in claimed])
        return {e.path: e for e in entries}

    async def _index_one(self, path: str, mtime: float | None, report: IndexReport) -> IndexEntry:
        self.state.set_progress(path, FileState.running)
        language = detect_language(path)
        # An unknown mtime is recorded as 0 so the file is picked up again next run.
        indexed_at = mtime if mtime is not None else 0.0

        try:
            content = await asyncio.to_thread(
                (self.root / path).read_text, encoding="utf-8", errors="replace",
            )
        except OSError as exc:
            logger.warning("Failed to read %s: %s", path, exc)
            self.state.set_progress(path, FileState.error, "unreadable")
            report.degraded.append(path)
            return self._degraded(path, "", language, indexed_at)

        logger.debug("Re-indexing file: %s", path)
        try:
            summary = await self.client.summarize(content, language)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Error summarizing %s: %s", path, exc)
            self.state.set_progress(path, FileState.error, str(exc)[:80])
            report.degraded.append(path)
            return self._degraded(path, content, language, indexed_at)

        self.state.set_progress(path, FileState.done)
        report.summarized.append(path)
        return IndexEntry(path=path, summary=summary, language=language, last_indexed_at=indexed_at)

    @staticmethod
    def _degraded(path: str, content: str, language: str, indexed_at: float) -> IndexEntry:
        return IndexEntry(
            path=path,
            summary=FAILED_PREFIX + content[:PREVIEW_CHARS],
            language=language,
            last_indexed_at=indexed_at,
            degraded=True,
        )
