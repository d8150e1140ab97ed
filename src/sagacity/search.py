"""Relevance search -- asks the LLM to score cached summaries against a query."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from .models import SummaryCache

logger = logging.getLogger(__name__)

TOP_K = 5


class Scorer(Protocol):
    async def score(self, query: str, labeled_summaries: str) -> str: ...


@dataclass
class SearchResult:
    path: str
    score: float


def label_summaries(cache: SummaryCache) -> str:
    """One ``Summary for <path>: <summary>`` block per cached file, in path order."""
    return "".join(
        f"Summary for {path}: {cache.entries[path].summary}\n\n"
        for path in sorted(cache.entries)
    )


def parse_scores(text: str) -> list[SearchResult]:
    """Parse ``path,score`` lines.

    Lines without exactly two comma-separated fields are skipped; a score
    that does not parse as a float counts as 0.0.
    """
    results: list[SearchResult] = []
    for line in text.splitlines():
        parts = line.split(",")
        if len(parts) != 2:
            continue
        path = parts[0].strip()
        if not path:
            continue
        try:
            score = float(parts[1].strip())
        except ValueError:
            score = 0.0
        if score != score:  # NaN
            score = 0.0
        results.append(SearchResult(path=path, score=score))
    return results


def rank(results: list[SearchResult], k: int = TOP_K) -> list[SearchResult]:
    """Highest score first, ties broken by path; truncated to *k*."""
    ordered = sorted(results, key=lambda r: (-r.score, r.path))
    return ordered[:k]


async def search(
    query: str,
    cache: SummaryCache,
    scorer: Scorer,
    k: int = TOP_K,
) -> list[SearchResult]:
    """Return the top-*k* cached files for *query*.

    Makes exactly one scoring call.  Any failure of that call propagates;
    there is no partial result.  Paths the model invents that are not in
    the cache are dropped.
    """
    if not cache.entries:
        return []
    raw = await scorer.score(query, label_summaries(cache))
    parsed = parse_scores(raw)
    known = [r for r in parsed if r.path in cache.entries]
    if len(known) < len(parsed):
        logger.debug("Dropped %d scored path(s) not in the index", len(parsed) - len(known))
    # The model may repeat a path; keep its best score.
    best: dict[str, SearchResult] = {}
    for r in known:
        if r.path not in best or r.score > best[r.path].score:
            best[r.path] = r
    return rank(list(best.values()), k)
