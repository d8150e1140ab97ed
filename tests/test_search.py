"""Tests for relevance search and score parsing."""

from __future__ import annotations

import asyncio

import pytest

from sagacity.errors import ApiError
from sagacity.models import IndexEntry, SummaryCache
from sagacity.search import SearchResult, label_summaries, parse_scores, rank, search


class FakeScorer:
    def __init__(self, reply: str = "", error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.calls: list[tuple[str, str]] = []

    async def score(self, query: str, labeled_summaries: str) -> str:
        self.calls.append((query, labeled_summaries))
        if self.error is not None:
            raise self.error
        return self.reply


def _cache(*paths: str) -> SummaryCache:
    return SummaryCache(entries={
        p: IndexEntry(path=p, summary=f"about {p}", language="rust", last_indexed_at=1.0)
        for p in paths
    })


class TestParseScores:
    def test_skips_malformed_and_zeroes_bad_scores(self):
        parsed = parse_scores("a.rs,0.9\nb.rs,0.4\nbad_line\nc.rs,xyz")
        assert parsed == [
            SearchResult("a.rs", 0.9),
            SearchResult("b.rs", 0.4),
            SearchResult("c.rs", 0.0),
        ]

    def test_extra_fields_and_blank_paths_are_skipped(self):
        assert parse_scores("a.rs,0.5,extra\n,0.3\n\n") == []

    def test_whitespace_is_trimmed(self):
        assert parse_scores("  src/a.rs ,  0.75 ") == [SearchResult("src/a.rs", 0.75)]

    def test_nan_counts_as_zero(self):
        assert parse_scores("a.rs,nan") == [SearchResult("a.rs", 0.0)]


def test_rank_breaks_ties_by_path() -> None:
    results = [SearchResult("b.rs", 0.5), SearchResult("a.rs", 0.5), SearchResult("c.rs", 0.9)]
    assert [r.path for r in rank(results)] == ["c.rs", "a.rs", "b.rs"]


def test_label_summaries_are_path_ordered() -> None:
    text = label_summaries(_cache("b.rs", "a.rs"))
    assert text == "Summary for a.rs: about a.rs\n\nSummary for b.rs: about b.rs\n\n"


def test_search_returns_top_k_in_order() -> None:
    cache = _cache(*(f"f{i}.rs" for i in range(7)))
    reply = "\n".join(f"f{i}.rs,0.{i}" for i in range(7))
    scorer = FakeScorer(reply)

    results = asyncio.run(search("query", cache, scorer, k=3))
    assert [r.path for r in results] == ["f6.rs", "f5.rs", "f4.rs"]
    assert len(scorer.calls) == 1
    assert scorer.calls[0][0] == "query"


def test_unknown_paths_are_dropped() -> None:
    scorer = FakeScorer("a.rs,0.2\nghost.rs,1.0")
    results = asyncio.run(search("q", _cache("a.rs"), scorer))
    assert [r.path for r in results] == ["a.rs"]


def test_repeated_path_keeps_best_score() -> None:
    scorer = FakeScorer("a.rs,0.2\na.rs,0.8\nb.rs,0.5")
    results = asyncio.run(search("q", _cache("a.rs", "b.rs"), scorer))
    assert [(r.path, r.score) for r in results] == [("a.rs", 0.8), ("b.rs", 0.5)]


def test_empty_cache_makes_no_call() -> None:
    scorer = FakeScorer("a.rs,1.0")
    assert asyncio.run(search("q", SummaryCache(), scorer)) == []
    assert scorer.calls == []


def test_scoring_failure_propagates() -> None:
    scorer = FakeScorer(error=ApiError("boom", status=500, retryable=True))
    with pytest.raises(ApiError):
        asyncio.run(search("q", _cache("a.rs"), scorer))
