"""Pydantic models for sagacity's index, conversation and configuration."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Index cache
# ---------------------------------------------------------------------------

class IndexEntry(BaseModel):
    """Last-known summary of one source file."""

    path: str       # root-relative path (forward slashes)
    summary: str
    language: str   # "python", "rust", "go", ... or "unknown"
    last_indexed_at: float
    """File mtime (epoch seconds) observed when the file was summarized."""

    degraded: bool = False
    """True when the summary is a raw-content preview after a failed call."""


class SummaryCache(BaseModel):
    """Persisted mapping of path -> IndexEntry.

    ``watermark`` is the highest mtime seen during the most recent indexing
    run.  It is only a coarse "anything changed since" hint; per-entry
    ``last_indexed_at`` values are authoritative.
    """

    entries: dict[str, IndexEntry] = Field(default_factory=dict)
    watermark: float = 0.0

    def paths(self) -> set[str]:
        return set(self.entries)

    def is_stale(self, path: str, mtime: float) -> bool:
        entry = self.entries.get(path)
        return entry is None or mtime > entry.last_indexed_at


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

class Role(str, Enum):
    user = "user"
    assistant = "assistant"


class ChatMessage(BaseModel):
    """One entry of conversation memory."""

    role: Role
    content: str
    timestamp: datetime = Field(default_factory=_utcnow)

    def as_api_message(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class ApiCallLog(BaseModel):
    """Details of one outbound call to the LLM service."""

    timestamp: datetime = Field(default_factory=_utcnow)
    endpoint: str
    request_summary: str
    response_status: int
    response_time_ms: int


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_MODEL = "claude-3-sonnet-20240229"

DEFAULT_EXTENSIONS: list[str] = [".rs", ".toml", ".md", ".py", ".go"]

# (requests/minute, tokens/minute, tokens/day) by model family.
MODEL_LIMITS: dict[str, tuple[int, int, int]] = {
    "opus": (1000, 40_000, 2_500_000),
    "sonnet": (1000, 80_000, 2_500_000),
    "haiku": (1000, 100_000, 25_000_000),
}
_FALLBACK_LIMITS = (1000, 80_000, 2_500_000)


def limits_for_model(model: str) -> tuple[int, int, int]:
    """Return the default rate ceilings for *model*."""
    lowered = model.lower()
    for family, limits in MODEL_LIMITS.items():
        if family in lowered:
            return limits
    return _FALLBACK_LIMITS


class SagacityConfig(BaseModel):
    """User configuration stored in ``.sagacity/config.toml``.

    Precedence: CLI flag > environment > config.toml > default.
    Rate ceilings left at ``None`` are filled from ``MODEL_LIMITS``.
    """

    api_key: str = ""
    model: str = DEFAULT_MODEL
    max_tokens: int = Field(default=4000, gt=0)
    temperature: float = Field(default=0.7, ge=0.0, le=1.0)

    concurrency: int = Field(default=4, gt=0)
    """Maximum files summarized in parallel."""

    extensions: list[str] = Field(default_factory=lambda: list(DEFAULT_EXTENSIONS))
    """Extension allow-list for indexing."""

    top_k: int = Field(default=5, gt=0)
    min_score: float = Field(default=0.0, ge=0.0, le=1.0)
    """Relevance below this score is not used as context."""

    context_char_budget: int = Field(default=100_000, gt=0)
    max_memory_messages: int = Field(default=40, gt=0)

    requests_per_minute: int | None = Field(default=None, gt=0)
    tokens_per_minute: int | None = Field(default=None, gt=0)
    tokens_per_day: int | None = Field(default=None, gt=0)
    admission_wait_seconds: float = Field(default=60.0, ge=0.0)

    max_batch_size: int = Field(default=10, gt=0)
    batch_interval: float = Field(default=1.0, gt=0.0)

    max_retries: int = Field(default=3, ge=0)
    timeout: float = Field(default=120.0, gt=0.0)
    log_level: str = "INFO"

    @field_validator("model")
    @classmethod
    def _model_required(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("model name is required")
        return value

    @field_validator("extensions")
    @classmethod
    def _normalise_extensions(cls, value: list[str]) -> list[str]:
        cleaned = []
        for ext in value:
            ext = ext.strip().lower()
            if not ext:
                continue
            cleaned.append(ext if ext.startswith(".") else f".{ext}")
        if not cleaned:
            raise ValueError("at least one extension is required")
        return cleaned

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {value!r}")
        return level

    def rate_limits(self) -> tuple[int, int, int]:
        rpm, tpm, tpd = limits_for_model(self.model)
        return (
            self.requests_per_minute or rpm,
            self.tokens_per_minute or tpm,
            self.tokens_per_day or tpd,
        )
