"""Sagacity - chat with a local codebase through an incremental summary index."""

from .models import (  # noqa: F401 -- public re-exports
    ChatMessage,
    IndexEntry,
    Role,
    SagacityConfig,
    SummaryCache,
)
from .assistant import Assistant, TurnResult, create_assistant
from .errors import (
    ApiError,
    ConfigError,
    FileAccessError,
    SagacityError,
    TokenLimitError,
    UnknownError,
)
from .llm import LLMClient

__version__ = "0.1.0"

__all__ = [
    "Assistant",
    "TurnResult",
    "create_assistant",
    "LLMClient",
    "ChatMessage",
    "IndexEntry",
    "Role",
    "SagacityConfig",
    "SummaryCache",
    "ApiError",
    "ConfigError",
    "FileAccessError",
    "SagacityError",
    "TokenLimitError",
    "UnknownError",
]
