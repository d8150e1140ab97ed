"""Response generator -- sends memory plus the assembled prompt for an answer."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from .models import ChatMessage

_ANSWER_INSTRUCTIONS = (
    "Based on the following context about a codebase and our previous "
    "conversation, please answer the user's query:\n\n"
)


class Generator(Protocol):
    async def generate(self, messages: list[dict[str, str]], system: str | None = ...) -> str: ...


def build_messages(prompt: str, memory: Sequence[ChatMessage], max_memory: int | None = None) -> list[dict[str, str]]:
    """Memory (oldest dropped first past *max_memory*) followed by the prompt."""
    history = list(memory)
    if max_memory is not None and len(history) > max_memory:
        history = history[len(history) - max_memory:]
    # The API requires the first message to come from the user.
    while history and history[0].role.value != "user":
        history = history[1:]
    messages = [m.as_api_message() for m in history]
    messages.append({"role": "user", "content": _ANSWER_INSTRUCTIONS + prompt})
    return messages


class ResponseGenerator:
    def __init__(self, client: Generator, *, max_memory: int = 40) -> None:
        self.client = client
        self.max_memory = max_memory

    async def generate(self, prompt: str, memory: Sequence[ChatMessage]) -> str:
        """Return the answer text; ApiError/TokenLimitError propagate."""
        messages = build_messages(prompt, memory, self.max_memory)
        return await self.client.generate(messages)
