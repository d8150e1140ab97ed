"""Error taxonomy shared by every sagacity component."""

from __future__ import annotations


class SagacityError(Exception):
    """Base class for all errors raised by sagacity."""


class ApiError(SagacityError):
    """An upstream LLM call failed or returned an unexpected shape.

    ``retryable`` is True only for network-class failures (connection
    errors, timeouts, 429 and 5xx statuses).  A malformed response body is
    never retryable.
    """

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        body: str = "",
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body = body
        self.retryable = retryable


class FileAccessError(SagacityError):
    """A path was unreadable or missing."""

    def __init__(self, message: str, path: str = "") -> None:
        super().__init__(message)
        self.path = path


class ConfigError(SagacityError):
    """Invalid settings; fatal at startup."""


class TokenLimitError(SagacityError):
    """Call admission was denied; back off instead of retrying immediately."""


class UnknownError(SagacityError):
    """Catch-all surfaced verbatim to the UI."""
