"""Call admission limiter -- per-minute / per-day request and token ceilings."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

MINUTE_SECONDS = 60.0
DAY_SECONDS = 86_400.0


@dataclass
class RateWindow:
    """Current counters for one limiter."""

    requests_this_minute: int = 0
    tokens_this_minute: int = 0
    tokens_today: int = 0


@dataclass
class CallAdmissionLimiter:
    """Counter gate every outbound LLM call must pass.

    ``admit`` checks and increments under one lock so two callers can never
    both observe headroom and both go over a ceiling.  Counters are zeroed
    by ``reset_minute`` / ``reset_day``, driven by the ``run`` ticker rather
    than by comparing wall-clock time on each call.
    """

    max_requests_per_minute: int
    max_tokens_per_minute: int
    max_tokens_per_day: int
    minute_seconds: float = MINUTE_SECONDS
    day_seconds: float = DAY_SECONDS
    _window: RateWindow = field(default_factory=RateWindow, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _resets: int = field(default=0, init=False, repr=False)

    def admit(self, estimated_tokens: int) -> bool:
        """Admit one call costing *estimated_tokens*, or deny it."""
        tokens = max(0, int(estimated_tokens))
        with self._lock:
            w = self._window
            if w.tokens_today + tokens > self.max_tokens_per_day:
                return False
            if w.tokens_this_minute + tokens > self.max_tokens_per_minute:
                return False
            if w.requests_this_minute + 1 > self.max_requests_per_minute:
                return False
            w.tokens_today += tokens
            w.tokens_this_minute += tokens
            w.requests_this_minute += 1
            return True

    def reset_minute(self) -> None:
        with self._lock:
            self._window.requests_this_minute = 0
            self._window.tokens_this_minute = 0
            self._resets += 1

    def reset_day(self) -> None:
        with self._lock:
            self._window.tokens_today = 0
            self._resets += 1

    def snapshot(self) -> RateWindow:
        with self._lock:
            w = self._window
            return RateWindow(w.requests_this_minute, w.tokens_this_minute, w.tokens_today)

    def could_ever_admit(self, estimated_tokens: int) -> bool:
        """False when a single call is larger than a whole window allows."""
        return estimated_tokens <= min(self.max_tokens_per_minute, self.max_tokens_per_day)

    async def wait_for_reset(self, timeout: float, poll: float = 0.05) -> bool:
        """Wait until the next counter reset; False on timeout."""
        with self._lock:
            seen = self._resets
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            await asyncio.sleep(min(poll, max(0.0, deadline - loop.time())))
            with self._lock:
                if self._resets != seen:
                    return True
        return False

    async def run(self) -> None:
        """Ticker: reset the minute window every ``minute_seconds`` and the
        day window every ``day_seconds`` until cancelled."""
        since_day = 0.0
        while True:
            await asyncio.sleep(self.minute_seconds)
            self.reset_minute()
            since_day += self.minute_seconds
            if since_day >= self.day_seconds:
                self.reset_day()
                since_day = 0.0
                logger.debug("Daily token window reset")
