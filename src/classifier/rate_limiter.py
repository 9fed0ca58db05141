"""
Rate Limiter / Backpressure Guard
=================================

A sliding-window limiter for the external AI tier: at most ``max_requests``
per ``window_ms``, an optional minimum gap between consecutive requests, and
an externally imposed block window (set when the service answers 429).

State is process-local and is lost on restart. Running several daemon
instances multiplies the effective budget; see DESIGN.md.

Clock and sleep are injectable so tests never wait on wall time.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable

import structlog

from common.config import Settings

log = structlog.get_logger(__name__)

DEFAULT_BLOCK_MS = 30000
# Extra slack added to every computed wait before re-checking.
WAIT_SLACK_MS = 50


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int
    window_ms: int = 60000
    min_delay_ms: int = 0


STRICT = RateLimitConfig(max_requests=10, window_ms=60000, min_delay_ms=200)
NORMAL = RateLimitConfig(max_requests=30, window_ms=60000, min_delay_ms=100)
RELAXED = RateLimitConfig(max_requests=60, window_ms=60000, min_delay_ms=50)
CHAT = RateLimitConfig(max_requests=20, window_ms=60000, min_delay_ms=500)

PRESETS = {"strict": STRICT, "normal": NORMAL, "relaxed": RELAXED, "chat": CHAT}


@dataclass(frozen=True)
class RateLimiterState:
    remaining: int
    reset_at: float | None
    is_limited: bool
    wait_time_ms: float


class RateLimiter:
    def __init__(
        self,
        max_requests: int,
        window_ms: int = 60000,
        min_delay_ms: int = 0,
        default_block_ms: int = DEFAULT_BLOCK_MS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_ms < 1:
            raise ValueError("window_ms must be >= 1")
        self.max_requests = max_requests
        self.window_ms = window_ms
        self.min_delay_ms = max(0, min_delay_ms)
        self.default_block_ms = default_block_ms
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._timestamps: deque[float] = deque()
        self._last_request_at: float | None = None
        self._blocked_until = 0.0

    @classmethod
    def from_config(cls, config: RateLimitConfig, **kwargs) -> RateLimiter:
        return cls(config.max_requests, config.window_ms, config.min_delay_ms, **kwargs)

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> RateLimiter:
        return cls(
            settings.AI_RATE_LIMIT_REQUESTS,
            settings.AI_RATE_LIMIT_WINDOW_MS,
            settings.AI_RATE_LIMIT_MIN_DELAY_MS,
            default_block_ms=settings.AI_OVERLOAD_BLOCK_MS,
            **kwargs,
        )

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _evaluate(self, now: float) -> RateLimiterState:
        """Prune the window and compute the current state. Caller holds the lock."""
        window_start = now - self.window_ms
        while self._timestamps and self._timestamps[0] <= window_start:
            self._timestamps.popleft()

        current = len(self._timestamps)
        reset_at = self._timestamps[0] + self.window_ms if self._timestamps else None
        blocked = self._blocked_until > now
        window_full = current >= self.max_requests
        since_last = None if self._last_request_at is None else now - self._last_request_at
        needs_delay = (
            self.min_delay_ms > 0 and since_last is not None and since_last < self.min_delay_ms
        )

        wait = 0.0
        if blocked:
            wait = self._blocked_until - now
        elif window_full and reset_at is not None:
            wait = reset_at - now
        elif needs_delay:
            wait = self.min_delay_ms - since_last

        return RateLimiterState(
            remaining=max(0, self.max_requests - current),
            reset_at=reset_at,
            is_limited=blocked or window_full or needs_delay,
            wait_time_ms=max(0.0, wait),
        )

    def can_request(self) -> bool:
        """Non-blocking check; does not consume a slot."""
        with self._lock:
            return not self._evaluate(self._now_ms()).is_limited

    def record_request(self) -> None:
        """Record a request that was actually issued."""
        with self._lock:
            self._record(self._now_ms())

    def _record(self, now: float) -> None:
        self._timestamps.append(now)
        self._last_request_at = now

    def try_acquire(self) -> bool:
        """
        Check and record in one step.

        Word workers share one limiter; the caller must issue the request
        right after a True result.
        """
        with self._lock:
            now = self._now_ms()
            if self._evaluate(now).is_limited:
                return False
            self._record(now)
            return True

    def record_external_block(self, retry_after_ms: int | None = None) -> None:
        """The service said it is overloaded; refuse every request until the block ends."""
        block_ms = self.default_block_ms if retry_after_ms is None else max(0, retry_after_ms)
        with self._lock:
            self._blocked_until = max(self._blocked_until, self._now_ms() + block_ms)
        log.warning("AI tier blocked after overload signal", block_ms=block_ms)

    def wait_time_ms(self) -> float:
        with self._lock:
            return self._evaluate(self._now_ms()).wait_time_ms

    def wait_for_slot(
        self,
        max_wait_seconds: float | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> bool:
        """
        Sleep until a slot is free, re-checking after every wait.

        Returns False when *max_wait_seconds* would be exceeded or
        *should_stop* turns true; the slot is not consumed either way.
        """
        waited = 0.0
        while True:
            if should_stop is not None and should_stop():
                return False
            with self._lock:
                state = self._evaluate(self._now_ms())
            if not state.is_limited:
                return True
            delay = (state.wait_time_ms + WAIT_SLACK_MS) / 1000.0
            if max_wait_seconds is not None and waited + delay > max_wait_seconds:
                log.info(
                    "Rate limiter wait exceeds budget",
                    wait_ms=round(state.wait_time_ms),
                    max_wait_seconds=max_wait_seconds,
                )
                return False
            self._sleep(delay)
            waited += delay

    def state(self) -> RateLimiterState:
        with self._lock:
            return self._evaluate(self._now_ms())

    def reset(self) -> None:
        with self._lock:
            self._timestamps.clear()
            self._last_request_at = None
            self._blocked_until = 0.0
