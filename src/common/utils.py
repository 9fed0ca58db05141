"""
Utilities
=========

This module provides utility functions and classes that are used across
the application but do not belong to a more specific domain like the
datastore client or the classification logic.

It contains a `retry` decorator for handling transient errors with
exponential backoff and jitter, plus small timestamp and text helpers shared
by the job executor and the classifier.
"""
import datetime as dt
import logging
import random
import re
import threading
import time
from contextlib import contextmanager
from functools import wraps
from typing import Callable, Type, TypeVar

log = logging.getLogger(__name__)
T = TypeVar("T")

_WHITESPACE_RE = re.compile(r"\s+")


def retry(
    retryable_exceptions: tuple[Type[Exception], ...],
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    A decorator that retries a method call on specific exceptions.

    The decorated method's instance must expose ``settings.MAX_RETRIES`` and
    ``settings.MAX_RETRY_BACKOFF_SECONDS``.

    Args:
        retryable_exceptions: A tuple of exception types that should trigger a retry.
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(self, *args, **kwargs) -> T:
            settings = self.settings
            if settings.MAX_RETRIES < 1:
                raise ValueError("MAX_RETRIES must be >= 1")
            for attempt in range(1, settings.MAX_RETRIES + 1):
                try:
                    return func(self, *args, **kwargs)
                except retryable_exceptions as e:
                    if attempt == settings.MAX_RETRIES:
                        log.exception(
                            "%s failed after %d attempts",
                            func.__name__,
                            attempt,
                        )
                        raise
                    log.warning(
                        "%s failed (%s) - retry %d/%d",
                        func.__name__,
                        e,
                        attempt,
                        settings.MAX_RETRIES,
                    )
                    _sleep_backoff(attempt, settings)
            # This part should be unreachable if MAX_RETRIES > 0
            raise RuntimeError("Retry loop exited unexpectedly.")

        return wrapper

    return decorator


def _sleep_backoff(attempt: int, settings) -> None:
    """Sleep for a short duration with exponential backoff and jitter."""
    delay = min(
        (2**attempt) * random.uniform(0.8, 1.2),
        float(settings.MAX_RETRY_BACKOFF_SECONDS),
    )
    log.info(
        "Sleeping %.1f s before retry %d/%d",
        delay,
        attempt,
        settings.MAX_RETRIES,
    )
    time.sleep(delay)


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def to_iso(value: dt.datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def parse_timestamp(value) -> dt.datetime | None:
    """Parse an ISO-8601 timestamp from the datastore into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, dt.datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = dt.datetime.fromisoformat(text)
        except ValueError:
            log.warning("Unparseable timestamp %r", value)
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def normalize_word(word: str) -> str:
    """Lowercase and collapse inner whitespace; the cache key for a token."""
    return _WHITESPACE_RE.sub(" ", word.strip().lower())


def extract_context(text: str, word: str, window: int) -> str:
    """
    Return a key-word-in-context window around the first occurrence of *word*.

    Whitespace is collapsed and ``...`` marks truncated edges. Returns an empty
    string when the word does not occur in the text.
    """
    if not text or not word:
        return ""
    match = re.search(rf"\b{re.escape(word)}\b", text, re.IGNORECASE)
    if match is None:
        index = text.lower().find(word.lower())
        if index == -1:
            return ""
        start_word, end_word = index, index + len(word)
    else:
        start_word, end_word = match.start(), match.end()

    start = max(0, start_word - window)
    end = min(len(text), end_word + window)
    context = _WHITESPACE_RE.sub(" ", text[start:end]).strip()
    if start > 0:
        context = "..." + context
    if end < len(text):
        context = context + "..."
    return context


class KeyedLocks:
    """
    One lock per key, held only while someone uses it.

    Entries are reference counted and dropped when the last holder leaves, so
    a long-running process does not keep a lock for every word it has seen.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[object, list] = {}

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
