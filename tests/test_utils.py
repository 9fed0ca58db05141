import datetime as dt
import time
from concurrent.futures import ThreadPoolExecutor
from types import SimpleNamespace
from unittest.mock import call

import pytest

from common.utils import (
    KeyedLocks,
    _sleep_backoff,
    extract_context,
    normalize_word,
    parse_timestamp,
    retry,
    to_iso,
)


class DummyWorker:
    def __init__(self, max_retries: int):
        self.settings = SimpleNamespace(
            MAX_RETRIES=max_retries, MAX_RETRY_BACKOFF_SECONDS=30
        )
        self.calls = 0

    @retry(retryable_exceptions=(ValueError,))
    def flaky(self) -> str:
        self.calls += 1
        if self.calls < 3:
            raise ValueError("boom")
        return "ok"


class AlwaysFailWorker:
    def __init__(self, max_retries: int):
        self.settings = SimpleNamespace(
            MAX_RETRIES=max_retries, MAX_RETRY_BACKOFF_SECONDS=30
        )
        self.calls = 0

    @retry(retryable_exceptions=(ValueError,))
    def fail(self) -> None:
        self.calls += 1
        raise ValueError("nope")


class ZeroRetryWorker:
    def __init__(self):
        self.settings = SimpleNamespace(MAX_RETRIES=0, MAX_RETRY_BACKOFF_SECONDS=30)
        self.calls = 0

    @retry(retryable_exceptions=(ValueError,))
    def never_called(self) -> None:
        self.calls += 1
        raise ValueError("should not run")


def test_retry_succeeds_after_retries(mocker):
    sleep_spy = mocker.patch("common.utils._sleep_backoff")
    worker = DummyWorker(max_retries=3)

    assert worker.flaky() == "ok"
    assert worker.calls == 3
    sleep_spy.assert_has_calls(
        [call(1, worker.settings), call(2, worker.settings)]
    )


def test_retry_raises_after_max_retries(mocker):
    sleep_spy = mocker.patch("common.utils._sleep_backoff")
    worker = AlwaysFailWorker(max_retries=2)

    with pytest.raises(ValueError, match="nope"):
        worker.fail()

    assert worker.calls == 2
    sleep_spy.assert_called_once_with(1, worker.settings)


def test_retry_zero_retries_raises_value_error():
    worker = ZeroRetryWorker()

    with pytest.raises(ValueError, match="MAX_RETRIES must be >= 1"):
        worker.never_called()

    assert worker.calls == 0


def test_sleep_backoff_uses_exponential_delay(mocker):
    settings = SimpleNamespace(MAX_RETRIES=5, MAX_RETRY_BACKOFF_SECONDS=30)
    mocker.patch("common.utils.random.uniform", return_value=1.0)
    sleep_mock = mocker.patch("common.utils.time.sleep")

    _sleep_backoff(2, settings)

    sleep_mock.assert_called_once_with(4.0)


def test_sleep_backoff_caps_delay(mocker):
    settings = SimpleNamespace(MAX_RETRIES=5, MAX_RETRY_BACKOFF_SECONDS=10)
    mocker.patch("common.utils.random.uniform", return_value=1.0)
    sleep_mock = mocker.patch("common.utils.time.sleep")

    _sleep_backoff(6, settings)

    sleep_mock.assert_called_once_with(10.0)



def test_parse_timestamp_handles_zulu_naive_and_garbage():
    parsed = parse_timestamp("2024-05-01T10:00:00Z")
    assert parsed == dt.datetime(2024, 5, 1, 10, tzinfo=dt.timezone.utc)

    naive = parse_timestamp("2024-05-01T10:00:00")
    assert naive.tzinfo is dt.timezone.utc

    assert parse_timestamp(None) is None
    assert parse_timestamp("") is None
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(to_iso(parsed)) == parsed


def test_normalize_word_lowercases_and_collapses_whitespace():
    assert normalize_word("  Mate   Amargo ") == "mate amargo"
    assert normalize_word("Querência") == "querência"


def test_extract_context_windows_around_the_word():
    text = "De manhã cedo o gaúcho toma\n seu chimarrão na querência, bem quentinho."

    context = extract_context(text, "chimarrão", window=10)

    assert "chimarrão" in context
    assert context.startswith("...")
    assert context.endswith("...")
    assert "\n" not in context


def test_extract_context_without_occurrence_is_empty():
    assert extract_context("nada aqui", "cuia", window=10) == ""
    assert extract_context("", "cuia", window=10) == ""
    assert extract_context("cuia de porongo", "cuia", window=100) == "cuia de porongo"


def test_keyed_locks_serialize_one_key_and_forget_it_afterwards():
    locks = KeyedLocks()
    inside = []
    overlaps = []

    def work(_):
        with locks.hold("xucro"):
            if inside:
                overlaps.append(True)
            inside.append(True)
            time.sleep(0.001)
            inside.pop()

    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(work, range(20)))

    assert overlaps == []
    assert len(locks) == 0


def test_keyed_locks_release_on_error():
    locks = KeyedLocks()

    with pytest.raises(RuntimeError):
        with locks.hold("xucro"):
            raise RuntimeError("boom")

    assert len(locks) == 0
    with locks.hold("xucro"):
        assert len(locks) == 1
