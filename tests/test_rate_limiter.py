import pytest

from classifier.rate_limiter import PRESETS, STRICT, RateLimiter
from fakes import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


def test_window_boundary_frees_slot_exactly_at_window_end(clock):
    limiter = RateLimiter(max_requests=1, window_ms=1000, clock=clock, sleep=clock.sleep)

    assert limiter.can_request()
    limiter.record_request()
    assert not limiter.can_request()

    clock.advance(0.5)
    assert not limiter.can_request()

    clock.advance(0.5)
    assert limiter.can_request()


def test_state_reports_remaining_and_wait(clock):
    limiter = RateLimiter(max_requests=2, window_ms=1000, clock=clock)

    limiter.record_request()
    state = limiter.state()
    assert state.remaining == 1
    assert not state.is_limited

    clock.advance(0.25)
    limiter.record_request()
    state = limiter.state()
    assert state.remaining == 0
    assert state.is_limited
    assert state.wait_time_ms == pytest.approx(750)
    assert state.reset_at == pytest.approx(clock.now * 1000 + 750)


def test_min_delay_between_requests(clock):
    limiter = RateLimiter(max_requests=10, window_ms=60000, min_delay_ms=250, clock=clock)

    limiter.record_request()
    clock.advance(0.125)
    assert not limiter.can_request()
    assert limiter.wait_time_ms() == pytest.approx(125)

    clock.advance(0.125)
    assert limiter.can_request()


def test_try_acquire_checks_and_records_atomically(clock):
    limiter = RateLimiter(max_requests=2, window_ms=1000, clock=clock)

    assert limiter.try_acquire()
    assert limiter.try_acquire()
    assert not limiter.try_acquire()
    assert limiter.state().remaining == 0


def test_external_block_refuses_until_it_expires(clock):
    limiter = RateLimiter(max_requests=100, window_ms=1000, clock=clock)

    limiter.record_external_block(retry_after_ms=5000)
    assert not limiter.can_request()
    assert limiter.wait_time_ms() == pytest.approx(5000)

    clock.advance(5)
    assert limiter.can_request()


def test_external_block_defaults_to_configured_window(clock):
    limiter = RateLimiter(max_requests=100, default_block_ms=30000, clock=clock)

    limiter.record_external_block()

    assert limiter.wait_time_ms() == pytest.approx(30000)


def test_wait_for_slot_sleeps_until_free(clock):
    limiter = RateLimiter(max_requests=1, window_ms=1000, clock=clock, sleep=clock.sleep)
    limiter.record_request()

    assert limiter.wait_for_slot(max_wait_seconds=5)
    assert clock.sleeps == [pytest.approx(1.05)]
    assert limiter.can_request()


def test_wait_for_slot_gives_up_past_budget(clock):
    limiter = RateLimiter(max_requests=1, window_ms=60000, clock=clock, sleep=clock.sleep)
    limiter.record_request()

    assert not limiter.wait_for_slot(max_wait_seconds=10)
    assert clock.sleeps == []


def test_wait_for_slot_honours_stop_signal(clock):
    limiter = RateLimiter(max_requests=1, window_ms=60000, clock=clock, sleep=clock.sleep)
    limiter.record_request()

    assert not limiter.wait_for_slot(should_stop=lambda: True)


def test_reset_clears_history_and_block(clock):
    limiter = RateLimiter(max_requests=1, window_ms=1000, clock=clock)
    limiter.record_request()
    limiter.record_external_block(1000)

    limiter.reset()

    assert limiter.can_request()
    assert limiter.state().remaining == 1


def test_presets_and_settings(make_settings):
    assert PRESETS["strict"] is STRICT
    limiter = RateLimiter.from_config(STRICT)
    assert (limiter.max_requests, limiter.window_ms, limiter.min_delay_ms) == (10, 60000, 200)

    settings = make_settings(AI_RATE_LIMIT_REQUESTS=3, AI_OVERLOAD_BLOCK_MS=1234)
    limiter = RateLimiter.from_settings(settings)
    assert limiter.max_requests == 3
    assert limiter.default_block_ms == 1234


def test_invalid_configuration_is_rejected():
    with pytest.raises(ValueError):
        RateLimiter(max_requests=0)
    with pytest.raises(ValueError):
        RateLimiter(max_requests=1, window_ms=0)
