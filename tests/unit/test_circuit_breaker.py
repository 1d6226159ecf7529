"""Unit tests for CircuitBreaker state transitions."""

import pytest

from deckterm.core.exceptions import UpstreamUnavailableError
from deckterm.services.circuit_breaker import BreakerState, CircuitBreaker
from tests.mocks.fake_terminal import FakeClock


@pytest.fixture
def breaker_clock():
    return FakeClock(now=100.0)


@pytest.fixture
def breaker(breaker_clock):
    return CircuitBreaker(threshold=3, reset_timeout=30.0, clock=breaker_clock)


def _trip(breaker):
    for _ in range(breaker.threshold):
        breaker.before_call()
        breaker.record_failure()


class TestTransitions:
    def test_starts_closed(self, breaker):
        assert breaker.state == BreakerState.CLOSED
        breaker.before_call()

    def test_opens_after_threshold_failures(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == BreakerState.CLOSED
        breaker.record_failure()
        assert breaker.state == BreakerState.OPEN
        assert breaker.is_open

    def test_success_resets_failure_count(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.state == BreakerState.CLOSED
        assert breaker.failures == 1

    def test_open_fails_fast_with_retry_after(self, breaker, breaker_clock):
        _trip(breaker)
        breaker_clock.advance(10)

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            breaker.before_call()
        assert exc_info.value.retry_after == pytest.approx(20.0)
        assert exc_info.value.status == 503

    def test_half_open_after_reset_timeout(self, breaker, breaker_clock):
        _trip(breaker)
        breaker_clock.advance(30)
        assert breaker.state == BreakerState.OPEN

        breaker_clock.advance(0.1)
        assert breaker.state == BreakerState.HALF_OPEN
        assert not breaker.is_open

    def test_single_trial_call_in_half_open(self, breaker, breaker_clock):
        _trip(breaker)
        breaker_clock.advance(31)

        breaker.before_call()
        with pytest.raises(UpstreamUnavailableError):
            breaker.before_call()

    def test_trial_success_closes(self, breaker, breaker_clock):
        _trip(breaker)
        breaker_clock.advance(31)
        breaker.before_call()
        breaker.record_success()

        assert breaker.state == BreakerState.CLOSED
        assert breaker.failures == 0
        breaker.before_call()
        breaker.before_call()

    def test_trial_failure_reopens(self, breaker, breaker_clock):
        _trip(breaker)
        breaker_clock.advance(31)
        breaker.before_call()
        breaker.record_failure()

        assert breaker.state == BreakerState.OPEN
        with pytest.raises(UpstreamUnavailableError):
            breaker.before_call()

    def test_released_trial_frees_slot(self, breaker, breaker_clock):
        _trip(breaker)
        breaker_clock.advance(31)
        breaker.before_call()
        breaker.release_trial()
        breaker.before_call()


class TestCall:
    async def test_call_records_outcomes(self, breaker):
        async def ok():
            return "fine"

        async def boom():
            raise ConnectionError("refused")

        assert await breaker.call(ok) == "fine"
        for _ in range(3):
            with pytest.raises(ConnectionError):
                await breaker.call(boom)

        calls = []

        async def tracked():
            calls.append(1)

        with pytest.raises(UpstreamUnavailableError):
            await breaker.call(tracked)
        assert calls == []
