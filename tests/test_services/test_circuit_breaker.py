"""Tests for the per-provider circuit breaker"""
from ai_analysis.services.circuit_breaker import CircuitState, RequestCircuitBreaker


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _breaker(clock=None, threshold=3, recovery=60.0):
    return RequestCircuitBreaker("gemini", failure_threshold=threshold, recovery_timeout=recovery, clock=clock or FakeClock())


class TestCircuitBreaker:
    """Closed -> open -> half-open -> closed/open"""

    def test_starts_closed(self):
        breaker = _breaker()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.status == "Normal"
        assert breaker.allow_request()

    def test_opens_after_threshold(self):
        breaker = _breaker()
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED

        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert breaker.status == "Blocked (too many failures)"
        assert not breaker.allow_request()

    def test_success_resets_count(self):
        breaker = _breaker()
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.failure_count == 1
        assert breaker.state == CircuitState.CLOSED

    def test_half_open_after_recovery_timeout(self):
        clock = FakeClock()
        breaker = _breaker(clock)
        for _ in range(3):
            breaker.record_failure()

        clock.now += 59.0
        assert not breaker.allow_request()

        clock.now += 1.0
        assert breaker.allow_request()
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.status == "Testing recovery"

    def test_half_open_success_closes(self):
        clock = FakeClock()
        breaker = _breaker(clock)
        for _ in range(3):
            breaker.record_failure()
        clock.now += 60.0
        breaker.allow_request()

        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    def test_half_open_failure_reopens(self):
        clock = FakeClock()
        breaker = _breaker(clock)
        for _ in range(3):
            breaker.record_failure()
        clock.now += 60.0
        breaker.allow_request()

        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert not breaker.allow_request()

    def test_reset(self):
        breaker = _breaker(threshold=1)
        breaker.record_failure()
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.allow_request()
