"""
Unit tests for retry, backoff and circuit breaking.

Time and sleep are injected so no test waits on real backoff delays.
"""

import concurrent.futures
import threading
import time

import pytest

from llm_broker.core.errors import ErrorKind, RequestAbandoned, is_retryable
from llm_broker.core.resilience import BackoffPolicy, CircuitBreaker, RateLimiter, ResilienceController
from llm_broker.core.types import CallType, Response, ResponseSource
from llm_broker.providers.base import Provider
from llm_broker.providers.offline import OfflineProvider


def cancel_and_notify(future):
    """Cancel a bare future the way a superseded request handle does."""
    future.cancel()
    future.set_running_or_notify_cancel()


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class ScriptedProvider(Provider):
    """Returns scripted responses in order, repeating the last one."""

    name = "scripted"

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0

    def is_available(self) -> bool:
        return True

    def generate(self, prompt, temperature, call_type=None):
        self.calls += 1
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item


OK = Response(success=True, content="real text", input_tokens=12, completion_tokens=8, cost_usd=0.00002)
UNAVAILABLE_503 = Response.failure(ErrorKind.PROVIDER_ERROR, "service unavailable", 503)
RATE_LIMITED = Response.failure(ErrorKind.PROVIDER_ERROR, "rate limited", 429)
UNAUTHORIZED = Response.failure(ErrorKind.PROVIDER_ERROR, "bad key", 401)
NETWORK = Response.failure(ErrorKind.NETWORK_FAILURE, "connection reset")


class TestErrorClassification:
    """Test structural retry decisions."""

    @pytest.mark.parametrize("kind,status,expected", [
        (ErrorKind.TIMEOUT, None, True),
        (ErrorKind.NETWORK_FAILURE, None, True),
        (ErrorKind.MALFORMED_RESPONSE, None, True),
        (ErrorKind.PROVIDER_ERROR, 500, True),
        (ErrorKind.PROVIDER_ERROR, 503, True),
        (ErrorKind.PROVIDER_ERROR, 429, True),
        (ErrorKind.PROVIDER_ERROR, 400, False),
        (ErrorKind.PROVIDER_ERROR, 401, False),
        (ErrorKind.PROVIDER_ERROR, 403, False),
        (ErrorKind.PROVIDER_ERROR, 404, False),
        (ErrorKind.PROVIDER_UNAVAILABLE, None, False),
        (ErrorKind.REPLAY_KEY_MISSING, None, False),
    ])
    def test_is_retryable(self, kind, status, expected):
        assert is_retryable(kind, status) is expected


class TestBackoffPolicy:
    """Test exponential backoff delays."""

    def test_doubles_until_cap(self):
        policy = BackoffPolicy(base_delay=1.0, max_delay=30.0)
        assert [policy.delay(n) for n in range(7)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]

    def test_custom_base(self):
        policy = BackoffPolicy(base_delay=0.25, max_delay=1.0)
        assert [policy.delay(n) for n in range(4)] == [0.25, 0.5, 1.0, 1.0]


class TestCircuitBreaker:
    """Test timed offline mode."""

    def test_opens_and_auto_closes_after_cooldown(self):
        clock = FakeClock(100.0)
        circuit = CircuitBreaker(cooldown_seconds=300.0, clock=clock)
        assert not circuit.is_open()

        circuit.trip()
        assert circuit.is_open()
        assert circuit.state().opened_at == 100.0

        clock.now = 400.0
        assert circuit.is_open()  # closes strictly after opened_at + cooldown

        clock.now = 400.1
        assert not circuit.is_open()
        assert circuit.state().opened_at is None
        assert circuit.trips == 1

    def test_reset(self):
        circuit = CircuitBreaker(cooldown_seconds=10.0, clock=FakeClock())
        circuit.trip()
        circuit.reset()
        assert not circuit.is_open()

    def test_cooldown_must_be_positive(self):
        with pytest.raises(ValueError, match="cooldown_seconds must be > 0"):
            CircuitBreaker(cooldown_seconds=0)


class TestResilienceController:
    """Test the retry loop and offline fallback."""

    def setup_method(self):
        self.clock = FakeClock(1000.0)
        self.sleeps = []
        self.circuit = CircuitBreaker(cooldown_seconds=300.0, clock=self.clock)
        self.controllers = []

    def teardown_method(self):
        for controller in self.controllers:
            controller.shutdown()

    def _controller(self, provider, max_retries=3, fallback_enabled=True, **kwargs):
        kwargs.setdefault("sleep", self.sleeps.append)
        controller = ResilienceController(
            provider=provider,
            offline=OfflineProvider(),
            backoff=BackoffPolicy(base_delay=1.0, max_delay=30.0),
            circuit=self.circuit,
            max_retries=max_retries,
            fallback_enabled=fallback_enabled,
            **kwargs
        )
        self.controllers.append(controller)
        return controller

    def _execute(self, controller, prompt="what happens next", call_type=CallType.NARRATIVE, timeout=5.0):
        return controller.execute(prompt, call_type, temperature=0.7, timeout=timeout)

    def test_first_attempt_success(self):
        provider = ScriptedProvider(OK)
        response = self._execute(self._controller(provider))

        assert response.success
        assert response.content == "real text"
        assert response.attempts == 1
        assert response.source == ResponseSource.PROVIDER
        assert self.sleeps == []

    def test_retry_then_success(self):
        provider = ScriptedProvider(UNAVAILABLE_503, RATE_LIMITED, OK)
        controller = self._controller(provider)
        response = self._execute(controller)

        assert response.success
        assert response.attempts == 3
        assert provider.calls == 3
        assert self.sleeps == [1.0, 2.0]
        assert not self.circuit.is_open()
        stats = controller.stats()
        assert stats.recoveries == 1
        assert stats.retryable_errors == 2
        assert stats.consecutive_failures == 0

    def test_non_retryable_failure_surfaces_immediately(self):
        provider = ScriptedProvider(UNAUTHORIZED)
        response = self._execute(self._controller(provider))

        assert not response.success
        assert response.error_kind == ErrorKind.PROVIDER_ERROR
        assert response.status_code == 401
        assert provider.calls == 1
        assert self.sleeps == []
        assert not self.circuit.is_open()

    def test_unavailable_provider_is_not_retried(self):
        provider = ScriptedProvider(Response.failure(ErrorKind.PROVIDER_UNAVAILABLE, "no key"))
        response = self._execute(self._controller(provider))

        assert response.error_kind == ErrorKind.PROVIDER_UNAVAILABLE
        assert provider.calls == 1

    def test_exhaustion_trips_circuit_and_falls_back(self):
        provider = ScriptedProvider(NETWORK)
        controller = self._controller(provider, max_retries=3)
        response = self._execute(controller, prompt="allocate food to the farmers", call_type=CallType.DECISION)

        assert provider.calls == 4
        assert self.sleeps == [1.0, 2.0, 4.0]
        assert self.circuit.is_open()
        assert response.success
        assert response.fallback is True
        assert response.source == ResponseSource.OFFLINE
        assert response.cost_usd == 0.0
        assert response.attempts == 4
        assert '"action": "allocate"' in response.content
        stats = controller.stats()
        assert stats.circuit_trips == 1
        assert stats.fallbacks == 1

    def test_open_circuit_bypasses_provider(self):
        provider = ScriptedProvider(NETWORK)
        controller = self._controller(provider, max_retries=1)
        self._execute(controller)
        calls_after_trip = provider.calls

        response = self._execute(controller, prompt="another prompt")

        assert provider.calls == calls_after_trip
        assert response.success
        assert response.source == ResponseSource.OFFLINE
        assert response.attempts == 0
        assert controller.stats().bypassed_by_circuit == 1

    def test_circuit_closes_after_cooldown(self):
        provider = ScriptedProvider(NETWORK, NETWORK, OK)
        controller = self._controller(provider, max_retries=1)
        self._execute(controller)
        assert self.circuit.is_open()

        self.clock.now += 301.0
        response = self._execute(controller)

        assert response.source == ResponseSource.PROVIDER
        assert response.content == "real text"
        assert provider.calls == 3

    def test_fallback_disabled_returns_last_failure(self):
        provider = ScriptedProvider(UNAVAILABLE_503)
        response = self._execute(self._controller(provider, max_retries=2, fallback_enabled=False))

        assert not response.success
        assert response.status_code == 503
        assert response.attempts == 3
        assert self.circuit.is_open()

    def test_zero_retries_single_attempt(self):
        provider = ScriptedProvider(NETWORK)
        response = self._execute(self._controller(provider, max_retries=0))

        assert provider.calls == 1
        assert self.sleeps == []
        assert response.fallback is True

    def test_timeout_is_retryable_and_abandons_call(self):
        release = threading.Event()

        class HangingProvider(ScriptedProvider):
            def generate(self, prompt, temperature, call_type=None):
                self.calls += 1
                release.wait(5)
                return OK

        provider = HangingProvider(OK)
        controller = self._controller(provider, max_retries=1)
        try:
            response = self._execute(controller, timeout=0.05)
        finally:
            release.set()

        assert self.sleeps == [1.0]
        assert response.fallback is True
        assert controller.stats().total_errors == 2

    def test_provider_exception_becomes_failure(self):
        provider = ScriptedProvider(RuntimeError("boom"))
        response = self._execute(self._controller(provider, max_retries=0))

        assert response.success
        assert response.fallback is True

    def test_offline_provider_used_directly(self):
        offline = OfflineProvider()
        controller = ResilienceController(
            provider=offline,
            offline=offline,
            backoff=BackoffPolicy(),
            circuit=self.circuit,
            sleep=self.sleeps.append,
        )
        self.controllers.append(controller)
        response = self._execute(controller)

        assert response.success
        assert response.source == ResponseSource.OFFLINE
        assert response.fallback is False

    def test_negative_retries_rejected(self):
        with pytest.raises(ValueError, match="max_retries must be >= 0"):
            self._controller(ScriptedProvider(OK), max_retries=-1)

    def test_unclassified_failure_treated_as_provider_error(self):
        provider = ScriptedProvider(Response(success=False, error="mystery"))
        controller = self._controller(provider, max_retries=2, fallback_enabled=False)
        response = self._execute(controller)

        assert response.error_kind == ErrorKind.PROVIDER_ERROR
        assert response.status_code is None
        assert provider.calls == 3
        assert self.sleeps == [1.0, 2.0]
        assert controller.stats().retryable_errors == 3

    def test_unclassified_failure_keeps_status_code(self):
        provider = ScriptedProvider(Response(success=False, error="forbidden", status_code=403))
        response = self._execute(self._controller(provider))

        assert response.error_kind == ErrorKind.PROVIDER_ERROR
        assert response.status_code == 403
        assert provider.calls == 1

    def test_timed_out_call_still_queued_is_cancelled(self):
        release = threading.Event()
        prompts = []

        class HangingProvider(ScriptedProvider):
            def generate(self, prompt, temperature, call_type=None):
                prompts.append(prompt)
                release.wait(5)
                return OK

        controller = self._controller(HangingProvider(OK), max_retries=0, call_workers=1)
        try:
            first = self._execute(controller, prompt="stuck", timeout=0.05)
            self.circuit.reset()
            second = self._execute(controller, prompt="queued", timeout=0.05)
        finally:
            release.set()
        controller.shutdown(wait=True)

        assert first.fallback is True
        assert second.fallback is True
        assert prompts == ["stuck"]


class TestAbandonment:
    """Test that cancelled requests stop occupying the caller."""

    def setup_method(self):
        self.release = threading.Event()
        self.controller = None

    def teardown_method(self):
        self.release.set()
        if self.controller is not None:
            self.controller.shutdown()

    def _hanging_controller(self, **kwargs):
        release = self.release

        class HangingProvider(ScriptedProvider):
            def generate(self, prompt, temperature, call_type=None):
                self.calls += 1
                release.wait(5)
                return OK

        self.provider = HangingProvider(OK)
        self.controller = ResilienceController(
            provider=self.provider,
            offline=OfflineProvider(),
            backoff=BackoffPolicy(base_delay=1.0, max_delay=30.0),
            circuit=CircuitBreaker(cooldown_seconds=300.0),
            **kwargs
        )
        return self.controller

    def test_cancelled_before_start_makes_no_call(self):
        controller = self._hanging_controller()
        cancellation = concurrent.futures.Future()
        cancel_and_notify(cancellation)

        with pytest.raises(RequestAbandoned):
            controller.execute("p", CallType.NARRATIVE, 0.7, timeout=5.0, cancellation=cancellation)
        assert self.provider.calls == 0

    def test_cancel_during_call_returns_promptly(self):
        controller = self._hanging_controller()
        cancellation = concurrent.futures.Future()
        timer = threading.Timer(0.05, cancel_and_notify, args=(cancellation,))
        timer.start()

        started = time.monotonic()
        with pytest.raises(RequestAbandoned) as exc_info:
            controller.execute("p", CallType.NARRATIVE, 0.7, timeout=5.0, cancellation=cancellation)

        assert time.monotonic() - started < 2.0
        assert exc_info.value.kind == ErrorKind.PROVIDER_ERROR
        assert controller.stats().total_errors == 0

    def test_cancel_during_backoff_returns_promptly(self):
        provider = ScriptedProvider(NETWORK)
        self.controller = ResilienceController(
            provider=provider,
            offline=OfflineProvider(),
            backoff=BackoffPolicy(base_delay=10.0, max_delay=30.0),
            circuit=CircuitBreaker(cooldown_seconds=300.0),
        )
        cancellation = concurrent.futures.Future()
        timer = threading.Timer(0.05, cancel_and_notify, args=(cancellation,))
        timer.start()

        started = time.monotonic()
        with pytest.raises(RequestAbandoned):
            self.controller.execute("p", CallType.DECISION, 0.2, timeout=1.0, cancellation=cancellation)

        assert time.monotonic() - started < 2.0
        assert provider.calls == 1


class TestRateLimiter:
    """Test the token bucket."""

    def test_burst_up_to_capacity(self):
        limiter = RateLimiter(per_minute=60, clock=FakeClock())
        waits = [limiter.reserve() for _ in range(60)]

        assert waits == [0.0] * 60
        assert limiter.reserve() == pytest.approx(1.0)
        assert limiter.reserve() == pytest.approx(2.0)

    def test_refills_over_time(self):
        clock = FakeClock()
        limiter = RateLimiter(per_minute=60, clock=clock)
        for _ in range(60):
            limiter.reserve()
        assert limiter.available() == 0.0

        clock.now += 5.0
        assert limiter.available() == pytest.approx(5.0)

        clock.now += 3600.0
        assert limiter.available() == 60.0

    def test_cancel_returns_token(self):
        limiter = RateLimiter(per_minute=2, clock=FakeClock())
        limiter.reserve()
        limiter.reserve()
        assert limiter.reserve() > 0
        limiter.cancel()
        assert limiter.available() == 0.0

    def test_rate_must_be_positive(self):
        with pytest.raises(ValueError, match="per_minute must be > 0"):
            RateLimiter(per_minute=0)


class TestRateLimitedController:
    """Test the rate-limit gate in front of provider attempts."""

    def setup_method(self):
        self.clock = FakeClock(0.0)
        self.sleeps = []
        self.controller = None

    def teardown_method(self):
        if self.controller is not None:
            self.controller.shutdown()

    def _controller(self, provider, limiter, max_retries=0):
        self.controller = ResilienceController(
            provider=provider,
            offline=OfflineProvider(),
            backoff=BackoffPolicy(base_delay=1.0, max_delay=30.0),
            circuit=CircuitBreaker(cooldown_seconds=300.0, clock=self.clock),
            max_retries=max_retries,
            sleep=self.sleeps.append,
            rate_limiter=limiter,
        )
        return self.controller

    def test_waits_for_next_token(self):
        limiter = RateLimiter(per_minute=60, clock=self.clock)
        for _ in range(60):
            limiter.reserve()
        provider = ScriptedProvider(OK)

        response = self._controller(provider, limiter).execute("p", CallType.DECISION, 0.2, timeout=3.0)

        assert response.success
        assert provider.calls == 1
        assert self.sleeps == [pytest.approx(1.0)]

    def test_wait_beyond_timeout_fails_as_rate_limited(self):
        limiter = RateLimiter(per_minute=6, clock=self.clock)
        for _ in range(6):
            limiter.reserve()
        provider = ScriptedProvider(OK)
        controller = self._controller(provider, limiter)

        response = controller.execute("p", CallType.DECISION, 0.2, timeout=3.0)

        assert provider.calls == 0
        assert response.fallback is True
        assert self.sleeps == []
        assert controller.stats().retryable_errors == 1
        assert limiter.available() == 0.0

    def test_rate_limited_failure_is_retryable(self):
        limiter = RateLimiter(per_minute=6, clock=self.clock)
        for _ in range(6):
            limiter.reserve()
        controller = self._controller(ScriptedProvider(OK), limiter)
        controller.fallback_enabled = False

        response = controller.execute("p", CallType.DECISION, 0.2, timeout=3.0)

        assert response.status_code == 429
        assert is_retryable(response.error_kind, response.status_code)
