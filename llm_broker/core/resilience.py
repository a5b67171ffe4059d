"""
Retry, backoff and circuit breaking around a provider.

Retryable failures are retried with exponential backoff; once the retry
budget is exhausted the circuit opens and requests are served by the
offline backend until the cooldown elapses.

Control flow per request:
1. Circuit open -> offline response, no provider call
2. Wait for a rate-limit token, then attempt the provider call within the
   lane's timeout budget
3. Non-retryable failure -> returned to the caller as-is
4. Retryable failure -> sleep min(base * 2^n, cap), then retry
5. Retries exhausted -> trip circuit, serve this request offline

A request whose handle is cancelled (superseded) is abandoned at the next
wait: the controller stops waiting on the provider and raises
RequestAbandoned so the dispatch worker is released.
"""

import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional

from .errors import ErrorKind, RequestAbandoned, is_retryable
from .types import CallType, Response, ResponseSource
from ..providers.base import Provider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with a cap."""
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay(self, attempt: int) -> float:
        """Delay before retry ``attempt`` (0-indexed)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)


@dataclass(frozen=True)
class CircuitState:
    """Snapshot of the circuit breaker."""
    is_open: bool
    opened_at: Optional[float]
    cooldown_seconds: float


class CircuitBreaker:
    """Timed offline-fallback mode.

    Closed -> Open on trip(); Open -> Closed automatically once
    ``now > opened_at + cooldown``.
    """

    def __init__(self, cooldown_seconds: float, clock: Callable[[], float] = time.monotonic):
        if cooldown_seconds <= 0:
            raise ValueError("cooldown_seconds must be > 0")
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._opened_at: Optional[float] = None
        self._trips = 0
        self._lock = threading.Lock()

    def is_open(self) -> bool:
        with self._lock:
            return self._check_locked()

    def _check_locked(self) -> bool:
        if self._opened_at is None:
            return False
        if self._clock() > self._opened_at + self.cooldown_seconds:
            self._opened_at = None
            logger.info("Circuit closed after %.1fs cooldown; resuming provider calls",
                        self.cooldown_seconds)
            return False
        return True

    def trip(self) -> None:
        with self._lock:
            self._opened_at = self._clock()
            self._trips += 1
        logger.warning("Circuit opened for %.1fs; serving requests offline", self.cooldown_seconds)

    def reset(self) -> None:
        with self._lock:
            self._opened_at = None

    @property
    def trips(self) -> int:
        return self._trips

    def state(self) -> CircuitState:
        with self._lock:
            is_open = self._check_locked()
            return CircuitState(
                is_open=is_open,
                opened_at=self._opened_at,
                cooldown_seconds=self.cooldown_seconds,
            )


@dataclass
class ErrorStats:
    """Error-recovery counters."""
    total_errors: int = 0
    retryable_errors: int = 0
    consecutive_failures: int = 0
    recoveries: int = 0
    fallbacks: int = 0
    circuit_trips: int = 0
    bypassed_by_circuit: int = 0

    @property
    def retryable_rate(self) -> float:
        return self.retryable_errors / self.total_errors if self.total_errors else 0.0


class RateLimiter:
    """Token bucket limiting provider attempts per minute.

    The bucket holds at most ``per_minute`` tokens and refills continuously.
    ``reserve`` always takes a token, letting the balance go negative, and
    returns how long the caller must wait before using it.
    """

    def __init__(self, per_minute: float, clock: Callable[[], float] = time.monotonic):
        if per_minute <= 0:
            raise ValueError("per_minute must be > 0")
        self.per_minute = per_minute
        self._rate = per_minute / 60.0
        self._clock = clock
        self._tokens = float(per_minute)
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill_locked(self) -> None:
        now = self._clock()
        elapsed = now - self._updated
        if elapsed > 0:
            self._tokens = min(self.per_minute, self._tokens + elapsed * self._rate)
            self._updated = now

    def reserve(self) -> float:
        """Take one token. Returns seconds to wait before it may be used."""
        with self._lock:
            self._refill_locked()
            self._tokens -= 1.0
            return 0.0 if self._tokens >= 0 else -self._tokens / self._rate

    def cancel(self) -> None:
        """Give back a token taken by a reservation that will not be used."""
        with self._lock:
            self._tokens = min(self.per_minute, self._tokens + 1.0)

    def available(self) -> float:
        with self._lock:
            self._refill_locked()
            return max(self._tokens, 0.0)


class ResilienceController:
    """Runs provider calls with timeout, retry, backoff and offline fallback."""

    def __init__(
        self,
        provider: Provider,
        offline: Provider,
        backoff: BackoffPolicy,
        circuit: CircuitBreaker,
        max_retries: int = 3,
        fallback_enabled: bool = True,
        sleep: Optional[Callable[[float], None]] = None,
        call_workers: int = 8,
        rate_limiter: Optional[RateLimiter] = None
    ):
        """Initialize controller.

        Args:
            provider: Backend to call
            offline: Deterministic fallback backend
            backoff: Delay policy between retries
            circuit: Breaker shared with the orchestrator
            max_retries: Retries after the first attempt
            fallback_enabled: Serve offline on exhaustion instead of the last failure
            sleep: Pause function; when omitted pauses end early if the request is abandoned
            call_workers: Threads running provider calls
            rate_limiter: Optional gate on provider attempts
        """
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.provider = provider
        self.offline = offline
        self.backoff = backoff
        self.circuit = circuit
        self.max_retries = max_retries
        self.fallback_enabled = fallback_enabled
        self.rate_limiter = rate_limiter
        self._sleep = sleep
        self._calls = concurrent.futures.ThreadPoolExecutor(
            max_workers=call_workers, thread_name_prefix="llm-call"
        )
        self._stats = ErrorStats()
        self._lock = threading.Lock()

    def execute(
        self,
        prompt: str,
        call_type: CallType,
        temperature: float,
        timeout: Optional[float] = None,
        cancellation: Optional[concurrent.futures.Future] = None
    ) -> Response:
        """Serve one logical request.

        Args:
            prompt: Prompt text
            call_type: Call type, passed to the offline backend for template choice
            temperature: Sampling temperature
            timeout: Per-attempt budget in seconds (None waits indefinitely)
            cancellation: Future whose cancellation means nobody wants the result

        Returns:
            Provider success, offline response, or a non-retryable failure

        Raises:
            RequestAbandoned: If ``cancellation`` is cancelled before a result is ready
        """
        if self.provider is self.offline:
            return self.offline.generate(prompt, temperature, call_type)

        last_failure: Optional[Response] = None
        for attempt in range(self.max_retries + 1):
            self._check_abandoned(cancellation, call_type)
            if self.circuit.is_open():
                with self._lock:
                    self._stats.bypassed_by_circuit += 1
                return self._serve_offline(prompt, call_type, attempts=attempt, fallback=attempt > 0)

            response = self._attempt(prompt, call_type, temperature, timeout, cancellation)
            if response.success:
                with self._lock:
                    if attempt > 0:
                        self._stats.recoveries += 1
                    self._stats.consecutive_failures = 0
                return replace(response, attempts=attempt + 1)

            last_failure = replace(response, attempts=attempt + 1)
            retryable = is_retryable(response.error_kind, response.status_code)
            self._record_error(retryable)

            if not retryable:
                logger.warning("Non-retryable %s failure for %s: %s",
                               response.error_kind.value, call_type.value, response.error)
                return last_failure

            if attempt == self.max_retries:
                break

            delay = self.backoff.delay(attempt)
            logger.warning("Retryable %s failure for %s (attempt %d/%d); retrying in %.2fs",
                           response.error_kind.value, call_type.value,
                           attempt + 1, self.max_retries + 1, delay)
            self._pause(delay, cancellation)

        self.circuit.trip()
        with self._lock:
            self._stats.circuit_trips += 1

        if not self.fallback_enabled:
            return last_failure
        return self._serve_offline(prompt, call_type, attempts=self.max_retries + 1, fallback=True)

    def _attempt(
        self,
        prompt: str,
        call_type: CallType,
        temperature: float,
        timeout: Optional[float],
        cancellation: Optional[concurrent.futures.Future]
    ) -> Response:
        """One provider call bounded by ``timeout``.

        A call that overruns keeps running on its worker and its result is
        discarded; a call still queued for a worker is cancelled.
        """
        if self.rate_limiter is not None:
            wait = self.rate_limiter.reserve()
            if timeout is not None and wait >= timeout:
                self.rate_limiter.cancel()
                return Response.failure(
                    ErrorKind.PROVIDER_ERROR,
                    f"Rate limit of {self.rate_limiter.per_minute:g}/min reached; "
                    f"next slot in {wait:.1f}s",
                    429,
                )
            if wait > 0:
                logger.debug("Rate limit reached; delaying %s call by %.2fs", call_type.value, wait)
                self._pause(wait, cancellation)
                self._check_abandoned(cancellation, call_type)
                if timeout is not None:
                    timeout -= wait

        future = self._calls.submit(self.provider.generate, prompt, temperature, call_type)
        waiting = [future] if cancellation is None else [future, cancellation]
        concurrent.futures.wait(waiting, timeout=timeout, return_when=concurrent.futures.FIRST_COMPLETED)

        if not future.done():
            future.cancel()
            self._check_abandoned(cancellation, call_type)
            return Response.failure(
                ErrorKind.TIMEOUT,
                f"{self.provider.name} call exceeded {timeout:.1f}s budget",
                duration_ms=int(timeout * 1000),
            )

        try:
            response = future.result()
        except Exception as exc:
            logger.exception("Provider %s raised instead of returning a failure", self.provider.name)
            return Response.failure(ErrorKind.PROVIDER_ERROR, f"{type(exc).__name__}: {exc}")

        if not response.success and response.error_kind is None:
            # Unclassified failures are treated as provider errors
            response = replace(response, error_kind=ErrorKind.PROVIDER_ERROR)
        return response

    def _check_abandoned(self, cancellation: Optional[concurrent.futures.Future], call_type: CallType) -> None:
        if cancellation is not None and cancellation.cancelled():
            logger.debug("Abandoning superseded %s request", call_type.value)
            raise RequestAbandoned(call_type.value)

    def _pause(self, delay: float, cancellation: Optional[concurrent.futures.Future]) -> None:
        if self._sleep is not None:
            self._sleep(delay)
        elif cancellation is not None:
            concurrent.futures.wait([cancellation], timeout=delay)
        else:
            time.sleep(delay)

    def _serve_offline(self, prompt: str, call_type: CallType, attempts: int, fallback: bool) -> Response:
        response = self.offline.generate(prompt, 0.0, call_type)
        if fallback:
            with self._lock:
                self._stats.fallbacks += 1
        return replace(
            response,
            cost_usd=0.0,
            source=ResponseSource.OFFLINE,
            attempts=attempts,
            fallback=fallback,
        )

    def _record_error(self, retryable: bool) -> None:
        with self._lock:
            self._stats.total_errors += 1
            if retryable:
                self._stats.retryable_errors += 1
                self._stats.consecutive_failures += 1
            else:
                self._stats.consecutive_failures = 0

    def stats(self) -> ErrorStats:
        with self._lock:
            return replace(self._stats)

    def shutdown(self, wait: bool = False) -> None:
        """Stop the call executor; abandoned overrunning calls are not awaited."""
        self._calls.shutdown(wait=wait)
