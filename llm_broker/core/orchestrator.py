"""
Caller-facing orchestrator.

Wires the provider, cache, resilience controller, usage ledger and replay
log behind a non-blocking submit API. Every request flows through:

1. Replay substitution (replay mode only; nothing else runs)
2. Cache lookup
3. Resilience controller -> provider (or offline fallback)
4. Cache insert, ledger record, replay record
"""

import concurrent.futures
import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Sequence, Tuple

from .cache import CacheStats, ResponseCache
from .dispatcher import Dispatcher, RequestHandle, default_lanes
from .ledger import BudgetState, UsageLedger, UsageTotals
from .prompts import prompt_hash
from .replay import ReplayLog, ReplayStats
from .resilience import BackoffPolicy, CircuitBreaker, CircuitState, ErrorStats, RateLimiter, ResilienceController
from .types import Callback, CallType, Request, Response, ResponseSource
from ..config.loader import BrokerConfig, DrainMode
from ..providers.base import Provider
from ..providers.factory import create_provider
from ..providers.offline import OfflineProvider
from ..storage.models import UsageRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BrokerStats:
    """Point-in-time view of every subsystem."""
    tick: int
    provider: str
    cache: CacheStats
    cache_size: int
    errors: ErrorStats
    circuit: CircuitState
    usage: UsageTotals
    usage_by_call_type: Dict[str, UsageTotals]
    budget: BudgetState
    replay: ReplayStats
    pending: Dict[str, int]
    in_flight: Dict[str, int]
    superseded: int


class Orchestrator:
    """Non-blocking LLM request broker for a tick-driven caller.

    Usage:
        with Orchestrator(config) as broker:
            broker.submit_decision_interpretation("allocate food", on_done)
            broker.advance_tick()
    """

    def __init__(
        self,
        config: Optional[BrokerConfig] = None,
        provider: Optional[Provider] = None,
        offline: Optional[Provider] = None,
        cache: Optional[ResponseCache] = None,
        ledger: Optional[UsageLedger] = None,
        replay: Optional[ReplayLog] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
        executor: Optional[concurrent.futures.Executor] = None
    ):
        """Build the broker. Nothing runs until ``init()``.

        Args:
            config: Broker configuration (defaults if omitted)
            provider: Backend; selected from config when omitted
            offline: Fallback backend; OfflineProvider when omitted
            cache: Response cache; built from config when omitted
            ledger: Usage ledger; built from config when omitted
            replay: Replay log; built from config when omitted
            clock: Monotonic clock for cache TTL and circuit cooldown
            sleep: Backoff sleep; interruptible by supersession when omitted
            executor: Dispatch executor; a thread pool when omitted
        """
        self.config = config or BrokerConfig()
        self._owns_provider = provider is None
        self.provider = provider or create_provider(self.config)
        if offline is None:
            offline = self.provider if isinstance(self.provider, OfflineProvider) else OfflineProvider()
        self.offline = offline
        self.cache = cache or ResponseCache(
            capacity=self.config.cache.capacity,
            ttl_seconds={c: self.config.cache.ttl.for_call(c) for c in CallType},
            enabled=self.config.cache.enabled,
            clock=clock,
        )
        self.ledger = ledger or UsageLedger(
            limit_usd=self.config.budget.limit_usd,
            warn_fraction=self.config.budget.warn_fraction,
            db_path=self.config.ledger_db_path,
        )
        self.replay = replay or ReplayLog(
            self.config.replay.mode, self.config.replay.path, strict=self.config.replay.strict
        )
        timeouts = self.config.timeouts
        self.lanes = default_lanes(timeouts.decision, timeouts.narrative, timeouts.conversation)
        self.circuit = CircuitBreaker(self.config.circuit.cooldown, clock)
        self.resilience = ResilienceController(
            provider=self.provider,
            offline=self.offline,
            backoff=BackoffPolicy(self.config.retry.base_delay, self.config.retry.max_delay),
            circuit=self.circuit,
            max_retries=self.config.retry.max_retries,
            fallback_enabled=self.config.retry.fallback_enabled,
            sleep=sleep,
            rate_limiter=self._rate_limiter(clock),
        )
        self._clock = clock
        self._executor = executor
        self._dispatcher: Optional[Dispatcher] = None
        self._closed = False
        self._tick = 0
        self._occurrences: Dict[Tuple[int, CallType], int] = defaultdict(int)
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Orchestrator(provider={self.provider!r}, tick={self._tick})"

    def __enter__(self) -> "Orchestrator":
        return self.init()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()

    @property
    def running(self) -> bool:
        return self._dispatcher is not None

    @property
    def tick(self) -> int:
        return self._tick

    def init(self) -> "Orchestrator":
        """Start the dispatcher. Calling it again is a no-op.

        Raises:
            RuntimeError: If the orchestrator was already shut down
        """
        if self._closed:
            raise RuntimeError("Orchestrator has been shut down and cannot be restarted")
        if self._dispatcher is not None:
            return self

        self._dispatcher = Dispatcher(
            process=self._process,
            lanes=self.lanes,
            executor=self._executor,
            auto_drain=self.config.drain_mode == DrainMode.BACKGROUND,
            clock=self._clock,
        )
        logger.info("Orchestrator started (provider=%s, drain=%s, replay=%s)",
                    self.provider.name, self.config.drain_mode.value, self.replay.mode.value)
        if not self.replay.replaying and not self.provider.is_available():
            logger.warning("Provider %s is unavailable; requests will be served offline after retries",
                           self.provider.name)
        return self

    def shutdown(self, wait: bool = True) -> None:
        """Stop dispatching and release backends. Queued requests are cancelled."""
        if self._dispatcher is None:
            return
        self._dispatcher.shutdown(wait=wait)
        self._dispatcher = None
        self._closed = True
        self.resilience.shutdown()
        close = getattr(self.provider, "close", None)
        if self._owns_provider and close is not None:
            close()
        logger.info("Orchestrator stopped at tick %d", self._tick)

    def advance_tick(self) -> int:
        """Move to the next simulation tick; in tick drain mode this also pumps."""
        with self._lock:
            self._tick += 1
            tick = self._tick
            for key in [k for k in self._occurrences if k[0] < tick]:
                del self._occurrences[key]
        if self._dispatcher is not None and not self._dispatcher.auto_drain:
            self._dispatcher.pump()
        return tick

    def pump(self) -> int:
        """Dispatch all ready requests. Returns how many were dispatched."""
        return self._require_dispatcher().pump()

    def submit(
        self,
        call_type: CallType,
        prompt: str,
        callback: Optional[Callback] = None,
        entity_ids: Sequence[int] = ()
    ) -> RequestHandle:
        """Queue a request on its lane and return immediately.

        Raises:
            RuntimeError: If the orchestrator is not running
        """
        dispatcher = self._require_dispatcher()
        with self._lock:
            tick = self._tick
            occurrence = self._occurrences[(tick, call_type)]
            self._occurrences[(tick, call_type)] += 1
        return dispatcher.submit(
            call_type, prompt, callback,
            tick=tick, entity_ids=entity_ids, occurrence=occurrence
        )

    def submit_decision_interpretation(
        self,
        prompt: str,
        callback: Optional[Callback] = None,
        entity_ids: Sequence[int] = ()
    ) -> RequestHandle:
        return self.submit(CallType.DECISION, prompt, callback, entity_ids)

    def submit_narrative_generation(
        self,
        prompt: str,
        callback: Optional[Callback] = None,
        entity_ids: Sequence[int] = ()
    ) -> RequestHandle:
        return self.submit(CallType.NARRATIVE, prompt, callback, entity_ids)

    def submit_ambient_conversation(
        self,
        prompt: str,
        callback: Optional[Callback] = None,
        entity_ids: Sequence[int] = ()
    ) -> RequestHandle:
        return self.submit(CallType.CONVERSATION, prompt, callback, entity_ids)

    def _rate_limiter(self, clock: Callable[[], float]) -> Optional[RateLimiter]:
        per_minute = self.config.rate_limit.per_minute
        if per_minute is None:
            return None
        return RateLimiter(per_minute, clock)

    def _require_dispatcher(self) -> Dispatcher:
        if self._dispatcher is None:
            raise RuntimeError("Orchestrator is not running; call init() first")
        return self._dispatcher

    def _process(self, request: Request) -> Response:
        """Run one request through the pipeline. Called on a dispatch worker."""
        call_type = request.call_type
        digest = prompt_hash(request.prompt)
        if self.replay.replaying:
            return self.replay.lookup(request.tick, call_type, request.occurrence, prompt_hash=digest)

        response = self.cache.lookup(digest, call_type)
        if response is None:
            response = self.resilience.execute(
                request.prompt,
                call_type,
                temperature=self.config.temperatures.for_call(call_type),
                timeout=self.lanes[call_type].timeout,
                cancellation=request.handle.future,
            )
            if response.success and response.source == ResponseSource.PROVIDER:
                self.cache.insert(digest, call_type, response, response.total_tokens, response.cost_usd)
            if response.success:
                self.ledger.record(self._usage_record(request, response))

        self.replay.record(request.tick, call_type, digest, response, request.occurrence)
        return response

    def _usage_record(self, request: Request, response: Response) -> UsageRecord:
        if response.source == ResponseSource.OFFLINE:
            provider_name, model = self.offline.name, self.offline.name
        else:
            provider_name = self.provider.name
            model = getattr(self.provider, "model", provider_name)
        return UsageRecord(
            timestamp=datetime.now(),
            call_type=request.call_type.value,
            provider=provider_name,
            model=model,
            input_tokens=response.input_tokens,
            completion_tokens=response.completion_tokens,
            cost_usd=response.cost_usd,
            source=response.source.value,
            retry_count=max(response.attempts - 1, 0),
        )

    def stats(self) -> BrokerStats:
        dispatcher = self._dispatcher
        return BrokerStats(
            tick=self._tick,
            provider=self.provider.name,
            cache=self.cache.stats(),
            cache_size=len(self.cache),
            errors=self.resilience.stats(),
            circuit=self.circuit.state(),
            usage=self.ledger.totals(),
            usage_by_call_type=self.ledger.by_call_type(),
            budget=self.ledger.budget_state(),
            replay=self.replay.stats(),
            pending={c.value: dispatcher.pending(c) if dispatcher else 0 for c in CallType},
            in_flight={c.value: dispatcher.in_flight(c) if dispatcher else 0 for c in CallType},
            superseded=dispatcher.superseded_count if dispatcher else 0,
        )
