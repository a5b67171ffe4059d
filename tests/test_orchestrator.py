"""
End-to-end tests for the orchestrator pipeline.

Work runs inline on the submitting thread and time is injected, so
scenarios are deterministic.
"""

import concurrent.futures
import os
import tempfile
import threading

import pytest

from llm_broker.config.loader import (
    BrokerConfig,
    CacheConfig,
    DrainMode,
    ProviderKind,
    ReplayConfig,
    ReplayMode,
    RetryConfig,
)
from llm_broker.core.errors import ErrorKind, ReplayDivergence, ReplayKeyMissing
from llm_broker.core.orchestrator import Orchestrator
from llm_broker.core.types import CallType, Response, ResponseSource
from llm_broker.providers.base import Provider
from llm_broker.providers.offline import OfflineProvider
from llm_broker.storage.repository import fetch_recent_usage_records


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class InlineExecutor(concurrent.futures.Executor):
    """Runs submitted work immediately on the calling thread."""

    def submit(self, fn, *args, **kwargs):
        future = concurrent.futures.Future()
        future.set_result(fn(*args, **kwargs))
        return future


class CountingProvider(Provider):
    """Echoes prompts, or returns a fixed failure, and counts calls."""

    name = "remote"
    model = "gpt-3.5-turbo"

    def __init__(self, failure: Response = None):
        self.failure = failure
        self.prompts = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    def is_available(self) -> bool:
        return True

    def generate(self, prompt, temperature, call_type=None):
        self.prompts.append(prompt)
        if self.failure is not None:
            return self.failure
        return Response(success=True, content=f"remote:{prompt}", input_tokens=20,
                        completion_tokens=10, cost_usd=0.000025)


TIMEOUT = Response.failure(ErrorKind.TIMEOUT, "no answer in time")


class OrchestratorTestCase:
    """Builds orchestrators with injected clock, sleep and executor."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.clock = FakeClock()
        self.sleeps = []
        self.brokers = []

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        for broker in self.brokers:
            broker.shutdown()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _broker(self, provider=None, config=None, **kwargs):
        broker = Orchestrator(
            config or BrokerConfig(),
            provider=provider,
            clock=self.clock,
            sleep=self.sleeps.append,
            executor=InlineExecutor(),
            **kwargs
        )
        self.brokers.append(broker)
        return broker.init()


class TestCaching(OrchestratorTestCase):
    """Test cache behavior through the pipeline."""

    def test_repeated_decision_is_cache_hit(self):
        provider = CountingProvider()
        broker = self._broker(provider)

        first = broker.submit_decision_interpretation("allocate food to farmers").result(timeout=0)
        second = broker.submit_decision_interpretation("Allocate  food to FARMERS").result(timeout=0)

        assert provider.calls == 1
        assert first.source == ResponseSource.PROVIDER
        assert second.source == ResponseSource.CACHE
        assert second.content == first.content
        assert second.input_tokens == 0
        assert second.cost_usd == 0.0
        # cache hits are not billed
        assert broker.ledger.totals().calls == 1
        assert broker.cache.stats().cost_saved_usd == pytest.approx(0.000025)

    def test_expired_decision_calls_provider_again(self):
        provider = CountingProvider()
        broker = self._broker(provider)

        broker.submit_decision_interpretation("allocate food to farmers")
        self.clock.now += 121
        response = broker.submit_decision_interpretation("allocate food to farmers").result(timeout=0)

        assert provider.calls == 2
        assert response.source == ResponseSource.PROVIDER

    def test_disabled_cache(self):
        provider = CountingProvider()
        broker = self._broker(provider, BrokerConfig(cache=CacheConfig(enabled=False)))

        broker.submit_ambient_conversation("nice weather")
        broker.submit_ambient_conversation("nice weather")
        assert provider.calls == 2

    def test_failures_not_cached_or_billed(self):
        provider = CountingProvider(failure=Response.failure(ErrorKind.PROVIDER_ERROR, "forbidden", 403))
        broker = self._broker(provider)

        response = broker.submit_narrative_generation("a tale").result(timeout=0)
        broker.submit_narrative_generation("a tale")

        assert not response.success
        assert response.status_code == 403
        assert provider.calls == 2
        assert len(broker.cache) == 0
        assert broker.ledger.totals().calls == 0


class TestResilienceScenario(OrchestratorTestCase):
    """Test retry exhaustion and the circuit through the pipeline."""

    def test_timeouts_trip_circuit_and_serve_offline(self):
        provider = CountingProvider(failure=TIMEOUT)
        broker = self._broker(provider, BrokerConfig(retry=RetryConfig(max_retries=3)))

        current = broker.submit_narrative_generation("the river floods").result(timeout=0)

        assert provider.calls == 4
        assert self.sleeps == [1.0, 2.0, 4.0]
        assert current.success
        assert current.fallback
        assert current.source == ResponseSource.OFFLINE
        assert broker.stats().circuit.is_open

        following = [
            broker.submit_narrative_generation("the river floods").result(timeout=0),
            broker.submit_narrative_generation("the river floods").result(timeout=0),
        ]

        assert provider.calls == 4
        assert all(r.source == ResponseSource.OFFLINE for r in following)
        assert all(r.cost_usd == 0.0 for r in following)
        assert {r.content for r in following} == {current.content}
        # offline output is never cached
        assert len(broker.cache) == 0

        usage = broker.ledger.by_call_type()["narrative"]
        assert usage.calls == 3
        assert usage.cost_usd == 0.0

    def test_circuit_closes_after_cooldown(self):
        provider = CountingProvider(failure=TIMEOUT)
        broker = self._broker(provider, BrokerConfig(retry=RetryConfig(max_retries=0)))
        broker.submit_decision_interpretation("hold the line")
        assert provider.calls == 1

        provider.failure = None
        self.clock.now += 301
        response = broker.submit_decision_interpretation("hold the line").result(timeout=0)

        assert provider.calls == 2
        assert response.source == ResponseSource.PROVIDER

    def test_offline_records_carry_offline_provider(self):
        broker = self._broker(CountingProvider(failure=TIMEOUT), BrokerConfig(retry=RetryConfig(max_retries=0)))
        broker.submit_ambient_conversation("hello")

        record = broker.ledger.records()[0]
        assert record.provider == "offline"
        assert record.source == "offline"
        assert record.cost_usd == 0.0


class TestScheduling(OrchestratorTestCase):
    """Test lane ordering and supersession in tick drain mode."""

    def test_priority_regardless_of_enqueue_order(self):
        provider = CountingProvider()
        broker = self._broker(provider, BrokerConfig(drain_mode=DrainMode.TICK))

        broker.submit_ambient_conversation("conversation")
        broker.submit_narrative_generation("narrative")
        broker.submit_decision_interpretation("decision")
        assert provider.calls == 0

        assert broker.pump() == 3
        assert provider.prompts == ["decision", "narrative", "conversation"]

    def test_second_narrative_supersedes_pending_first(self):
        delivered = []
        broker = self._broker(CountingProvider(), BrokerConfig(drain_mode=DrainMode.TICK))

        first = broker.submit_narrative_generation("chapter one", callback=delivered.append)
        second = broker.submit_narrative_generation("chapter two", callback=delivered.append)
        broker.advance_tick()

        assert first.superseded
        assert [r.content for r in delivered] == ["remote:chapter two"]
        assert second.result(timeout=0).success
        assert broker.stats().superseded == 1

    def test_advance_tick_pumps_in_tick_mode(self):
        delivered = []
        broker = self._broker(CountingProvider(), BrokerConfig(drain_mode=DrainMode.TICK))
        broker.submit_decision_interpretation("go", callback=delivered.append)

        assert delivered == []
        broker.advance_tick()
        assert len(delivered) == 1
        assert broker.tick == 1


class GatedProvider(CountingProvider):
    """Blocks narrative calls until released; other calls answer at once."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()
        self.decision_started = threading.Event()

    def generate(self, prompt, temperature, call_type=None):
        self.prompts.append(prompt)
        if call_type == CallType.NARRATIVE:
            self.release.wait(10)
        else:
            self.decision_started.set()
        return Response(success=True, content=f"remote:{prompt}", input_tokens=20,
                        completion_tokens=10, cost_usd=0.000025)


class TestSupersededInFlight:
    """Test that superseded in-flight work frees its dispatch worker."""

    def setup_method(self):
        self.provider = GatedProvider()
        self.broker = Orchestrator(BrokerConfig(), provider=self.provider).init()

    def teardown_method(self):
        self.provider.release.set()
        self.broker.shutdown()

    def test_decision_runs_after_blocked_narratives_are_superseded(self):
        narratives = [
            self.broker.submit_narrative_generation(f"chapter {n}")
            for n in range(5)
        ]
        decision = self.broker.submit_decision_interpretation("allocate food")

        try:
            assert self.provider.decision_started.wait(2)
            response = decision.result(timeout=2)
        finally:
            self.provider.release.set()

        assert response.success
        assert response.content == "remote:allocate food"
        assert all(handle.superseded for handle in narratives[:-1])
        assert narratives[-1].result(timeout=2).content == "remote:chapter 4"
        assert self.broker.stats().superseded == 4

    def test_superseded_work_is_not_billed(self):
        first = self.broker.submit_narrative_generation("chapter one")
        second = self.broker.submit_narrative_generation("chapter two")
        self.provider.release.set()

        assert second.result(timeout=2).success
        assert first.superseded
        assert self.broker.ledger.totals().calls == 1


class TestReplay(OrchestratorTestCase):
    """Test record and replay runs."""

    def _config(self, mode):
        path = os.path.join(self.temp_dir, "trace.jsonl")
        return BrokerConfig(replay=ReplayConfig(mode=mode, path=path))

    def test_replay_reproduces_recorded_run_without_provider(self):
        recorder = self._broker(CountingProvider(), self._config(ReplayMode.RECORD))
        recorder.advance_tick()
        original = recorder.submit_narrative_generation("dawn over the valley").result(timeout=0)
        recorder.submit_decision_interpretation("allocate food")
        recorder.submit_decision_interpretation("delegate the watch")
        recorder.shutdown()

        provider = CountingProvider()
        player = self._broker(provider, self._config(ReplayMode.REPLAY))
        player.advance_tick()
        replayed = player.submit_narrative_generation("dawn over the valley").result(timeout=0)
        first = player.submit_decision_interpretation("allocate food").result(timeout=0)
        second = player.submit_decision_interpretation("delegate the watch").result(timeout=0)

        assert provider.calls == 0
        assert replayed.content == original.content
        assert replayed.source == ResponseSource.REPLAY
        assert first.content == "remote:allocate food"
        assert second.content == "remote:delegate the watch"
        assert player.ledger.totals().calls == 0

    def test_missing_replay_key(self):
        recorder = self._broker(CountingProvider(), self._config(ReplayMode.RECORD))
        recorder.submit_decision_interpretation("allocate food")
        recorder.shutdown()

        delivered = []
        player = self._broker(CountingProvider(), self._config(ReplayMode.REPLAY))
        handle = player.submit_narrative_generation("never recorded", callback=delivered.append)

        with pytest.raises(ReplayKeyMissing):
            handle.result(timeout=0)
        assert delivered[0].error_kind == ErrorKind.REPLAY_KEY_MISSING

    def test_changed_prompt_counts_divergence(self):
        recorder = self._broker(CountingProvider(), self._config(ReplayMode.RECORD))
        recorder.submit_decision_interpretation("allocate food")
        recorder.shutdown()

        player = self._broker(CountingProvider(), self._config(ReplayMode.REPLAY))
        response = player.submit_decision_interpretation("allocate timber").result(timeout=0)

        assert response.content == "remote:allocate food"
        assert response.source == ResponseSource.REPLAY
        stats = player.replay.stats()
        assert stats.divergences == 1
        assert stats.replayed == 1

    def test_strict_replay_rejects_changed_prompt(self):
        recorder = self._broker(CountingProvider(), self._config(ReplayMode.RECORD))
        recorder.submit_decision_interpretation("allocate food")
        recorder.shutdown()

        path = os.path.join(self.temp_dir, "trace.jsonl")
        config = BrokerConfig(replay=ReplayConfig(mode=ReplayMode.REPLAY, path=path, strict=True))
        delivered = []
        player = self._broker(CountingProvider(), config)
        handle = player.submit_decision_interpretation("allocate timber", callback=delivered.append)

        with pytest.raises(ReplayDivergence):
            handle.result(timeout=0)
        assert delivered[0].error_kind == ErrorKind.REPLAY_KEY_MISSING
        assert player.replay.stats().divergences == 1

    def test_cache_hits_are_recorded(self):
        recorder = self._broker(CountingProvider(), self._config(ReplayMode.RECORD))
        recorder.submit_ambient_conversation("hello")
        recorder.submit_ambient_conversation("hello")

        entries = recorder.replay.entries()
        assert [e.occurrence for e in entries] == [0, 1]
        assert entries[1].response.source == ResponseSource.CACHE


class TestLifecycle(OrchestratorTestCase):
    """Test init, shutdown and reporting."""

    def test_submit_before_init_fails(self):
        broker = Orchestrator(BrokerConfig(), provider=CountingProvider())
        with pytest.raises(RuntimeError, match="not running"):
            broker.submit_decision_interpretation("x")

    def test_context_manager(self):
        provider = CountingProvider()
        with Orchestrator(BrokerConfig(), provider=provider, executor=InlineExecutor()) as broker:
            assert broker.running
            broker.submit_decision_interpretation("x")
        assert not broker.running
        assert provider.calls == 1

        with pytest.raises(RuntimeError, match="cannot be restarted"):
            broker.init()

    def test_init_is_idempotent(self):
        broker = self._broker(CountingProvider())
        assert broker.init() is broker

    def test_offline_configuration_shares_backend(self):
        broker = self._broker(config=BrokerConfig(provider=ProviderKind.OFFLINE))
        assert isinstance(broker.provider, OfflineProvider)
        assert broker.offline is broker.provider

        response = broker.submit_ambient_conversation("hello").result(timeout=0)
        assert response.source == ResponseSource.OFFLINE
        assert response.attempts == 1

    def test_ledger_persisted_when_configured(self):
        db_path = os.path.join(self.temp_dir, "usage.db")
        broker = self._broker(CountingProvider(), BrokerConfig(ledger_db_path=db_path))
        broker.submit_decision_interpretation("allocate food")

        records = fetch_recent_usage_records(db_path=db_path)
        assert len(records) == 1
        assert records[0].call_type == "decision"
        assert records[0].model == "gpt-3.5-turbo"

    def test_stats_snapshot(self):
        broker = self._broker(CountingProvider())
        broker.submit_decision_interpretation("a")
        broker.submit_decision_interpretation("a")
        broker.advance_tick()

        stats = broker.stats()
        assert stats.tick == 1
        assert stats.provider == "remote"
        assert stats.cache.hits == 1
        assert stats.cache_size == 1
        assert stats.usage.calls == 1
        assert stats.errors.total_errors == 0
        assert not stats.circuit.is_open
        assert stats.pending == {"decision": 0, "narrative": 0, "conversation": 0}
