"""Tests for the request orchestrator and circuit breaker."""
import asyncio

import pytest

from core.circuit import CircuitBreaker, CircuitState
from core.config import CircuitConfig
from core.errors import InvalidInput, ProviderUnavailable, ServiceCircuitOpen
from core.models import Priority, ProviderCallEnvelope
from core.orchestrator import ProcessOptions, RequestOrchestrator
from storage.cache import SessionCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class BrokenCache(SessionCache):
    async def get(self, key):
        raise ConnectionError("cache down")

    async def set(self, key, value, ttl_seconds):
        raise ConnectionError("cache down")

    async def delete(self, key):
        raise ConnectionError("cache down")


class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        breaker = CircuitBreaker("svc", CircuitConfig(failure_threshold=3), clock=FakeClock())
        for _ in range(2):
            assert breaker.allow()
            breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert not breaker.allow()

    def test_success_resets_count(self):
        breaker = CircuitBreaker("svc", CircuitConfig(failure_threshold=2), clock=FakeClock())
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED

    def test_half_open_allows_single_trial_call(self):
        clock = FakeClock()
        breaker = CircuitBreaker("svc", CircuitConfig(failure_threshold=1, recovery_timeout_seconds=30),
                                 clock=clock)
        breaker.record_failure()
        assert not breaker.allow()

        clock.now += 31
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow()
        assert not breaker.allow()  # trial call already in flight

        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.allow()

    def test_failed_trial_call_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker("svc", CircuitConfig(failure_threshold=1, recovery_timeout_seconds=10),
                                 clock=clock)
        breaker.record_failure()
        clock.now += 11
        assert breaker.allow()
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert breaker.retry_after == pytest.approx(10)


class TestRequestOrchestrator:
    @pytest.mark.asyncio
    async def test_cache_hit_skips_work(self, orchestrator):
        calls = []

        async def work(env):
            calls.append(env.id)
            return {"value": 42}

        options = ProcessOptions(cache_key="k1", cache_ttl=60)
        first = await orchestrator.process(ProviderCallEnvelope(type="t"), work, options)
        second = await orchestrator.process(ProviderCallEnvelope(type="t"), work, options)

        assert first == second == {"value": 42}
        assert len(calls) == 1
        assert orchestrator.cache_hits == 1

    @pytest.mark.asyncio
    async def test_concurrent_identical_requests_share_one_call(self, orchestrator):
        calls = 0

        async def work(env):
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.05)
            return "done"

        envelopes = [ProviderCallEnvelope(type="t", dedupe_key="same") for _ in range(5)]
        results = await asyncio.gather(*(orchestrator.process(e, work) for e in envelopes))

        assert results == ["done"] * 5
        assert calls == 1
        assert orchestrator.dedup_joins == 4
        assert orchestrator.in_flight_count == 0

    @pytest.mark.asyncio
    async def test_failure_propagates_to_joiners_and_is_not_cached(self, orchestrator, cache):
        async def work(env):
            await asyncio.sleep(0.01)
            raise ProviderUnavailable("svc", "boom")

        options = ProcessOptions(cache_key="k", service_name="svc")
        envelopes = [ProviderCallEnvelope(type="t", dedupe_key="d") for _ in range(3)]
        results = await asyncio.gather(
            *(orchestrator.process(e, work, options) for e in envelopes), return_exceptions=True
        )

        assert all(isinstance(r, ProviderUnavailable) for r in results)
        assert await cache.get("k") is None
        assert orchestrator.in_flight_count == 0

    @pytest.mark.asyncio
    async def test_cancelled_leader_fails_joiners_softly(self, orchestrator):
        started = asyncio.Event()

        async def work(env):
            started.set()
            await asyncio.sleep(5)
            return "late"

        options = ProcessOptions(service_name="svc")
        leader = asyncio.create_task(
            orchestrator.process(ProviderCallEnvelope(type="t", dedupe_key="k"), work, options)
        )
        await started.wait()
        joiner = asyncio.create_task(
            orchestrator.process(ProviderCallEnvelope(type="t", dedupe_key="k"), work, options)
        )
        await asyncio.sleep(0)

        leader.cancel()
        with pytest.raises(asyncio.CancelledError):
            await leader
        with pytest.raises(ProviderUnavailable):
            await joiner
        assert not joiner.cancelled()
        assert orchestrator.in_flight_count == 0

    @pytest.mark.asyncio
    async def test_open_circuit_fails_fast(self, cache):
        orch = RequestOrchestrator(cache, CircuitConfig(failure_threshold=2), default_timeout=1.0)
        calls = 0

        async def work(env):
            nonlocal calls
            calls += 1
            raise ProviderUnavailable("svc", "down")

        options = ProcessOptions(service_name="svc")
        for _ in range(2):
            with pytest.raises(ProviderUnavailable):
                await orch.process(ProviderCallEnvelope(type="t"), work, options)

        with pytest.raises(ServiceCircuitOpen):
            await orch.process(ProviderCallEnvelope(type="t"), work, options)
        assert calls == 2

    @pytest.mark.asyncio
    async def test_breakers_are_per_service(self, cache):
        orch = RequestOrchestrator(cache, CircuitConfig(failure_threshold=1), default_timeout=1.0)

        async def failing(env):
            raise ProviderUnavailable("a", "down")

        async def ok(env):
            return "ok"

        with pytest.raises(ProviderUnavailable):
            await orch.process(ProviderCallEnvelope(type="t"), failing, ProcessOptions(service_name="a"))

        assert await orch.process(ProviderCallEnvelope(type="t"), ok, ProcessOptions(service_name="b")) == "ok"
        assert orch.breaker("a").state == CircuitState.OPEN
        assert orch.breaker("b").state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_timeout_becomes_provider_unavailable(self, orchestrator):
        async def slow(env):
            await asyncio.sleep(1)

        with pytest.raises(ProviderUnavailable) as exc_info:
            await orchestrator.process(ProviderCallEnvelope(type="t"), slow,
                                       ProcessOptions(service_name="slow", timeout=0.01))
        assert exc_info.value.service == "slow"
        assert orchestrator.breaker("slow").total_failures == 1

    @pytest.mark.asyncio
    async def test_request_errors_do_not_trip_breaker(self, cache):
        orch = RequestOrchestrator(cache, CircuitConfig(failure_threshold=1), default_timeout=1.0)

        async def bad_input(env):
            raise InvalidInput("svc", "garbage audio")

        with pytest.raises(InvalidInput):
            await orch.process(ProviderCallEnvelope(type="t"), bad_input, ProcessOptions(service_name="svc"))
        assert orch.breaker("svc").state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cache_failure_degrades_to_miss(self):
        orch = RequestOrchestrator(BrokenCache(), CircuitConfig(), default_timeout=1.0)

        async def work(env):
            return "fresh"

        result = await orch.process(ProviderCallEnvelope(type="t"), work, ProcessOptions(cache_key="k"))
        assert result == "fresh"
        assert orch.cache_misses == 1

    @pytest.mark.asyncio
    async def test_low_priority_is_bounded(self, cache):
        orch = RequestOrchestrator(cache, CircuitConfig(), default_timeout=1.0, low_priority_concurrency=1)
        running = 0
        peak = 0

        async def work(env):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return env.id

        envelopes = [ProviderCallEnvelope(type="t", priority=Priority.LOW) for _ in range(4)]
        await asyncio.gather(*(orch.process(e, work) for e in envelopes))
        assert peak == 1

    @pytest.mark.asyncio
    async def test_stats(self, orchestrator):
        async def work(env):
            return 1

        await orchestrator.process(ProviderCallEnvelope(type="t"), work, ProcessOptions(service_name="svc"))
        stats = orchestrator.stats()
        assert stats["in_flight"] == 0
        assert stats["circuits"]["svc"]["state"] == "closed"
