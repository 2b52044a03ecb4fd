import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from core.circuit import CircuitBreaker
from core.config import CircuitConfig
from core.errors import (
    InvalidInput,
    InvalidVoice,
    ProviderUnavailable,
    ServiceCircuitOpen,
    TurnFailed,
    ValidationError,
)
from core.models import Priority, ProviderCallEnvelope
from storage.cache import SessionCache

Work = Callable[[ProviderCallEnvelope], Awaitable[Any]]

# Failures caused by the request itself say nothing about service health.
NON_HEALTH_ERRORS = (ValidationError, InvalidInput, InvalidVoice, TurnFailed)


@dataclass
class ProcessOptions:
    cache_key: Optional[str] = None
    cache_ttl: int = 300
    service_name: str = "default"
    skip_cache: bool = False
    skip_dedup: bool = False
    timeout: Optional[float] = None


class RequestOrchestrator:
    """Single choke point for every external provider call.

    Applies, in order: cache lookup, in-flight deduplication, per-service
    circuit breaking with a bounded timeout, then cache population.
    """

    def __init__(
        self,
        cache: SessionCache,
        circuit_config: CircuitConfig,
        default_timeout: float = 30.0,
        low_priority_concurrency: int = 2,
    ):
        self.cache = cache
        self.circuit_config = circuit_config
        self.default_timeout = default_timeout
        self._breakers: dict[str, CircuitBreaker] = {}
        self._in_flight: dict[str, asyncio.Future] = {}
        self._low_priority = asyncio.Semaphore(max(1, low_priority_concurrency))
        self.cache_hits = 0
        self.cache_misses = 0
        self.dedup_joins = 0

    def breaker(self, service_name: str) -> CircuitBreaker:
        if service_name not in self._breakers:
            self._breakers[service_name] = CircuitBreaker(service_name, self.circuit_config)
        return self._breakers[service_name]

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    async def process(
        self,
        envelope: ProviderCallEnvelope,
        work: Work,
        options: Optional[ProcessOptions] = None,
    ) -> Any:
        options = options or ProcessOptions()

        use_cache = bool(options.cache_key) and not options.skip_cache
        if use_cache:
            cached = await self._cache_get(options.cache_key)
            if cached is not None:
                self.cache_hits += 1
                logger.debug("[ORCH] cache hit {} ({})", options.cache_key, envelope.type)
                return cached
            self.cache_misses += 1

        # No await between the lookup and the registration below, so two
        # identical requests can never both become the leader.
        dedupe_key = None if options.skip_dedup else envelope.dedupe_key
        if dedupe_key:
            pending = self._in_flight.get(dedupe_key)
            if pending is not None:
                self.dedup_joins += 1
                logger.debug("[ORCH] joining in-flight request {}", dedupe_key)
                return await asyncio.shield(pending)
            future = asyncio.get_running_loop().create_future()
            self._in_flight[dedupe_key] = future
        else:
            future = None

        try:
            result = await self._execute(envelope, work, options)
        except BaseException as exc:
            if future is not None:
                self._release(dedupe_key, future)
                if isinstance(exc, Exception):
                    future.set_exception(exc)
                else:
                    # Joiners were not cancelled themselves; let them take their fallback
                    future.set_exception(
                        ProviderUnavailable(options.service_name, "shared request was cancelled")
                    )
                # Mark retrieved so lone leaders don't trigger asyncio warnings
                future.exception()
            raise

        if use_cache:
            await self._cache_set(options.cache_key, result, options.cache_ttl)
        if future is not None:
            self._release(dedupe_key, future)
            future.set_result(result)
        return result

    async def _execute(self, envelope: ProviderCallEnvelope, work: Work,
                       options: ProcessOptions) -> Any:
        breaker = self.breaker(options.service_name)
        if not breaker.allow():
            logger.warning("[ORCH] {} rejected: circuit '{}' open",
                           envelope.type, options.service_name)
            raise ServiceCircuitOpen(options.service_name, breaker.retry_after)

        timeout = options.timeout or self.default_timeout
        try:
            if envelope.priority == Priority.LOW:
                async with self._low_priority:
                    result = await asyncio.wait_for(work(envelope), timeout)
            else:
                result = await asyncio.wait_for(work(envelope), timeout)
        except asyncio.TimeoutError:
            breaker.record_failure()
            logger.warning("[ORCH] {} timed out after {:.1f}s", options.service_name, timeout)
            raise ProviderUnavailable(options.service_name, f"timed out after {timeout:.1f}s")
        except NON_HEALTH_ERRORS:
            breaker.release()
            raise
        except asyncio.CancelledError:
            breaker.release()
            raise
        except Exception:
            breaker.record_failure()
            raise

        breaker.record_success()
        return result

    def _release(self, key: str, future: asyncio.Future) -> None:
        if self._in_flight.get(key) is future:
            del self._in_flight[key]

    async def _cache_get(self, key: str) -> Any:
        try:
            return await self.cache.get(key)
        except Exception as e:
            logger.warning("[ORCH] cache read failed for {}: {}. Treating as miss.", key, e)
            return None

    async def _cache_set(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self.cache.set(key, value, ttl)
        except Exception as e:
            logger.warning("[ORCH] cache write failed for {}: {}", key, e)

    def stats(self) -> dict:
        return {
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "dedup_joins": self.dedup_joins,
            "in_flight": self.in_flight_count,
            "circuits": {name: b.to_dict() for name, b in self._breakers.items()},
        }
