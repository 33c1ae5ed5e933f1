"""Search availability state and backend health checks."""
from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, Callable, Optional

from elasticsearch import ApiError, Elasticsearch, TransportError

from .cache import CacheBackend
from .config import settings

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class HealthState:
    available: bool
    reason: Optional[str]
    changed_at: datetime


class SearchHealth:
    """Coarse available/degraded flag shared by the indexer and searcher.

    Readers may see a slightly stale value; nothing depends on it for
    correctness.
    """

    def __init__(self, clock: Clock = utc_now, available: bool = False) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        reason = None if available else "not started"
        self._state = HealthState(available=available, reason=reason, changed_at=clock())

    @property
    def state(self) -> HealthState:
        return self._state

    @property
    def available(self) -> bool:
        return self._state.available

    def mark_available(self) -> None:
        with self._lock:
            if not self._state.available:
                logger.info("Search backend available")
            self._state = HealthState(available=True, reason=None, changed_at=self._clock())

    def mark_unavailable(self, reason: str) -> None:
        with self._lock:
            logger.warning("Search backend unavailable: %s", reason)
            self._state = HealthState(available=False, reason=reason, changed_at=self._clock())


@dataclass
class HealthCheckResult:
    status: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    response_time_ms: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "details": self.details,
            "responseTimeMs": round(self.response_time_ms, 2),
        }


def _elapsed_ms(start: float) -> float:
    return (perf_counter() - start) * 1000


def check_elasticsearch(es: Elasticsearch, timeout: float = settings.health_timeout_seconds) -> HealthCheckResult:
    start = perf_counter()
    try:
        health = es.options(request_timeout=timeout).cluster.health(timeout=f"{int(timeout)}s")
    except (ApiError, TransportError) as exc:
        return HealthCheckResult(UNHEALTHY, "Failed to connect to Elasticsearch", {"error": str(exc)}, _elapsed_ms(start))

    status = health.get("status")
    details = {
        "clusterStatus": status,
        "numberOfNodes": health.get("number_of_nodes"),
        "unassignedShards": health.get("unassigned_shards"),
    }
    if status == "red":
        return HealthCheckResult(UNHEALTHY, "Elasticsearch cluster is in RED status", details, _elapsed_ms(start))
    if status == "yellow":
        return HealthCheckResult(DEGRADED, "Elasticsearch cluster is in YELLOW status", details, _elapsed_ms(start))
    return HealthCheckResult(HEALTHY, "Elasticsearch cluster is healthy", details, _elapsed_ms(start))


def check_index(es: Elasticsearch, index: str, timeout: float = settings.health_timeout_seconds) -> HealthCheckResult:
    start = perf_counter()
    client = es.options(request_timeout=timeout)
    try:
        if not client.indices.exists(index=index):
            return HealthCheckResult(UNHEALTHY, "Search index does not exist", {"index": index}, _elapsed_ms(start))
        doc_count = client.count(index=index).get("count", 0)
    except (ApiError, TransportError) as exc:
        return HealthCheckResult(UNHEALTHY, "Failed to check index health", {"error": str(exc)}, _elapsed_ms(start))

    details = {"index": index, "documentCount": doc_count}
    if doc_count == 0:
        return HealthCheckResult(DEGRADED, "Index is empty", details, _elapsed_ms(start))
    return HealthCheckResult(HEALTHY, "Search index is healthy", details, _elapsed_ms(start))


def check_search_performance(
    es: Elasticsearch,
    index: str,
    timeout: float = settings.health_timeout_seconds,
    slow_query_ms: int = settings.slow_query_ms,
) -> HealthCheckResult:
    start = perf_counter()
    try:
        response = es.options(request_timeout=timeout).search(
            index=index,
            query={"match_all": {}},
            size=1,
            timeout=f"{int(timeout)}s",
        )
    except (ApiError, TransportError) as exc:
        return HealthCheckResult(UNHEALTHY, "Search performance check failed", {"error": str(exc)}, _elapsed_ms(start))

    elapsed = _elapsed_ms(start)
    took = response.get("took", 0)
    details = {"searchTookMs": took, "thresholdMs": slow_query_ms}
    if elapsed > slow_query_ms * 2:
        return HealthCheckResult(UNHEALTHY, "Search system is very slow", details, elapsed)
    if took > slow_query_ms:
        return HealthCheckResult(DEGRADED, "Search queries are slow", details, elapsed)
    return HealthCheckResult(HEALTHY, "Search performance is good", details, elapsed)


def check_cache(cache: CacheBackend) -> HealthCheckResult:
    start = perf_counter()
    key = "search:health_check"
    token = utc_now().isoformat()
    cache.set(key, token, 10)
    echoed = cache.get(key)
    cache.delete(key)
    if echoed != token:
        return HealthCheckResult(DEGRADED, "Cache round trip failed", {"expected": token, "received": echoed}, _elapsed_ms(start))
    return HealthCheckResult(HEALTHY, "Cache is healthy", {}, _elapsed_ms(start))


def combine(results: dict[str, HealthCheckResult]) -> HealthCheckResult:
    statuses = [result.status for result in results.values()]
    unhealthy = statuses.count(UNHEALTHY)
    degraded = statuses.count(DEGRADED)
    counts = {"unhealthy": unhealthy, "degraded": degraded, "healthy": len(statuses) - unhealthy - degraded}
    if unhealthy:
        return HealthCheckResult(UNHEALTHY, f"{unhealthy} critical issues detected", counts)
    if degraded:
        return HealthCheckResult(DEGRADED, f"{degraded} performance issues detected", counts)
    return HealthCheckResult(HEALTHY, "All search systems are healthy", counts)


async def overall_health(
    es: Elasticsearch,
    cache: CacheBackend,
    health: SearchHealth,
    index: str = settings.products_index,
) -> dict[str, Any]:
    """Run every check concurrently and fold them into one report."""

    start = perf_counter()
    es_result, index_result, perf_result, cache_result = await asyncio.gather(
        asyncio.to_thread(check_elasticsearch, es),
        asyncio.to_thread(check_index, es, index),
        asyncio.to_thread(check_search_performance, es, index),
        asyncio.to_thread(check_cache, cache),
    )
    checks = {
        "elasticsearch": es_result,
        "index": index_result,
        "searchPerformance": perf_result,
        "cache": cache_result,
    }
    overall = combine(checks)
    overall.response_time_ms = _elapsed_ms(start)
    state = health.state
    return {
        "overall": overall.as_dict(),
        "searchAvailable": state.available,
        "degradedReason": state.reason,
        "stateChangedAt": state.changed_at.isoformat(),
        **{name: result.as_dict() for name, result in checks.items()},
    }
