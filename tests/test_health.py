"""Availability state and health checks."""
import asyncio
from datetime import datetime, timedelta, timezone

from catalog_search.cache import InMemoryCache
from catalog_search.health import (
    DEGRADED,
    HEALTHY,
    UNHEALTHY,
    HealthCheckResult,
    SearchHealth,
    check_cache,
    check_elasticsearch,
    check_index,
    combine,
    overall_health,
)


class TickingClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 6, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


def test_state_transitions_record_reason_and_time():
    clock = TickingClock()
    health = SearchHealth(clock=clock)
    assert health.available is False
    assert health.state.reason == "not started"

    health.mark_available()
    available_at = health.state.changed_at
    assert health.available is True
    assert health.state.reason is None

    health.mark_unavailable("cluster red")
    assert health.available is False
    assert health.state.reason == "cluster red"
    assert health.state.changed_at > available_at


def test_cluster_status_maps_to_health(fake_es):
    assert check_elasticsearch(fake_es).status == HEALTHY
    fake_es.cluster_status = "yellow"
    assert check_elasticsearch(fake_es).status == DEGRADED
    fake_es.cluster_status = "red"
    assert check_elasticsearch(fake_es).status == UNHEALTHY


def test_index_check(fake_es):
    assert check_index(fake_es, "missing").status == UNHEALTHY
    fake_es.created["products"] = {}
    assert check_index(fake_es, "products").status == DEGRADED
    fake_es.documents["p1"] = {}
    result = check_index(fake_es, "products")
    assert result.status == HEALTHY
    assert result.details["documentCount"] == 1


def test_cache_round_trip():
    assert check_cache(InMemoryCache()).status == HEALTHY


def test_combine_takes_worst_status():
    ok = HealthCheckResult(HEALTHY, "ok")
    slow = HealthCheckResult(DEGRADED, "slow")
    down = HealthCheckResult(UNHEALTHY, "down")

    assert combine({"a": ok, "b": ok}).status == HEALTHY
    assert combine({"a": ok, "b": slow}).status == DEGRADED
    assert combine({"a": slow, "b": down}).status == UNHEALTHY


def test_overall_health_reports_search_state(fake_es, health):
    fake_es.created["products"] = {}
    fake_es.documents["p1"] = {}
    report = asyncio.run(overall_health(fake_es, InMemoryCache(), health, "products"))

    assert report["overall"]["status"] == HEALTHY
    assert report["searchAvailable"] is True
    assert report["degradedReason"] is None
    assert set(report) >= {"elasticsearch", "index", "searchPerformance", "cache"}
