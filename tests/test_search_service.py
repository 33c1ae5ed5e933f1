"""Search request flow with the fake backend and in-memory cache."""
import asyncio
from datetime import datetime, timezone

from elasticsearch import ConnectionError as ESConnectionError
from elasticsearch import ConnectionTimeout as ESConnectionTimeout

from catalog_search.cache import InMemoryCache
from catalog_search.experiments import ExperimentAssigner, InMemoryExperimentStore, SearchExperiment, SearchExperimentVariant
from catalog_search.health import SearchHealth
from catalog_search.models import BoostFactors, RankingConfig, SearchQuery
from catalog_search.search_service import SearchService

RAW = {
    "took": 4,
    "hits": {"total": {"value": 1}, "hits": [{"_id": "p1", "_score": 2.0, "_source": {"id": "p1", "name": "Rice"}}]},
    "aggregations": {},
}


def _service(fake_es, health, **kwargs) -> SearchService:
    return SearchService(fake_es, health, InMemoryCache(), index="test_products", **kwargs)


def test_degraded_search_returns_empty_without_backend_call(fake_es, frozen_clock):
    health = SearchHealth(clock=frozen_clock, available=False)
    result = asyncio.run(_service(fake_es, health).search(SearchQuery(q="rice")))

    assert result.degraded is True
    assert result.total == 0
    assert fake_es.search_bodies == []


def test_search_formats_and_caches(fake_es, health):
    fake_es.search_response = RAW
    service = _service(fake_es, health)

    first = asyncio.run(service.search(SearchQuery(q="rice")))
    second = asyncio.run(service.search(SearchQuery(q="rice")))

    assert first.total == 1
    assert first.results[0].id == "p1"
    assert second == first
    assert len(fake_es.search_bodies) == 1


def test_different_queries_are_cached_separately(fake_es, health):
    fake_es.search_response = RAW
    service = _service(fake_es, health)

    asyncio.run(service.search(SearchQuery(q="rice")))
    asyncio.run(service.search(SearchQuery(q="rice", page=2)))
    assert len(fake_es.search_bodies) == 2


def test_backend_failure_degrades_only_that_request(fake_es, health):
    fake_es.search_error = ESConnectionError("timed out")
    service = _service(fake_es, health)

    result = asyncio.run(service.search(SearchQuery(q="rice")))
    assert result.degraded is True
    assert health.available is True


def test_search_and_writes_resume_after_transient_timeout(fake_es, health, catalog, frozen_clock, patched_bulk):
    from catalog_search.indexing import IndexManager

    manager = IndexManager(fake_es, catalog, health, index="test_products", alias="test_alias", clock=frozen_clock)
    service = _service(fake_es, health)
    fake_es.search_error = ESConnectionTimeout("read timed out")
    assert asyncio.run(service.search(SearchQuery(q="rice"))).degraded is True

    fake_es.search_error = None
    fake_es.search_response = RAW
    result = asyncio.run(service.search(SearchQuery(q="rice")))
    assert result.degraded is False
    assert result.total == 1
    assert len(fake_es.search_bodies) == 2

    asyncio.run(manager.index_entity("product", "p1"))
    assert "p1" in fake_es.documents
    assert asyncio.run(manager.reindex_all()).total_indexed == 3


def test_experiment_ranking_reaches_the_query(fake_es, health, frozen_clock):
    experiment = SearchExperiment(
        id="exp-boost",
        status="active",
        traffic_allocation=100,
        start_date=datetime(2024, 1, 1, tzinfo=timezone.utc),
        variants=[
            SearchExperimentVariant(
                id="boosted",
                traffic_split=100,
                configuration=RankingConfig(boost_factors=BoostFactors(featured_products=3.0)),
            )
        ],
    )
    assigner = ExperimentAssigner(InMemoryExperimentStore([experiment]), clock=frozen_clock)
    fake_es.search_response = RAW
    service = _service(fake_es, health, assigner=assigner)

    asyncio.run(service.search(SearchQuery(q="rice"), user_id="u1"))
    functions = fake_es.search_bodies[0]["query"]["function_score"]["functions"]
    assert functions[0]["weight"] == 3.0


def test_autocomplete_returns_distinct_names(fake_es, health):
    fake_es.search_response = {
        "hits": {
            "hits": [
                {"_source": {"name": "Rice Bran Oil"}},
                {"_source": {"name": "Rice Bran Oil"}},
                {"_source": {"name": "Rice Flour"}},
            ]
        }
    }
    names = asyncio.run(_service(fake_es, health).autocomplete("ric", limit=5))

    assert names == ["Rice Bran Oil", "Rice Flour"]
    assert asyncio.run(_service(fake_es, health).autocomplete("   ")) == []


def test_available_filters_is_facets_only_and_cached(fake_es, health):
    fake_es.search_response = {
        "hits": {"total": {"value": 3}, "hits": []},
        "aggregations": {
            "brands": {"buckets": [{"key": "b1", "doc_count": 3, "brand_name": {"buckets": [{"key": "Acme"}]}}]}
        },
    }
    service = _service(fake_es, health)

    facets = asyncio.run(service.available_filters(category="c-rice"))
    asyncio.run(service.available_filters(category="c-rice"))

    assert facets["brands"] == [{"key": "b1", "label": "Acme", "count": 3}]
    assert fake_es.search_bodies[0]["size"] == 0
    assert len(fake_es.search_bodies) == 1


def test_trending_ranks_by_decayed_popularity(fake_es, health):
    fake_es.search_response = RAW
    service = _service(fake_es, health)

    result = asyncio.run(service.trending(category="c-rice", limit=5))
    asyncio.run(service.trending(category="c-rice", limit=5))

    assert [hit.id for hit in result.results] == ["p1"]
    assert result.limit == 5
    body = fake_es.search_bodies[0]
    functions = body["query"]["function_score"]["functions"]
    assert "exp" in functions[0]
    assert functions[1]["field_value_factor"]["field"] == "popularity.score"
    assert len(fake_es.search_bodies) == 1


def test_popular_sorts_by_order_count(fake_es, health):
    fake_es.search_response = RAW
    result = asyncio.run(_service(fake_es, health).popular(limit=3))

    assert result.total == 1
    assert fake_es.search_bodies[0]["sort"][0] == {"popularity.orderCount": {"order": "desc"}}
    assert fake_es.search_bodies[0]["size"] == 3


def test_popular_categories_from_terms_aggregation(fake_es, health):
    fake_es.search_response = {
        "hits": {"total": {"value": 5}, "hits": []},
        "aggregations": {
            "categories": {
                "buckets": [
                    {"key": "c-phones", "doc_count": 2, "category_name": {"buckets": [{"key": "Phones"}]}},
                    {"key": "c-rice", "doc_count": 3, "category_name": {"buckets": [{"key": "Rice"}]}},
                ]
            }
        },
    }
    categories = asyncio.run(_service(fake_es, health).popular_categories(limit=2))

    assert [(item.key, item.label, item.count) for item in categories] == [("c-rice", "Rice", 3), ("c-phones", "Phones", 2)]
    assert fake_es.search_bodies[0]["size"] == 0


def test_listings_are_empty_while_degraded_or_failing(fake_es, frozen_clock, health):
    degraded = _service(fake_es, SearchHealth(clock=frozen_clock, available=False))
    assert asyncio.run(degraded.trending()).degraded is True
    assert asyncio.run(degraded.popular_categories()) == []
    assert fake_es.search_bodies == []

    fake_es.search_error = ESConnectionError("refused")
    failing = _service(fake_es, health)
    assert asyncio.run(failing.popular()).degraded is True
    assert asyncio.run(failing.popular_categories()) == []
