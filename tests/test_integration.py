"""End-to-end scenario against a real cluster.

Runs only when ``ES_TEST_HOST`` points at a disposable Elasticsearch node.
"""
import asyncio
import os
import uuid

import pytest
from elasticsearch import Elasticsearch

from catalog_search.cache import InMemoryCache
from catalog_search.catalog import Category, InMemoryCatalog
from catalog_search.health import SearchHealth
from catalog_search.indexing import IndexManager
from catalog_search.models import SearchQuery, SortOption
from catalog_search.search_service import SearchService

from conftest import make_product

ES_TEST_HOST = os.getenv("ES_TEST_HOST")

pytestmark = pytest.mark.skipif(not ES_TEST_HOST, reason="ES_TEST_HOST not set")


@pytest.fixture
def es_index():
    es = Elasticsearch(ES_TEST_HOST)
    name = f"catalog_search_test_{uuid.uuid4().hex[:8]}"
    yield es, name
    es.indices.delete(index=name, ignore_unavailable=True)


def test_index_then_search_with_hierarchy_and_sort(es_index):
    es, index = es_index
    phones = Category(id="c-phones", name="Phones", path="electronics/phones", path_ids=["c-electronics", "c-phones"], level=1)
    catalog = InMemoryCatalog(
        [
            make_product("p1", name="Basmati Rice", prices=(300.0,), quantities=(5,)),
            make_product("p2", name="Brown Rice", prices=(150.0,), quantities=(5,)),
            make_product("p3", name="Galaxy Phone", category=phones, prices=(9000.0,), quantities=(5,)),
        ]
    )
    health = SearchHealth()
    manager = IndexManager(es, catalog, health, index=index, alias=f"{index}_alias")

    async def scenario():
        assert await manager.start()
        report = await manager.reindex_all()
        assert report.total_indexed == 3
        es.indices.refresh(index=index)

        service = SearchService(es, health, InMemoryCache(), index=index)
        by_parent = await service.search(SearchQuery(category="c-grocery", sort_by=SortOption.PRICE_ASC))
        by_text = await service.search(SearchQuery(q="rice"))
        return by_parent, by_text

    by_parent, by_text = asyncio.run(scenario())

    assert [hit.id for hit in by_parent.results] == ["p2", "p1"]
    assert {hit.id for hit in by_text.results} == {"p1", "p2"}
    assert by_text.facets.categories[0].key == "c-rice"


def test_phone_case_scenario_filters_and_price_facets(es_index):
    es, index = es_index
    phones = Category(id="cat_phones", name="Phones", path="electronics/phones", path_ids=["cat_electronics", "cat_phones"], level=1)
    accessories = Category(id="cat_accessories", name="Accessories", path="accessories", path_ids=["cat_accessories"], level=0)
    catalog = InMemoryCatalog(
        [
            make_product("A", name="Red Phone Case", category=phones, prices=(300.0,), quantities=(5,)),
            make_product("B", name="Blue Phone Case", category=phones, prices=(1200.0,), quantities=(0,)),
            make_product("C", name="Phone Charger", category=accessories, prices=(500.0,), quantities=(5,)),
        ]
    )
    health = SearchHealth()
    manager = IndexManager(es, catalog, health, index=index, alias=f"{index}_alias")

    async def scenario():
        assert await manager.start()
        assert (await manager.reindex_all()).total_indexed == 3
        es.indices.refresh(index=index)

        service = SearchService(es, health, InMemoryCache(), index=index)
        in_category = await service.search(SearchQuery(q="phone case", category="cat_phones"))
        in_stock = await service.search(SearchQuery(q="phone case", category="cat_phones", in_stock=True))
        return in_category, in_stock

    in_category, in_stock = asyncio.run(scenario())

    assert {hit.id for hit in in_category.results} == {"A", "B"}
    assert [(b.key, b.count) for b in in_category.facets.price_ranges] == [("0-500", 1), ("1000-5000", 1)]
    assert [hit.id for hit in in_stock.results] == ["A"]
