"""Shared fakes for the search pipeline tests."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest
from elastic_transport import ApiResponseMeta, HttpHeaders, NodeConfig
from elasticsearch import BadRequestError, NotFoundError

from catalog_search.catalog import (
    Attribute,
    AttributeValue,
    Brand,
    Category,
    GeoPoint,
    Image,
    InMemoryCatalog,
    Product,
    ProductVariant,
    Seller,
    VariantInventory,
    VariantPricing,
)
from catalog_search.health import SearchHealth

FROZEN_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def api_meta(status: int) -> ApiResponseMeta:
    return ApiResponseMeta(
        status=status,
        http_version="1.1",
        headers=HttpHeaders(),
        duration=0.0,
        node=NodeConfig("http", "localhost", 9200),
    )


class _Indices:
    def __init__(self, es: "FakeElasticsearch") -> None:
        self.es = es

    def exists(self, index: str) -> bool:
        return index in self.es.created

    def create(self, index: str, settings: Optional[dict] = None, mappings: Optional[dict] = None) -> dict:
        if index in self.es.created:
            raise BadRequestError(
                "resource_already_exists_exception",
                api_meta(400),
                {"error": {"root_cause": [{"type": "resource_already_exists_exception"}]}},
            )
        self.es.created[index] = {"settings": settings, "mappings": mappings}
        return {"acknowledged": True}

    def put_alias(self, index: str, name: str) -> dict:
        self.es.aliases[name] = index
        return {"acknowledged": True}


class _Cluster:
    def __init__(self, es: "FakeElasticsearch") -> None:
        self.es = es

    def health(self, **_: Any) -> dict:
        return {"status": self.es.cluster_status, "number_of_nodes": 1, "unassigned_shards": 0}


class FakeElasticsearch:
    """Just enough of the sync client for unit tests."""

    def __init__(self, reachable: bool = True) -> None:
        self.reachable = reachable
        self.created: Dict[str, dict] = {}
        self.aliases: Dict[str, str] = {}
        self.documents: Dict[str, dict] = {}
        self.calls: List[tuple] = []
        self.search_bodies: List[dict] = []
        self.search_response: dict = {"took": 3, "hits": {"total": {"value": 0}, "hits": []}}
        self.search_error: Optional[Exception] = None
        self.cluster_status = "green"
        self.indices = _Indices(self)
        self.cluster = _Cluster(self)

    def options(self, **_: Any) -> "FakeElasticsearch":
        return self

    def ping(self) -> bool:
        return self.reachable

    def index(self, index: str, id: str, document: dict, refresh: Any = None) -> dict:
        self.calls.append(("index", id, refresh))
        self.documents[id] = document
        return {"result": "created"}

    def delete(self, index: str, id: str, refresh: Any = None) -> dict:
        self.calls.append(("delete", id, refresh))
        if id not in self.documents:
            raise NotFoundError("not_found", api_meta(404), {"found": False})
        del self.documents[id]
        return {"result": "deleted"}

    def count(self, index: str) -> dict:
        return {"count": len(self.documents)}

    def search(self, index: str, **body: Any) -> dict:
        self.search_bodies.append(body)
        if self.search_error is not None:
            raise self.search_error
        return self.search_response


def fake_bulk(es: FakeElasticsearch, actions, raise_on_error: bool = True, refresh: Any = False, **_: Any):
    """Stand-in for ``elasticsearch.helpers.bulk`` writing into the fake."""

    count = 0
    errors = []
    for action in actions:
        if action["_id"] in getattr(es, "reject_ids", set()):
            errors.append({"index": {"_id": action["_id"], "status": 400, "error": "mapper_parsing_exception"}})
            continue
        es.documents[action["_id"]] = action["_source"]
        count += 1
    es.calls.append(("bulk", count, refresh))
    return count, errors


def make_product(
    product_id: str = "p1",
    *,
    name: str = "Organic Basmati Rice",
    category: Optional[Category] = None,
    brand: Optional[Brand] = None,
    seller: Optional[Seller] = None,
    prices: tuple = (120.0, 95.0),
    quantities: tuple = (4, 3),
    attributes: Optional[List[AttributeValue]] = None,
    is_active: bool = True,
    created_at: datetime = datetime(2024, 5, 1, tzinfo=timezone.utc),
    updated_at: datetime = datetime(2024, 5, 20, tzinfo=timezone.utc),
) -> Product:
    variants = [
        ProductVariant(
            id=f"{product_id}-v{idx}",
            sku=f"SKU-{product_id}-{idx}",
            pricing=VariantPricing(selling_price=price, mrp=150.0),
            inventory=VariantInventory(quantity=qty),
        )
        for idx, (price, qty) in enumerate(zip(prices, quantities))
    ]
    return Product(
        id=product_id,
        name=name,
        slug=name.lower().replace(" ", "-"),
        description="Long grain aromatic rice",
        is_active=is_active,
        category=category or Category(id="c-rice", name="Rice", path="grocery/staples/rice", path_ids=["c-grocery", "c-staples", "c-rice"], level=2),
        brand=brand if brand is not None else Brand(id="b-india-gate", name="India Gate", slug="india-gate"),
        seller=seller or Seller(id="s1", business_name="Fresh Mart", status="APPROVED", location=GeoPoint(lat=12.97, lon=77.59)),
        variants=variants,
        attribute_values=attributes
        if attributes is not None
        else [
            AttributeValue(attribute=Attribute(slug="weight", name="Weight"), number_value=5.0),
            AttributeValue(attribute=Attribute(slug="organic", name="Organic"), boolean_value=True),
        ],
        images=[Image(url="https://cdn.example.com/p1.jpg")],
        created_at=created_at,
        updated_at=updated_at,
    )


@pytest.fixture
def frozen_clock():
    return lambda: FROZEN_NOW


@pytest.fixture
def fake_es() -> FakeElasticsearch:
    return FakeElasticsearch()


@pytest.fixture
def catalog() -> InMemoryCatalog:
    electronics = Category(id="c-phones", name="Phones", path="electronics/phones", path_ids=["c-electronics", "c-phones"], level=1)
    return InMemoryCatalog(
        [
            make_product("p1"),
            make_product("p2", name="Brown Rice", quantities=(0, 0)),
            make_product("p3", name="Galaxy Phone", category=electronics, brand=Brand(id="b-samsung", name="Samsung")),
            make_product("p4", name="Discontinued Rice", is_active=False),
        ]
    )


@pytest.fixture
def health(frozen_clock) -> SearchHealth:
    return SearchHealth(clock=frozen_clock, available=True)


@pytest.fixture
def patched_bulk(monkeypatch):
    monkeypatch.setattr("catalog_search.indexing.helpers.bulk", fake_bulk)
    return fake_bulk
