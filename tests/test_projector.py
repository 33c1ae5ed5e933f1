"""Projection of catalog products into index documents."""
from datetime import datetime, timedelta, timezone

from catalog_search.catalog import Attribute, AttributeValue, ProductVariant, VariantInventory, VariantPricing
from catalog_search.popularity import PopularityMetrics, freshness_factor, popularity_score
from catalog_search.projector import build_document

from conftest import FROZEN_NOW, make_product


def test_missing_or_inactive_product_projects_to_nothing():
    assert build_document(None) is None
    assert build_document(make_product(is_active=False)) is None


def test_aggregates_price_and_inventory():
    doc = build_document(make_product(prices=(120.0, 95.0), quantities=(4, 3)), now=FROZEN_NOW)

    assert doc.pricing.min_price == 95.0
    assert doc.pricing.max_price == 120.0
    assert doc.inventory.total_quantity == 7
    assert doc.inventory.is_in_stock is True
    assert doc.inventory.low_stock is True


def test_unpriced_and_out_of_stock_product():
    product = make_product()
    product.variants = [ProductVariant(id="v", sku="s", pricing=VariantPricing(), inventory=VariantInventory(quantity=0))]
    doc = build_document(product, now=FROZEN_NOW)

    assert (doc.pricing.min_price, doc.pricing.max_price) == (0.0, 0.0)
    assert doc.inventory.is_in_stock is False
    assert doc.inventory.low_stock is False


def test_low_stock_boundary():
    at_threshold = build_document(make_product(quantities=(10,), prices=(10.0,)), now=FROZEN_NOW)
    above = build_document(make_product(quantities=(11,), prices=(10.0,)), now=FROZEN_NOW)
    assert at_threshold.inventory.low_stock is True
    assert above.inventory.low_stock is False


def test_attribute_map_last_write_wins():
    product = make_product(
        attributes=[
            AttributeValue(attribute=Attribute(slug="color"), string_value="red"),
            AttributeValue(attribute=Attribute(slug="color"), string_value="blue"),
            AttributeValue(attribute=Attribute(slug="weight"), number_value=2.5),
        ]
    )
    doc = build_document(product, now=FROZEN_NOW)
    assert doc.attributes == {"color": "blue", "weight": 2.5}


def test_search_text_skips_empty_parts():
    product = make_product()
    product.brand = None
    product.description = ""
    doc = build_document(product, now=FROZEN_NOW)

    assert doc.search_text == "Organic Basmati Rice Rice Fresh Mart 5 true"
    assert "  " not in doc.search_text


def test_popularity_is_zero_without_metrics():
    doc = build_document(make_product(), now=FROZEN_NOW)
    assert doc.popularity.score == 0
    assert doc.popularity.order_count == 0


def test_indexed_at_never_before_updated_at():
    future_update = FROZEN_NOW + timedelta(days=1)
    doc = build_document(make_product(updated_at=future_update), now=FROZEN_NOW)
    assert doc.indexed_at == future_update
    assert doc.indexed_at >= doc.updated_at


def test_projection_is_idempotent():
    product = make_product()
    first = build_document(product, now=FROZEN_NOW).to_source()
    second = build_document(product, now=FROZEN_NOW).to_source()
    assert first == second


def test_wire_format_uses_camel_case_and_nested_attributes():
    source = build_document(make_product(), now=FROZEN_NOW).to_source()

    assert source["category"]["pathIds"] == ["c-grocery", "c-staples", "c-rice"]
    assert source["category"]["path"] == ["grocery", "staples", "rice"]
    assert source["seller"]["isVerified"] is True
    assert source["inventory"]["isInStock"] is True
    assert {"name": "organic", "value": "true"} in source["attributes"]
    assert {"name": "weight", "value": "5"} in source["attributes"]
    assert source["location"] == {"lat": 12.97, "lon": 77.59}


def test_popularity_score_weights():
    created = FROZEN_NOW - timedelta(days=365)
    empty = popularity_score(PopularityMetrics(), created, FROZEN_NOW)
    busy = popularity_score(PopularityMetrics(order_count=100, review_count=10, average_rating=4.5), created, FROZEN_NOW)

    assert empty == 0
    assert busy > empty
    assert freshness_factor(FROZEN_NOW, FROZEN_NOW) == 1
    assert freshness_factor(datetime(2000, 1, 1, tzinfo=timezone.utc), FROZEN_NOW) == 0


def test_explicit_metrics_feed_the_document():
    metrics = PopularityMetrics(order_count=3, average_rating=4.2, review_count=2)
    doc = build_document(make_product(), now=FROZEN_NOW, popularity=metrics)
    assert doc.popularity.rating == 4.2
    assert doc.popularity.score > 0


def test_free_variant_keeps_zero_price():
    doc = build_document(make_product(prices=(0.0, 80.0), quantities=(1, 1)), now=FROZEN_NOW)

    assert doc.pricing.min_price == 0.0
    assert doc.pricing.max_price == 80.0
    assert doc.pricing.discount_percentage == 100.0
