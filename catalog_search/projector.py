"""Projection of a catalog product aggregate into one search document."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from .catalog import AttributeScalar, AttributeValue, Product
from .config import settings
from .models import (
    BrandDoc,
    CategoryDoc,
    InventoryDoc,
    PopularityDoc,
    PricingDoc,
    SearchDocument,
    SellerDoc,
    VariantDoc,
    attribute_keyword,
)
from .phonetics import normalize_query, to_phonetic
from .popularity import PopularityMetrics, popularity_score

logger = logging.getLogger(__name__)

VERIFIED_SELLER_STATUS = "APPROVED"


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _attribute_map(values: list[AttributeValue]) -> dict[str, AttributeScalar]:
    # Later rows overwrite earlier ones for the same slug.
    attributes: dict[str, AttributeScalar] = {}
    for row in values:
        if row.attribute is None:
            continue
        value = row.value
        if value is None:
            continue
        attributes[row.attribute.slug] = value
    return attributes


def _price_range(product: Product) -> tuple[float, float]:
    prices = [
        float(variant.pricing.selling_price)
        for variant in product.variants
        if variant.pricing is not None and variant.pricing.selling_price is not None
    ]
    if not prices:
        return 0.0, 0.0
    return min(prices), max(prices)


def _discount(product: Product) -> Optional[float]:
    """Best discount across variants, as a percentage of MRP."""

    best: Optional[float] = None
    for variant in product.variants:
        pricing = variant.pricing
        if pricing is None or not pricing.mrp or pricing.selling_price is None:
            continue
        if pricing.selling_price >= pricing.mrp:
            continue
        pct = round((pricing.mrp - pricing.selling_price) / pricing.mrp * 100, 2)
        best = pct if best is None else max(best, pct)
    return best


def _search_text(product: Product, attributes: dict[str, AttributeScalar]) -> str:
    parts = [
        product.name,
        product.description,
        product.category.name,
        product.brand.name if product.brand else None,
        product.seller.business_name,
        *(attribute_keyword(value) for value in attributes.values()),
    ]
    return " ".join(part for part in parts if part)


def build_document(
    product: Optional[Product],
    *,
    now: Optional[datetime] = None,
    low_stock_threshold: int = settings.low_stock_threshold,
    popularity: Optional[PopularityMetrics] = None,
    currency: str = settings.default_currency,
    locale: str = settings.default_locale,
) -> Optional[SearchDocument]:
    """Project ``product`` into a full :class:`SearchDocument`.

    Returns ``None`` for a missing or inactive product; callers treat that as
    a removal. ``now`` defaults to the wall clock and only feeds
    ``indexedAt`` (never earlier than the product's ``updatedAt``) and the
    popularity freshness factor.
    """

    if product is None or not product.is_active:
        return None

    current = _utc(now or datetime.now(timezone.utc))
    updated_at = _utc(product.updated_at)
    created_at = _utc(product.created_at)

    min_price, max_price = _price_range(product)
    total_quantity = sum(
        variant.inventory.quantity for variant in product.variants if variant.inventory is not None
    )
    attributes = _attribute_map(product.attribute_values)
    discount = _discount(product)

    if popularity is None:
        popularity_doc = PopularityDoc()
    else:
        popularity_doc = PopularityDoc(
            view_count=popularity.view_count,
            order_count=popularity.order_count,
            rating=popularity.average_rating,
            review_count=popularity.review_count,
            wishlist_count=popularity.wishlist_count,
            score=popularity_score(popularity, created_at, current),
        )

    brand = product.brand
    document = SearchDocument(
        id=product.id,
        name=product.name,
        description=product.description or "",
        slug=product.slug,
        category=CategoryDoc(
            id=product.category.id,
            name=product.category.name,
            path=[segment for segment in product.category.path.split("/") if segment],
            path_ids=list(product.category.path_ids),
            level=product.category.level,
        ),
        brand=BrandDoc(id=brand.id, name=brand.name, slug=brand.slug) if brand else None,
        seller=SellerDoc(
            id=product.seller.id,
            business_name=product.seller.business_name,
            is_verified=product.seller.status == VERIFIED_SELLER_STATUS,
        ),
        pricing=PricingDoc(
            min_price=min_price,
            max_price=max_price,
            currency=currency,
            has_discount=discount is not None,
            discount_percentage=discount,
        ),
        inventory=InventoryDoc(
            total_quantity=total_quantity,
            is_in_stock=total_quantity > 0,
            low_stock=0 < total_quantity <= low_stock_threshold,
        ),
        attributes=attributes,
        variants=[
            VariantDoc(
                id=variant.id,
                sku=variant.sku,
                price=float(variant.pricing.selling_price or 0) if variant.pricing else 0.0,
                inventory=variant.inventory.quantity if variant.inventory else 0,
                attributes=_attribute_map(variant.attribute_values),
            )
            for variant in product.variants
        ],
        images=[image.url for image in product.images],
        primary_image=product.images[0].url if product.images else "",
        search_text=_search_text(product, attributes),
        name_phonetic=to_phonetic(normalize_query(product.name)),
        popularity=popularity_doc,
        status=product.status,
        is_active=product.is_active,
        is_featured=product.is_featured,
        locale=product.locale or locale,
        location=product.seller.location,
        created_at=created_at,
        updated_at=updated_at,
        indexed_at=max(current, updated_at),
    )
    logger.debug("Projected product %s (variants=%s)", product.id, len(product.variants))
    return document
