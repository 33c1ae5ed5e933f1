"""Read-only view of the relational catalog consumed by the indexer.

The production catalog lives in PostgreSQL behind another service; this module
only describes the product aggregate the projector needs and a small
in-memory source that can be loaded from a JSON export.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable, Literal, Optional, Protocol, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

AttributeScalar = Union[bool, int, float, str]
ScopeField = Literal["category", "brand", "seller"]


class Category(BaseModel):
    id: str
    name: str
    path: str = ""
    path_ids: list[str] = Field(default_factory=list)
    level: int = 0


class Brand(BaseModel):
    id: str
    name: str
    slug: str = ""


class GeoPoint(BaseModel):
    lat: float
    lon: float


class Seller(BaseModel):
    id: str
    business_name: str
    status: str = "PENDING"
    location: Optional[GeoPoint] = None


class Attribute(BaseModel):
    slug: str
    name: str = ""


class AttributeValue(BaseModel):
    attribute: Optional[Attribute] = None
    string_value: Optional[str] = None
    number_value: Optional[float] = None
    boolean_value: Optional[bool] = None

    @property
    def value(self) -> Optional[AttributeScalar]:
        """Whichever typed column is set, non-empty string first."""

        if self.string_value:
            return self.string_value
        if self.number_value is not None:
            number = self.number_value
            return int(number) if float(number).is_integer() else number
        return self.boolean_value


class VariantPricing(BaseModel):
    selling_price: Optional[float] = None
    mrp: Optional[float] = None


class VariantInventory(BaseModel):
    quantity: int = 0


class ProductVariant(BaseModel):
    id: str
    sku: str
    pricing: Optional[VariantPricing] = None
    inventory: Optional[VariantInventory] = None
    attribute_values: list[AttributeValue] = Field(default_factory=list)


class Image(BaseModel):
    url: str


class Product(BaseModel):
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    status: str = "ACTIVE"
    is_active: bool = True
    is_featured: bool = False
    category: Category
    brand: Optional[Brand] = None
    seller: Seller
    variants: list[ProductVariant] = Field(default_factory=list)
    attribute_values: list[AttributeValue] = Field(default_factory=list)
    images: list[Image] = Field(default_factory=list)
    locale: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class CatalogSource(Protocol):
    def get_product(self, product_id: str) -> Optional[Product]: ...

    def list_active_products(self, skip: int, take: int) -> list[Product]: ...

    def count_active_products(self) -> int: ...

    def product_ids_for(self, field: ScopeField, value: str) -> list[str]: ...


class InMemoryCatalog:
    """Dict-backed catalog with stable insertion order for paging."""

    def __init__(self, products: Iterable[Product] = ()) -> None:
        self._products: dict[str, Product] = {}
        for product in products:
            self.upsert(product)

    def upsert(self, product: Product) -> None:
        self._products[product.id] = product

    def remove(self, product_id: str) -> None:
        self._products.pop(product_id, None)

    def get_product(self, product_id: str) -> Optional[Product]:
        return self._products.get(product_id)

    def _active(self) -> list[Product]:
        return [product for product in self._products.values() if product.is_active]

    def list_active_products(self, skip: int, take: int) -> list[Product]:
        return self._active()[skip : skip + take]

    def count_active_products(self) -> int:
        return len(self._active())

    def product_ids_for(self, field: ScopeField, value: str) -> list[str]:
        ids: list[str] = []
        for product in self._active():
            if field == "category":
                # Descendants embed the ancestor's path, so they are affected too.
                matched = product.category.id == value or value in product.category.path_ids
            elif field == "brand":
                matched = product.brand is not None and product.brand.id == value
            else:
                matched = product.seller.id == value
            if matched:
                ids.append(product.id)
        return ids


def load_catalog(path: str | Path) -> InMemoryCatalog:
    """Load a JSON array of products exported from the catalog database."""

    catalog_path = Path(path)
    if not catalog_path.exists():
        logger.warning("Catalog file %s is missing; starting with an empty catalog", catalog_path)
        return InMemoryCatalog()
    with catalog_path.open("r", encoding="utf-8") as fh:
        raw_products = json.load(fh)
    products = [Product.model_validate(item) for item in raw_products]
    logger.info("Loaded %s products from %s", len(products), catalog_path)
    return InMemoryCatalog(products)
