"""Pydantic models for search documents, requests and responses."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .catalog import AttributeScalar, GeoPoint
from .config import settings


class CamelModel(BaseModel):
    """Models serialised with camelCase keys, the index wire format."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def attribute_keyword(value: AttributeScalar) -> str:
    """Render an attribute scalar the way it is stored in the keyword field."""

    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


# --------------------------------------------------------------------------
# Index document
# --------------------------------------------------------------------------


class CategoryDoc(CamelModel):
    id: str
    name: str
    path: list[str] = Field(default_factory=list)
    path_ids: list[str] = Field(default_factory=list)
    level: int = 0


class BrandDoc(CamelModel):
    id: str
    name: str
    slug: str = ""


class SellerDoc(CamelModel):
    id: str
    business_name: str
    rating: float = 0
    is_verified: bool = False


class PricingDoc(CamelModel):
    min_price: float = 0
    max_price: float = 0
    currency: str = "INR"
    has_discount: bool = False
    discount_percentage: Optional[float] = None


class InventoryDoc(CamelModel):
    total_quantity: int = 0
    is_in_stock: bool = False
    low_stock: bool = False


class VariantDoc(CamelModel):
    id: str
    sku: str
    price: float = 0
    inventory: int = 0
    attributes: dict[str, AttributeScalar] = Field(default_factory=dict)


class PopularityDoc(CamelModel):
    view_count: int = 0
    order_count: int = 0
    rating: float = 0
    review_count: int = 0
    wishlist_count: int = 0
    score: float = 0


class SearchDocument(CamelModel):
    id: str
    type: str = "product"
    name: str
    description: str = ""
    slug: str
    category: CategoryDoc
    brand: Optional[BrandDoc] = None
    seller: SellerDoc
    pricing: PricingDoc
    inventory: InventoryDoc
    attributes: dict[str, AttributeScalar] = Field(default_factory=dict)
    variants: list[VariantDoc] = Field(default_factory=list)
    images: list[str] = Field(default_factory=list)
    primary_image: str = ""
    search_text: str = ""
    name_phonetic: str = ""
    keywords: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    popularity: PopularityDoc = Field(default_factory=PopularityDoc)
    status: str = "ACTIVE"
    is_active: bool = True
    is_featured: bool = False
    is_promoted: bool = False
    locale: str = "en-IN"
    location: Optional[GeoPoint] = None
    created_at: datetime
    updated_at: datetime
    indexed_at: datetime

    def to_source(self) -> dict[str, Any]:
        """Document body as written to the index.

        ``attributes`` become nested ``{name, value}`` pairs so one mapping
        serves every attribute slug.
        """

        body = self.model_dump(by_alias=True, mode="json", exclude_none=True)
        body["attributes"] = [
            {"name": slug, "value": attribute_keyword(value)}
            for slug, value in self.attributes.items()
        ]
        return body


# --------------------------------------------------------------------------
# Request
# --------------------------------------------------------------------------


class SortOption(str, Enum):
    RELEVANCE = "relevance"
    PRICE_ASC = "price_asc"
    PRICE_DESC = "price_desc"
    RATING = "rating"
    POPULARITY = "popularity"
    NEWEST = "newest"
    BEST_SELLING = "best_selling"
    NAME_ASC = "name_asc"
    NAME_DESC = "name_desc"


class GeoFilter(BaseModel):
    lat: float
    lon: float
    radius: str = "50km"


AttributeFilter = Union[AttributeScalar, list[AttributeScalar]]


class SearchQuery(BaseModel):
    """One search request. Never persisted."""

    model_config = ConfigDict(frozen=True)

    q: Optional[str] = None
    category: Optional[str] = None
    brand: Optional[Union[str, list[str]]] = None
    seller: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    rating: Optional[float] = None
    in_stock: Optional[bool] = None
    attributes: dict[str, AttributeFilter] = Field(default_factory=dict)
    location: Optional[GeoFilter] = None
    page: int = 1
    limit: int = settings.default_page_size
    sort_by: SortOption = SortOption.RELEVANCE
    locale: Optional[str] = None

    @field_validator("q", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value

    @field_validator("sort_by", mode="before")
    @classmethod
    def _fallback_sort(cls, value: Any) -> SortOption:
        if isinstance(value, SortOption):
            return value
        try:
            return SortOption(str(value).lower())
        except ValueError:
            return SortOption.RELEVANCE

    @field_validator("page", mode="before")
    @classmethod
    def _clamp_page(cls, value: Any) -> int:
        try:
            page = int(value)
        except (TypeError, ValueError):
            return 1
        return max(page, 1)

    @field_validator("limit", mode="before")
    @classmethod
    def _clamp_limit(cls, value: Any) -> int:
        try:
            limit = int(value)
        except (TypeError, ValueError):
            return settings.default_page_size
        return min(max(limit, 1), settings.max_page_size)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


# --------------------------------------------------------------------------
# Response
# --------------------------------------------------------------------------


class FacetBucket(BaseModel):
    key: str
    label: str
    count: int


class SearchFacets(BaseModel):
    categories: list[FacetBucket] = Field(default_factory=list)
    brands: list[FacetBucket] = Field(default_factory=list)
    price_ranges: list[FacetBucket] = Field(default_factory=list)
    ratings: list[FacetBucket] = Field(default_factory=list)
    availability: list[FacetBucket] = Field(default_factory=list)
    attributes: dict[str, list[FacetBucket]] = Field(default_factory=dict)


class SearchHit(BaseModel):
    id: str
    score: Optional[float] = None
    document: dict[str, Any] = Field(default_factory=dict)
    highlights: dict[str, list[str]] = Field(default_factory=dict)


class SearchResult(BaseModel):
    results: list[SearchHit] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = settings.default_page_size
    facets: SearchFacets = Field(default_factory=SearchFacets)
    suggestions: list[str] = Field(default_factory=list)
    took_ms: float = 0
    degraded: bool = False


# --------------------------------------------------------------------------
# Ranking configuration (tuned by search experiments)
# --------------------------------------------------------------------------


class BoostFactors(BaseModel):
    featured_products: Optional[float] = None
    promoted_products: Optional[float] = None
    verified_sellers: Optional[float] = None
    high_rated_products: Optional[float] = None
    in_stock_products: Optional[float] = None


class SearchSettings(BaseModel):
    fuzziness: Optional[str] = None
    minimum_should_match: Optional[str] = None
    enable_synonyms: Optional[bool] = None
    enable_spell_correction: Optional[bool] = None


class FacetSettings(BaseModel):
    max_facets: Optional[int] = None
    facet_order: Optional[list[str]] = None
    enable_dynamic_facets: Optional[bool] = None


class PersonalizationSettings(BaseModel):
    enabled: Optional[bool] = None
    weight: Optional[float] = None
    fallback_to_popular: Optional[bool] = None


class UiSettings(BaseModel):
    results_per_page: Optional[int] = None
    enable_infinite_scroll: Optional[bool] = None
    show_relevance_score: Optional[bool] = None
    highlight_search_terms: Optional[bool] = None


class RankingConfig(BaseModel):
    """Ranking parameters; variant payloads set only the fields they change."""

    boost_factors: BoostFactors = Field(default_factory=BoostFactors)
    search_settings: SearchSettings = Field(default_factory=SearchSettings)
    facet_settings: FacetSettings = Field(default_factory=FacetSettings)
    personalization_settings: PersonalizationSettings = Field(default_factory=PersonalizationSettings)
    ui_settings: UiSettings = Field(default_factory=UiSettings)

    def merged(self, override: "RankingConfig") -> "RankingConfig":
        """Shallow merge per section: fields set in ``override`` win."""

        sections = {}
        for name in type(self).model_fields:
            base_section = getattr(self, name)
            patch = getattr(override, name).model_dump(exclude_none=True)
            sections[name] = base_section.model_copy(update=patch)
        return RankingConfig(**sections)


def default_ranking_config() -> RankingConfig:
    return RankingConfig(
        boost_factors=BoostFactors(
            featured_products=1.5,
            promoted_products=1.3,
            verified_sellers=1.2,
            high_rated_products=1.1,
            in_stock_products=1.0,
        ),
        search_settings=SearchSettings(
            fuzziness="AUTO",
            minimum_should_match="75%",
            enable_synonyms=True,
            enable_spell_correction=True,
        ),
        facet_settings=FacetSettings(max_facets=50, enable_dynamic_facets=True),
        personalization_settings=PersonalizationSettings(enabled=True, weight=0.2, fallback_to_popular=True),
        ui_settings=UiSettings(
            results_per_page=20,
            enable_infinite_scroll=False,
            show_relevance_score=False,
            highlight_search_terms=True,
        ),
    )
