"""Translation of a :class:`SearchQuery` into an Elasticsearch request body.

Everything here is pure: no I/O, no clock reads. The recency decay uses the
literal ``"now"`` date-math origin unless an explicit ``now`` is injected, so
repeated calls with the same input produce identical bodies.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from .config import settings
from .models import (
    RankingConfig,
    SearchQuery,
    SortOption,
    attribute_keyword,
    default_ranking_config,
)
from .phonetics import normalize_query, to_phonetic

logger = logging.getLogger(__name__)

TEXT_FIELDS = [
    "name^3",
    "name.autocomplete^2",
    "brand.name^2",
    "category.name^2",
    "keywords^2",
    "description^1",
    "searchText^1",
    "tags^1",
]

EXACT_MATCH_BOOST = 10
PHRASE_MATCH_BOOST = 5
PREFIX_MATCH_BOOST = 3
PHONETIC_MATCH_BOOST = 1

HIGH_RATING_THRESHOLD = 4
RECENCY_SCALE = "30d"
RECENCY_DECAY = 0.5
POPULARITY_FACTOR = 0.1

# (key, from, to); ``to`` None means open-ended.
PRICE_RANGES = [
    ("0-500", 0, 500),
    ("500-1000", 500, 1000),
    ("1000-5000", 1000, 5000),
    ("5000-10000", 5000, 10000),
    ("10000+", 10000, None),
]
RATING_FLOORS = [("4+", 4), ("3+", 3), ("2+", 2), ("1+", 1)]
ATTRIBUTE_FACET_SIZE = 20

_SORT_KEYS: Dict[SortOption, tuple[str, str]] = {
    SortOption.RELEVANCE: ("_score", "desc"),
    SortOption.PRICE_ASC: ("pricing.minPrice", "asc"),
    SortOption.PRICE_DESC: ("pricing.minPrice", "desc"),
    SortOption.RATING: ("popularity.rating", "desc"),
    SortOption.POPULARITY: ("popularity.score", "desc"),
    SortOption.NEWEST: ("createdAt", "desc"),
    SortOption.BEST_SELLING: ("popularity.orderCount", "desc"),
    SortOption.NAME_ASC: ("name.keyword", "asc"),
    SortOption.NAME_DESC: ("name.keyword", "desc"),
}
# Appended after the primary key, skipping any field already sorted on.
_TIE_BREAKERS: List[tuple[str, str]] = [
    ("popularity.score", "desc"),
    ("createdAt", "desc"),
    ("id", "asc"),
]


def _ranking(ranking: Optional[RankingConfig]) -> RankingConfig:
    default = default_ranking_config()
    return default if ranking is None else default.merged(ranking)


def _text_clauses(text: str, ranking: RankingConfig) -> tuple[List[dict], List[dict]]:
    search = ranking.search_settings
    normalized = normalize_query(text) or text
    must = [
        {
            "multi_match": {
                "query": normalized,
                "fields": TEXT_FIELDS,
                "type": "best_fields",
                "fuzziness": search.fuzziness,
                "operator": "and",
                "minimum_should_match": search.minimum_should_match,
            }
        }
    ]
    should: List[dict] = [
        {"term": {"name.keyword": {"value": text, "boost": EXACT_MATCH_BOOST}}},
        {"match_phrase": {"name": {"query": normalized, "boost": PHRASE_MATCH_BOOST}}},
        {"prefix": {"name.keyword": {"value": text.lower(), "boost": PREFIX_MATCH_BOOST}}},
    ]
    phonetic = to_phonetic(normalize_query(text))
    if phonetic:
        should.append({"match": {"namePhonetic": {"query": phonetic, "boost": PHONETIC_MATCH_BOOST}}})
    return must, should


def _attribute_filter(slug: str, value: Any) -> dict:
    if isinstance(value, list):
        value_clause = {"terms": {"attributes.value": [attribute_keyword(item) for item in value]}}
    else:
        value_clause = {"term": {"attributes.value": attribute_keyword(value)}}
    return {
        "nested": {
            "path": "attributes",
            "query": {"bool": {"must": [{"term": {"attributes.name": slug}}, value_clause]}},
        }
    }


def build_filters(query: SearchQuery) -> List[dict]:
    """Filter clauses; all AND-combined, order carries no meaning."""

    filters: List[dict] = []

    def add_filter(clause: dict) -> None:
        filters.append(clause)

    if query.category:
        # Ancestor ids are indexed in pathIds, so a parent category matches
        # every descendant.
        add_filter(
            {
                "bool": {
                    "should": [
                        {"term": {"category.id": query.category}},
                        {"term": {"category.pathIds": query.category}},
                    ],
                    "minimum_should_match": 1,
                }
            }
        )

    if query.brand:
        if isinstance(query.brand, list):
            add_filter({"terms": {"brand.id": list(query.brand)}})
        else:
            add_filter({"term": {"brand.id": query.brand}})

    if query.seller:
        add_filter({"term": {"seller.id": query.seller}})

    if query.min_price is not None or query.max_price is not None:
        price_range: Dict[str, float] = {}
        if query.min_price is not None:
            price_range["gte"] = query.min_price
        if query.max_price is not None:
            price_range["lte"] = query.max_price
        add_filter({"range": {"pricing.minPrice": price_range}})

    if query.rating is not None:
        add_filter({"range": {"popularity.rating": {"gte": query.rating}}})

    if query.in_stock is not None:
        add_filter({"term": {"inventory.isInStock": query.in_stock}})

    if query.location is not None:
        add_filter(
            {
                "geo_distance": {
                    "distance": query.location.radius,
                    "location": {"lat": query.location.lat, "lon": query.location.lon},
                }
            }
        )

    for slug in sorted(query.attributes):
        add_filter(_attribute_filter(slug, query.attributes[slug]))

    add_filter({"term": {"isActive": True}})

    if query.locale:
        add_filter({"term": {"locale": query.locale}})

    return filters


def build_bool_query(query: SearchQuery, ranking: Optional[RankingConfig] = None) -> dict:
    ranking = _ranking(ranking)
    if query.q:
        must, should = _text_clauses(query.q, ranking)
    else:
        must, should = [{"match_all": {}}], []
    return {
        "bool": {
            "must": must,
            "filter": build_filters(query),
            "should": should,
            # Should clauses only boost; the must clause decides matching.
            "minimum_should_match": 0,
        }
    }


def build_sort(sort_by: SortOption | str | None) -> List[dict]:
    """Primary key for ``sort_by`` followed by the deterministic tie-breakers."""

    try:
        option = SortOption(sort_by) if sort_by is not None else SortOption.RELEVANCE
    except ValueError:
        option = SortOption.RELEVANCE
    primary_field, primary_order = _SORT_KEYS[option]
    sort = [{primary_field: {"order": primary_order}}]
    for field, order in _TIE_BREAKERS:
        if field != primary_field:
            sort.append({field: {"order": order}})
    return sort


def build_aggregations(query: SearchQuery, ranking: Optional[RankingConfig] = None) -> dict:
    ranking = _ranking(ranking)
    facet_size = ranking.facet_settings.max_facets
    aggs: Dict[str, Any] = {
        "categories": {
            "terms": {"field": "category.id", "size": facet_size},
            "aggs": {"category_name": {"terms": {"field": "category.name.keyword", "size": 1}}},
        },
        "brands": {
            "terms": {"field": "brand.id", "size": facet_size},
            "aggs": {"brand_name": {"terms": {"field": "brand.name.keyword", "size": 1}}},
        },
        "price_ranges": {
            "range": {
                "field": "pricing.minPrice",
                "ranges": [
                    {"key": key, "from": low, **({"to": high} if high is not None else {})}
                    for key, low, high in PRICE_RANGES
                ],
            }
        },
        "ratings": {
            "range": {
                "field": "popularity.rating",
                "ranges": [{"key": key, "from": floor} for key, floor in RATING_FLOORS],
            }
        },
        "availability": {"terms": {"field": "inventory.isInStock", "size": 2}},
    }

    # Attribute cardinality is only bounded once a category narrows the set.
    if query.category and ranking.facet_settings.enable_dynamic_facets:
        aggs["attributes"] = {
            "nested": {"path": "attributes"},
            "aggs": {
                "attribute_names": {
                    "terms": {"field": "attributes.name", "size": ATTRIBUTE_FACET_SIZE},
                    "aggs": {
                        "attribute_values": {
                            "terms": {"field": "attributes.value", "size": ATTRIBUTE_FACET_SIZE}
                        }
                    },
                }
            },
        }
    return aggs


def build_highlight(query: SearchQuery, ranking: Optional[RankingConfig] = None) -> Optional[dict]:
    ranking = _ranking(ranking)
    if not query.q or not ranking.ui_settings.highlight_search_terms:
        return None
    return {
        "fields": {
            "name": {
                "fragment_size": 150,
                "number_of_fragments": 1,
                "pre_tags": ["<mark>"],
                "post_tags": ["</mark>"],
            },
            "description": {
                "fragment_size": 200,
                "number_of_fragments": 2,
                "pre_tags": ["<mark>"],
                "post_tags": ["</mark>"],
            },
        }
    }


def build_function_score(
    ranking: Optional[RankingConfig] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Multiplicative boosts layered on top of textual relevance.

    Every function multiplies the score and none can produce zero: weights
    are positive, the decay tends to zero only asymptotically and the
    popularity factor uses ``log2p`` so a zero score still yields log10(2).
    """

    boosts = _ranking(ranking).boost_factors
    functions: List[dict] = [
        {"filter": {"term": {"isFeatured": True}}, "weight": boosts.featured_products},
        {"filter": {"term": {"isPromoted": True}}, "weight": boosts.promoted_products},
        {"filter": {"term": {"seller.isVerified": True}}, "weight": boosts.verified_sellers},
        {
            "filter": {"range": {"popularity.rating": {"gte": HIGH_RATING_THRESHOLD}}},
            "weight": boosts.high_rated_products,
        },
    ]
    if boosts.in_stock_products and boosts.in_stock_products != 1.0:
        functions.append({"filter": {"term": {"inventory.isInStock": True}}, "weight": boosts.in_stock_products})
    functions.append(
        {
            "exp": {
                "createdAt": {
                    "origin": now.isoformat() if now is not None else "now",
                    "scale": RECENCY_SCALE,
                    "decay": RECENCY_DECAY,
                }
            }
        }
    )
    functions.append(
        {
            "field_value_factor": {
                "field": "popularity.score",
                "factor": POPULARITY_FACTOR,
                "modifier": "log2p",
                "missing": 0,
            }
        }
    )
    return {"score_mode": "multiply", "boost_mode": "multiply", "functions": functions}


def build_suggest(query: SearchQuery, ranking: Optional[RankingConfig] = None) -> Optional[dict]:
    ranking = _ranking(ranking)
    if not query.q or not ranking.search_settings.enable_spell_correction:
        return None
    return {
        "text": query.q,
        "spelling": {"term": {"field": "name", "suggest_mode": "popular", "size": 3}},
    }


TRENDING_SCALE = "7d"


def build_trending_body(category: Optional[str], limit: int, now: Optional[datetime] = None) -> dict:
    """Popularity score damped by a short recency decay, no text scoring."""

    return {
        "size": limit,
        "track_total_hits": True,
        "query": {
            "function_score": {
                "query": {"bool": {"filter": build_filters(SearchQuery(category=category))}},
                "functions": [
                    {
                        "exp": {
                            "createdAt": {
                                "origin": now.isoformat() if now is not None else "now",
                                "scale": TRENDING_SCALE,
                                "decay": RECENCY_DECAY,
                            }
                        }
                    },
                    {
                        "field_value_factor": {
                            "field": "popularity.score",
                            "modifier": "log2p",
                            "missing": 0,
                        }
                    },
                ],
                "score_mode": "multiply",
                "boost_mode": "replace",
            }
        },
        "sort": build_sort(SortOption.RELEVANCE),
    }


def build_popular_body(category: Optional[str], limit: int) -> dict:
    """Best sellers first."""

    return {
        "size": limit,
        "track_total_hits": True,
        "query": {"bool": {"filter": build_filters(SearchQuery(category=category))}},
        "sort": build_sort(SortOption.BEST_SELLING),
    }


def build_popular_categories_body(limit: int) -> dict:
    return {
        "size": 0,
        "query": {"bool": {"filter": [{"term": {"isActive": True}}]}},
        "aggs": {
            "categories": {
                "terms": {"field": "category.id", "size": limit},
                "aggs": {"category_name": {"terms": {"field": "category.name.keyword", "size": 1}}},
            }
        },
    }


def page_size(query: SearchQuery, ranking: Optional[RankingConfig] = None) -> int:
    """Explicit ``limit`` wins; otherwise the ranking config's page size."""

    if "limit" in query.model_fields_set:
        return query.limit
    per_page = _ranking(ranking).ui_settings.results_per_page or query.limit
    return min(max(per_page, 1), settings.max_page_size)


def build_search_body(
    query: SearchQuery,
    ranking: Optional[RankingConfig] = None,
    now: Optional[datetime] = None,
    *,
    include_hits: bool = True,
) -> dict:
    """Complete request body for one search page.

    ``include_hits=False`` builds a facets-only request.
    """

    ranking = _ranking(ranking)
    size = page_size(query, ranking)
    function_score = build_function_score(ranking, now)
    body: Dict[str, Any] = {
        "from": (query.page - 1) * size if include_hits else 0,
        "size": size if include_hits else 0,
        "track_total_hits": True,
        "query": {"function_score": {"query": build_bool_query(query, ranking), **function_score}},
        "aggs": build_aggregations(query, ranking),
    }
    if include_hits:
        body["sort"] = build_sort(query.sort_by)
        highlight = build_highlight(query, ranking)
        if highlight:
            body["highlight"] = highlight
        suggest = build_suggest(query, ranking)
        if suggest:
            body["suggest"] = suggest
    logger.debug("ES query payload=%s", body)
    return body
