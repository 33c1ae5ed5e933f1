"""Raw Elasticsearch response -> SearchResult."""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from .models import FacetBucket, SearchFacets, SearchHit, SearchQuery, SearchResult
from .query_builder import page_size

logger = logging.getLogger(__name__)

UNKNOWN_LABEL = "Unknown"

PRICE_LABELS = {
    "0-500": "Under ₹500",
    "500-1000": "₹500 - ₹1,000",
    "1000-5000": "₹1,000 - ₹5,000",
    "5000-10000": "₹5,000 - ₹10,000",
    "10000+": "Above ₹10,000",
}
RATING_LABELS = {
    "4+": "4★ & above",
    "3+": "3★ & above",
    "2+": "2★ & above",
    "1+": "1★ & above",
}
AVAILABILITY_LABELS = {
    "true": "In stock",
    "false": "Out of stock",
}


def _sorted(buckets: Iterable[FacetBucket]) -> List[FacetBucket]:
    return sorted(buckets, key=lambda bucket: (-bucket.count, bucket.key))


def _bucket_key(bucket: dict) -> str:
    # Boolean terms aggregations report key 1/0 plus key_as_string.
    if "key_as_string" in bucket:
        return str(bucket["key_as_string"])
    return str(bucket.get("key"))


def _named_buckets(agg: Optional[dict], name_agg: str) -> List[FacetBucket]:
    if not agg:
        return []
    buckets = []
    for bucket in agg.get("buckets", []):
        names = bucket.get(name_agg, {}).get("buckets", [])
        label = str(names[0]["key"]) if names else UNKNOWN_LABEL
        buckets.append(FacetBucket(key=_bucket_key(bucket), label=label, count=bucket.get("doc_count", 0)))
    return _sorted(buckets)


def _labelled_buckets(agg: Optional[dict], labels: Dict[str, str], drop_empty: bool) -> List[FacetBucket]:
    if not agg:
        return []
    raw = agg.get("buckets", [])
    # Keyed range aggregations come back as a dict.
    if isinstance(raw, dict):
        raw = [{"key": key, **value} for key, value in raw.items()]
    buckets = []
    for bucket in raw:
        count = bucket.get("doc_count", 0)
        if drop_empty and count == 0:
            continue
        key = _bucket_key(bucket)
        buckets.append(FacetBucket(key=key, label=labels.get(key, key), count=count))
    return _sorted(buckets)


def _attribute_facets(agg: Optional[dict]) -> Dict[str, List[FacetBucket]]:
    if not agg:
        return {}
    facets: Dict[str, List[FacetBucket]] = {}
    for name_bucket in agg.get("attribute_names", {}).get("buckets", []):
        slug = str(name_bucket.get("key"))
        values = [
            FacetBucket(key=str(value["key"]), label=str(value["key"]), count=value.get("doc_count", 0))
            for value in name_bucket.get("attribute_values", {}).get("buckets", [])
        ]
        facets[slug] = _sorted(values)
    return dict(sorted(facets.items()))


def format_facets(aggregations: Optional[dict]) -> SearchFacets:
    aggs = aggregations or {}
    return SearchFacets(
        categories=_named_buckets(aggs.get("categories"), "category_name"),
        brands=_named_buckets(aggs.get("brands"), "brand_name"),
        price_ranges=_labelled_buckets(aggs.get("price_ranges"), PRICE_LABELS, drop_empty=True),
        ratings=_labelled_buckets(aggs.get("ratings"), RATING_LABELS, drop_empty=True),
        availability=_labelled_buckets(aggs.get("availability"), AVAILABILITY_LABELS, drop_empty=False),
        attributes=_attribute_facets(aggs.get("attributes")),
    )


def format_popular_categories(raw: Dict[str, Any]) -> List[FacetBucket]:
    return _named_buckets((raw.get("aggregations") or {}).get("categories"), "category_name")


def _suggestions(suggest: Optional[dict]) -> List[str]:
    if not suggest:
        return []
    seen: List[str] = []
    for name in sorted(suggest):
        for entry in suggest[name] or []:
            for option in entry.get("options", []):
                text = option.get("text")
                if text and text not in seen:
                    seen.append(text)
    return seen


def _total(hits: dict) -> int:
    total = hits.get("total", 0)
    if isinstance(total, dict):
        return int(total.get("value", 0))
    return int(total or 0)


def format_response(raw: Dict[str, Any], query: SearchQuery, limit: Optional[int] = None) -> SearchResult:
    """Reshape one backend response. Pure; same input gives the same result."""

    hits = raw.get("hits", {}) or {}
    results = [
        SearchHit(
            id=str(hit.get("_id") or hit.get("_source", {}).get("id")),
            score=hit.get("_score"),
            document=hit.get("_source", {}),
            highlights=hit.get("highlight", {}),
        )
        for hit in hits.get("hits", [])
    ]
    return SearchResult(
        results=results,
        total=_total(hits),
        page=query.page,
        limit=limit if limit is not None else page_size(query),
        facets=format_facets(raw.get("aggregations")),
        suggestions=_suggestions(raw.get("suggest")),
        took_ms=raw.get("took", 0),
    )


def empty_result(query: SearchQuery, limit: Optional[int] = None) -> SearchResult:
    """Result served while the backend is unavailable."""

    return SearchResult(
        page=query.page,
        limit=limit if limit is not None else page_size(query),
        degraded=True,
    )
