"""Search request flow: ranking config, cache, backend call, formatting."""
from __future__ import annotations

import asyncio
import logging
from time import perf_counter
from typing import Any, Dict, List, Optional

from elasticsearch import ApiError, Elasticsearch, TransportError

from .cache import CacheBackend, make_cache_key
from .config import settings
from .experiments import ExperimentAssigner
from .health import SearchHealth
from .models import FacetBucket, RankingConfig, SearchQuery, SearchResult, default_ranking_config
from .phonetics import normalize_query
from .query_builder import (
    build_popular_body,
    build_popular_categories_body,
    build_search_body,
    build_trending_body,
    page_size,
)
from .response import empty_result, format_facets, format_popular_categories, format_response

logger = logging.getLogger(__name__)

AUTOCOMPLETE_MAX = 20


class SearchService:
    def __init__(
        self,
        es: Elasticsearch,
        health: SearchHealth,
        cache: CacheBackend,
        assigner: Optional[ExperimentAssigner] = None,
        *,
        index: str = settings.products_index,
        cache_ttl: int = settings.cache_ttl_seconds,
    ) -> None:
        self.es = es
        self.health = health
        self.cache = cache
        self.assigner = assigner
        self.index = index
        self.cache_ttl = cache_ttl

    async def _ranking(self, user_id: Optional[str], session_id: Optional[str]) -> RankingConfig:
        if self.assigner is None:
            return default_ranking_config()
        return await asyncio.to_thread(self.assigner.ranking_config, user_id, session_id)

    async def _backend_search(self, body: Dict[str, Any]) -> Dict[str, Any]:
        response = await asyncio.to_thread(self.es.search, index=self.index, **body)
        # ObjectApiResponse behaves like a mapping; tests pass plain dicts.
        return dict(response.body) if hasattr(response, "body") else dict(response)

    def _backend_failed(self, operation: str, exc: Exception) -> None:
        # One failed request degrades only its own response; availability
        # is owned by IndexManager.start(), which /health re-runs.
        logger.error("Search backend error during %s: %s", operation, exc)

    async def search(
        self,
        query: SearchQuery,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> SearchResult:
        if not self.health.available:
            logger.warning("Search requested while backend is unavailable; returning empty result")
            return empty_result(query)

        t0 = perf_counter()
        ranking = await self._ranking(user_id, session_id)
        cache_key = make_cache_key(
            "query",
            {"query": query.model_dump(mode="json"), "ranking": ranking.model_dump(mode="json")},
        )
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.info("timing: total=%.2fms cache_hit=1 q=%r", (perf_counter() - t0) * 1000, query.q)
            return SearchResult.model_validate(cached)

        t1 = perf_counter()
        body = build_search_body(query, ranking)
        t2 = perf_counter()
        try:
            raw = await self._backend_search(body)
        except (ApiError, TransportError) as exc:
            self._backend_failed("search", exc)
            return empty_result(query, page_size(query, ranking))
        t3 = perf_counter()
        result = format_response(raw, query, page_size(query, ranking))
        t4 = perf_counter()

        logger.info(
            "timing: total=%.2fms ranking=%.2fms build=%.2fms es=%.2fms format=%.2fms q=%r hits=%s",
            (t4 - t0) * 1000,
            (t1 - t0) * 1000,
            (t2 - t1) * 1000,
            (t3 - t2) * 1000,
            (t4 - t3) * 1000,
            query.q,
            result.total,
        )
        if (t3 - t2) * 1000 > settings.slow_query_ms:
            logger.warning("Slow search query q=%r took %.2fms", query.q, (t3 - t2) * 1000)

        self.cache.set(cache_key, result.model_dump(mode="json"), self.cache_ttl)
        logger.debug("cache_store q=%r ttl=%s", query.q, self.cache_ttl)
        return result

    async def autocomplete(self, prefix: str, limit: int = 10) -> List[str]:
        """Distinct product names starting with ``prefix``, best match first."""

        text = (prefix or "").strip()
        if not text or not self.health.available:
            return []
        limit = min(max(limit, 1), AUTOCOMPLETE_MAX)
        body = {
            "size": limit * 2,
            "_source": ["name"],
            "query": {
                "bool": {
                    "must": [
                        {
                            "match": {
                                "name.autocomplete": {
                                    "query": normalize_query(text) or text,
                                    "operator": "and",
                                }
                            }
                        }
                    ],
                    "filter": [{"term": {"isActive": True}}],
                }
            },
            "sort": [{"_score": {"order": "desc"}}, {"popularity.score": {"order": "desc"}}, {"id": {"order": "asc"}}],
        }
        try:
            raw = await self._backend_search(body)
        except (ApiError, TransportError) as exc:
            self._backend_failed("autocomplete", exc)
            return []

        names: List[str] = []
        for hit in raw.get("hits", {}).get("hits", []):
            name = hit.get("_source", {}).get("name")
            if name and name not in names:
                names.append(name)
            if len(names) >= limit:
                break
        return names

    async def available_filters(self, category: Optional[str] = None, q: Optional[str] = None) -> Dict[str, Any]:
        """Facets for a category and/or text without fetching hits."""

        query = SearchQuery(q=q, category=category)
        if not self.health.available:
            return format_facets(None).model_dump()

        cache_key = make_cache_key("filters", {"category": category, "q": query.q})
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        body = build_search_body(query, include_hits=False)
        try:
            raw = await self._backend_search(body)
        except (ApiError, TransportError) as exc:
            self._backend_failed("filters", exc)
            return format_facets(None).model_dump()

        facets = format_facets(raw.get("aggregations")).model_dump(mode="json")
        self.cache.set(cache_key, facets, self.cache_ttl)
        return facets

    async def _listing(self, namespace: str, body: Dict[str, Any], query: SearchQuery) -> SearchResult:
        if not self.health.available:
            return empty_result(query, query.limit)

        cache_key = make_cache_key(namespace, {"category": query.category, "limit": query.limit})
        cached = self.cache.get(cache_key)
        if cached is not None:
            return SearchResult.model_validate(cached)

        try:
            raw = await self._backend_search(body)
        except (ApiError, TransportError) as exc:
            self._backend_failed(namespace, exc)
            return empty_result(query, query.limit)

        result = format_response(raw, query, query.limit)
        self.cache.set(cache_key, result.model_dump(mode="json"), self.cache_ttl)
        return result

    async def trending(self, category: Optional[str] = None, limit: int = settings.default_page_size) -> SearchResult:
        """Recently created products with high popularity scores."""

        query = SearchQuery(category=category, limit=limit)
        return await self._listing("trending", build_trending_body(category, query.limit), query)

    async def popular(self, category: Optional[str] = None, limit: int = settings.default_page_size) -> SearchResult:
        """Best-selling products by order count."""

        query = SearchQuery(category=category, limit=limit, sort_by="best_selling")
        return await self._listing("popular", build_popular_body(category, query.limit), query)

    async def popular_categories(self, limit: int = 10) -> List[FacetBucket]:
        limit = min(max(limit, 1), settings.max_page_size)
        if not self.health.available:
            return []

        cache_key = make_cache_key("popular_categories", {"limit": limit})
        cached = self.cache.get(cache_key)
        if cached is not None:
            return [FacetBucket.model_validate(item) for item in cached]

        try:
            raw = await self._backend_search(build_popular_categories_body(limit))
        except (ApiError, TransportError) as exc:
            self._backend_failed("popular categories", exc)
            return []

        categories = format_popular_categories(raw)
        self.cache.set(cache_key, [item.model_dump() for item in categories], self.cache_ttl)
        return categories
