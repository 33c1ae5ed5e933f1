"""FastAPI application wiring the search pipeline."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from elasticsearch import ApiError, TransportError
from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from .cache import CacheBackend, get_cache
from .catalog import load_catalog
from .config import settings
from .es_client import get_client
from .events import EventBus, SearchIndexSync
from .experiments import ExperimentAssigner, load_experiments
from .health import SearchHealth, overall_health
from .indexing import SCOPED_ENTITY_TYPES, IndexManager, SearchUnavailable
from .models import GeoFilter, SearchQuery, SearchResult
from .search_service import SearchService

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_LEVEL = logging.getLevelName(settings.log_level.upper())

# ``force=True`` replaces uvicorn's default handlers so every module logs in
# the same format.
logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT, force=True)
for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "elastic_transport"):
    logging.getLogger(name).setLevel(LOG_LEVEL)

logger = logging.getLogger(__name__)
logger.info("Logging configured at %s", settings.log_level.upper())


@dataclass
class Services:
    es: Any
    cache: CacheBackend
    health: SearchHealth
    bus: EventBus
    index_manager: IndexManager
    search: SearchService


def build_services() -> Services:
    es = get_client()
    cache = get_cache()
    health = SearchHealth()
    bus = EventBus()
    catalog = load_catalog(settings.catalog_path)
    index_manager = IndexManager(es, catalog, health, bus=bus)
    assigner = ExperimentAssigner(load_experiments(settings.experiments_path), cache)
    search = SearchService(es, health, cache, assigner)
    SearchIndexSync(index_manager).register(bus)
    return Services(es=es, cache=cache, health=health, bus=bus, index_manager=index_manager, search=search)


def _parse_attributes(raw: List[str]) -> Dict[str, Any]:
    """``attr=color:red&attr=color:blue&attr=size:m`` -> ``{"color": [...], "size": "m"}``."""

    attributes: Dict[str, Any] = {}
    for item in raw:
        slug, sep, value = item.partition(":")
        if not sep or not slug or not value:
            raise HTTPException(status_code=422, detail=f"Invalid attribute filter: {item!r}")
        existing = attributes.get(slug)
        if existing is None:
            attributes[slug] = value
        elif isinstance(existing, list):
            existing.append(value)
        else:
            attributes[slug] = [existing, value]
    return attributes


def create_app(services_factory: Callable[[], Services] = build_services, start_index: bool = True) -> FastAPI:
    app = FastAPI(title="Catalog Search Service")

    @app.on_event("startup")
    async def startup_event() -> None:
        services = services_factory()
        app.state.services = services
        if start_index:
            await services.index_manager.start()

    @app.exception_handler(SearchUnavailable)
    async def search_unavailable_handler(request: Request, exc: SearchUnavailable) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.exception_handler(ApiError)
    @app.exception_handler(TransportError)
    async def backend_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Search backend error: %s", exc)
        return JSONResponse(status_code=502, content={"detail": "Search backend error"})

    def services(request: Request) -> Services:
        return request.app.state.services

    @app.get("/health")
    async def health(request: Request) -> dict:
        svc = services(request)
        if not svc.health.available:
            # start() marks the backend available again once it answers.
            await svc.index_manager.start()
        return await overall_health(svc.es, svc.cache, svc.health, svc.index_manager.index)

    @app.get("/search", response_model=SearchResult)
    async def search(
        request: Request,
        q: Optional[str] = Query(None, description="Search text"),
        category: Optional[str] = None,
        brand: List[str] = Query(default=[]),
        seller: Optional[str] = None,
        min_price: Optional[float] = Query(None, alias="minPrice"),
        max_price: Optional[float] = Query(None, alias="maxPrice"),
        rating: Optional[float] = None,
        in_stock: Optional[bool] = Query(None, alias="inStock"),
        attr: List[str] = Query(default=[], description="Attribute filter as slug:value"),
        lat: Optional[float] = None,
        lon: Optional[float] = None,
        radius: str = "50km",
        page: int = 1,
        limit: Optional[int] = None,
        sort_by: Optional[str] = Query(None, alias="sortBy"),
        locale: Optional[str] = None,
        user_id: Optional[str] = Query(None, alias="userId"),
        session_id: Optional[str] = Query(None, alias="sessionId"),
    ) -> SearchResult:
        params: Dict[str, Any] = {
            "q": q,
            "category": category,
            "brand": brand[0] if len(brand) == 1 else (brand or None),
            "seller": seller,
            "min_price": min_price,
            "max_price": max_price,
            "rating": rating,
            "in_stock": in_stock,
            "attributes": _parse_attributes(attr),
            "page": page,
            "locale": locale,
        }
        if limit is not None:
            params["limit"] = limit
        if sort_by is not None:
            params["sort_by"] = sort_by
        if lat is not None and lon is not None:
            params["location"] = GeoFilter(lat=lat, lon=lon, radius=radius)
        query = SearchQuery(**params)
        return await services(request).search.search(query, user_id=user_id, session_id=session_id)

    @app.get("/search/autocomplete")
    async def autocomplete(request: Request, q: str = Query(..., min_length=1), limit: int = 10) -> dict:
        suggestions = await services(request).search.autocomplete(q, limit)
        return {"query": q, "suggestions": suggestions}

    @app.get("/search/filters")
    async def filters(request: Request, category: Optional[str] = None, q: Optional[str] = None) -> dict:
        return await services(request).search.available_filters(category=category, q=q)

    @app.get("/search/suggestions")
    async def suggestions(request: Request, q: str = Query(..., min_length=1), limit: int = 10) -> dict:
        return {"query": q, "suggestions": await services(request).search.autocomplete(q, limit)}

    @app.get("/search/trending", response_model=SearchResult)
    async def trending(
        request: Request, category: Optional[str] = None, limit: int = settings.default_page_size
    ) -> SearchResult:
        return await services(request).search.trending(category=category, limit=limit)

    @app.get("/search/popular", response_model=SearchResult)
    async def popular(
        request: Request, category: Optional[str] = None, limit: int = settings.default_page_size
    ) -> SearchResult:
        return await services(request).search.popular(category=category, limit=limit)

    @app.get("/search/categories/popular")
    async def popular_categories(request: Request, limit: int = 10) -> dict:
        categories = await services(request).search.popular_categories(limit)
        return {"categories": [item.model_dump() for item in categories]}

    @app.post("/search/reindex")
    async def reindex(
        request: Request,
        batch_size: Optional[int] = Query(None, alias="batchSize", ge=1),
        dry_run: bool = Query(False, alias="dryRun"),
    ) -> dict:
        report = await services(request).index_manager.reindex_all(batch_size=batch_size, dry_run=dry_run)
        return report.as_dict()

    @app.post("/search/reindex/{entity_type}/{entity_id}")
    async def reindex_entity(
        request: Request,
        entity_type: str,
        entity_id: str,
        dry_run: bool = Query(False, alias="dryRun"),
    ) -> dict:
        if entity_type != "product" and entity_type not in SCOPED_ENTITY_TYPES:
            raise HTTPException(status_code=400, detail=f"Unsupported entity type: {entity_type}")
        report = await services(request).index_manager.reindex_entity(entity_type, entity_id, dry_run=dry_run)
        return {**report.as_dict(), "entityType": entity_type, "entityId": entity_id}

    @app.post("/events/{name}")
    async def publish_event(request: Request, name: str, payload: Dict[str, Any] = Body(default={})) -> dict:
        bus = services(request).bus
        handlers = len(bus.handlers(name))
        failed = await bus.publish(name, payload)
        return {"event": name, "handlers": handlers, "failed": failed}

    return app


app = create_app()
