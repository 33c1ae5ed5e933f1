"""Index creation, incremental sync and batch reindexing."""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional

from elasticsearch import ApiError, BadRequestError, Elasticsearch, NotFoundError, TransportError, helpers

from .catalog import CatalogSource, ScopeField
from .config import settings
from .health import SearchHealth
from .models import SearchDocument
from .projector import build_document

if TYPE_CHECKING:
    from .events import EventBus

logger = logging.getLogger(__name__)

SCOPED_ENTITY_TYPES: tuple[ScopeField, ...] = ("category", "brand", "seller")


class SearchUnavailable(RuntimeError):
    """Raised to operators when the search backend is degraded."""


@dataclass
class BulkReport:
    indexed: int = 0
    failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class ReindexReport:
    total_indexed: int = 0
    failed: int = 0
    pages: int = 0
    dry_run: bool = False
    scope: str = "all"

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.failed == 0,
            "totalIndexed": self.total_indexed,
            "failed": self.failed,
            "pages": self.pages,
            "dryRun": self.dry_run,
            "scope": self.scope,
        }


def _load_mapping(mapping_path: Path) -> dict:
    with mapping_path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def _load_synonyms(path: Path) -> list[str]:
    """Read synonym rules from a file, ignoring blanks and comments."""

    try:
        with path.open("r", encoding="utf-8") as fh:
            return [line.strip() for line in fh if line.strip() and not line.lstrip().startswith("#")]
    except FileNotFoundError:
        logger.warning("Synonyms file %s not found; falling back to mapping defaults", path)
        return []


def index_body(mapping_path: str | Path, synonyms_path: str | Path) -> dict:
    """Mapping + settings with synonym rules inlined."""

    body = _load_mapping(Path(mapping_path))
    synonyms = _load_synonyms(Path(synonyms_path))

    # Inline the rules so the filter works even when Elasticsearch cannot read
    # the file from its config directory.
    filters = body.get("settings", {}).get("analysis", {}).get("filter", {})
    synonym_filter = filters.get("product_synonyms", {})
    if synonyms:
        synonym_filter["synonyms"] = synonyms
    else:
        synonym_filter.setdefault("synonyms", [])
    synonym_filter.pop("synonyms_path", None)
    filters["product_synonyms"] = synonym_filter
    return body


def _chunks(items: list, size: int) -> Iterable[list]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class IndexManager:
    """Keeps the product index in step with the catalog.

    Every write path short-circuits while :attr:`health` reports the backend
    unavailable, except the operator reindex calls which raise
    :class:`SearchUnavailable` instead.
    """

    def __init__(
        self,
        es: Elasticsearch,
        catalog: CatalogSource,
        health: Optional[SearchHealth] = None,
        *,
        index: str = settings.products_index,
        alias: str = settings.products_alias,
        mapping_path: str = settings.mapping_path,
        synonyms_path: str = settings.synonyms_path,
        batch_size: int = settings.bulk_size,
        clock: Optional[Callable[[], datetime]] = None,
        bus: Optional["EventBus"] = None,
    ) -> None:
        self.es = es
        self.catalog = catalog
        self.health = health or SearchHealth()
        self.index = index
        self.alias = alias
        self.mapping_path = mapping_path
        self.synonyms_path = synonyms_path
        self.batch_size = batch_size
        self.clock = clock
        self.bus = bus

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """Connect and prepare the index; degrade instead of raising."""

        try:
            reachable = await asyncio.to_thread(self.es.ping)
            if not reachable:
                self.health.mark_unavailable(f"ping to {self.index} cluster failed")
                return False
            await self.ensure_index()
        except (ApiError, TransportError, OSError) as exc:
            logger.warning("Elasticsearch not available - search functionality will be disabled: %s", exc)
            self.health.mark_unavailable(str(exc))
            return False
        self.health.mark_available()
        return True

    async def ensure_index(self) -> bool:
        """Create the products index with custom analyzers if it is missing.

        Returns ``True`` when the index was created. An existing index is left
        untouched, mapping included.
        """

        exists = await asyncio.to_thread(self.es.indices.exists, index=self.index)
        if exists:
            logger.info("Elasticsearch index already exists: %s", self.index)
            return False
        body = index_body(self.mapping_path, self.synonyms_path)
        logger.info("Creating index %s using %s", self.index, self.mapping_path)
        try:
            await asyncio.to_thread(
                self.es.indices.create,
                index=self.index,
                settings=body.get("settings"),
                mappings=body.get("mappings"),
            )
        except BadRequestError as exc:
            if getattr(exc, "error", "") == "resource_already_exists_exception":
                logger.info("Index %s already exists", self.index)
                return False
            logger.exception("Failed to create index: %s", exc)
            raise
        await asyncio.to_thread(self.es.indices.put_alias, index=self.index, name=self.alias)
        return True

    def _check_available(self, operation: str) -> bool:
        if not self.health.available:
            logger.warning("Elasticsearch is not available - skipping %s", operation)
            return False
        return True

    async def _emit(self, name: str, payload: dict[str, Any]) -> None:
        if self.bus is not None:
            await self.bus.publish(name, payload)

    def _project(self, product) -> Optional[SearchDocument]:
        now = self.clock() if self.clock else None
        return build_document(product, now=now)

    # ------------------------------------------------------------------
    # Incremental sync
    # ------------------------------------------------------------------

    async def index_entity(self, entity_type: str, entity_id: str) -> None:
        """Reindex whatever ``entity_type``/``entity_id`` affects. Never raises."""

        if not self._check_available(f"index {entity_type}:{entity_id}"):
            return
        try:
            if entity_type == "product":
                await self.index_product(entity_id)
            elif entity_type in SCOPED_ENTITY_TYPES:
                await self.reindex_scope(entity_type, entity_id)
            else:
                logger.error("Unsupported entity type: %s", entity_type)
        except (ApiError, TransportError) as exc:
            logger.error("Failed to index %s:%s: %s", entity_type, entity_id, exc)

    async def index_product(self, product_id: str, *, strict: bool = False) -> Optional[SearchDocument]:
        product = await asyncio.to_thread(self.catalog.get_product, product_id)
        document = self._project(product)
        if document is None:
            logger.info("Product %s missing or inactive; removing from index", product_id)
            await self.remove_product(product_id, strict=strict)
            return None
        await asyncio.to_thread(
            self.es.index,
            index=self.index,
            id=document.id,
            document=document.to_source(),
            refresh="wait_for",
        )
        logger.debug("Indexed product:%s", product_id)
        await self._emit("search.indexed", {"entityType": "product", "entityId": product_id})
        return document

    async def remove_product(self, product_id: str, *, strict: bool = False) -> None:
        """Delete one document. Backend errors propagate only when ``strict``."""

        if not self._check_available(f"remove product:{product_id}"):
            return
        try:
            await asyncio.to_thread(self.es.delete, index=self.index, id=product_id, refresh="wait_for")
        except NotFoundError:
            logger.warning("Document product:%s not found in index", product_id)
            return
        except (ApiError, TransportError) as exc:
            logger.error("Failed to remove product:%s: %s", product_id, exc)
            if strict:
                raise
            return
        logger.debug("Removed product:%s from index", product_id)
        await self._emit("search.removed", {"entityType": "product", "entityId": product_id})

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def bulk_index(self, documents: list[SearchDocument], refresh: str | bool = False) -> BulkReport:
        """Write ``documents`` in one bulk request.

        Per-document rejections are logged and reported, not retried.
        """

        if not documents:
            return BulkReport()
        actions = [
            {"_index": self.index, "_id": document.id, "_source": document.to_source()}
            for document in documents
        ]
        success, errors = await asyncio.to_thread(
            helpers.bulk,
            self.es,
            actions,
            raise_on_error=False,
            refresh=refresh,
        )
        report = BulkReport(indexed=success, failed=len(errors), errors=list(errors))
        if errors:
            for error in errors[:5]:
                logger.warning("Bulk indexing error: %s", error)
            logger.error("Bulk indexed %s documents with %s failures", success, len(errors))
        else:
            logger.info("Bulk indexed %s documents", success)
        return report

    async def reindex_all(self, batch_size: Optional[int] = None, dry_run: bool = False) -> ReindexReport:
        """Rebuild every active product page by page.

        Pages are processed sequentially; a failure aborts the run and has to
        be restarted from the first page.
        """

        if not self.health.available:
            raise SearchUnavailable("Elasticsearch is not available")
        size = batch_size or self.batch_size
        report = ReindexReport(dry_run=dry_run)

        if dry_run:
            report.total_indexed = await asyncio.to_thread(self.catalog.count_active_products)
            logger.info("DRY RUN: would reindex %s products", report.total_indexed)
            return report

        logger.info("Starting full reindex with batch size %s", size)
        skip = 0
        while True:
            products = await asyncio.to_thread(self.catalog.list_active_products, skip, size)
            if not products:
                break
            documents = [doc for doc in (self._project(product) for product in products) if doc is not None]
            bulk = await self.bulk_index(documents)
            report.total_indexed += bulk.indexed
            report.failed += bulk.failed
            report.pages += 1
            skip += size
            logger.info("Indexed %s products...", report.total_indexed)

        logger.info("Full reindex completed. Total indexed: %s", report.total_indexed)
        return report

    async def reindex_scope(
        self,
        field: ScopeField,
        value: str,
        batch_size: Optional[int] = None,
        dry_run: bool = False,
    ) -> ReindexReport:
        """Reindex every active product under one category, brand or seller."""

        if field not in SCOPED_ENTITY_TYPES:
            raise ValueError(f"Unsupported reindex scope: {field}")
        if not self.health.available:
            raise SearchUnavailable("Elasticsearch is not available")
        size = batch_size or self.batch_size
        product_ids = await asyncio.to_thread(self.catalog.product_ids_for, field, value)
        report = ReindexReport(dry_run=dry_run, scope=f"{field}:{value}")
        logger.info("Found %s products for %s %s", len(product_ids), field, value)
        if dry_run:
            report.total_indexed = len(product_ids)
            return report

        for chunk in _chunks(product_ids, size):
            products = [await asyncio.to_thread(self.catalog.get_product, pid) for pid in chunk]
            documents = [doc for doc in (self._project(product) for product in products) if doc is not None]
            bulk = await self.bulk_index(documents, refresh="wait_for")
            report.total_indexed += bulk.indexed
            report.failed += bulk.failed
            report.pages += 1
            logger.info("Progress: %s/%s", min(report.pages * size, len(product_ids)), len(product_ids))
        return report

    async def reindex_entity(self, entity_type: str, entity_id: str, dry_run: bool = False) -> ReindexReport:
        """Operator reindex of one entity.

        Unlike :meth:`index_entity` this raises: ``ValueError`` for an unknown
        type, :class:`SearchUnavailable` while degraded and backend errors as
        they come.
        """

        if entity_type in SCOPED_ENTITY_TYPES:
            return await self.reindex_scope(entity_type, entity_id, dry_run=dry_run)
        if entity_type != "product":
            raise ValueError(f"Unsupported entity type: {entity_type}")
        if not self.health.available:
            raise SearchUnavailable("Elasticsearch is not available")

        report = ReindexReport(dry_run=dry_run, scope=f"product:{entity_id}", pages=1)
        if dry_run:
            product = await asyncio.to_thread(self.catalog.get_product, entity_id)
            report.total_indexed = 1 if product is not None and product.is_active else 0
            return report
        document = await self.index_product(entity_id, strict=True)
        report.total_indexed = 1 if document is not None else 0
        return report

    async def count_documents(self) -> int:
        try:
            stats = await asyncio.to_thread(self.es.count, index=self.index)
            return stats.get("count", 0)
        except NotFoundError:
            return 0
