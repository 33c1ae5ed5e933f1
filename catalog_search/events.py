"""In-process domain events and the handlers that keep the index in sync."""
from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from .indexing import IndexManager

logger = logging.getLogger(__name__)

Handler = Callable[[Mapping[str, Any]], Awaitable[None]]

PRODUCT_REINDEX_EVENTS = (
    "product.created",
    "product.updated",
    "product.published",
    "product.approved",
    "product.status.changed",
)
PRODUCT_REMOVE_EVENTS = (
    "product.deleted",
    "product.unpublished",
    "product.archived",
)
OWNING_PRODUCT_EVENTS = (
    "variant.created",
    "variant.updated",
    "variant.deleted",
    "pricing.updated",
    "inventory.stock_updated",
)
FAN_OUT_EVENTS = {
    "category.updated": "category",
    "brand.updated": "brand",
    "seller.updated": "seller",
}


class EventBus:
    """Minimal async pub/sub. Handlers run in subscription order."""

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, name: str, handler: Handler) -> None:
        self._handlers[name].append(handler)

    def handlers(self, name: str) -> List[Handler]:
        return list(self._handlers.get(name, []))

    async def publish(self, name: str, payload: Optional[Mapping[str, Any]] = None) -> int:
        """Run every handler for ``name``; returns how many failed."""

        failures = 0
        for handler in self.handlers(name):
            try:
                await handler(payload or {})
            except Exception:
                failures += 1
                logger.exception("Handler %s failed for event %s", getattr(handler, "__name__", handler), name)
        return failures


def _first(payload: Mapping[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = payload.get(key)
        if value:
            return str(value)
    return None


class SearchIndexSync:
    """Maps catalog lifecycle events onto index writes.

    Every event triggers its own write; bursts for one product are not
    merged.
    """

    def __init__(self, index_manager: IndexManager) -> None:
        self.index_manager = index_manager

    def register(self, bus: EventBus) -> None:
        for name in PRODUCT_REINDEX_EVENTS:
            bus.subscribe(name, self.on_product_changed)
        for name in PRODUCT_REMOVE_EVENTS:
            bus.subscribe(name, self.on_product_removed)
        for name in OWNING_PRODUCT_EVENTS:
            bus.subscribe(name, self.on_product_changed)
        for name, entity_type in FAN_OUT_EVENTS.items():
            bus.subscribe(name, self._fan_out_handler(entity_type))
        logger.info("Search index sync registered for %s events", self.event_count())

    @staticmethod
    def event_count() -> int:
        return (
            len(PRODUCT_REINDEX_EVENTS)
            + len(PRODUCT_REMOVE_EVENTS)
            + len(OWNING_PRODUCT_EVENTS)
            + len(FAN_OUT_EVENTS)
        )

    async def on_product_changed(self, payload: Mapping[str, Any]) -> None:
        product_id = _first(payload, "productId", "product_id")
        if product_id is None:
            logger.warning("Event payload without productId: %s", dict(payload))
            return
        await self.index_manager.index_entity("product", product_id)

    async def on_product_removed(self, payload: Mapping[str, Any]) -> None:
        product_id = _first(payload, "productId", "product_id")
        if product_id is None:
            logger.warning("Event payload without productId: %s", dict(payload))
            return
        await self.index_manager.remove_product(product_id)

    def _fan_out_handler(self, entity_type: str) -> Handler:
        async def handler(payload: Mapping[str, Any]) -> None:
            entity_id = _first(payload, f"{entity_type}Id", f"{entity_type}_id", "id")
            if entity_id is None:
                logger.warning("%s event payload without id: %s", entity_type, dict(payload))
                return
            await self.index_manager.index_entity(entity_type, entity_id)

        handler.__name__ = f"on_{entity_type}_updated"
        return handler
