"""Operator reindex tool for the product search index."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Iterable

from elasticsearch import ApiError, TransportError

from catalog_search.catalog import load_catalog
from catalog_search.config import settings
from catalog_search.es_client import get_client
from catalog_search.health import SearchHealth
from catalog_search.indexing import SCOPED_ENTITY_TYPES, IndexManager, SearchUnavailable

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger("cli_reindex")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reindex products into Elasticsearch")
    scope = parser.add_mutually_exclusive_group()
    scope.add_argument("--category", help="Reindex every product in a category")
    scope.add_argument("--brand", help="Reindex every product of a brand")
    scope.add_argument("--seller", help="Reindex every product of a seller")
    scope.add_argument("--entity-type", choices=["product", *SCOPED_ENTITY_TYPES], help="Reindex one entity")
    parser.add_argument("--entity-id", help="Id of the entity given with --entity-type")
    parser.add_argument("--batch-size", type=int, default=settings.bulk_size, help="Documents per bulk request")
    parser.add_argument("--dry-run", action="store_true", help="Count what would be indexed without writing")
    parser.add_argument("--force", action="store_true", help="Required for a full reindex")
    parser.add_argument("--catalog", default=settings.catalog_path, help="Catalog JSON export to read from")
    return parser


async def run(args: argparse.Namespace, manager: IndexManager) -> dict:
    if not await manager.start():
        raise SearchUnavailable(manager.health.state.reason or "Elasticsearch is not available")

    if args.entity_type:
        report = await manager.reindex_entity(args.entity_type, args.entity_id, dry_run=args.dry_run)
        return report.as_dict()

    for field in SCOPED_ENTITY_TYPES:
        value = getattr(args, field)
        if value:
            report = await manager.reindex_scope(field, value, batch_size=args.batch_size, dry_run=args.dry_run)
            return report.as_dict()

    report = await manager.reindex_all(batch_size=args.batch_size, dry_run=args.dry_run)
    return report.as_dict()


def main(argv: Iterable[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(level=logging.getLevelName(settings.log_level.upper()), format=LOG_FORMAT)

    if args.entity_type and not args.entity_id:
        parser.error("--entity-id is required with --entity-type")
    if args.entity_id and not args.entity_type:
        parser.error("--entity-type is required with --entity-id")
    full = not (args.entity_type or args.category or args.brand or args.seller)
    if full and not (args.force or args.dry_run):
        parser.error("full reindex requires --force (or --dry-run)")
    if args.batch_size < 1:
        parser.error("--batch-size must be positive")

    manager = IndexManager(get_client(), load_catalog(args.catalog), SearchHealth(), batch_size=args.batch_size)
    try:
        result = asyncio.run(run(args, manager))
    except SearchUnavailable as exc:
        logger.error("Search backend unavailable: %s", exc)
        return 2
    except (ApiError, TransportError) as exc:
        logger.error("Reindex failed: %s", exc)
        return 1

    print(json.dumps(result, indent=2))
    return 0 if result.get("success", True) else 1


if __name__ == "__main__":
    sys.exit(main())
