"""Terminal client that reuses the in-process search logic."""
from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Iterable, Optional

from catalog_search.cache import InMemoryCache
from catalog_search.es_client import get_client
from catalog_search.health import SearchHealth
from catalog_search.models import SearchQuery, SearchResult, SortOption
from catalog_search.search_service import SearchService

GREEN = "\033[92m"
RED = "\033[91m"
RESET = "\033[0m"


def make_service() -> SearchService:
    es = get_client()
    health = SearchHealth(available=bool(es.ping()))
    return SearchService(es, health, InMemoryCache())


async def perform_query(service: SearchService, text: str, **filters) -> SearchResult:
    return await service.search(SearchQuery(q=text, **filters))


def pretty_print_response(query: str, result: SearchResult) -> None:
    took = float(result.took_ms)
    color = GREEN if took < 200 else RED
    status = " (degraded)" if result.degraded else ""
    print(f"Query: {query} | total: {result.total}{status} | took: {color}{took:.1f} ms{RESET}")
    for idx, hit in enumerate(result.results, start=1):
        score_repr = f"{hit.score:.2f}" if isinstance(hit.score, (int, float)) else "-"
        pricing = hit.document.get("pricing", {})
        brand = (hit.document.get("brand") or {}).get("name", "-")
        print(f"  {idx:02d}. score={score_repr} | {brand} | {pricing.get('minPrice')} | {hit.document.get('name')}")
    if result.suggestions:
        print(f"  did you mean: {', '.join(result.suggestions)}")


def run_one(service: SearchService, text: str, filters: dict) -> None:
    result = asyncio.run(perform_query(service, text, **filters))
    pretty_print_response(text, result)


def interactive_shell(service: SearchService, filters: dict) -> None:
    print("Interactive product search. Type 'exit' to quit.")
    while True:
        try:
            text = input("> ").strip()
        except (EOFError, KeyboardInterrupt):
            print()
            return
        if not text:
            continue
        if text.lower() in {"exit", "quit"}:
            return
        run_one(service, text, filters)


def batch_mode(service: SearchService, file_path: Path, filters: dict) -> None:
    with file_path.open("r", encoding="utf-8") as fh:
        for line in fh:
            text = line.strip()
            if not text:
                continue
            run_one(service, text, filters)


def main(argv: Iterable[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="CLI client for the catalog search service")
    parser.add_argument("query", nargs="?", help="Query string. If omitted, starts REPL mode.")
    parser.add_argument("--batch", type=Path, help="File with queries to execute line by line")
    parser.add_argument("--category", help="Restrict to a category id (descendants included)")
    parser.add_argument("--sort", choices=[option.value for option in SortOption], default=SortOption.RELEVANCE.value)
    parser.add_argument("--limit", type=int, default=None)
    args = parser.parse_args(list(argv) if argv is not None else None)

    filters: dict = {"category": args.category, "sort_by": args.sort}
    limit: Optional[int] = args.limit
    if limit is not None:
        filters["limit"] = limit

    service = make_service()
    if args.batch:
        batch_mode(service, args.batch, filters)
        return 0
    if args.query:
        run_one(service, args.query, filters)
        return 0
    interactive_shell(service, filters)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
