"""Operator command line for SiteFoundry.

Usage examples::

    sitefoundry ingest acme https://acme.example --max-pages 50
    sitefoundry retrieve acme "How do refunds work?"
    sitefoundry sweep
    sitefoundry maintain
"""

import argparse
import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from typing import List, Optional

from config.database import DatabaseConfig, initialize_database
from config.settings import IngestionSettings
from indexer.embeddings import EmbeddingClient
from indexer.models import RunStatus
from observability.logging import setup_logging
from server.jobs import IngestionConflictError, IngestionManager
from server.maintenance import MaintenanceScheduler
from server.retrieval import Retriever

logger = logging.getLogger(__name__)


@asynccontextmanager
async def open_services(settings: IngestionSettings, db_config: Optional[DatabaseConfig] = None):
    """Yield ``(store, embedder, manager)`` and close them on exit."""
    factory = await initialize_database(db_config)
    embedder = EmbeddingClient.from_settings(settings)
    manager = IngestionManager(factory.adapter, embedder, settings)
    try:
        yield factory.adapter, embedder, manager
    finally:
        await manager.close()
        await factory.close()


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def cmd_ingest(args, settings: IngestionSettings) -> int:
    async with open_services(settings) as (_store, _embedder, manager):
        try:
            run_id = await manager.start_job(
                args.tenant, args.website_url, args.max_pages,
                seed_urls=args.seed, is_resync=args.resync
            )
        except IngestionConflictError as e:
            logger.error(str(e))
            return 2

        # Ctrl-C cancels this task; closing the manager then cancels the run
        print(f"Started ingestion run {run_id}")
        while True:
            await asyncio.sleep(args.poll_interval)
            run = await manager.get_status(run_id)
            print(f"  {run.status.value}: {run.pages_crawled}/{run.pages_found} pages, "
                  f"{run.chunks_written} chunks")
            if run.status is not RunStatus.RUNNING:
                break

        _print_json(run.to_dict())
        return 0 if run.status is RunStatus.DONE else 1


async def cmd_status(args, settings: IngestionSettings) -> int:
    async with open_services(settings) as (store, _embedder, _manager):
        run = await store.get_run(args.run_id)
        if run is None:
            logger.error(f"Run {args.run_id} not found")
            return 1
        _print_json(run.to_dict())
        return 0


async def cmd_cancel(args, settings: IngestionSettings) -> int:
    async with open_services(settings) as (_store, _embedder, manager):
        if await manager.cancel(args.run_id):
            print(f"Cancellation requested for {args.run_id}")
            return 0
        print(f"Run {args.run_id} is not running")
        return 1


async def cmd_pages(args, settings: IngestionSettings) -> int:
    async with open_services(settings) as (store, _embedder, _manager):
        for page in await store.list_pages(args.tenant):
            chunks = await store.count_chunks(args.tenant, page.id)
            print(f"{page.status.value:6} {page.http_status or '-':>4} {chunks:4} chunks  {page.url}")
        return 0


async def cmd_retrieve(args, settings: IngestionSettings) -> int:
    async with open_services(settings) as (store, embedder, _manager):
        retriever = Retriever(embedder, store)
        results = await retriever.retrieve(args.tenant, args.query, args.top_k)
        _print_json([result.to_dict() for result in results])
        return 0


async def cmd_sweep(args, settings: IngestionSettings) -> int:
    async with open_services(settings) as (_store, _embedder, manager):
        count = await manager.mark_stuck_runs_as_failed()
        print(f"Marked {count} stale run(s) as failed")
        return 0


async def cmd_maintain(args, settings: IngestionSettings) -> int:
    async with open_services(settings) as (_store, _embedder, manager):
        scheduler = MaintenanceScheduler(manager, settings.maintenance_interval_minutes)
        scheduler.start()
        await scheduler.run_stale_sweep()
        try:
            await asyncio.Event().wait()
        finally:
            scheduler.shutdown()
    return 0


COMMANDS = {
    "ingest": cmd_ingest,
    "status": cmd_status,
    "cancel": cmd_cancel,
    "pages": cmd_pages,
    "retrieve": cmd_retrieve,
    "sweep": cmd_sweep,
    "maintain": cmd_maintain,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sitefoundry", description="SiteFoundry ingestion pipeline")
    parser.add_argument("--log-level", default="INFO", help="Log level")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Crawl a website into a tenant's knowledge base")
    ingest.add_argument("tenant", help="Tenant id")
    ingest.add_argument("website_url", help="Website root URL")
    ingest.add_argument("--max-pages", type=int, default=50, help="Requested page cap")
    ingest.add_argument("--seed", action="append", default=[], help="Extra seed URL (repeatable)")
    ingest.add_argument("--resync", action="store_true", help="Clear existing pages first")
    ingest.add_argument("--poll-interval", type=float, default=2.0, help="Seconds between status polls")

    status = sub.add_parser("status", help="Show a persisted run")
    status.add_argument("run_id")

    cancel = sub.add_parser("cancel", help="Request cancellation of a running run")
    cancel.add_argument("run_id")

    pages = sub.add_parser("pages", help="List a tenant's stored pages")
    pages.add_argument("tenant")

    retrieve = sub.add_parser("retrieve", help="Query a tenant's knowledge base")
    retrieve.add_argument("tenant")
    retrieve.add_argument("query")
    retrieve.add_argument("--top-k", type=int, default=8)

    sub.add_parser("sweep", help="Fail running runs with a stale heartbeat")
    sub.add_parser("maintain", help="Run the maintenance scheduler until interrupted")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level=args.log_level, use_json=args.json_logs)
    settings = IngestionSettings.from_env()
    try:
        return asyncio.run(COMMANDS[args.command](args, settings))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
