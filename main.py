#!/usr/bin/env python3
"""
Feed Monitor Orchestrator

Wires the store, fetcher, parser, health tracking, follow-up dispatch and
scrape worker together and exposes them as command-line operations:

- run: loop the scheduler and the scrape worker until interrupted
- tick: run one scheduling tick and wait for its fetches
- status: print health and schedule for every source
- reset <slug>: clear a source's failures and make it due now
- fetch <slug>: fetch one source immediately
- scrape <slug>: queue manual scrapes for a source's unscraped items
"""

import asyncio
import signal
import sys
import argparse
from time import time
from typing import Optional

from config import config, get_logger
from dispatcher import FollowUpDispatcher, ScrapeEnqueuer
from errors import FeedMonitorError, SourceNotFoundError
from fetcher import FeedParser, FetchExecutor, HttpFetcher
from models import DatabaseQueue
from records import Source
from scheduler import FetchScheduler
from scrapers import ScrapeWorker
from telemetry import init_telemetry, get_tracer, trace_span
from utils import format_duration, format_timestamp

# Module-specific logger
logger = get_logger("orchestrator")
_tracer = get_tracer("orchestrator")


class FeedMonitorOrchestrator:
    """Owns the long-lived collaborators for one process."""

    def __init__(self, database_path: Optional[str] = None) -> None:
        self.database_path = database_path or config.DATABASE_PATH
        self.db: Optional[DatabaseQueue] = None
        self.fetcher: Optional[HttpFetcher] = None
        self.parser: Optional[FeedParser] = None
        self.scheduler: Optional[FetchScheduler] = None
        self.worker: Optional[ScrapeWorker] = None

    async def start(self) -> None:
        logger.debug(f"Configuration: {config.get_config_summary()}")
        self.db = DatabaseQueue(self.database_path)
        await self.db.start()
        self.fetcher = HttpFetcher()
        self.parser = FeedParser()
        executor = FetchExecutor(self.fetcher, self.parser, self.db)
        dispatcher = FollowUpDispatcher(ScrapeEnqueuer(self.db))
        self.scheduler = FetchScheduler(self.db, executor, dispatcher)
        self.worker = ScrapeWorker(self.db)
        await self.scheduler.sync_sources(config.SOURCES)

    async def close(self) -> None:
        if self.worker:
            await self.worker.close()
        if self.fetcher:
            await self.fetcher.close()
        if self.db:
            await self.db.stop()

    async def source_by_slug(self, slug: str) -> Source:
        source = await self.db.execute('get_source_by_slug', slug=slug)
        if source is None:
            raise SourceNotFoundError(f"Unknown source '{slug}'")
        return source

    @trace_span("orchestrator.run", tracer_name="orchestrator")
    async def run(self) -> None:
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except (NotImplementedError, RuntimeError):
                # Not available on every platform; KeyboardInterrupt still stops the loop
                pass

        logger.info(f"🚀 Monitoring {len(config.SOURCES)} configured sources")
        await asyncio.gather(
            self.scheduler.run_forever(stop_event),
            self.worker.run_forever(stop_event),
        )

    async def tick(self) -> int:
        results = await self.scheduler.run_once()
        for result in results:
            if result is not None:
                logger.info(f"📡 {result.to_dict()}")
        return len(results)

    async def print_status(self) -> None:
        rows = await self.scheduler.status()
        now = int(time())
        print("\n📊 Feed Monitor Status")
        if not rows:
            print("   No sources configured")
            return
        for row in rows:
            marker = "⏸" if row['health_status'] == 'paused' else ("✅" if row['health_status'] == 'healthy' else "⚠️")
            print(f"{marker} {row['slug']}: {row['health_status']} (failures={row['consecutive_failure_count']})")
            next_fetch_at = row['next_fetch_at']
            when = " (due)" if row['due'] else ""
            if next_fetch_at and not row['due'] and next_fetch_at > now:
                when = f" (in {format_duration(next_fetch_at - now)})"
            print(f"   last fetched: {format_timestamp(row['last_fetched_at'])}, "
                  f"next fetch: {format_timestamp(next_fetch_at)}{when}")
            print(f"   items: {row['items']}, scrapes in flight: {row['scrapes_in_flight']}")
            if row['last_error_message']:
                print(f"   last error: {row['last_error_message']}")

    async def reset(self, slug: str) -> None:
        source = await self.source_by_slug(slug)
        await self.scheduler.health_reset(source.id)
        print(f"🔄 {slug} reset to healthy and scheduled for immediate fetch")

    async def fetch(self, slug: str) -> bool:
        source = await self.source_by_slug(slug)
        result = await self.scheduler.fetch_now(source.id)
        print(f"📡 {slug}: {result.status}"
              f"{' - ' + result.error_message if result.error_message else ''} "
              f"({result.item_processing.created_count} new items)")
        return result.succeeded

    async def scrape(self, slug: str, limit: int) -> None:
        source = await self.source_by_slug(slug)
        await self.worker.recover_stale_jobs()
        report = await self.scheduler.bulk_scrape(source.id, limit=limit)
        print(f"🧹 {slug}: queued {len(report.enqueued)} scrapes, deferred {len(report.deferred)}, "
              f"{len(report.already_enqueued)} already queued, {len(report.refused)} refused")
        logger.debug(f"Bulk scrape report for {slug}: {report.to_dict()}")
        await self.worker.run_once(limit=len(report.enqueued) or None)


async def run_command(args: argparse.Namespace) -> int:
    orchestrator = FeedMonitorOrchestrator(args.database)
    await orchestrator.start()
    try:
        if args.mode == 'run':
            await orchestrator.run()
        elif args.mode == 'tick':
            await orchestrator.tick()
        elif args.mode == 'status':
            await orchestrator.print_status()
        elif args.mode == 'reset':
            await orchestrator.reset(args.slug)
        elif args.mode == 'fetch':
            return 0 if await orchestrator.fetch(args.slug) else 1
        elif args.mode == 'scrape':
            await orchestrator.scrape(args.slug, args.limit)
        return 0
    finally:
        await orchestrator.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Feed Monitor')
    parser.add_argument('mode', choices=['run', 'tick', 'status', 'reset', 'fetch', 'scrape'],
                        help='Operation mode')
    parser.add_argument('slug', nargs='?', help='Source slug (reset, fetch and scrape)')
    parser.add_argument('--limit', type=int, default=100,
                        help='Maximum items to queue for scrape mode')
    parser.add_argument('--database', type=str,
                        help='Database path (defaults to DATABASE_PATH)')
    return parser


def main():
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args()
    if args.mode in ('reset', 'fetch', 'scrape') and not args.slug:
        parser.error(f"{args.mode} requires a source slug")

    init_telemetry("feed-monitor")
    try:
        sys.exit(asyncio.run(run_command(args)))
    except KeyboardInterrupt:
        logger.info("👋 Feed Monitor shutting down")
    except FeedMonitorError as e:
        logger.error(f"❌ {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
