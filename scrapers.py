#!/usr/bin/env python3
"""
Content scraping for queued items.

ScrapeWorker drains the scrape_jobs queue. For each job it resolves the
source's scraper adapter once through ScraperRegistry, downloads the item
page, extracts readable content and stores it as Markdown on the item.
"""

import asyncio
from asyncio import Semaphore, gather, get_running_loop
from typing import Any, Dict, List, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout
from readability import Document

from config import config, get_logger
from errors import ScrapeError
from records import Item, Source
from telemetry import get_tracer, trace_span
from utils import RateLimiter, clean_html_to_markdown, validate_url

logger = get_logger("scrapers")
_tracer = get_tracer("scrapers")


class HtmlScraper:
    """Downloads an item page and turns it into Markdown."""

    name = "raw"

    async def fetch_html(self, url: str, session: ClientSession) -> str:
        try:
            async with session.get(
                url,
                headers={'User-Agent': config.USER_AGENT},
                timeout=ClientTimeout(total=config.HTTP_TIMEOUT),
                max_redirects=config.MAX_REDIRECTS,
            ) as response:
                if response.status != 200:
                    raise ScrapeError(f"HTTP {response.status} fetching {url}")
                return await response.text()
        except asyncio.TimeoutError as e:
            raise ScrapeError(f"Timed out fetching {url}") from e
        except ClientError as e:
            raise ScrapeError(f"Network error fetching {url}: {e}") from e

    async def extract(self, html: str, url: str) -> str:
        return clean_html_to_markdown(html, base_url=url)

    async def scrape(self, item: Item, session: ClientSession) -> str:
        if not validate_url(item.url or ""):
            raise ScrapeError(f"Item {item.id} has no scrapeable URL")
        html = await self.fetch_html(item.url, session)
        content = await self.extract(html, item.url)
        if not content or not content.strip():
            raise ScrapeError(f"No content extracted from {item.url}")
        return content


class ReadabilityScraper(HtmlScraper):
    """Extracts the main article with readability before cleaning."""

    name = "readability"

    def _readable_html(self, html: str) -> str:
        return Document(html).summary()

    async def extract(self, html: str, url: str) -> str:
        # readability parsing is CPU-bound
        loop = get_running_loop()
        try:
            article_html = await loop.run_in_executor(None, self._readable_html, html)
        except (ValueError, RuntimeError) as e:
            raise ScrapeError(f"Readability could not parse {url}: {e}") from e
        return clean_html_to_markdown(article_html, base_url=url)


class ScraperRegistry:
    """Closed set of scraper adapters, looked up by name."""

    def __init__(self, adapters: Optional[Dict[str, HtmlScraper]] = None) -> None:
        self._adapters: Dict[str, HtmlScraper] = dict(adapters) if adapters else {
            ReadabilityScraper.name: ReadabilityScraper(),
            HtmlScraper.name: HtmlScraper(),
        }

    def names(self) -> List[str]:
        return sorted(self._adapters)

    def resolve(self, name: Optional[str]) -> HtmlScraper:
        adapter = self._adapters.get((name or config.DEFAULT_SCRAPER_ADAPTER).strip().lower())
        if adapter is None:
            raise ScrapeError(f"Unknown scraper adapter '{name}' (available: {', '.join(self.names())})")
        return adapter


class ScrapeWorker:
    """Claims queued scrape jobs and runs them with bounded concurrency."""

    def __init__(self, store, registry: Optional[ScraperRegistry] = None,
                 session: Optional[ClientSession] = None, concurrency: Optional[int] = None,
                 requests_per_minute: Optional[int] = None, stale_after: Optional[int] = None) -> None:
        self.store = store
        self.registry = registry or ScraperRegistry()
        self._session = session
        self._owns_session = session is None
        self.concurrency = concurrency or config.SCRAPE_WORKER_CONCURRENCY
        rpm = config.SCRAPE_REQUESTS_PER_MINUTE if requests_per_minute is None else requests_per_minute
        self.rate_limiter = RateLimiter(rpm)
        self._semaphore = Semaphore(self.concurrency)
        self.stale_after = stale_after or config.SCRAPE_STALE_AFTER_SECONDS

    async def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession()
            self._owns_session = True
        return self._session

    async def recover_stale_jobs(self) -> List[int]:
        """Fail jobs stuck in processing longer than ``stale_after`` so their items can be queued again."""
        reclaimed = await self.store.execute('reclaim_stale_scrape_jobs', older_than=self.stale_after)
        if reclaimed:
            logger.warning(f"Recovered {len(reclaimed)} abandoned scrape jobs: {reclaimed}")
        return reclaimed

    async def run_once(self, limit: Optional[int] = None) -> int:
        """Claim up to ``limit`` pending jobs, process them, and return how many ran."""
        jobs = await self.store.execute('claim_scrape_jobs', limit=limit or self.concurrency)
        if not jobs:
            return 0
        await gather(*(self._run_with_semaphore(job) for job in jobs))
        return len(jobs)

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None) -> None:
        stop_event = stop_event or asyncio.Event()
        logger.info(f"Scrape worker started (concurrency={self.concurrency})")
        while not stop_event.is_set():
            try:
                await self.recover_stale_jobs()
                processed = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Scrape worker iteration failed: {e}")
                processed = 0
            if processed == 0:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=config.SCRAPE_POLL_SECONDS)
                except asyncio.TimeoutError:
                    pass
        logger.info("Scrape worker stopped")

    async def _run_with_semaphore(self, job: Dict[str, Any]) -> bool:
        async with self._semaphore:
            return await self.process_job(job)

    @trace_span(
        "scrape_item",
        tracer_name="scrapers",
        attr_from_args=lambda self, job: {
            "scrape.job_id": int(job.get('id') or 0),
            "item.id": int(job.get('item_id') or 0),
            "scrape.reason": job.get('reason') or "",
        },
    )
    async def process_job(self, job: Dict[str, Any]) -> bool:
        """Run one claimed job. Returns True when content was stored."""
        job_id = job['id']
        try:
            content = await self._scrape(job)
        except ScrapeError as e:
            logger.warning(f"Scrape job {job_id} failed: {e}")
            await self._fail(job_id, str(e))
            return False
        except Exception as e:
            logger.error(f"Scrape job {job_id} failed unexpectedly: {e}")
            await self._fail(job_id, f"Unexpected error: {e}")
            return False

        try:
            await self.store.execute('complete_scrape_job', job_id=job_id, content=content)
        except Exception as e:
            logger.error(f"Could not record result of scrape job {job_id}: {e}")
            await self._fail(job_id, f"Could not store scraped content: {e}")
            return False
        logger.info(f"Scraped item {job['item_id']} ({len(content)} chars)")
        return True

    async def _fail(self, job_id: int, error: str) -> None:
        try:
            await self.store.execute('fail_scrape_job', job_id=job_id, error=error)
        except Exception as e:
            # Left in processing; recover_stale_jobs fails it once it goes stale
            logger.error(f"Could not mark scrape job {job_id} failed: {e}")

    async def _scrape(self, job: Dict[str, Any]) -> str:
        source: Optional[Source] = await self.store.execute('get_source', source_id=job['source_id'])
        item: Optional[Item] = await self.store.execute('get_item', item_id=job['item_id'])
        if source is None or item is None:
            raise ScrapeError(f"Item {job['item_id']} or its source no longer exists")
        if source.requires_javascript:
            raise ScrapeError(f"Source {source.slug} requires JavaScript rendering, which is not available")

        adapter = self.registry.resolve(source.scraper_adapter)
        await self.rate_limiter.acquire()
        session = await self._get_session()
        return await adapter.scrape(item, session)

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
