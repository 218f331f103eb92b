#!/usr/bin/env python3
"""
Follow-up scrape dispatch.

After a fetch creates new items, FollowUpDispatcher decides which of them are
queued for scraping and hands them to ScrapeEnqueuer. Enqueueing is
idempotent: an item that already has a pending or running scrape job is
reported as ``already_enqueued`` and no second job is created.
"""

from math import ceil
from time import time
from typing import Callable, Dict, List, Optional, Tuple

from config import config, get_logger
from errors import EnqueueError
from records import FetchResult, Item, Source, FETCH_FETCHED
from telemetry import get_tracer, trace_span

logger = get_logger("dispatcher")
_tracer = get_tracer("dispatcher")

REASON_AUTO = "auto"
REASON_MANUAL = "manual"

# Enqueue outcomes
ENQUEUED = "enqueued"
ALREADY_ENQUEUED = "already_enqueued"
DEFERRED = "deferred"
RATE_LIMITED = "rate_limited"
SCRAPING_DISABLED = "scraping_disabled"
AUTO_SCRAPE_DISABLED = "auto_scrape_disabled"


class EnqueueResult:
    """Outcome of one enqueue request."""

    def __init__(self, status: str, message: Optional[str] = None, item: Optional[Item] = None,
                 job_id: Optional[int] = None) -> None:
        self.status = status
        self.message = message
        self.item = item
        self.job_id = job_id

    @property
    def enqueued(self) -> bool:
        return self.status == ENQUEUED

    @property
    def already_enqueued(self) -> bool:
        return self.status == ALREADY_ENQUEUED

    @property
    def deferred(self) -> bool:
        return self.status == DEFERRED

    def __repr__(self) -> str:
        item_id = self.item.id if self.item else None
        return f"EnqueueResult(status={self.status}, item_id={item_id})"


class ScrapeEnqueuer:
    """Queues scrape jobs in the store, one in-flight job per item.

    A source with a minimum scrape interval (its own, or
    SCRAPE_MIN_INTERVAL_SECONDS) gets its job queued with a ``not_before``
    time when the previous scrape started too recently; the result is then
    ``deferred`` instead of ``enqueued``.
    """

    def __init__(self, store, max_in_flight_per_source: Optional[int] = None,
                 min_scrape_interval: Optional[int] = None,
                 clock: Optional[Callable[[], float]] = None) -> None:
        self.store = store
        self.max_in_flight_per_source = max_in_flight_per_source or config.SCRAPE_MAX_IN_FLIGHT_PER_SOURCE
        self.min_scrape_interval = (config.SCRAPE_MIN_INTERVAL_SECONDS
                                    if min_scrape_interval is None else min_scrape_interval)
        self.clock = clock or time

    def scrape_interval_for(self, source: Source) -> int:
        if source.min_scrape_interval_seconds is not None:
            return int(source.min_scrape_interval_seconds)
        return int(self.min_scrape_interval or 0)

    async def _deferral(self, source: Source, now: int) -> Tuple[int, int]:
        """Return (seconds to wait, interval) for the source's next scrape."""
        interval = self.scrape_interval_for(source)
        if interval <= 0:
            return 0, interval
        last_started = await self.store.execute('last_scrape_started_at', source_id=source.id)
        if last_started is None:
            return 0, interval
        remaining = interval - (now - last_started)
        return (ceil(remaining) if remaining > 0 else 0), interval

    async def enqueue(self, item: Item, source: Source, reason: str = REASON_AUTO) -> EnqueueResult:
        """Queue ``item`` for scraping.

        Refusals (scraping disabled, auto scrape disabled, rate limited),
        ``already_enqueued`` and ``deferred`` come back as results. Store
        failures raise EnqueueError.
        """
        if not source.scraping_enabled:
            return EnqueueResult(SCRAPING_DISABLED, "Scraping is disabled for this source", item)
        if reason == REASON_AUTO and not source.auto_scrape:
            return EnqueueResult(AUTO_SCRAPE_DISABLED, "Automatic scraping is disabled for this source", item)

        now = int(self.clock())
        try:
            if await self.store.execute('has_in_flight_scrape', item_id=item.id):
                return EnqueueResult(ALREADY_ENQUEUED, "Scrape already in progress", item)

            in_flight = await self.store.execute('count_in_flight_scrapes', source_id=source.id)
            if in_flight >= self.max_in_flight_per_source:
                return EnqueueResult(
                    RATE_LIMITED,
                    f"{in_flight} scrapes already in flight for this source (limit {self.max_in_flight_per_source})",
                    item,
                )

            wait_seconds, interval = await self._deferral(source, now)
            job_id = await self.store.execute(
                'enqueue_scrape_job', item_id=item.id, source_id=source.id, reason=reason, now=now,
                not_before=now + wait_seconds if wait_seconds else None,
            )
        except Exception as e:
            raise EnqueueError(f"Could not enqueue scrape for item {item.id}: {e}", item_id=item.id) from e

        if job_id is None:
            # Lost a race with another enqueue for the same item
            return EnqueueResult(ALREADY_ENQUEUED, "Scrape already in progress", item)

        if wait_seconds:
            logger.debug(f"Deferred scrape job {job_id} for item {item.id} by {wait_seconds}s ({reason})")
            return EnqueueResult(
                DEFERRED,
                f"Source was scraped less than {interval}s ago; scrape deferred by {wait_seconds}s",
                item,
                job_id=job_id,
            )

        logger.debug(f"Enqueued scrape job {job_id} for item {item.id} ({reason})")
        return EnqueueResult(ENQUEUED, "Scrape has been enqueued", item, job_id=job_id)


class DispatchReport:
    """What happened to each created item during one dispatch."""

    def __init__(self) -> None:
        self.enqueued: List[int] = []
        self.already_enqueued: List[int] = []
        self.deferred: List[int] = []
        self.already_scraped: List[int] = []
        self.refused: Dict[int, str] = {}
        self.failures: List[EnqueueError] = []

    @property
    def enqueued_count(self) -> int:
        return len(self.enqueued)

    @property
    def jobs_created(self) -> int:
        """Enqueued plus deferred: every job this dispatch added to the queue."""
        return len(self.enqueued) + len(self.deferred)

    def record(self, item_id: int, outcome: EnqueueResult) -> None:
        if outcome.status == ENQUEUED:
            self.enqueued.append(item_id)
        elif outcome.status == DEFERRED:
            self.deferred.append(item_id)
        elif outcome.status == ALREADY_ENQUEUED:
            self.already_enqueued.append(item_id)
        else:
            self.refused[item_id] = outcome.status

    def to_dict(self) -> Dict[str, object]:
        return {
            'enqueued': list(self.enqueued),
            'already_enqueued': list(self.already_enqueued),
            'deferred': list(self.deferred),
            'already_scraped': list(self.already_scraped),
            'refused': dict(self.refused),
            'failures': [str(failure) for failure in self.failures],
        }

    def __repr__(self) -> str:
        return (f"DispatchReport(enqueued={len(self.enqueued)}, already_enqueued={len(self.already_enqueued)}, "
                f"deferred={len(self.deferred)}, failures={len(self.failures)})")


class FollowUpDispatcher:
    """Queues automatic scrapes for items created by a successful fetch."""

    def __init__(self, enqueuer) -> None:
        self.enqueuer = enqueuer

    def should_dispatch(self, source: Source, result: FetchResult) -> bool:
        return (
            result.status == FETCH_FETCHED
            and source.scraping_enabled
            and source.auto_scrape
            and result.item_processing.created_count > 0
        )

    async def dispatch(self, source: Source, result: FetchResult) -> int:
        """Enqueue follow-up scrapes and return how many jobs were created."""
        report = await self.dispatch_with_report(source, result)
        return report.jobs_created

    @trace_span(
        "dispatch_follow_ups",
        tracer_name="dispatcher",
        attr_from_args=lambda self, source, result: {
            "source.id": int(source.id) if source.id else 0,
            "fetch.status": result.status,
            "items.created": result.item_processing.created_count,
        },
    )
    async def dispatch_with_report(self, source: Source, result: FetchResult) -> DispatchReport:
        report = DispatchReport()
        if not self.should_dispatch(source, result):
            return report

        for item in result.item_processing.created_items:
            if item.scraped_at is not None:
                report.already_scraped.append(item.id)
                continue
            try:
                outcome = await self.enqueuer.enqueue(item, source, REASON_AUTO)
            except EnqueueError as e:
                logger.error(f"Follow-up scrape failed for item {item.id} of {source.slug}: {e}")
                report.failures.append(e)
                continue
            except Exception as e:
                logger.error(f"Follow-up scrape failed for item {item.id} of {source.slug}: {e}")
                report.failures.append(EnqueueError(str(e), item_id=item.id))
                continue

            report.record(item.id, outcome)

        if report.jobs_created or report.failures:
            logger.info(
                f"Source {source.slug}: queued {len(report.enqueued)} scrapes, deferred {len(report.deferred)} "
                f"({len(report.already_enqueued)} already queued, {len(report.failures)} failed)"
            )
        return report
