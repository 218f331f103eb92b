#!/usr/bin/env python3
"""
Fetch Scheduler

Process-wide loop deciding which sources are fetched and when. On each tick it:

- selects active, non-paused sources whose next_fetch_at is due (never-scheduled first)
- launches at most as many fetches as there are free concurrency slots
- skips sources whose per-source lease is already held

Each launched attempt runs FetchExecutor under a timeout, feeds the result to
HealthTracker and the interval adapter, persists health and the next fetch
time, prunes old items and finally dispatches follow-up scrapes. The
source's lease is released only after all of that, including on timeouts
and unexpected errors.

Manual operations (health_reset, fetch_now, bulk_scrape) take the same lease
and raise SourceBusyError when a fetch is already running for the source.
"""

import asyncio
from contextlib import contextmanager
from time import time
from typing import Any, Callable, Dict, Iterator, List, Optional, Set

from config import config, get_logger
from dispatcher import DispatchReport, REASON_MANUAL
from errors import EnqueueError, InvalidStateError, SourceBusyError, SourceNotFoundError
from health import HealthTracker
from intervals import FetchIntervalAdapter
from records import FetchResult, Source, FETCH_FETCHED, FETCH_TIMEOUT, FETCH_TRANSPORT_ERROR
from telemetry import get_tracer, trace_span
from utils import format_timestamp

# Module-specific logger
logger = get_logger("scheduler")
_tracer = get_tracer("scheduler")


class SourceLeases:
    """Per-source exclusivity: at most one fetch or manual operation per source id."""

    def __init__(self) -> None:
        self._held: Set[int] = set()

    def try_acquire(self, source_id: int) -> bool:
        if source_id in self._held:
            return False
        self._held.add(source_id)
        return True

    def release(self, source_id: int) -> None:
        self._held.discard(source_id)

    def is_held(self, source_id: int) -> bool:
        return source_id in self._held

    def __len__(self) -> int:
        return len(self._held)

    @contextmanager
    def hold(self, source_id: int) -> Iterator[None]:
        """Hold the lease for the duration of a block, or raise SourceBusyError."""
        if not self.try_acquire(source_id):
            raise SourceBusyError(f"Source {source_id} is busy")
        try:
            yield
        finally:
            self.release(source_id)


class FetchScheduler:
    """Selects due sources and runs their fetch cycle with bounded concurrency."""

    def __init__(
        self,
        store,
        executor,
        dispatcher,
        health_tracker: Optional[HealthTracker] = None,
        interval_adapter: Optional[FetchIntervalAdapter] = None,
        clock: Optional[Callable[[], float]] = None,
        max_concurrent: Optional[int] = None,
        fetch_timeout: Optional[float] = None,
        batch_size: Optional[int] = None,
    ) -> None:
        self.store = store
        self.executor = executor
        self.dispatcher = dispatcher
        self.health_tracker = health_tracker or HealthTracker()
        self.interval_adapter = interval_adapter or FetchIntervalAdapter()
        self.clock = clock or time
        self.max_concurrent = max_concurrent or config.SCHEDULER_MAX_CONCURRENT_FETCHES
        self.fetch_timeout = fetch_timeout or config.FETCH_TIMEOUT_SECONDS
        self.batch_size = batch_size or config.SCHEDULER_BATCH_SIZE
        self.leases = SourceLeases()
        self._slots = asyncio.Semaphore(self.max_concurrent)
        self._tasks: Dict[int, asyncio.Task] = {}

    def _now(self) -> int:
        return int(self.clock())

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # Configuration sync
    async def sync_sources(self, sources: Dict[str, Dict[str, Any]]) -> List[int]:
        """Upsert configured sources. Health and schedule state is left untouched."""
        source_ids = []
        for slug, source_cfg in sources.items():
            try:
                source_ids.append(await self.store.execute('upsert_source', source=source_cfg, now=self._now()))
            except Exception as e:
                logger.error(f"Could not sync source {slug}: {e}")
        logger.info(f"Synced {len(source_ids)} sources from configuration")
        return source_ids

    # Scheduling
    @trace_span("scheduler.tick", tracer_name="scheduler")
    async def tick(self) -> List[asyncio.Task]:
        """Launch fetches for due sources without waiting for them to finish."""
        free_slots = self.max_concurrent - len(self._tasks)
        if free_slots <= 0:
            logger.debug("All fetch slots busy; skipping tick")
            return []

        # Over-select by the number of held leases so busy sources do not starve the tick
        limit = min(self.batch_size, free_slots + len(self.leases))
        due = await self.store.execute('list_due_sources', now=self._now(), limit=limit)

        launched: List[asyncio.Task] = []
        for source in due:
            if len(launched) >= free_slots:
                break
            if not self.leases.try_acquire(source.id):
                logger.debug(f"Source {source.slug} is busy; skipping")
                continue
            task = asyncio.create_task(self._process_source(source))
            self._tasks[source.id] = task
            task.add_done_callback(lambda _t, source_id=source.id: self._tasks.pop(source_id, None))
            launched.append(task)

        if launched:
            logger.info(f"Tick: launched {len(launched)} fetches ({len(due)} due, {free_slots} free slots)")
        return launched

    async def run_once(self) -> List[Optional[FetchResult]]:
        """Run one tick and wait for the fetches it launched."""
        tasks = await self.tick()
        if not tasks:
            return []
        return list(await asyncio.gather(*tasks))

    async def wait_for_idle(self) -> None:
        """Wait for every in-flight fetch to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None,
                          tick_seconds: Optional[float] = None) -> None:
        stop_event = stop_event or asyncio.Event()
        tick_seconds = tick_seconds or config.SCHEDULER_TICK_SECONDS
        logger.info(f"Scheduler started (tick={tick_seconds}s, max_concurrent={self.max_concurrent})")
        while not stop_event.is_set():
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=tick_seconds)
            except asyncio.TimeoutError:
                pass
        await self.wait_for_idle()
        logger.info("Scheduler stopped")

    # Fetch cycle
    @trace_span(
        "scheduler.process_source",
        tracer_name="scheduler",
        attr_from_args=lambda self, source: {
            "source.id": int(source.id) if source.id else 0,
            "source.slug": source.slug or "",
        },
    )
    async def _process_source(self, source: Source) -> Optional[FetchResult]:
        """Scheduled attempt for a source whose lease is already held."""
        try:
            return await self._run_attempt(source)
        except InvalidStateError as e:
            # Paused or deactivated between selection and fetch
            logger.warning(f"Skipping {source.slug}: {e}")
            return None
        except Exception as e:
            logger.error(f"Fetch cycle for {source.slug} failed: {e}")
            return None
        finally:
            self.leases.release(source.id)

    async def _run_attempt(self, source: Source) -> FetchResult:
        async with self._slots:
            try:
                result = await asyncio.wait_for(self.executor.run(source), timeout=self.fetch_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Fetch of {source.slug} timed out after {self.fetch_timeout}s")
                result = FetchResult.failure(FETCH_TIMEOUT, f"Fetch timed out after {self.fetch_timeout}s")
            except InvalidStateError:
                raise
            except Exception as e:
                logger.error(f"Unexpected error fetching {source.slug}: {e}")
                result = FetchResult.failure(FETCH_TRANSPORT_ERROR, f"Unexpected error: {e}")

        await self._persist_outcome(source, result)
        await self._after_fetch(source, result)
        return result

    async def _persist_outcome(self, source: Source, result: FetchResult) -> None:
        """Write health fields and the next fetch time for a completed attempt."""
        now = self._now()
        health = self.health_tracker.observe(source, result)
        fields = dict(health)
        fields['last_fetched_at'] = now
        fields['last_http_status'] = result.http_status
        await self.store.execute('update_source_health', source_id=source.id, fields=fields, now=now)
        source.apply(fields)

        # Paused sources still record a next_fetch_at; selection excludes them until reset
        interval = self.interval_adapter.next_interval(source)
        next_fetch_at = now + int(interval.total_seconds())
        await self.store.execute('update_source_schedule', source_id=source.id, next_fetch_at=next_fetch_at)
        source.next_fetch_at = next_fetch_at

        logger.info(
            f"Source {source.slug}: {result.status}, health={source.health_status} "
            f"failures={source.consecutive_failure_count}, next fetch {format_timestamp(next_fetch_at)}"
        )

    async def _after_fetch(self, source: Source, result: FetchResult) -> None:
        if result.status != FETCH_FETCHED:
            return

        try:
            await self.dispatcher.dispatch(source, result)
        except Exception as e:
            logger.error(f"Follow-up dispatch for {source.slug} failed: {e}")

        if result.item_processing.created_count and (source.items_retention_days or source.max_items):
            try:
                await self.store.execute(
                    'prune_items_for_source',
                    source_id=source.id,
                    retention_days=source.items_retention_days,
                    max_items=source.max_items,
                    now=self._now(),
                )
            except Exception as e:
                logger.error(f"Retention pruning for {source.slug} failed: {e}")

    # Manual operations
    async def _load_source(self, source_id: int) -> Source:
        source = await self.store.execute('get_source', source_id=source_id)
        if source is None:
            raise SourceNotFoundError(f"No source with id {source_id}")
        return source

    async def health_reset(self, source_id: int) -> Source:
        """Clear failures, mark the source healthy and make it due immediately."""
        with self.leases.hold(source_id):
            source = await self._load_source(source_id)
            now = self._now()
            await self.store.execute('reset_source_health', source_id=source_id, next_fetch_at=now, now=now)
            logger.info(f"Health reset for {source.slug} (was {source.health_status})")
            source.apply(self.health_tracker.reset_fields())
            source.next_fetch_at = now
            return source

    async def fetch_now(self, source_id: int) -> FetchResult:
        """Run one fetch cycle for a source outside the tick.

        Raises:
            SourceBusyError: a fetch for this source is already running.
            InvalidStateError: the source is paused or inactive.
        """
        with self.leases.hold(source_id):
            source = await self._load_source(source_id)
            return await self._run_attempt(source)

    async def bulk_scrape(self, source_id: int, limit: int = 100) -> DispatchReport:
        """Queue manual scrapes for a source's unscraped items."""
        report = DispatchReport()
        enqueuer = self.dispatcher.enqueuer
        with self.leases.hold(source_id):
            source = await self._load_source(source_id)
            items = await self.store.execute('list_unscraped_items', source_id=source_id, limit=limit)
            for item in items:
                try:
                    outcome = await enqueuer.enqueue(item, source, REASON_MANUAL)
                except EnqueueError as e:
                    logger.error(f"Bulk scrape failed for item {item.id}: {e}")
                    report.failures.append(e)
                    continue
                report.record(item.id, outcome)
        logger.info(f"Bulk scrape for {source.slug}: {report}")
        return report

    async def status(self) -> List[Dict[str, Any]]:
        """Summarise health and schedule for every known source."""
        now = self._now()
        sources = await self.store.execute('list_sources')
        report = []
        for source in sources:
            report.append({
                'id': source.id,
                'slug': source.slug,
                'active': source.active,
                'health_status': source.health_status,
                'consecutive_failure_count': source.consecutive_failure_count,
                'last_error_message': source.last_error_message,
                'last_fetched_at': source.last_fetched_at,
                'next_fetch_at': source.next_fetch_at,
                'due': (source.active and not source.is_paused
                        and (source.next_fetch_at is None or source.next_fetch_at <= now)),
                'busy': self.leases.is_held(source.id),
                'items': await self.store.execute('count_items', source_id=source.id),
                'scrapes_in_flight': await self.store.execute('count_in_flight_scrapes', source_id=source.id),
            })
        return report
