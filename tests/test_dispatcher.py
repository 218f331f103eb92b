import pytest

from dispatcher import FollowUpDispatcher, ScrapeEnqueuer
from fetcher import FeedParser, FetchExecutor
from models import DatabaseQueue
from records import FetchResult, ItemProcessing
from fakes import FakeClock, FakeFetcher, FlakyEnqueuer, create_source


async def fetch_two_new_items(db, source):
    executor = FetchExecutor(FakeFetcher(), FeedParser(), db)
    result = await executor.run(source)
    assert result.item_processing.created_count == 2
    return result


@pytest.mark.asyncio
async def test_two_created_items_with_auto_scrape_enqueue_two_auto_jobs(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await create_source(db, scraping_enabled=True, auto_scrape=True)
        result = await fetch_two_new_items(db, source)

        enqueued = await FollowUpDispatcher(ScrapeEnqueuer(db)).dispatch(source, result)

        jobs = await db.execute('list_scrape_jobs', source_id=source.id)
        assert enqueued == 2
        assert len(jobs) == 2
        assert {job['reason'] for job in jobs} == {'auto'}
        assert {job['item_id'] for job in jobs} == set(result.item_processing.created_ids)
    finally:
        await db.stop()


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides", [
    {'scraping_enabled': True, 'auto_scrape': False},
    {'scraping_enabled': False, 'auto_scrape': True},
])
async def test_no_jobs_without_scraping_and_auto_scrape(tmp_path, overrides):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await create_source(db, **overrides)
        result = await fetch_two_new_items(db, source)

        enqueued = await FollowUpDispatcher(ScrapeEnqueuer(db)).dispatch(source, result)

        assert enqueued == 0
        assert await db.execute('list_scrape_jobs', source_id=source.id) == []
    finally:
        await db.stop()


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["not_modified", "transport_error", "parse_error", "timeout"])
async def test_only_fetched_results_dispatch(tmp_path, status):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await create_source(db, scraping_enabled=True, auto_scrape=True)
        item, _ = await db.execute('find_or_create_item', source_id=source.id, guid='g-1')
        result = FetchResult(status=status, item_processing=ItemProcessing([item]))

        assert await FollowUpDispatcher(ScrapeEnqueuer(db)).dispatch(source, result) == 0
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_already_scraped_items_are_not_reenqueued(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await create_source(db, scraping_enabled=True, auto_scrape=True)
        result = await fetch_two_new_items(db, source)
        result.item_processing.created_items[0].scraped_at = 1_700_000_000

        report = await FollowUpDispatcher(ScrapeEnqueuer(db)).dispatch_with_report(source, result)

        assert report.enqueued == [result.item_processing.created_items[1].id]
        assert report.already_scraped == [result.item_processing.created_items[0].id]
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_redispatch_reports_already_enqueued(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await create_source(db, scraping_enabled=True, auto_scrape=True)
        result = await fetch_two_new_items(db, source)
        dispatcher = FollowUpDispatcher(ScrapeEnqueuer(db))

        await dispatcher.dispatch(source, result)
        report = await dispatcher.dispatch_with_report(source, result)

        assert report.enqueued == []
        assert sorted(report.already_enqueued) == sorted(result.item_processing.created_ids)
        assert len(await db.execute('list_scrape_jobs', source_id=source.id)) == 2
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_one_failing_item_does_not_stop_the_batch(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await create_source(db, scraping_enabled=True, auto_scrape=True)
        result = await fetch_two_new_items(db, source)
        first_id, second_id = result.item_processing.created_ids
        enqueuer = FlakyEnqueuer(ScrapeEnqueuer(db), failing_item_ids=[first_id])

        report = await FollowUpDispatcher(enqueuer).dispatch_with_report(source, result)

        assert enqueuer.attempted == [first_id, second_id]
        assert report.enqueued == [second_id]
        assert len(report.failures) == 1
        assert report.failures[0].item_id == first_id
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_enqueue_is_rate_limited_per_source(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await create_source(db, scraping_enabled=True, auto_scrape=True)
        result = await fetch_two_new_items(db, source)
        enqueuer = ScrapeEnqueuer(db, max_in_flight_per_source=1)
        first, second = result.item_processing.created_items

        assert (await enqueuer.enqueue(first, source, 'auto')).status == 'enqueued'
        limited = await enqueuer.enqueue(second, source, 'auto')

        assert limited.status == 'rate_limited'
        assert await db.execute('count_in_flight_scrapes', source_id=source.id) == 1
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_manual_enqueue_ignores_auto_scrape_flag(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await create_source(db, scraping_enabled=True, auto_scrape=False)
        item, _ = await db.execute('find_or_create_item', source_id=source.id, guid='g-1')
        enqueuer = ScrapeEnqueuer(db)

        assert (await enqueuer.enqueue(item, source, 'auto')).status == 'auto_scrape_disabled'
        assert (await enqueuer.enqueue(item, source, 'manual')).status == 'enqueued'
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_source_scraped_too_recently_defers_the_job(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        clock = FakeClock()
        source = await create_source(db, scraping_enabled=True, auto_scrape=True, min_scrape_interval_seconds=300)
        result = await fetch_two_new_items(db, source)
        enqueuer = ScrapeEnqueuer(db, clock=clock)
        first, second = result.item_processing.created_items

        assert (await enqueuer.enqueue(first, source, 'auto')).status == 'enqueued'
        await db.execute('claim_scrape_jobs', limit=5, now=clock.now)
        clock.advance(seconds=100)

        deferred = await enqueuer.enqueue(second, source, 'auto')

        assert deferred.status == 'deferred'
        assert "deferred by 200s" in deferred.message
        job = (await db.execute('list_scrape_jobs', status='pending'))[0]
        assert job['id'] == deferred.job_id
        assert job['not_before'] == clock.now + 200
        assert await db.execute('claim_scrape_jobs', limit=5, now=clock.now) == []
        assert len(await db.execute('claim_scrape_jobs', limit=5, now=clock.now + 200)) == 1
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_default_min_scrape_interval_applies_to_sources_without_one(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        clock = FakeClock()
        source = await create_source(db, scraping_enabled=True, auto_scrape=True)
        result = await fetch_two_new_items(db, source)
        dispatcher = FollowUpDispatcher(ScrapeEnqueuer(db, min_scrape_interval=60, clock=clock))
        first, second = result.item_processing.created_items
        await dispatcher.enqueuer.enqueue(first, source, 'auto')
        await db.execute('claim_scrape_jobs', limit=5, now=clock.now)
        result.item_processing.created_items = [second]

        report = await dispatcher.dispatch_with_report(source, result)

        assert report.enqueued == []
        assert report.deferred == [second.id]
        assert report.jobs_created == 1

        clock.advance(seconds=60)
        assert ScrapeEnqueuer(db, min_scrape_interval=0).scrape_interval_for(source) == 0
        assert (await dispatcher.enqueuer._deferral(source, clock.now))[0] == 0
    finally:
        await db.stop()
