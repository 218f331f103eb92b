import pytest

from errors import FetchTimeoutError, InvalidStateError, TransportError
from fetcher import FeedParser, FetchExecutor, FetchResponse
from models import DatabaseQueue
from fakes import RSS_TWO_ITEMS, FakeFetcher, FakeParser, FlakyStore, create_source


@pytest.mark.asyncio
async def test_fetch_creates_items_once(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await create_source(db)
        executor = FetchExecutor(FakeFetcher(FetchResponse(200, RSS_TWO_ITEMS)), FeedParser(), db)

        first = await executor.run(source)
        second = await executor.run(source)

        assert first.status == "fetched"
        assert first.http_status == 200
        assert first.item_processing.created_count == 2
        assert [item.guid for item in first.item_processing.created_items] == [
            "https://example.com/posts/1",
            "https://example.com/posts/2",
        ]
        assert second.status == "fetched"
        assert second.item_processing.created_count == 0
        assert second.item_processing.existing_count == 2
        assert await db.execute('count_items', source_id=source.id) == 2
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_not_modified_skips_parser(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await create_source(db)
        parser = FakeParser()
        executor = FetchExecutor(FakeFetcher(FetchResponse(304)), parser, db)

        result = await executor.run(source)

        assert result.status == "not_modified"
        assert result.succeeded
        assert parser.calls == 0
    finally:
        await db.stop()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "outcome,status,http_status",
    [
        (FetchResponse(500), "transport_error", 500),
        (FetchResponse(404), "transport_error", 404),
        (TransportError("Network error: connection refused"), "transport_error", None),
        (FetchTimeoutError("Timed out after 30s"), "timeout", None),
        (RuntimeError("socket exploded"), "transport_error", None),
    ],
)
async def test_fetch_failures_are_classified(tmp_path, outcome, status, http_status):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await create_source(db)
        parser = FakeParser()
        executor = FetchExecutor(FakeFetcher(outcome), parser, db)

        result = await executor.run(source)

        assert result.status == status
        assert result.http_status == http_status
        assert result.error_message
        assert result.item_processing.created_count == 0
        assert parser.calls == 0
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_parse_error_creates_no_items(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await create_source(db)
        executor = FetchExecutor(FakeFetcher(FetchResponse(200, b"this is not xml <<<")), FeedParser(), db)

        result = await executor.run(source)

        assert result.status == "parse_error"
        assert result.failed
        assert await db.execute('count_items', source_id=source.id) == 0
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_duplicate_guids_in_one_feed_create_one_item(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await create_source(db)
        records = [
            {'guid': 'same', 'title': 'One', 'url': 'https://example.com/1', 'published_at': None},
            {'guid': 'same', 'title': 'One again', 'url': 'https://example.com/1', 'published_at': None},
        ]
        executor = FetchExecutor(FakeFetcher(), FakeParser(records), db)

        result = await executor.run(source)

        assert result.item_processing.created_count == 1
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_conditional_headers_are_stored_and_sent(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await create_source(db)
        response = FetchResponse(200, RSS_TWO_ITEMS, {
            'ETag': '"abc"',
            'Last-Modified': 'Mon, 17 Nov 2025 10:00:00 GMT',
        })
        fetcher = FakeFetcher(response, FetchResponse(304))
        executor = FetchExecutor(fetcher, FeedParser(), db)

        await executor.run(source)
        reloaded = await db.execute('get_source', source_id=source.id)
        await executor.run(reloaded)

        assert reloaded.etag == '"abc"'
        assert reloaded.last_modified == 'Mon, 17 Nov 2025 10:00:00 GMT'
        assert fetcher.calls[1]['etag'] == '"abc"'
        assert fetcher.calls[1]['last_modified'] == 'Mon, 17 Nov 2025 10:00:00 GMT'
    finally:
        await db.stop()


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides", [{'active': False}, {'health_status': 'paused'}])
async def test_inactive_or_paused_source_is_rejected(tmp_path, overrides):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await create_source(db)
        source.apply(overrides)
        fetcher = FakeFetcher()
        executor = FetchExecutor(fetcher, FakeParser(), db)

        with pytest.raises(InvalidStateError):
            await executor.run(source)
        assert fetcher.calls == []
    finally:
        await db.stop()


class CrashingParser:
    async def parse(self, body):
        raise ValueError("unexpected parser crash")


@pytest.mark.asyncio
async def test_unexpected_parser_exception_is_a_parse_error(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await create_source(db)
        executor = FetchExecutor(FakeFetcher(), CrashingParser(), db)

        result = await executor.run(source)

        assert result.status == "parse_error"
        assert result.http_status == 200
        assert "unexpected parser crash" in result.error_message
        assert await db.execute('count_items', source_id=source.id) == 0
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_store_failure_for_one_record_keeps_the_rest(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await create_source(db)
        response = FetchResponse(200, RSS_TWO_ITEMS, {'ETag': '"abc"'})
        store = FlakyStore(db, 'find_or_create_item', fail_calls=[2])
        executor = FetchExecutor(FakeFetcher(response), FeedParser(), store)

        result = await executor.run(source)

        assert result.status == "fetched"
        assert [item.guid for item in result.item_processing.created_items] == ["https://example.com/posts/1"]
        assert result.item_processing.failed_guids == ["https://example.com/posts/2"]
        # Validators are not stored, so the next fetch gets the full feed again
        reloaded = await db.execute('get_source', source_id=source.id)
        assert reloaded.etag is None

        retry = await executor.run(reloaded)
        assert [item.guid for item in retry.item_processing.created_items] == ["https://example.com/posts/2"]
        assert retry.item_processing.existing_count == 1
    finally:
        await db.stop()
