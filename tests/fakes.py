"""Stand-ins for the fetch pipeline's collaborators."""

import asyncio

from errors import EnqueueError, ParseError
from fetcher import FetchResponse

RSS_TWO_ITEMS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Example</title>
    <link>https://example.com/</link>
    <description>Example feed</description>
    <item>
      <title>First post</title>
      <link>https://example.com/posts/1</link>
      <guid>https://example.com/posts/1</guid>
      <pubDate>Mon, 17 Nov 2025 10:00:00 +0000</pubDate>
    </item>
    <item>
      <title>Second post</title>
      <link>https://example.com/posts/2</link>
      <guid>https://example.com/posts/2</guid>
      <pubDate>Tue, 18 Nov 2025 10:00:00 +0000</pubDate>
    </item>
  </channel>
</rss>
"""


class FakeClock:
    """Epoch-seconds clock advanced by hand."""

    def __init__(self, start=1_700_000_000):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, minutes=0, seconds=0):
        self.now += minutes * 60 + seconds


class FakeFetcher:
    """Returns queued responses (or raises queued exceptions) in order.

    The last entry repeats once the queue is exhausted.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes) or [FetchResponse(200, RSS_TWO_ITEMS)]
        self.calls = []

    async def get(self, url, etag=None, last_modified=None):
        self.calls.append({'url': url, 'etag': etag, 'last_modified': last_modified})
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class BlockingFetcher:
    """Blocks every request until ``release`` is set."""

    def __init__(self, response=None):
        self.response = response or FetchResponse(200, RSS_TWO_ITEMS)
        self.release = asyncio.Event()
        self.started = asyncio.Event()
        self.calls = 0

    async def get(self, url, etag=None, last_modified=None):
        self.calls += 1
        self.started.set()
        await self.release.wait()
        return self.response


class FakeParser:
    def __init__(self, records=None, error=None):
        self.records = records or []
        self.error = error
        self.calls = 0

    async def parse(self, body):
        self.calls += 1
        if self.error:
            raise ParseError(self.error)
        return list(self.records)


class FlakyEnqueuer:
    """Delegates to a real enqueuer but fails for chosen item ids."""

    def __init__(self, inner, failing_item_ids):
        self.inner = inner
        self.failing_item_ids = set(failing_item_ids)
        self.attempted = []

    async def enqueue(self, item, source, reason="auto"):
        self.attempted.append(item.id)
        if item.id in self.failing_item_ids:
            raise EnqueueError(f"queue unavailable for item {item.id}", item_id=item.id)
        return await self.inner.enqueue(item, source, reason)


def source_config(slug="example", **overrides):
    """A normalized source configuration dict as produced by config.normalize_source_config."""
    cfg = {
        'slug': slug,
        'name': slug.title(),
        'feed_url': f"https://example.com/{slug}.xml",
        'website_url': "https://example.com/",
        'fetch_interval_minutes': 360,
        'health_auto_pause_threshold': 5,
        'items_retention_days': None,
        'max_items': None,
        'active': True,
        'auto_scrape': False,
        'scraping_enabled': False,
        'requires_javascript': False,
        'adaptive_fetching_enabled': True,
        'scraper_adapter': 'readability',
        'min_scrape_interval_seconds': None,
    }
    cfg.update(overrides)
    return cfg


async def create_source(db, slug="example", **overrides):
    """Insert a source and return it as loaded from the store."""
    source_id = await db.execute('upsert_source', source=source_config(slug, **overrides))
    return await db.execute('get_source', source_id=source_id)


class FlakyStore:
    """Delegates to a real store but fails chosen calls of one operation.

    ``fail_calls`` are 1-based call numbers of ``operation`` that raise.
    """

    def __init__(self, inner, operation, fail_calls):
        self.inner = inner
        self.operation = operation
        self.fail_calls = set(fail_calls)
        self.calls = 0

    async def execute(self, operation_name, **params):
        if operation_name == self.operation:
            self.calls += 1
            if self.calls in self.fail_calls:
                raise Exception(f"database is locked ({operation_name})")
        return await self.inner.execute(operation_name, **params)
