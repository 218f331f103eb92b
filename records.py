#!/usr/bin/env python3
"""
Record types passed between the scheduler, fetcher, health tracker and dispatcher.

Source and Item mirror rows in the sources/items tables; FetchResult is the
ephemeral outcome of one fetch attempt and is never persisted.
"""

from typing import Any, Dict, List, Mapping, Optional

# Health statuses
HEALTH_HEALTHY = "healthy"
HEALTH_DEGRADED = "degraded"
HEALTH_UNHEALTHY = "unhealthy"
HEALTH_PAUSED = "paused"
HEALTH_STATUSES = (HEALTH_HEALTHY, HEALTH_DEGRADED, HEALTH_UNHEALTHY, HEALTH_PAUSED)

# Fetch outcome statuses
FETCH_FETCHED = "fetched"
FETCH_NOT_MODIFIED = "not_modified"
FETCH_TRANSPORT_ERROR = "transport_error"
FETCH_PARSE_ERROR = "parse_error"
FETCH_TIMEOUT = "timeout"
SUCCESS_STATUSES = (FETCH_FETCHED, FETCH_NOT_MODIFIED)
FAILURE_STATUSES = (FETCH_TRANSPORT_ERROR, FETCH_PARSE_ERROR, FETCH_TIMEOUT)


def _as_bool(value: Any) -> bool:
    return bool(value) if value is not None else False


class Source:
    """A monitored feed: its configuration plus health and schedule state."""

    def __init__(
        self,
        id: int,
        feed_url: str,
        slug: Optional[str] = None,
        name: Optional[str] = None,
        website_url: Optional[str] = None,
        fetch_interval_minutes: int = 360,
        active: bool = True,
        auto_scrape: bool = False,
        scraping_enabled: bool = False,
        requires_javascript: bool = False,
        adaptive_fetching_enabled: bool = True,
        health_auto_pause_threshold: int = 5,
        items_retention_days: Optional[int] = None,
        max_items: Optional[int] = None,
        scraper_adapter: str = "readability",
        min_scrape_interval_seconds: Optional[int] = None,
        health_status: str = HEALTH_HEALTHY,
        consecutive_failure_count: int = 0,
        last_fetched_at: Optional[int] = None,
        next_fetch_at: Optional[int] = None,
        last_error_message: Optional[str] = None,
        last_http_status: Optional[int] = None,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
    ) -> None:
        self.id = id
        self.slug = slug or str(id)
        self.name = name or self.slug
        self.feed_url = feed_url
        self.website_url = website_url
        self.fetch_interval_minutes = fetch_interval_minutes
        self.active = active
        self.auto_scrape = auto_scrape
        self.scraping_enabled = scraping_enabled
        self.requires_javascript = requires_javascript
        self.adaptive_fetching_enabled = adaptive_fetching_enabled
        self.health_auto_pause_threshold = health_auto_pause_threshold
        self.items_retention_days = items_retention_days
        self.max_items = max_items
        self.scraper_adapter = scraper_adapter
        self.min_scrape_interval_seconds = min_scrape_interval_seconds
        self.health_status = health_status
        self.consecutive_failure_count = consecutive_failure_count
        self.last_fetched_at = last_fetched_at
        self.next_fetch_at = next_fetch_at
        self.last_error_message = last_error_message
        self.last_http_status = last_http_status
        self.etag = etag
        self.last_modified = last_modified

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Source":
        """Build a Source from a sqlite Row (or any mapping with the same keys)."""
        return cls(
            id=row['id'],
            slug=row['slug'],
            name=row['name'],
            feed_url=row['feed_url'],
            website_url=row['website_url'],
            fetch_interval_minutes=row['fetch_interval_minutes'],
            active=_as_bool(row['active']),
            auto_scrape=_as_bool(row['auto_scrape']),
            scraping_enabled=_as_bool(row['scraping_enabled']),
            requires_javascript=_as_bool(row['requires_javascript']),
            adaptive_fetching_enabled=_as_bool(row['adaptive_fetching_enabled']),
            health_auto_pause_threshold=row['health_auto_pause_threshold'],
            items_retention_days=row['items_retention_days'],
            max_items=row['max_items'],
            scraper_adapter=row['scraper_adapter'],
            min_scrape_interval_seconds=row['min_scrape_interval_seconds'],
            health_status=row['health_status'],
            consecutive_failure_count=row['consecutive_failure_count'] or 0,
            last_fetched_at=row['last_fetched_at'],
            next_fetch_at=row['next_fetch_at'],
            last_error_message=row['last_error_message'],
            last_http_status=row['last_http_status'],
            etag=row['etag'],
            last_modified=row['last_modified'],
        )

    @property
    def is_paused(self) -> bool:
        return self.health_status == HEALTH_PAUSED

    def apply(self, fields: Mapping[str, Any]) -> "Source":
        """Copy persisted field updates onto this in-memory record."""
        for key, value in fields.items():
            setattr(self, key, value)
        return self

    def __repr__(self) -> str:
        return (f"Source(id={self.id}, slug={self.slug!r}, health={self.health_status}, "
                f"failures={self.consecutive_failure_count})")


class Item:
    """One entry discovered in a source's feed."""

    def __init__(
        self,
        id: int,
        source_id: int,
        guid: str,
        title: Optional[str] = None,
        url: Optional[str] = None,
        published_at: Optional[int] = None,
        created_at: Optional[int] = None,
        scraped_at: Optional[int] = None,
        scrape_status: Optional[str] = None,
        content: Optional[str] = None,
    ) -> None:
        self.id = id
        self.source_id = source_id
        self.guid = guid
        self.title = title
        self.url = url
        self.published_at = published_at
        self.created_at = created_at
        self.scraped_at = scraped_at
        self.scrape_status = scrape_status
        self.content = content

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Item":
        return cls(
            id=row['id'],
            source_id=row['source_id'],
            guid=row['guid'],
            title=row['title'],
            url=row['url'],
            published_at=row['published_at'],
            created_at=row['created_at'],
            scraped_at=row['scraped_at'],
            scrape_status=row['scrape_status'],
            content=row['content'],
        )

    def __repr__(self) -> str:
        return f"Item(id={self.id}, source_id={self.source_id}, guid={self.guid!r})"


class ItemProcessing:
    """Items created while reconciling one parsed feed, in feed order."""

    def __init__(self, created_items: Optional[List[Item]] = None, existing_count: int = 0,
                 failed_guids: Optional[List[str]] = None) -> None:
        self.created_items = list(created_items or [])
        self.existing_count = existing_count
        # Records the store could not reconcile; the rest of the batch still counts
        self.failed_guids = list(failed_guids or [])

    @property
    def created_count(self) -> int:
        return len(self.created_items)

    @property
    def created_ids(self) -> List[int]:
        return [item.id for item in self.created_items]

    @property
    def failed_count(self) -> int:
        return len(self.failed_guids)


class FetchResult:
    """Outcome of a single fetch attempt."""

    def __init__(
        self,
        status: str,
        http_status: Optional[int] = None,
        error_message: Optional[str] = None,
        item_processing: Optional[ItemProcessing] = None,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
    ) -> None:
        self.status = status
        self.http_status = http_status
        self.error_message = error_message
        self.item_processing = item_processing or ItemProcessing()
        self.etag = etag
        self.last_modified = last_modified

    @classmethod
    def failure(cls, status: str, error_message: str, http_status: Optional[int] = None) -> "FetchResult":
        return cls(status=status, http_status=http_status, error_message=error_message)

    @property
    def succeeded(self) -> bool:
        return self.status in SUCCESS_STATUSES

    @property
    def failed(self) -> bool:
        return self.status in FAILURE_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'http_status': self.http_status,
            'error_message': self.error_message,
            'created_count': self.item_processing.created_count,
            'created_item_ids': self.item_processing.created_ids,
            'failed_count': self.item_processing.failed_count,
        }

    def __repr__(self) -> str:
        return (f"FetchResult(status={self.status}, http_status={self.http_status}, "
                f"created={self.item_processing.created_count})")
