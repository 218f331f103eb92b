#!/usr/bin/env python3
"""
Feed fetching and item ingestion.

This module holds the three pieces of a single fetch attempt:

- HttpFetcher: conditional GET of a feed URL over aiohttp
- FeedParser: feedparser-based parsing into plain item records
- FetchExecutor: runs one attempt for one source, classifies the outcome
  and reconciles parsed items against the store

Fetch errors never escape FetchExecutor.run; they become FetchResult statuses.
There are no retries here: the scheduler's adaptive interval is the retry policy.
"""

from calendar import timegm
from asyncio import get_running_loop, TimeoutError
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime, format_datetime
from hashlib import md5
from typing import Any, Dict, List, Optional

import feedparser
from aiohttp import ClientSession, ClientTimeout, ClientError

from config import config, get_logger
from errors import FetchError, FetchTimeoutError, InvalidStateError, ParseError, TransportError
from records import (
    FetchResult,
    ItemProcessing,
    Source,
    FETCH_FETCHED,
    FETCH_NOT_MODIFIED,
    FETCH_PARSE_ERROR,
    FETCH_TRANSPORT_ERROR,
)
from telemetry import get_tracer, trace_span

# Module-specific logger
logger = get_logger("fetcher")
_tracer = get_tracer("fetcher")

# HTTP status codes
HTTP_NOT_MODIFIED = 304

# Storage limits for item identity fields
MAX_TITLE_LENGTH = 255
MAX_URL_LENGTH = 2048
MAX_GUID_LENGTH = 255


def normalize_http_date(date_value: Optional[str]) -> Optional[str]:
    """Normalize HTTP date strings to RFC 7231 format (GMT)."""
    if not date_value:
        return None
    try:
        dt = parsedate_to_datetime(date_value)
        if not dt:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        dt = dt.astimezone(timezone.utc)
        return format_datetime(dt, usegmt=True)
    except (TypeError, ValueError, OverflowError) as exc:
        logger.debug(f"Unable to normalize HTTP date '{date_value}': {exc}")
        return None


def format_client_error(error: ClientError) -> str:
    """Describe aiohttp client errors with any available status/errno."""
    parts: List[str] = [error.__class__.__name__]
    status = getattr(error, 'status', None)
    if status is not None:
        parts.append(f"status={status}")
    os_error = getattr(error, 'os_error', None)
    if os_error is not None:
        errno = getattr(os_error, 'errno', None)
        strerror = getattr(os_error, 'strerror', None)
        if errno is not None:
            parts.append(f"errno={errno}")
        if strerror:
            parts.append(str(strerror))
    message = str(error)
    if message:
        parts.append(message)
    return " ".join(parts)


class FetchResponse:
    """Status, body and headers of one HTTP response."""

    def __init__(self, status: int, body: bytes = b"", headers: Optional[Dict[str, str]] = None) -> None:
        self.status = status
        self.body = body
        self.headers = dict(headers or {})

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def etag(self) -> Optional[str]:
        return self.headers.get('ETag') or self.headers.get('etag')

    @property
    def last_modified(self) -> Optional[str]:
        return normalize_http_date(self.headers.get('Last-Modified') or self.headers.get('last-modified'))

    def __repr__(self) -> str:
        return f"FetchResponse(status={self.status}, bytes={len(self.body)})"


class HttpFetcher:
    """aiohttp-backed Fetcher.

    Returns a FetchResponse for every HTTP status; raises TransportError on
    connection failures and FetchTimeoutError when the request times out.
    """

    def __init__(self, session: Optional[ClientSession] = None, timeout: Optional[int] = None,
                 user_agent: Optional[str] = None) -> None:
        self._session = session
        self._owns_session = session is None
        self.timeout = max(int(timeout or config.HTTP_TIMEOUT), 1)
        self.user_agent = user_agent or config.USER_AGENT

    async def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(timeout=ClientTimeout(total=self.timeout))
            self._owns_session = True
        return self._session

    def _prepare_request_headers(self, etag: Optional[str], last_modified: Optional[str]) -> Dict[str, str]:
        """Prepare HTTP headers for conditional requests."""
        headers = {'User-Agent': self.user_agent}

        if etag:
            # Quote unquoted ETags; weak and strong ETags pass through as-is
            if not (etag.startswith('"') or etag.startswith('W/"')):
                etag = f'"{etag}"'
            headers['If-None-Match'] = etag

        if last_modified:
            normalized = normalize_http_date(last_modified)
            if normalized:
                headers['If-Modified-Since'] = normalized
            else:
                logger.warning(f"Invalid Last-Modified value, not sending header: {last_modified}")

        return headers

    @trace_span(
        "fetch_http_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, etag=None, last_modified=None: {
            "http.url": url,
            "http.conditional": bool(etag or last_modified),
        },
    )
    async def get(self, url: str, etag: Optional[str] = None, last_modified: Optional[str] = None) -> FetchResponse:
        session = await self._get_session()
        headers = self._prepare_request_headers(etag, last_modified)
        try:
            async with session.get(
                url,
                headers=headers,
                timeout=ClientTimeout(total=self.timeout),
                max_redirects=config.MAX_REDIRECTS,
            ) as response:
                body = await response.read() if 200 <= response.status < 300 else b""
                return FetchResponse(response.status, body, dict(response.headers))
        except TimeoutError as e:
            raise FetchTimeoutError(f"Timed out after {self.timeout}s fetching {url}") from e
        except ClientError as e:
            raise TransportError(f"Network error: {format_client_error(e)}") from e

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


class FeedParser:
    """feedparser-backed Parser producing plain item records.

    Each record is a dict with ``guid``, ``title``, ``url`` and ``published_at``.
    """

    # Date fields checked in priority order, each with its *_parsed variant
    DATE_FIELDS = ('published', 'updated', 'created', 'modified', 'date', 'issued')

    async def parse(self, body: bytes) -> List[Dict[str, Any]]:
        """Parse a feed body, raising ParseError when nothing usable comes out."""
        if not body:
            raise ParseError("Empty feed body")

        # feedparser is not async, run in the loop's default executor
        loop = get_running_loop()
        feed = await loop.run_in_executor(
            None,
            lambda: feedparser.parse(body, sanitize_html=True, resolve_relative_uris=True),
        )

        entries = feed.get('entries') or []
        if feed.get('bozo') and not entries:
            reason = feed.get('bozo_exception') or "unrecognised feed format"
            raise ParseError(f"Could not parse feed: {reason}")

        if feed.get('bozo'):
            logger.warning(f"Feed parsed with warnings: {feed.get('bozo_exception')}")

        records = []
        for entry in entries:
            record = self.entry_to_record(entry)
            if record is None:
                logger.debug("Skipping entry without a usable identity")
                continue
            records.append(record)
        return records

    def entry_to_record(self, entry) -> Optional[Dict[str, Any]]:
        guid = self.get_guid(entry)
        if not guid:
            return None
        title = (self._get_entry_value(entry, 'title') or "No Title").strip() or "No Title"
        url = (self._get_entry_value(entry, 'link') or "").strip()
        return {
            'guid': guid[:MAX_GUID_LENGTH],
            'title': title[:MAX_TITLE_LENGTH],
            'url': url[:MAX_URL_LENGTH] or None,
            'published_at': self.parse_date(entry),
        }

    def get_guid(self, entry) -> Optional[str]:
        """Extract or derive a stable per-source dedup key for an entry."""
        entry_id = self._get_entry_value(entry, 'id')
        if entry_id and str(entry_id).strip():
            return str(entry_id).strip()

        link = self._get_entry_value(entry, 'link')
        if link:
            return md5(link.encode()).hexdigest()

        title = self._get_entry_value(entry, 'title')
        published = self._get_entry_value(entry, 'published')
        if title:
            return md5(f"{title}{published or ''}".encode()).hexdigest()

        return None

    def parse_date(self, entry) -> Optional[int]:
        """Best-effort publication timestamp, or None when the entry has no date."""
        for field in self.DATE_FIELDS:
            for name in (f"{field}_parsed", field):
                timestamp = self._date_value_to_timestamp(self._get_entry_value(entry, name))
                if timestamp:
                    return timestamp
        return None

    def _get_entry_value(self, entry, field: str) -> Any:
        """Safely fetch feedparser entry fields with attribute or dict access."""
        if entry is None:
            return None
        try:
            value = getattr(entry, field)
        except AttributeError:
            value = None
        if value is not None:
            return value
        getter = getattr(entry, 'get', None)
        if callable(getter):
            return getter(field)
        return None

    def _date_value_to_timestamp(self, value: Any) -> Optional[int]:
        if value in (None, ''):
            return None

        if isinstance(value, (int, float)):
            return int(value) if value > 0 else None

        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            return int(value.timestamp())

        if isinstance(value, (list, tuple)):
            try:
                return int(timegm(tuple(value)))
            except (OverflowError, ValueError, OSError, TypeError):
                return None

        if isinstance(value, str):
            try:
                dt = parsedate_to_datetime(value)
            except (TypeError, ValueError, OverflowError):
                dt = None
            if dt:
                if dt.tzinfo is None:
                    dt = dt.replace(tzinfo=timezone.utc)
                return int(dt.timestamp())
            try:
                dt = datetime.fromisoformat(value.replace('Z', '+00:00'))
            except ValueError:
                return None
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())

        return None


class FetchExecutor:
    """Performs one fetch attempt for one source and classifies the outcome."""

    def __init__(self, fetcher, parser, store) -> None:
        self.fetcher = fetcher
        self.parser = parser
        self.store = store

    @trace_span(
        "fetch_source",
        tracer_name="fetcher",
        attr_from_args=lambda self, source: {
            "source.id": int(source.id) if source.id else 0,
            "source.slug": source.slug or "",
            "http.url": source.feed_url or "",
        },
    )
    async def run(self, source: Source) -> FetchResult:
        """Fetch, parse and reconcile one source.

        Raises:
            InvalidStateError: the source is inactive or paused.
        """
        if not source.active:
            raise InvalidStateError(f"Source {source.slug} is inactive")
        if source.is_paused:
            raise InvalidStateError(f"Source {source.slug} is paused")

        logger.info(f"Fetching source {source.slug} from {source.feed_url}")
        try:
            response = await self.fetcher.get(
                source.feed_url,
                etag=source.etag,
                last_modified=source.last_modified,
            )
        except FetchError as e:
            logger.warning(f"Fetch failed for {source.slug}: {e}")
            return FetchResult.failure(e.status, str(e), http_status=e.http_status)
        except Exception as e:
            logger.warning(f"Unexpected fetch error for {source.slug}: {e}")
            return FetchResult.failure(FETCH_TRANSPORT_ERROR, f"Unexpected error: {e}")

        if response.status == HTTP_NOT_MODIFIED:
            logger.info(f"Source {source.slug} not modified since last fetch")
            return FetchResult(status=FETCH_NOT_MODIFIED, http_status=response.status)

        if not response.ok:
            message = f"HTTP {response.status}"
            logger.warning(f"Fetch failed for {source.slug}: {message}")
            return FetchResult.failure(FETCH_TRANSPORT_ERROR, message, http_status=response.status)

        try:
            records = await self.parser.parse(response.body)
        except ParseError as e:
            logger.warning(f"Parse failed for {source.slug}: {e}")
            return FetchResult.failure(FETCH_PARSE_ERROR, str(e), http_status=response.status)
        except Exception as e:
            logger.warning(f"Unexpected parser error for {source.slug}: {e}")
            return FetchResult.failure(FETCH_PARSE_ERROR, f"Unexpected parser error: {e}", http_status=response.status)

        processing = await self._reconcile_items(source, records)
        if processing.failed_count:
            # Keep the old validators so the next fetch returns the full feed and retries the failed records
            logger.warning(f"Source {source.slug}: {processing.failed_count} items could not be stored")
        else:
            await self._store_response_headers(source, response)

        logger.info(
            f"Source {source.slug}: {processing.created_count} new items, "
            f"{processing.existing_count} already known, {processing.failed_count} failed"
        )
        return FetchResult(
            status=FETCH_FETCHED,
            http_status=response.status,
            item_processing=processing,
            etag=response.etag,
            last_modified=response.last_modified,
        )

    async def _reconcile_items(self, source: Source, records: List[Dict[str, Any]]) -> ItemProcessing:
        """Create items not yet known for this source. Existing items are left as they are."""
        processing = ItemProcessing()
        seen = set()
        for record in records:
            guid = record.get('guid')
            if not guid or guid in seen:
                continue
            seen.add(guid)
            fields = {key: record.get(key) for key in ('title', 'url', 'published_at')}
            try:
                item, created = await self.store.execute(
                    'find_or_create_item', source_id=source.id, guid=guid, fields=fields,
                )
            except Exception as e:
                logger.error(f"Could not store item {guid!r} for {source.slug}: {e}")
                processing.failed_guids.append(guid)
                continue
            if created:
                processing.created_items.append(item)
            else:
                processing.existing_count += 1
        return processing

    async def _store_response_headers(self, source: Source, response: FetchResponse) -> None:
        etag = response.etag
        last_modified = response.last_modified
        if not (etag or last_modified):
            return
        try:
            await self.store.execute(
                'update_source_headers', source_id=source.id, etag=etag, last_modified=last_modified,
            )
        except Exception as e:
            logger.error(f"Could not store response headers for {source.slug}: {e}")
            return
        source.etag = etag or source.etag
        source.last_modified = last_modified or source.last_modified
