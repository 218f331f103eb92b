#!/usr/bin/env python3
"""Common error types shared across modules.

Fetch errors are expected outcomes: the executor turns them into a
FetchResult status and never lets them escape. InvalidStateError is a
contract violation and is always propagated.
"""

from typing import Optional


class FeedMonitorError(Exception):
    """Base class for all Feed Monitor errors."""


class FetchError(FeedMonitorError):
    """A fetch attempt failed.

    Attributes:
        http_status: HTTP status code when the failure came from a response.
    """

    status = "transport_error"

    def __init__(self, message: str, http_status: Optional[int] = None):
        super().__init__(message)
        self.http_status = http_status


class TransportError(FetchError):
    """Connection failure or non-2xx HTTP response."""

    status = "transport_error"


class FetchTimeoutError(FetchError):
    """The fetch did not complete within its time budget."""

    status = "timeout"


class ParseError(FetchError):
    """The feed body could not be parsed."""

    status = "parse_error"


class EnqueueError(FeedMonitorError):
    """Queuing a scrape job for one item failed."""

    def __init__(self, message: str, item_id: Optional[int] = None):
        super().__init__(message)
        self.item_id = item_id


class ScrapeError(FeedMonitorError):
    """Scraping one item failed (bad response, unknown adapter, unsupported source)."""


class InvalidStateError(FeedMonitorError):
    """An operation was called in a state that forbids it (e.g. fetching a paused source)."""


class SourceBusyError(FeedMonitorError):
    """Another fetch or manual operation holds the lease for this source."""


class SourceNotFoundError(FeedMonitorError, LookupError):
    """No source with the given id or slug exists."""


__all__ = [
    "FeedMonitorError",
    "FetchError",
    "TransportError",
    "FetchTimeoutError",
    "ParseError",
    "EnqueueError",
    "ScrapeError",
    "InvalidStateError",
    "SourceBusyError",
    "SourceNotFoundError",
]
