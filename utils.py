#!/usr/bin/env python3
"""
Utility classes and functions shared by the fetcher, scrapers and scheduler.

Rate limiting for outbound scrape requests, URL validation, HTML-to-Markdown
cleanup of scraped pages and small formatting helpers for status output.
"""

from asyncio import Lock, sleep
from datetime import datetime, timezone
from time import monotonic
from typing import Optional
import re
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from markdownify import markdownify as md

from config import get_logger

# Module-specific logger
logger = get_logger("utils")

# Elements that never survive cleanup
UNSAFE_TAGS = (
    "script", "style", "iframe", "form", "object", "embed", "noscript",
    "frame", "frameset", "applet", "meta", "base", "link",
)
TRACKING_IMAGE_PATTERN = re.compile(r'(pixel|tracker|counter|spacer|blank|trans)', re.I)


class RateLimiter:
    """Spaces out requests so they never exceed a per-minute rate.

    A requests_per_minute of 0 or less disables limiting.
    """

    def __init__(self, requests_per_minute: int):
        self.requests_per_minute = requests_per_minute
        self.min_interval = 60.0 / requests_per_minute if requests_per_minute > 0 else 0
        self.last_request_time: Optional[float] = None
        self._lock = Lock()

    async def acquire(self) -> float:
        """Wait until the next request is allowed. Returns the seconds waited."""
        if self.min_interval <= 0:
            return 0.0

        async with self._lock:
            waited = 0.0
            if self.last_request_time is not None:
                elapsed = monotonic() - self.last_request_time
                if elapsed < self.min_interval:
                    waited = self.min_interval - elapsed
                    logger.debug(f"Rate limiting: waiting {waited:.2f} seconds")
                    await sleep(waited)
            self.last_request_time = monotonic()
            return waited


def validate_url(url: str) -> bool:
    """Return True if ``url`` looks like an absolute http(s) URL."""
    if not url or not isinstance(url, str):
        return False
    url = url.strip()
    return url.startswith(('http://', 'https://')) and '.' in url


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string (e.g. "1h 23m 45s")."""
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)


def format_timestamp(timestamp: Optional[int]) -> str:
    """Return a UTC ISO timestamp for diagnostics, or "n/a"."""
    if timestamp in (None, ""):
        return "n/a"
    try:
        return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).isoformat()
    except (OSError, OverflowError, ValueError, TypeError):
        return str(timestamp)


def _strip_unsafe_markup(soup: BeautifulSoup) -> None:
    for tag in soup(list(UNSAFE_TAGS)):
        tag.decompose()

    # Inline event handlers and javascript: URLs
    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            lowered = attr.lower()
            if lowered.startswith('on'):
                del tag[attr]
            elif lowered in ('href', 'src') and str(tag[attr]).lower().startswith('javascript:'):
                del tag[attr]

    for img in soup.find_all('img'):
        src = img.get('src', '')
        tiny = re.search(r'\.(gif|png)$', src, re.I) and img.get('height') in ('0', '1')
        if TRACKING_IMAGE_PATTERN.search(src) or tiny:
            img.decompose()


def _absolute_url(value: str, attr: str, base_url: Optional[str]) -> Optional[str]:
    if not value:
        return None
    if attr == 'href' and value.startswith('mailto:'):
        return value
    if value.startswith(('http://', 'https://')):
        return value
    if base_url:
        try:
            resolved = urljoin(base_url, value)
        except ValueError:
            return None
        if resolved.startswith(('http://', 'https://')):
            return resolved
    return None


def _rewrite_relative_urls(soup: BeautifulSoup, base_url: Optional[str]) -> None:
    """Resolve relative links against base_url; neutralize what cannot be resolved."""
    for tag in soup.find_all(['a', 'img']):
        for attr in ('href', 'src'):
            if not tag.has_attr(attr) or not str(tag[attr]):
                continue
            rewritten = _absolute_url(str(tag[attr]), attr, base_url)
            if rewritten:
                tag[attr] = rewritten
            elif attr == 'href':
                tag[attr] = '#'
            else:
                del tag[attr]


def clean_html_to_markdown(html_content: str, base_url: Optional[str] = None) -> str:
    """Sanitize HTML content and convert it to Markdown.

    Args:
        html_content: Raw HTML to sanitize
        base_url: Optional base URL used to resolve relative href/src values

    Dangerous elements, event handlers, javascript: URLs and tracking pixels
    are removed. Without ``base_url`` non-absolute links become ``#`` and
    non-absolute images are dropped.
    """
    if not html_content:
        return ""

    try:
        soup = BeautifulSoup(html_content, 'html.parser')
        _strip_unsafe_markup(soup)
        _rewrite_relative_urls(soup, base_url)
        # wrap_width=0 keeps long URLs on one line
        return md(str(soup), heading_style="ATX", wrap_width=0).strip()
    except Exception as e:
        logger.error(f"Error cleaning HTML to Markdown: {e}")
        return html_content
