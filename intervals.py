#!/usr/bin/env python3
"""Adaptive fetch interval calculation."""

from datetime import timedelta

from config import config
from records import Source


def compute_interval_minutes(
    base_minutes: int,
    failure_count: int,
    adaptive_enabled: bool,
    cap_multiplier: int,
    ceiling_minutes: int,
) -> int:
    """Return the next fetch interval in minutes.

    Exponential backoff: base * min(2^failures, cap_multiplier), never below the
    base interval and never above max(ceiling, base). A source with no
    outstanding failures is fetched at its base interval again.
    """
    base_minutes = max(int(base_minutes), 1)
    if not adaptive_enabled:
        return base_minutes

    failures = max(int(failure_count or 0), 0)
    # Avoid building huge powers for long-failing sources
    multiplier = min(2 ** min(failures, 62), max(int(cap_multiplier), 1))
    ceiling = max(int(ceiling_minutes), base_minutes)
    return min(max(base_minutes * multiplier, base_minutes), ceiling)


class FetchIntervalAdapter:
    """Computes the delay before a source's next fetch."""

    def __init__(self, cap_multiplier: int | None = None, ceiling_minutes: int | None = None) -> None:
        self.cap_multiplier = cap_multiplier or config.FETCH_BACKOFF_CAP_MULTIPLIER
        self.ceiling_minutes = ceiling_minutes or config.MAX_FETCH_INTERVAL_MINUTES

    def next_interval(self, source: Source) -> timedelta:
        minutes = compute_interval_minutes(
            source.fetch_interval_minutes,
            source.consecutive_failure_count,
            source.adaptive_fetching_enabled,
            self.cap_multiplier,
            self.ceiling_minutes,
        )
        return timedelta(minutes=minutes)
