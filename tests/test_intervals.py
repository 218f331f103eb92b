from datetime import timedelta

import pytest

from intervals import FetchIntervalAdapter, compute_interval_minutes
from records import Source


def test_adaptive_disabled_keeps_base_interval():
    assert compute_interval_minutes(360, 5, False, 16, 1440) == 360


def test_no_failures_uses_base_interval():
    assert compute_interval_minutes(360, 0, True, 16, 1440) == 360


@pytest.mark.parametrize("failures,expected", [(1, 60), (2, 120), (3, 240), (4, 480), (5, 480)])
def test_backoff_doubles_until_cap_multiplier(failures, expected):
    assert compute_interval_minutes(30, failures, True, 16, 10_000) == expected


def test_backoff_never_exceeds_ceiling():
    assert compute_interval_minutes(360, 1, True, 16, 1440) == 720
    assert compute_interval_minutes(360, 2, True, 16, 1440) == 1440
    assert compute_interval_minutes(360, 3, True, 16, 1440) == 1440


def test_ceiling_below_base_keeps_base():
    assert compute_interval_minutes(2880, 3, True, 16, 1440) == 2880


def test_huge_failure_counts_are_bounded():
    assert compute_interval_minutes(10, 10_000, True, 4, 1440) == 40


def test_adapter_returns_timedelta_from_source():
    adapter = FetchIntervalAdapter(cap_multiplier=16, ceiling_minutes=1440)
    source = Source(id=1, feed_url="https://example.com/feed", fetch_interval_minutes=360,
                    consecutive_failure_count=1, health_status="degraded")

    assert adapter.next_interval(source) == timedelta(minutes=720)


def test_adapter_defaults_come_from_config(monkeypatch):
    from config import config

    monkeypatch.setattr(config, "FETCH_BACKOFF_CAP_MULTIPLIER", 2)
    monkeypatch.setattr(config, "MAX_FETCH_INTERVAL_MINUTES", 100_000)
    adapter = FetchIntervalAdapter()
    source = Source(id=1, feed_url="https://example.com/feed", fetch_interval_minutes=60,
                    consecutive_failure_count=5)

    assert adapter.next_interval(source) == timedelta(minutes=120)
