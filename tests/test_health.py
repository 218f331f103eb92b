import pytest

import health
from health import HealthTracker, status_for_failure_count
from records import FetchResult, Source


def make_source(**overrides):
    fields = dict(id=1, feed_url="https://example.com/feed.xml", slug="example",
                  fetch_interval_minutes=360, health_auto_pause_threshold=3)
    fields.update(overrides)
    return Source(**fields)


def test_pause_boundary_constant_is_one_extra_failure():
    assert health.PAUSE_AFTER_EXTRA_FAILURES == 1


@pytest.mark.parametrize(
    "failures,expected",
    [
        (0, "healthy"),
        (1, "degraded"),
        (2, "degraded"),
        (3, "unhealthy"),
        (4, "paused"),
        (9, "paused"),
    ],
)
def test_status_for_failure_count_threshold_three(failures, expected):
    assert status_for_failure_count(failures, 3) == expected


def test_threshold_one_goes_straight_to_unhealthy():
    assert status_for_failure_count(1, 1) == "unhealthy"
    assert status_for_failure_count(2, 1) == "paused"


def test_consecutive_transport_errors_walk_to_paused():
    tracker = HealthTracker()
    source = make_source()
    seen = []
    for _ in range(4):
        fields = tracker.observe(source, FetchResult.failure("transport_error", "HTTP 503", http_status=503))
        source.apply(fields)
        seen.append((source.consecutive_failure_count, source.health_status))

    assert seen == [(1, "degraded"), (2, "degraded"), (3, "unhealthy"), (4, "paused")]
    assert source.last_error_message == "HTTP 503"


@pytest.mark.parametrize("status", ["fetched", "not_modified"])
def test_success_resets_failures(status):
    tracker = HealthTracker()
    source = make_source(health_status="unhealthy", consecutive_failure_count=3,
                         last_error_message="Timed out")

    fields = tracker.observe(source, FetchResult(status=status, http_status=200))

    assert fields == {
        'health_status': "healthy",
        'consecutive_failure_count': 0,
        'last_error_message': None,
    }


def test_error_message_falls_back_to_status():
    tracker = HealthTracker()
    fields = tracker.observe(make_source(), FetchResult(status="timeout"))
    assert fields['last_error_message'] == "timeout"


def test_paused_is_terminal_until_reset():
    tracker = HealthTracker()
    source = make_source(health_status="paused", consecutive_failure_count=4, last_error_message="HTTP 500")

    after_success = tracker.observe(source, FetchResult(status="fetched"))
    after_failure = tracker.observe(source, FetchResult.failure("parse_error", "bad xml"))

    assert after_success['health_status'] == "paused"
    assert after_failure['health_status'] == "paused"
    assert after_failure['consecutive_failure_count'] == 4
    assert HealthTracker.reset_fields()['health_status'] == "healthy"


def test_observe_does_not_mutate_source():
    tracker = HealthTracker()
    source = make_source()
    tracker.observe(source, FetchResult.failure("transport_error", "boom"))
    assert source.consecutive_failure_count == 0
    assert source.health_status == "healthy"
