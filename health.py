#!/usr/bin/env python3
"""
Per-source health tracking.

Health is a small finite state machine driven by fetch outcomes:

    healthy --fail--> degraded --fail (count == threshold)--> unhealthy
    unhealthy --fail (count == threshold + PAUSE_AFTER_EXTRA_FAILURES)--> paused

Any successful fetch (fetched or not_modified) returns the source to healthy and
clears the failure count. Paused is terminal until an explicit reset.

The transition functions here are pure; persisting the returned fields is the
scheduler's job.
"""

from typing import Any, Dict

from config import get_logger
from records import (
    FetchResult,
    Source,
    HEALTH_HEALTHY,
    HEALTH_DEGRADED,
    HEALTH_UNHEALTHY,
    HEALTH_PAUSED,
)

logger = get_logger("health")

# Failed attempts past the auto-pause threshold before a source is paused.
# With threshold=3: failures 1-2 degraded, 3 unhealthy, 4 paused.
PAUSE_AFTER_EXTRA_FAILURES = 1


def status_for_failure_count(failure_count: int, threshold: int) -> str:
    """Map a consecutive failure count to a health status for a failing source."""
    threshold = max(int(threshold or 1), 1)
    if failure_count <= 0:
        return HEALTH_HEALTHY
    if failure_count < threshold:
        return HEALTH_DEGRADED
    if failure_count < threshold + PAUSE_AFTER_EXTRA_FAILURES:
        return HEALTH_UNHEALTHY
    return HEALTH_PAUSED


class HealthTracker:
    """Computes a source's next health fields from a fetch result."""

    def observe(self, source: Source, result: FetchResult) -> Dict[str, Any]:
        """Return the health field updates implied by ``result``.

        The returned mapping contains ``health_status``, ``consecutive_failure_count``
        and ``last_error_message``. The source itself is not modified.
        """
        if source.health_status == HEALTH_PAUSED:
            # Paused only leaves via reset_fields()
            return {
                'health_status': HEALTH_PAUSED,
                'consecutive_failure_count': source.consecutive_failure_count,
                'last_error_message': source.last_error_message,
            }

        if result.succeeded:
            if source.health_status != HEALTH_HEALTHY:
                logger.info(f"Source {source.slug} recovered ({source.health_status} -> healthy)")
            return self.reset_fields()

        failure_count = max(int(source.consecutive_failure_count or 0), 0) + 1
        new_status = status_for_failure_count(failure_count, source.health_auto_pause_threshold)
        if new_status != source.health_status:
            logger.warning(
                f"Source {source.slug} health {source.health_status} -> {new_status} "
                f"after {failure_count} consecutive failures ({result.status})"
            )
        return {
            'health_status': new_status,
            'consecutive_failure_count': failure_count,
            'last_error_message': result.error_message or result.status,
        }

    @staticmethod
    def reset_fields() -> Dict[str, Any]:
        """Health fields of a freshly reset (or recovered) source."""
        return {
            'health_status': HEALTH_HEALTHY,
            'consecutive_failure_count': 0,
            'last_error_message': None,
        }
