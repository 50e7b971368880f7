"""
Scan scheduling - decides whether an image repository is due for a scan.

Pure functions only: the caller supplies the clock reading and the stored tag
count, which keeps every time-based behaviour unit testable.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

DEFAULT_SCAN_INTERVAL = timedelta(minutes=10)

# Rescan immediately rather than requeue for less than this
MIN_REQUEUE_DELAY = timedelta(seconds=1)


@dataclass(frozen=True)
class ScanDecision:
    """Whether to scan now, and how long until the record should be looked at again."""

    scan_now: bool
    next_check_in: timedelta


def decide(
    scan_interval: timedelta,
    last_transition_time: Optional[datetime],
    stored_tag_count: int,
    now: datetime,
) -> ScanDecision:
    """
    Decide whether a repository should be scanned now.

    Rules, first match wins:

    1. Never reconciled (no Ready condition): scan now.
    2. No tags stored for the repository: scan now. The tag store may have
       been reset while the record still looks ready, so a remembered Ready
       condition can't be trusted. A repository that really has zero tags is
       therefore rescanned on every cycle.
    3. Otherwise scan once ``scan_interval`` has elapsed since the last
       transition, treating less than a second to go as elapsed.

    Args:
        scan_interval: Minimum time between scans.
        last_transition_time: Timestamp of the Ready condition, if any.
        stored_tag_count: Number of tags currently in the tag store.
        now: The current time.

    Returns:
        A ScanDecision. When scanning, ``next_check_in`` is the full interval;
        otherwise it is exactly the time remaining.
    """
    if last_transition_time is None:
        return ScanDecision(True, scan_interval)

    if stored_tag_count == 0:
        return ScanDecision(True, scan_interval)

    remaining = scan_interval - (now - last_transition_time)
    if remaining < MIN_REQUEUE_DELAY:
        return ScanDecision(True, scan_interval)
    return ScanDecision(False, remaining)
