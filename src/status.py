"""
Status tracking for ImageRepository records.
"""

from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional

from models import ConditionStatus, ImageRepository, ReadyCondition

READY_CONDITION = "Ready"

SUSPENDED_REASON = "Suspended"
INVALID_IMAGE_REFERENCE_REASON = "InvalidImageReference"
RECONCILIATION_FAILED_REASON = "ReconciliationFailed"
RECONCILIATION_SUCCEEDED_REASON = "ReconciliationSucceeded"


def with_readiness(
    repo: ImageRepository,
    status: ConditionStatus,
    reason: str,
    message: str,
    now: Optional[datetime] = None,
) -> ImageRepository:
    """
    Return a copy of ``repo`` with a fresh Ready condition.

    The previous condition is replaced, not amended, and observedGeneration is
    advanced to the record's generation.
    """
    updated = repo.copy()
    updated.status = replace(
        updated.status,
        ready=ReadyCondition(
            status=status,
            reason=reason,
            message=message,
            last_transition_time=now or datetime.now(timezone.utc),
        ),
        observed_generation=repo.generation,
    )
    return updated


def last_transition_time(repo: ImageRepository) -> Optional[datetime]:
    """Timestamp of the Ready condition, or None if the record has none."""
    if repo.status.ready is None:
        return None
    return repo.status.ready.last_transition_time
