"""Dashboard buckets for engagements.

Pure functions of (engagement, now); nothing here touches the database.
"""

from datetime import datetime, timezone
from typing import Iterable, Optional

from rendezvous.domain.enums import EngagementBucket, EngagementStatus
from rendezvous.services.clock import as_utc

EXCLUDED_STATES = {
    EngagementStatus.DECLINED.value,
    EngagementStatus.WITHDRAWN.value,
    EngagementStatus.CANCELLED.value,
}

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def classify(engagement, now: datetime) -> Optional[EngagementBucket]:
    """Place an engagement in Pending / Upcoming / Past, or None if hidden."""
    status = engagement.status
    if status == EngagementStatus.REQUESTED.value:
        return EngagementBucket.PENDING
    if status in EXCLUDED_STATES:
        return None
    if status == EngagementStatus.COMPLETED.value:
        return EngagementBucket.PAST

    date = as_utc(engagement.schedule_date)
    if date is None or date >= as_utc(now):
        return EngagementBucket.UPCOMING
    # Overdue dates nobody confirmed
    return EngagementBucket.PAST


def group_engagements(engagements: Iterable, now: datetime) -> dict[EngagementBucket, list]:
    """Bucket and sort engagements for a participant's dashboard."""
    groups: dict[EngagementBucket, list] = {bucket: [] for bucket in EngagementBucket}
    for engagement in engagements:
        bucket = classify(engagement, now)
        if bucket is not None:
            groups[bucket].append(engagement)

    groups[EngagementBucket.PENDING].sort(key=lambda e: as_utc(e.created_at) or _EPOCH, reverse=True)
    groups[EngagementBucket.UPCOMING].sort(
        key=lambda e: (e.schedule_date is None, as_utc(e.schedule_date) or _EPOCH)
    )
    groups[EngagementBucket.PAST].sort(key=_past_sort_key, reverse=True)
    return groups


def _past_sort_key(engagement) -> datetime:
    return (
        as_utc(engagement.completed_at)
        or as_utc(engagement.schedule_date)
        or as_utc(engagement.updated_at)
        or _EPOCH
    )
