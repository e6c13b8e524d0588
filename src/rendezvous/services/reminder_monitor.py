"""Background job for date reminders ahead of a scheduled date."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rendezvous.app.config import get_settings
from rendezvous.domain.enums import EngagementStatus, NotificationKind
from rendezvous.domain.models import Engagement
from rendezvous.services.clock import as_utc, utc_now
from rendezvous.services.side_effect_dispatcher import SideEffectDispatcher

logger = logging.getLogger(__name__)

REMINDER_STATUS_KEY = "reminder"


async def send_date_reminders(
    db: AsyncSession,
    dispatcher: SideEffectDispatcher,
    now: Optional[datetime] = None,
    lead_hours: Optional[int] = None,
) -> int:
    """Remind both participants of dates starting within ``lead_hours``.

    Each participant is reminded at most once per engagement. Returns the
    number of reminders queued by this run.
    """
    now = as_utc(now or utc_now())
    if lead_hours is None:
        lead_hours = get_settings().reminder_lead_hours
    horizon = now + timedelta(hours=lead_hours)

    result = await db.execute(
        select(Engagement).where(
            Engagement.status == EngagementStatus.SCHEDULED.value,
            Engagement.schedule_date.isnot(None),
        )
    )
    engagements = result.scalars().all()

    entries = []
    for eng in engagements:
        date = as_utc(eng.schedule_date)
        if date < now or date > horizon:
            continue

        schedule = eng.schedule
        payload = {
            "engagement_id": eng.id,
            "schedule": schedule.model_dump(mode="json") if schedule else None,
            "summary": schedule.summary() if schedule else None,
            "hours_until": round((date - now).total_seconds() / 3600, 1),
        }
        for recipient_id in (eng.initiator_id, eng.recipient_id):
            entry = await dispatcher.enqueue(
                db,
                engagement_id=eng.id,
                recipient_id=recipient_id,
                kind=NotificationKind.DATE_REMINDER,
                payload=payload,
                status_key=REMINDER_STATUS_KEY,
            )
            if entry is not None:
                entries.append(entry)
                logger.info("Date reminder queued: engagement=%s, recipient=%s, date=%s", eng.id, recipient_id, date)

    await db.commit()
    await dispatcher.deliver(db, entries)
    return len(entries)
