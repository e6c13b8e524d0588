"""Side-effect dispatcher: notifications owed by committed transitions.

Two halves:

* ``plan`` runs inside the transition's transaction and writes
  ``NotificationOutbox`` rows. If the transition rolls back (for example on a
  version conflict) the rows vanish with it, so nothing is ever sent for a
  transition that did not commit.
* ``deliver`` runs after the commit and pushes rows to the notifier. A
  failed delivery is recorded on the row and retried later by
  ``retry_pending``; it never touches the engagement itself.

Rows carry a unique ``dedup_key`` of ``engagement:status:recipient``, which
makes planning idempotent, and an ``idempotency_key`` of
``engagement:status`` that is forwarded to the consumer.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from rendezvous.app.config import get_settings
from rendezvous.domain.enums import EngagementEventType, NotificationKind, OutboxStatus
from rendezvous.domain.models import Engagement, EngagementEvent, NotificationOutbox
from rendezvous.services.clock import Clock, utc_now
from rendezvous.services.engagement_state_machine import TERMINAL_STATES
from rendezvous.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

# Event type -> notification kind sent to the other participant
COUNTERPART_NOTIFICATIONS: dict[str, NotificationKind] = {
    EngagementEventType.REQUESTED.value: NotificationKind.DATE_REQUESTED,
    EngagementEventType.SCHEDULED.value: NotificationKind.SCHEDULE_SET,
    EngagementEventType.DECLINED.value: NotificationKind.DECLINED,
    EngagementEventType.WITHDRAWN.value: NotificationKind.WITHDRAWN,
    EngagementEventType.CANCELLED.value: NotificationKind.CANCELLED,
}

# Reason tags let the client phrase "declined" vs "withdrawn" vs "cancelled"
REASON_TAGGED = {NotificationKind.DECLINED, NotificationKind.WITHDRAWN, NotificationKind.CANCELLED}

MAX_BACKOFF_SECONDS = 3600


class SideEffectDispatcher:
    """Plans and delivers notifications for engagement transitions."""

    def __init__(self, notifier=None, settings=None, clock: Clock = utc_now):
        self.settings = settings or get_settings()
        self.notifier = notifier or NotificationService(self.settings)
        self.clock = clock

    # ------------------------------------------------------------------
    # Planning (inside the transition transaction)
    # ------------------------------------------------------------------

    async def plan(
        self,
        db: AsyncSession,
        engagement: Engagement,
        event: EngagementEvent,
    ) -> list[NotificationOutbox]:
        """Queue the notifications a transition owes. Returns the new rows."""
        if event.event_type == EngagementEventType.COMPLETED.value:
            payload = {"engagement_id": engagement.id, "completed_at": _iso(engagement.completed_at)}
            recipients = [engagement.initiator_id, engagement.recipient_id]
            kind = NotificationKind.COMPLETED
        elif event.event_type in COUNTERPART_NOTIFICATIONS:
            kind = COUNTERPART_NOTIFICATIONS[event.event_type]
            actor = event.actor_id or engagement.initiator_id
            recipients = [engagement.other_participant(actor)]
            payload = self._payload_for(kind, engagement, event)
        else:
            return []

        entries = []
        for recipient_id in recipients:
            entry = await self.enqueue(
                db,
                engagement_id=engagement.id,
                recipient_id=recipient_id,
                kind=kind,
                payload=payload,
                status_key=event.to_status,
            )
            if entry is not None:
                entries.append(entry)
        return entries

    async def enqueue(
        self,
        db: AsyncSession,
        engagement_id: str,
        recipient_id: str,
        kind: NotificationKind,
        payload: dict,
        status_key: str,
    ) -> NotificationOutbox | None:
        """Add an outbox row unless one with the same dedup key exists."""
        dedup_key = f"{engagement_id}:{status_key}:{recipient_id}"
        existing = await db.execute(
            select(NotificationOutbox.id).where(NotificationOutbox.dedup_key == dedup_key)
        )
        if existing.scalar_one_or_none() is not None:
            logger.info("Notification %s already queued, skipping", dedup_key)
            return None

        entry = NotificationOutbox(
            engagement_id=engagement_id,
            recipient_id=recipient_id,
            kind=kind.value,
            payload=payload,
            idempotency_key=f"{engagement_id}:{status_key}",
            dedup_key=dedup_key,
            status=OutboxStatus.PENDING.value,
            attempts=0,
            created_at=self.clock(),
        )
        db.add(entry)
        return entry

    @staticmethod
    def _payload_for(kind: NotificationKind, engagement: Engagement, event: EngagementEvent) -> dict:
        data = event.data or {}
        payload = {"engagement_id": engagement.id, "from_participant": event.actor_id}

        if kind == NotificationKind.SCHEDULE_SET:
            schedule = engagement.schedule
            payload["schedule"] = schedule.model_dump(mode="json") if schedule else None
            payload["summary"] = schedule.summary() if schedule else None
        elif kind == NotificationKind.DATE_REQUESTED:
            payload["match_id"] = engagement.match_id
            payload["note"] = engagement.note
        elif kind in REASON_TAGGED:
            payload["reason_tag"] = kind.value
            payload["reason"] = data.get("reason")
        return payload

    # ------------------------------------------------------------------
    # Delivery (after commit)
    # ------------------------------------------------------------------

    async def deliver(self, db: AsyncSession, entries: list[NotificationOutbox]) -> int:
        """Push queued rows to the notifier. Failures are recorded, never raised."""
        if not entries:
            return 0

        delivered = 0
        for entry in entries:
            if entry.status != OutboxStatus.PENDING.value:
                continue
            try:
                result = await self.notifier.send_notification(
                    entry.recipient_id,
                    entry.kind,
                    entry.payload or {},
                    idempotency_key=entry.idempotency_key,
                )
            except Exception as e:
                logger.exception("Notifier raised for %s", entry.dedup_key)
                result = {"ok": False, "error": str(e)}

            if self._record_attempt(entry, result):
                delivered += 1

        try:
            await db.commit()
        except Exception as e:
            logger.error("Failed to persist notification delivery state: %s", e)
            await db.rollback()
        return delivered

    def _record_attempt(self, entry: NotificationOutbox, result: dict) -> bool:
        now = self.clock()
        entry.attempts = (entry.attempts or 0) + 1

        if result.get("ok"):
            entry.status = OutboxStatus.DELIVERED.value
            entry.delivered_at = now
            entry.last_error = None
            return True

        entry.last_error = str(result.get("error", "unknown"))[:500]
        if entry.attempts >= self.settings.notification_max_attempts:
            entry.status = OutboxStatus.FAILED.value
            logger.error(
                "Notification %s failed permanently after %d attempts: %s",
                entry.dedup_key, entry.attempts, entry.last_error,
            )
        else:
            entry.next_attempt_at = now + timedelta(seconds=self.backoff_seconds(entry.attempts))
            logger.warning(
                "Notification %s attempt %d failed (%s), retry at %s",
                entry.dedup_key, entry.attempts, entry.last_error, entry.next_attempt_at.isoformat(),
            )
        return False

    def backoff_seconds(self, attempts: int) -> int:
        base = max(1, self.settings.notification_retry_base_seconds)
        return min(MAX_BACKOFF_SECONDS, base * (2 ** (attempts - 1)))

    async def retry_pending(self, db: AsyncSession, limit: int = 100) -> int:
        """Deliver pending rows whose retry time has come. Returns the delivered count."""
        now = self.clock()
        result = await db.execute(
            select(NotificationOutbox)
            .where(
                NotificationOutbox.status == OutboxStatus.PENDING.value,
                or_(
                    NotificationOutbox.next_attempt_at.is_(None),
                    NotificationOutbox.next_attempt_at <= now,
                ),
            )
            .order_by(NotificationOutbox.created_at.asc())
            .limit(limit)
        )
        entries = list(result.scalars().all())
        if entries:
            logger.info("Retrying %d pending notifications", len(entries))
        return await self.deliver(db, entries)

    async def prune_settled(self, db: AsyncSession, retention_days: int | None = None) -> int:
        """Delete settled rows of finished engagements older than the retention window.

        Rows of live engagements are kept whatever their age, since their
        ``dedup_key`` still suppresses repeat notifications.
        """
        if retention_days is None:
            retention_days = self.settings.notification_retention_days
        cutoff = self.clock() - timedelta(days=retention_days)
        finished = select(Engagement.id).where(
            Engagement.status.in_([s.value for s in TERMINAL_STATES])
        )
        result = await db.execute(
            select(NotificationOutbox).where(
                NotificationOutbox.status.in_([OutboxStatus.DELIVERED.value, OutboxStatus.FAILED.value]),
                NotificationOutbox.created_at < cutoff,
                NotificationOutbox.engagement_id.in_(finished),
            )
        )
        rows = list(result.scalars().all())
        for row in rows:
            await db.delete(row)
        await db.commit()
        if rows:
            logger.info("Pruned %d settled notifications", len(rows))
        return len(rows)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
