"""SQLAlchemy ORM models for engagements.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- JSON for structured data (no JSONB)
- DateTime for timestamps (no TIMESTAMPTZ)
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from rendezvous.domain.enums import EngagementStatus, ParticipantRole
from rendezvous.domain.schemas import ScheduleDetails
from rendezvous.infra.database import Base


class Engagement(Base):
    """A date proposal between two participants, from request to completion."""

    __tablename__ = "engagements"
    __table_args__ = (
        CheckConstraint("initiator_id <> recipient_id", name="ck_engagement_distinct_participants"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    initiator_id = Column(String(64), nullable=False, index=True)
    recipient_id = Column(String(64), nullable=False, index=True)
    match_id = Column(String(64), nullable=True)
    note = Column(String(500), nullable=True)

    # Status
    status = Column(String(30), nullable=False, default=EngagementStatus.REQUESTED.value, index=True)

    # Schedule: present from "scheduled" onward
    schedule_day = Column(String(30), nullable=True)
    schedule_time = Column(String(30), nullable=True)
    schedule_activity = Column(String(200), nullable=True)
    schedule_venue = Column(String(255), nullable=True)
    schedule_location_ref = Column(String(255), nullable=True)
    schedule_date = Column(DateTime, nullable=True)
    schedule_note = Column(Text, nullable=True)
    scheduled_by = Column(String(64), nullable=True)

    # Verification
    confirmation_code = Column(String(4), nullable=True)
    handshake_code = Column(String(4), nullable=True)
    handshake_initiated_by = Column(String(64), nullable=True)
    handshake_failures = Column(Integer, nullable=False, default=0)
    last_handshake_failure_at = Column(DateTime, nullable=True)

    # Chat channel, owned by the external chat collaborator
    chat_ref = Column(String(255), nullable=True)

    # Terminal attribution
    cancelled_by = Column(String(64), nullable=True)
    cancel_reason = Column(String(500), nullable=True)
    decline_reason = Column(String(500), nullable=True)

    # Lifecycle timestamps, each set at most once
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    responded_at = Column(DateTime, nullable=True)
    scheduled_at = Column(DateTime, nullable=True)
    verification_started_at = Column(DateTime, nullable=True)
    verified_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    declined_at = Column(DateTime, nullable=True)
    withdrawn_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    # Optimistic concurrency: every UPDATE carries "WHERE version = :loaded"
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    events = relationship("EngagementEvent", back_populates="engagement")

    @property
    def schedule(self) -> ScheduleDetails | None:
        if self.schedule_venue is None and self.schedule_day is None:
            return None
        return ScheduleDetails(
            day=self.schedule_day,
            time=self.schedule_time,
            activity=self.schedule_activity,
            venue=self.schedule_venue,
            location_ref=self.schedule_location_ref,
            date=self.schedule_date,
            note=self.schedule_note,
        )

    @property
    def has_handshake(self) -> bool:
        return self.handshake_code is not None

    def role_of(self, participant_id: str) -> ParticipantRole | None:
        """Return the participant's role, or None for outsiders."""
        if participant_id == self.initiator_id:
            return ParticipantRole.INITIATOR
        if participant_id == self.recipient_id:
            return ParticipantRole.RECIPIENT
        return None

    def other_participant(self, participant_id: str) -> str:
        if participant_id == self.initiator_id:
            return self.recipient_id
        return self.initiator_id


class EngagementEvent(Base):
    """Immutable audit trail entry for engagement state transitions."""

    __tablename__ = "engagement_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    engagement_id = Column(String(36), ForeignKey("engagements.id"), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)  # EngagementEventType
    actor_id = Column(String(64), nullable=True)
    from_status = Column(String(30), nullable=True)  # EngagementStatus
    to_status = Column(String(30), nullable=True)  # EngagementStatus
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    # Relationships
    engagement = relationship("Engagement", back_populates="events")


class NotificationOutbox(Base):
    """A notification owed to a participant, written with the transition that caused it."""

    __tablename__ = "notification_outbox"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    engagement_id = Column(String(36), ForeignKey("engagements.id"), nullable=False, index=True)
    recipient_id = Column(String(64), nullable=False)
    kind = Column(String(30), nullable=False)  # NotificationKind
    payload = Column(JSON, nullable=True)
    idempotency_key = Column(String(120), nullable=False)
    dedup_key = Column(String(200), nullable=False, unique=True)

    status = Column(String(20), nullable=False, default="pending", index=True)  # OutboxStatus
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime, nullable=True)
    last_error = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    delivered_at = Column(DateTime, nullable=True)
