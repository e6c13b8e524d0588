"""Enumerations for the engagement lifecycle."""

from enum import Enum


class EngagementStatus(str, Enum):
    """Lifecycle position of an engagement."""

    REQUESTED = "requested"
    ACCEPTED = "accepted"
    SCHEDULED = "scheduled"
    VERIFICATION_PENDING = "verification_pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DECLINED = "declined"
    WITHDRAWN = "withdrawn"
    CANCELLED = "cancelled"


class EngagementAction(str, Enum):
    """Participant action requesting a guarded transition."""

    ACCEPT = "accept"
    DECLINE = "decline"
    WITHDRAW = "withdraw"
    SCHEDULE = "schedule"
    CANCEL = "cancel"
    START_VERIFICATION = "start_verification"
    SUBMIT_HANDSHAKE_CODE = "submit_handshake_code"
    SUBMIT_CONFIRMATION_CODE = "submit_confirmation_code"
    COMPLETE = "complete"


class ParticipantRole(str, Enum):
    """Which side of the engagement a participant is on."""

    INITIATOR = "initiator"
    RECIPIENT = "recipient"


class EngagementEventType(str, Enum):
    """Type of event in the engagement audit trail."""

    REQUESTED = "requested"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    WITHDRAWN = "withdrawn"
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"
    VERIFICATION_STARTED = "verification_started"
    HANDSHAKE_VERIFIED = "handshake_verified"
    HANDSHAKE_FAILED = "handshake_failed"
    COMPLETED = "completed"
    CHAT_ATTACHED = "chat_attached"


class EngagementBucket(str, Enum):
    """Presentation group produced by the classifier."""

    PENDING = "pending"
    UPCOMING = "upcoming"
    PAST = "past"


class NotificationKind(str, Enum):
    """Kind passed to the SendNotification collaborator."""

    DATE_REQUESTED = "date_requested"
    SCHEDULE_SET = "schedule_set"
    DECLINED = "declined"
    WITHDRAWN = "withdrawn"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    DATE_REMINDER = "date_reminder"


class OutboxStatus(str, Enum):
    """Delivery state of a queued notification."""

    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class CodeKind(str, Enum):
    """Which verification code a submission was checked against."""

    HANDSHAKE = "handshake"
    CONFIRMATION = "confirmation"
