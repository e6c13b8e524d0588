"""Exceptions raised by the engagement services."""

from rendezvous.domain.enums import CodeKind, EngagementAction, EngagementStatus


class EngagementError(Exception):
    """Base class for engagement lifecycle errors."""


class NotFoundError(EngagementError):
    """Raised when an engagement id does not exist."""

    def __init__(self, engagement_id: str):
        self.engagement_id = engagement_id
        super().__init__(f"Engagement {engagement_id} not found")


class NotParticipantError(EngagementError):
    """Raised when someone outside the pair acts on an engagement."""

    def __init__(self, engagement_id: str, participant_id: str):
        self.engagement_id = engagement_id
        self.participant_id = participant_id
        super().__init__(f"{participant_id} is not a participant of engagement {engagement_id}")


class InvalidTransitionError(EngagementError):
    """Raised when an action is not legal from the given status."""

    def __init__(
        self,
        current_status: EngagementStatus,
        action: EngagementAction,
        reason: str,
    ):
        self.current_status = current_status
        self.action = action
        self.reason = reason
        super().__init__(
            f"Invalid action {action.value} from {current_status.value}: {reason}"
        )


class ConflictError(EngagementError):
    """Raised when the persisted engagement changed since the caller last read it."""

    def __init__(
        self,
        engagement_id: str,
        expected_status: EngagementStatus,
        actual_status: str | None = None,
    ):
        self.engagement_id = engagement_id
        self.expected_status = expected_status
        self.actual_status = actual_status
        detail = f"expected {expected_status.value}"
        if actual_status:
            detail += f", found {actual_status}"
        else:
            detail += ", modified concurrently"
        super().__init__(f"Engagement {engagement_id} conflict: {detail}")


class CodeMismatchError(EngagementError):
    """Raised when a submitted verification code is wrong.

    ``reverted`` is True for handshake codes, where the failed attempt has
    already been committed as a return to "scheduled".
    """

    def __init__(self, engagement_id: str, kind: CodeKind, reverted: bool = False, engagement=None):
        self.engagement_id = engagement_id
        self.kind = kind
        self.reverted = reverted
        self.engagement = engagement
        super().__init__(f"Incorrect {kind.value} code for engagement {engagement_id}")


class InvalidPayloadError(EngagementError):
    """Raised when action-specific data is missing or malformed."""

    def __init__(self, action: EngagementAction, reason: str):
        self.action = action
        self.reason = reason
        super().__init__(f"Invalid payload for {action.value}: {reason}")


class ChatAttachError(EngagementError):
    """Raised when a chat channel cannot be attached to the engagement."""

    def __init__(self, engagement_id: str, reason: str):
        self.engagement_id = engagement_id
        self.reason = reason
        super().__init__(f"Cannot attach chat to engagement {engagement_id}: {reason}")


class VerificationLockedError(InvalidTransitionError):
    """Raised when too many handshake attempts failed within the cooldown window."""

    def __init__(self, current_status: EngagementStatus, retry_after: int):
        self.retry_after = retry_after
        super().__init__(
            current_status,
            EngagementAction.START_VERIFICATION,
            f"too many failed handshakes, retry in {retry_after}s",
        )
