"""Verification handler: the two-phase in-person check.

Phase A (handshake): one participant starts verification and receives a
fresh code; the other participant types it in. A match moves the engagement
to "in_progress"; a miss sends it back to "scheduled" and a new code must be
started.

Phase B (confirmation): either participant submits the confirmation code
minted at scheduling time, from "scheduled" or "in_progress". A match
completes the engagement; a miss changes nothing.

Codes are never logged and never written to events or notifications.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from rendezvous.domain.enums import EngagementAction, EngagementStatus
from rendezvous.domain.models import Engagement
from rendezvous.services.engagement_store import EngagementStore

logger = logging.getLogger(__name__)


@dataclass
class HandshakeChallenge:
    """Result of starting a handshake. ``code`` goes to the initiator only."""

    engagement: Engagement
    code: str


class VerificationHandler:
    """Runs the handshake and confirmation phases on top of the store."""

    def __init__(self, store: EngagementStore):
        self.store = store

    async def start_verification(
        self,
        engagement_id: str,
        participant_id: str,
        expected_status: EngagementStatus = EngagementStatus.SCHEDULED,
    ) -> HandshakeChallenge:
        """Mint a handshake code for ``participant_id`` to show the other person."""
        engagement = await self.store.apply_transition(
            engagement_id, participant_id, expected_status, EngagementAction.START_VERIFICATION,
        )
        logger.info("Engagement %s: handshake started by %s", engagement.id, participant_id)
        return HandshakeChallenge(engagement=engagement, code=engagement.handshake_code)

    async def submit_handshake_code(
        self,
        engagement_id: str,
        participant_id: str,
        code: str,
        expected_status: EngagementStatus = EngagementStatus.VERIFICATION_PENDING,
    ) -> Engagement:
        """The other participant answers the handshake.

        Raises CodeMismatchError (with ``reverted=True``) after the engagement
        has been returned to "scheduled".
        """
        return await self.store.apply_transition(
            engagement_id, participant_id, expected_status,
            EngagementAction.SUBMIT_HANDSHAKE_CODE, {"code": code},
        )

    async def submit_confirmation_code(
        self,
        engagement_id: str,
        participant_id: str,
        code: str,
        expected_status: EngagementStatus = EngagementStatus.IN_PROGRESS,
    ) -> Engagement:
        """Complete the engagement with the confirmation code.

        Valid from "scheduled" and "in_progress". Callers confirming straight
        from "scheduled" must say so; a caller whose view is stale gets a
        ConflictError.
        """
        return await self.store.apply_transition(
            engagement_id, participant_id, expected_status,
            EngagementAction.SUBMIT_CONFIRMATION_CODE, {"code": code},
        )

    async def complete(
        self,
        engagement_id: str,
        participant_id: str,
        expected_status: EngagementStatus = EngagementStatus.IN_PROGRESS,
    ) -> Engagement:
        """Finish a date whose handshake already succeeded."""
        return await self.store.apply_transition(
            engagement_id, participant_id, expected_status, EngagementAction.COMPLETE,
        )


def visible_codes(engagement: Engagement, participant_id: str) -> dict[str, Optional[str]]:
    """Codes ``participant_id`` is allowed to see on this engagement."""
    return {
        "handshake_code": (
            engagement.handshake_code
            if engagement.handshake_code and participant_id == engagement.handshake_initiated_by
            else None
        ),
        "confirmation_code": (
            engagement.confirmation_code
            if engagement.confirmation_code and participant_id == engagement.scheduled_by
            else None
        ),
    }
