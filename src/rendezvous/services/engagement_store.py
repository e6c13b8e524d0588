"""Engagement store: guarded, atomic state transitions.

Every mutation follows the same discipline:

1. read the engagement fresh from the database,
2. check the action is legal from the caller's ``expected_status``,
3. check the persisted status still equals ``expected_status``,
4. mutate, write an audit event and queue notifications,
5. commit with ``WHERE version = :loaded``.

A writer that loses the race at step 3 or 5 gets ``ConflictError`` and must
refetch. Notifications are delivered only after the commit succeeds.
"""

import logging
import uuid
from typing import Any, Callable, Optional

from pydantic import ValidationError
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from rendezvous.app.config import get_settings
from rendezvous.domain.enums import (
    CodeKind,
    EngagementAction,
    EngagementEventType,
    EngagementStatus,
    ParticipantRole,
)
from rendezvous.domain.errors import (
    ChatAttachError,
    CodeMismatchError,
    ConflictError,
    EngagementError,
    InvalidPayloadError,
    NotFoundError,
    NotParticipantError,
)
from rendezvous.domain.models import Engagement, EngagementEvent
from rendezvous.domain.schemas import CodeSubmission, ReasonPayload, ScheduleDetails
from rendezvous.services.clock import Clock, as_utc, utc_now
from rendezvous.services.code_generator import CodeGenerator, codes_match
from rendezvous.services.engagement_state_machine import (
    HANDSHAKE_REVERT_STATUS,
    EngagementStateMachine,
)
from rendezvous.services.side_effect_dispatcher import SideEffectDispatcher

logger = logging.getLogger(__name__)

S = EngagementStatus
A = EngagementAction
E = EngagementEventType

# States in which the pair has agreed to meet; a chat channel may exist
ACCEPTED_STATES = {
    S.ACCEPTED.value,
    S.SCHEDULED.value,
    S.VERIFICATION_PENDING.value,
    S.IN_PROGRESS.value,
    S.COMPLETED.value,
    S.CANCELLED.value,
}


class _Outcome:
    """What a handler did to the engagement."""

    __slots__ = ("status", "event_type", "data", "code_mismatch")

    def __init__(self, status, event_type, data=None, code_mismatch: Optional[CodeKind] = None):
        self.status = status
        self.event_type = event_type
        self.data = data
        self.code_mismatch = code_mismatch


class EngagementStore:
    """Holds engagements and applies guarded transitions to them."""

    def __init__(
        self,
        db: AsyncSession,
        code_generator: Optional[CodeGenerator] = None,
        dispatcher: Optional[SideEffectDispatcher] = None,
        state_machine: Optional[EngagementStateMachine] = None,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.code_generator = code_generator or CodeGenerator()
        self.dispatcher = dispatcher or SideEffectDispatcher(clock=clock)
        if state_machine is None:
            settings = get_settings()
            state_machine = EngagementStateMachine(
                handshake_max_failures=settings.handshake_max_failures,
                handshake_cooldown_seconds=settings.handshake_cooldown_seconds,
            )
        self.state_machine = state_machine
        self.clock = clock

        self._handlers: dict[EngagementAction, Callable[..., _Outcome]] = {
            A.ACCEPT: self._accept,
            A.DECLINE: self._decline,
            A.WITHDRAW: self._withdraw,
            A.SCHEDULE: self._schedule,
            A.CANCEL: self._cancel,
            A.START_VERIFICATION: self._start_verification,
            A.SUBMIT_HANDSHAKE_CODE: self._submit_handshake_code,
            A.SUBMIT_CONFIRMATION_CODE: self._submit_confirmation_code,
            A.COMPLETE: self._complete,
        }

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, engagement_id: str) -> Engagement:
        """Fetch an engagement by id, bypassing any stale identity-map copy."""
        result = await self.db.execute(
            select(Engagement)
            .where(Engagement.id == engagement_id)
            .execution_options(populate_existing=True)
        )
        engagement = result.scalar_one_or_none()
        if engagement is None:
            raise NotFoundError(engagement_id)
        return engagement

    async def list_for_participant(self, participant_id: str) -> list[Engagement]:
        result = await self.db.execute(
            select(Engagement)
            .where(or_(Engagement.initiator_id == participant_id, Engagement.recipient_id == participant_id))
            .order_by(Engagement.created_at.desc())
        )
        return list(result.scalars().all())

    async def timeline(self, engagement_id: str) -> list[EngagementEvent]:
        await self.get(engagement_id)
        result = await self.db.execute(
            select(EngagementEvent)
            .where(EngagementEvent.engagement_id == engagement_id)
            .order_by(EngagementEvent.created_at.asc())
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_engagement(
        self,
        initiator_id: str,
        recipient_id: str,
        match_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Engagement:
        """Record the initiator's date request."""
        if not initiator_id or not recipient_id:
            raise ValueError("initiator_id and recipient_id are required")
        if initiator_id == recipient_id:
            raise ValueError("initiator_id and recipient_id must differ")

        now = self.clock()
        engagement = Engagement(
            id=str(uuid.uuid4()),
            initiator_id=initiator_id,
            recipient_id=recipient_id,
            match_id=match_id,
            note=note,
            status=S.REQUESTED.value,
            handshake_failures=0,
            created_at=now,
            updated_at=now,
        )
        self.db.add(engagement)

        event = self._event(engagement, E.REQUESTED, initiator_id, None, S.REQUESTED.value, None, now)
        entries = await self.dispatcher.plan(self.db, engagement, event)
        await self.db.commit()

        logger.info("Engagement %s: requested by %s for %s", engagement.id, initiator_id, recipient_id)
        await self.dispatcher.deliver(self.db, entries)
        return engagement

    # ------------------------------------------------------------------
    # Guarded transitions
    # ------------------------------------------------------------------

    async def apply_transition(
        self,
        engagement_id: str,
        participant_id: str,
        expected_status: EngagementStatus | str,
        action: EngagementAction | str,
        payload: Optional[dict[str, Any]] = None,
    ) -> Engagement:
        """Apply one participant action atomically.

        Raises NotFoundError, NotParticipantError, InvalidTransitionError,
        InvalidPayloadError, ConflictError or CodeMismatchError. A wrong
        handshake code raises CodeMismatchError *after* committing the
        return to "scheduled".

        A lost version race or an unexpected error rolls the session back,
        which expires every instance it holds. Callers keep the id and
        refetch rather than reading attributes off an engagement they loaded
        earlier.
        """
        expected_status = EngagementStatus(expected_status)
        action = EngagementAction(action)
        payload = payload or {}

        engagement = await self.get(engagement_id)
        role = self._role(engagement, participant_id)

        self.state_machine.validate_transition(expected_status, action, role)
        if engagement.status != expected_status.value:
            raise ConflictError(engagement_id, expected_status, engagement.status)

        now = self.clock()
        self.state_machine.check_guards(expected_status, action, engagement, participant_id, now)

        handler = self._handlers[action]
        from_status = engagement.status
        try:
            outcome = handler(engagement, participant_id, payload, now)
            engagement.status = outcome.status.value
            engagement.updated_at = now
            event = self._event(
                engagement, outcome.event_type, participant_id,
                from_status, outcome.status.value, outcome.data, now,
            )
            entries = await self.dispatcher.plan(self.db, engagement, event)
            await self.db.commit()
        except StaleDataError:
            await self.db.rollback()
            logger.warning(
                "Engagement %s: %s by %s lost a concurrent write", engagement_id, action.value, participant_id,
            )
            raise ConflictError(engagement_id, expected_status) from None
        except EngagementError:
            # Handlers raise before mutating anything
            raise
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Engagement %s: %s → %s (action=%s, participant=%s)",
            engagement.id, from_status, outcome.status.value, action.value, participant_id,
        )
        await self.dispatcher.deliver(self.db, entries)

        if outcome.code_mismatch is not None:
            raise CodeMismatchError(engagement.id, outcome.code_mismatch, reverted=True, engagement=engagement)
        return engagement

    async def attach_chat_ref(self, engagement_id: str, participant_id: str, chat_ref: str) -> Engagement:
        """Attach the external chat channel once the request has been accepted."""
        engagement = await self.get(engagement_id)
        self._role(engagement, participant_id)
        status = EngagementStatus(engagement.status)

        if engagement.chat_ref == chat_ref:
            return engagement
        if engagement.chat_ref:
            raise ChatAttachError(engagement.id, "a chat channel is already attached")
        if engagement.status not in ACCEPTED_STATES:
            raise ChatAttachError(engagement.id, "chat is available only after the request is accepted")

        now = self.clock()
        try:
            engagement.chat_ref = chat_ref
            engagement.updated_at = now
            self._event(engagement, E.CHAT_ATTACHED, participant_id, engagement.status, engagement.status, None, now)
            await self.db.commit()
        except StaleDataError:
            await self.db.rollback()
            raise ConflictError(engagement_id, status) from None

        logger.info("Engagement %s: chat channel attached by %s", engagement.id, participant_id)
        return engagement

    # ------------------------------------------------------------------
    # Action handlers: mutate the engagement, return the outcome
    # ------------------------------------------------------------------

    def _accept(self, engagement, participant_id, payload, now) -> _Outcome:
        engagement.responded_at = engagement.responded_at or now
        return _Outcome(S.ACCEPTED, E.ACCEPTED)

    def _decline(self, engagement, participant_id, payload, now) -> _Outcome:
        body = self._parse(A.DECLINE, ReasonPayload, payload)
        engagement.responded_at = engagement.responded_at or now
        engagement.declined_at = now
        engagement.decline_reason = body.reason
        return _Outcome(S.DECLINED, E.DECLINED, {"reason": body.reason})

    def _withdraw(self, engagement, participant_id, payload, now) -> _Outcome:
        body = self._parse(A.WITHDRAW, ReasonPayload, payload)
        engagement.withdrawn_at = now
        return _Outcome(S.WITHDRAWN, E.WITHDRAWN, {"reason": body.reason})

    def _schedule(self, engagement, participant_id, payload, now) -> _Outcome:
        details = self._parse(A.SCHEDULE, ScheduleDetails, payload)
        engagement.schedule_day = details.day
        engagement.schedule_time = details.time
        engagement.schedule_activity = details.activity
        engagement.schedule_venue = details.venue
        engagement.schedule_location_ref = details.location_ref
        engagement.schedule_date = as_utc(details.date)
        engagement.schedule_note = details.note
        engagement.scheduled_by = participant_id
        engagement.scheduled_at = engagement.scheduled_at or now
        if engagement.confirmation_code is None:
            engagement.confirmation_code = self.code_generator.generate()
        return _Outcome(S.SCHEDULED, E.SCHEDULED, {"summary": details.summary()})

    def _cancel(self, engagement, participant_id, payload, now) -> _Outcome:
        body = self._parse(A.CANCEL, ReasonPayload, payload)
        engagement.cancelled_by = participant_id
        engagement.cancel_reason = body.reason
        engagement.cancelled_at = now
        self._clear_handshake(engagement)
        return _Outcome(S.CANCELLED, E.CANCELLED, {"reason": body.reason, "cancelled_by": participant_id})

    def _start_verification(self, engagement, participant_id, payload, now) -> _Outcome:
        max_failures = self.state_machine.handshake_max_failures
        if max_failures and (engagement.handshake_failures or 0) >= max_failures:
            # Lockout window has passed (guards ran already); start a fresh budget
            engagement.handshake_failures = 0
        engagement.handshake_code = self.code_generator.generate()
        engagement.handshake_initiated_by = participant_id
        engagement.verification_started_at = engagement.verification_started_at or now
        return _Outcome(S.VERIFICATION_PENDING, E.VERIFICATION_STARTED, {"initiated_by": participant_id})

    def _submit_handshake_code(self, engagement, participant_id, payload, now) -> _Outcome:
        body = self._parse(A.SUBMIT_HANDSHAKE_CODE, CodeSubmission, payload)
        matched = codes_match(engagement.handshake_code, body.code)
        initiated_by = engagement.handshake_initiated_by
        self._clear_handshake(engagement)

        if matched:
            engagement.verified_at = engagement.verified_at or now
            return _Outcome(S.IN_PROGRESS, E.HANDSHAKE_VERIFIED, {"initiated_by": initiated_by})

        engagement.handshake_failures = (engagement.handshake_failures or 0) + 1
        engagement.last_handshake_failure_at = now
        logger.warning(
            "Engagement %s: wrong handshake code from %s (failure %d)",
            engagement.id, participant_id, engagement.handshake_failures,
        )
        return _Outcome(
            HANDSHAKE_REVERT_STATUS,
            E.HANDSHAKE_FAILED,
            {"initiated_by": initiated_by, "failures": engagement.handshake_failures},
            code_mismatch=CodeKind.HANDSHAKE,
        )

    def _submit_confirmation_code(self, engagement, participant_id, payload, now) -> _Outcome:
        body = self._parse(A.SUBMIT_CONFIRMATION_CODE, CodeSubmission, payload)
        if not codes_match(engagement.confirmation_code, body.code):
            logger.warning("Engagement %s: wrong confirmation code from %s", engagement.id, participant_id)
            raise CodeMismatchError(engagement.id, CodeKind.CONFIRMATION, engagement=engagement)
        engagement.completed_at = now
        self._clear_handshake(engagement)
        return _Outcome(S.COMPLETED, E.COMPLETED, {"via": "confirmation_code"})

    def _complete(self, engagement, participant_id, payload, now) -> _Outcome:
        engagement.completed_at = now
        return _Outcome(S.COMPLETED, E.COMPLETED, {"via": "handshake"})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _role(engagement: Engagement, participant_id: str) -> ParticipantRole:
        role = engagement.role_of(participant_id)
        if role is None:
            raise NotParticipantError(engagement.id, participant_id)
        return role

    @staticmethod
    def _parse(action: EngagementAction, schema, payload: dict):
        try:
            return schema.model_validate(payload)
        except ValidationError as e:
            reasons = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}" for err in e.errors()
            )
            raise InvalidPayloadError(action, reasons) from None

    @staticmethod
    def _clear_handshake(engagement: Engagement) -> None:
        engagement.handshake_code = None
        engagement.handshake_initiated_by = None

    def _event(self, engagement, event_type, actor_id, from_status, to_status, data, now) -> EngagementEvent:
        event = EngagementEvent(
            id=str(uuid.uuid4()),
            engagement_id=engagement.id,
            event_type=event_type.value,
            actor_id=actor_id,
            from_status=from_status,
            to_status=to_status,
            data=data,
            created_at=now,
        )
        self.db.add(event)
        return event
