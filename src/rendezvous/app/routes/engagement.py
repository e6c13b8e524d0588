"""Engagement lifecycle API endpoints.

Every mutation goes through the EngagementStore as a guarded transition:
the caller states the status it last saw and gets 409 if the engagement has
moved on since. Views are participant-filtered: verification codes are shown
only to the participant entitled to read them out.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from rendezvous.domain.enums import EngagementStatus
from rendezvous.domain.errors import (
    ChatAttachError,
    CodeMismatchError,
    ConflictError,
    EngagementError,
    InvalidPayloadError,
    InvalidTransitionError,
    NotFoundError,
    NotParticipantError,
    VerificationLockedError,
)
from rendezvous.domain.models import Engagement, EngagementEvent
from rendezvous.domain.schemas import (
    ChatRequest,
    CodeRequest,
    CreateEngagementRequest,
    EngagementEventOut,
    EngagementView,
    ParticipantRequest,
    TransitionRequest,
)
from rendezvous.infra.database import get_db
from rendezvous.services.chat_service import ChatService, ChatServiceError
from rendezvous.services.classifier import classify, group_engagements
from rendezvous.services.clock import Clock, utc_now
from rendezvous.services.engagement_state_machine import EngagementStateMachine
from rendezvous.services.engagement_store import ACCEPTED_STATES, EngagementStore
from rendezvous.services.side_effect_dispatcher import SideEffectDispatcher
from rendezvous.services.verification_handler import VerificationHandler, visible_codes

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/engagements", tags=["engagements"])


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_clock() -> Clock:
    return utc_now


def get_dispatcher(clock: Clock = Depends(get_clock)) -> SideEffectDispatcher:
    return SideEffectDispatcher(clock=clock)


def get_chat_service() -> ChatService:
    return ChatService()


def get_store(
    db: AsyncSession = Depends(get_db),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
    clock: Clock = Depends(get_clock),
) -> EngagementStore:
    return EngagementStore(db, dispatcher=dispatcher, clock=clock)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_engagement(
    engagement: Engagement,
    participant_id: str,
    state_machine: EngagementStateMachine,
    now: datetime,
) -> dict:
    """Serialize an engagement as seen by one participant."""
    role = engagement.role_of(participant_id)
    status = EngagementStatus(engagement.status)
    bucket = classify(engagement, now)
    allowed = (
        state_machine.get_allowed_actions(status, role, engagement, participant_id)
        if role is not None
        else []
    )

    view = EngagementView(
        id=engagement.id,
        initiator_id=engagement.initiator_id,
        recipient_id=engagement.recipient_id,
        match_id=engagement.match_id,
        note=engagement.note,
        status=engagement.status,
        role=role.value if role else None,
        schedule=engagement.schedule,
        scheduled_by=engagement.scheduled_by,
        handshake_initiated_by=engagement.handshake_initiated_by,
        chat_ref=engagement.chat_ref,
        cancelled_by=engagement.cancelled_by,
        cancel_reason=engagement.cancel_reason,
        decline_reason=engagement.decline_reason,
        created_at=_dt(engagement.created_at),
        responded_at=_dt(engagement.responded_at),
        scheduled_at=_dt(engagement.scheduled_at),
        verification_started_at=_dt(engagement.verification_started_at),
        verified_at=_dt(engagement.verified_at),
        completed_at=_dt(engagement.completed_at),
        cancelled_at=_dt(engagement.cancelled_at),
        declined_at=_dt(engagement.declined_at),
        withdrawn_at=_dt(engagement.withdrawn_at),
        version=engagement.version,
        bucket=bucket.value if bucket else None,
        allowed_actions=[a.value for a in allowed],
        **visible_codes(engagement, participant_id),
    )
    return view.model_dump(mode="json")


def _serialize_event(event: EngagementEvent) -> dict:
    return EngagementEventOut(
        id=event.id,
        engagement_id=event.engagement_id,
        event_type=event.event_type,
        actor_id=event.actor_id,
        from_status=event.from_status,
        to_status=event.to_status,
        data=event.data,
        created_at=_dt(event.created_at),
    ).model_dump()


def _http_error(e: EngagementError) -> HTTPException:
    """Translate a service error into the HTTP response the client sees."""
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, NotParticipantError):
        return HTTPException(status_code=403, detail="Access denied")
    if isinstance(e, VerificationLockedError):
        return HTTPException(
            status_code=429,
            detail={"message": str(e), "retry_after": e.retry_after},
            headers={"Retry-After": str(e.retry_after)},
        )
    if isinstance(e, InvalidTransitionError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, (ConflictError, ChatAttachError)):
        detail = {"message": str(e)}
        if isinstance(e, ConflictError):
            detail["expected_status"] = e.expected_status.value
            detail["actual_status"] = e.actual_status
        return HTTPException(status_code=409, detail=detail)
    if isinstance(e, CodeMismatchError):
        return HTTPException(
            status_code=422,
            detail={
                "message": str(e),
                "kind": e.kind.value,
                "reverted": e.reverted,
                "status": e.engagement.status if e.engagement is not None else None,
            },
        )
    if isinstance(e, InvalidPayloadError):
        return HTTPException(status_code=422, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("", status_code=201)
async def create_engagement(
    body: CreateEngagementRequest,
    store: EngagementStore = Depends(get_store),
):
    """Initiator sends a date request to the recipient."""
    try:
        engagement = await store.create_engagement(
            body.initiator_id, body.recipient_id, match_id=body.match_id, note=body.note,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return serialize_engagement(engagement, body.initiator_id, store.state_machine, store.clock())


@router.get("")
async def list_engagements(
    participant_id: str = Query(..., min_length=1),
    store: EngagementStore = Depends(get_store),
):
    """Participant dashboard grouped into pending / upcoming / past."""
    engagements = await store.list_for_participant(participant_id)
    now = store.clock()
    groups = group_engagements(engagements, now)
    return {
        bucket.value: [serialize_engagement(e, participant_id, store.state_machine, now) for e in items]
        for bucket, items in groups.items()
    }


@router.get("/{engagement_id}")
async def get_engagement(
    engagement_id: str,
    participant_id: str = Query(..., min_length=1),
    store: EngagementStore = Depends(get_store),
):
    try:
        engagement = await store.get(engagement_id)
        if engagement.role_of(participant_id) is None:
            raise NotParticipantError(engagement_id, participant_id)
    except EngagementError as e:
        raise _http_error(e)
    return serialize_engagement(engagement, participant_id, store.state_machine, store.clock())


@router.get("/{engagement_id}/timeline")
async def get_timeline(
    engagement_id: str,
    participant_id: str = Query(..., min_length=1),
    store: EngagementStore = Depends(get_store),
):
    """Audit trail of committed transitions, oldest first."""
    try:
        engagement = await store.get(engagement_id)
        if engagement.role_of(participant_id) is None:
            raise NotParticipantError(engagement_id, participant_id)
        events = await store.timeline(engagement_id)
    except EngagementError as e:
        raise _http_error(e)
    return [_serialize_event(ev) for ev in events]


@router.post("/{engagement_id}/transitions")
async def transition_engagement(
    engagement_id: str,
    body: TransitionRequest,
    store: EngagementStore = Depends(get_store),
):
    """Apply one participant action, guarded by the status the caller last saw."""
    try:
        engagement = await store.apply_transition(
            engagement_id, body.participant_id, body.expected_status, body.action, body.payload,
        )
    except EngagementError as e:
        raise _http_error(e)
    return serialize_engagement(engagement, body.participant_id, store.state_machine, store.clock())


@router.post("/{engagement_id}/verification/start")
async def start_verification(
    engagement_id: str,
    body: ParticipantRequest,
    store: EngagementStore = Depends(get_store),
):
    """Start the handshake; the response carries the code for this participant only."""
    handler = VerificationHandler(store)
    try:
        challenge = await handler.start_verification(
            engagement_id, body.participant_id, body.expected_status or EngagementStatus.SCHEDULED,
        )
    except EngagementError as e:
        raise _http_error(e)
    return serialize_engagement(challenge.engagement, body.participant_id, store.state_machine, store.clock())


@router.post("/{engagement_id}/verification/handshake")
async def submit_handshake_code(
    engagement_id: str,
    body: CodeRequest,
    store: EngagementStore = Depends(get_store),
):
    handler = VerificationHandler(store)
    try:
        engagement = await handler.submit_handshake_code(
            engagement_id, body.participant_id, body.code,
            body.expected_status or EngagementStatus.VERIFICATION_PENDING,
        )
    except EngagementError as e:
        raise _http_error(e)
    return serialize_engagement(engagement, body.participant_id, store.state_machine, store.clock())


@router.post("/{engagement_id}/verification/confirm")
async def submit_confirmation_code(
    engagement_id: str,
    body: CodeRequest,
    store: EngagementStore = Depends(get_store),
):
    handler = VerificationHandler(store)
    try:
        engagement = await handler.submit_confirmation_code(
            engagement_id, body.participant_id, body.code,
            body.expected_status or EngagementStatus.IN_PROGRESS,
        )
    except EngagementError as e:
        raise _http_error(e)
    return serialize_engagement(engagement, body.participant_id, store.state_machine, store.clock())


@router.post("/{engagement_id}/verification/complete")
async def complete_engagement(
    engagement_id: str,
    body: ParticipantRequest,
    store: EngagementStore = Depends(get_store),
):
    handler = VerificationHandler(store)
    try:
        engagement = await handler.complete(
            engagement_id, body.participant_id, body.expected_status or EngagementStatus.IN_PROGRESS,
        )
    except EngagementError as e:
        raise _http_error(e)
    return serialize_engagement(engagement, body.participant_id, store.state_machine, store.clock())


@router.post("/{engagement_id}/chat")
async def attach_chat(
    engagement_id: str,
    body: ChatRequest,
    store: EngagementStore = Depends(get_store),
    chat_service: ChatService = Depends(get_chat_service),
):
    """Provision the pair's chat channel and record it on the engagement."""
    try:
        engagement = await store.get(engagement_id)
        if engagement.role_of(body.participant_id) is None:
            raise NotParticipantError(engagement_id, body.participant_id)
        if not engagement.chat_ref:
            if engagement.status not in ACCEPTED_STATES:
                raise ChatAttachError(engagement_id, "chat is available only after the request is accepted")
            try:
                chat_ref = await chat_service.create_channel(
                    engagement.id, engagement.initiator_id, engagement.recipient_id,
                )
            except ChatServiceError as e:
                raise HTTPException(status_code=502, detail=f"Chat service unavailable: {e}")
            engagement = await store.attach_chat_ref(engagement_id, body.participant_id, chat_ref)
    except EngagementError as e:
        raise _http_error(e)
    return serialize_engagement(engagement, body.participant_id, store.state_machine, store.clock())
