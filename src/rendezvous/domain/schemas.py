"""Pydantic v2 schemas for transition payloads and API request/response validation."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from rendezvous.domain.enums import EngagementAction, EngagementStatus


# ---------------------------------------------------------------------------
# Transition payloads
# ---------------------------------------------------------------------------


class ScheduleDetails(BaseModel):
    """Where and when the date happens."""

    model_config = ConfigDict(str_strip_whitespace=True)

    day: str = Field(min_length=1, max_length=30)
    time: str = Field(min_length=1, max_length=30)
    venue: str = Field(min_length=1, max_length=255)
    activity: Optional[str] = Field(default=None, max_length=200)
    location_ref: Optional[str] = Field(default=None, max_length=255)
    date: Optional[datetime] = None
    note: Optional[str] = None

    def summary(self) -> str:
        """Human-readable one-liner, e.g. "Friday at 7:00 PM at Cafe X"."""
        text = f"{self.day} at {self.time} at {self.venue}"
        if self.activity:
            text = f"{self.activity}: {text}"
        return text


class CodeSubmission(BaseModel):
    """A 4-digit code typed in by a participant."""

    model_config = ConfigDict(str_strip_whitespace=True)

    code: str

    @field_validator("code")
    @classmethod
    def _four_digits(cls, v: str) -> str:
        if len(v) != 4 or not v.isdigit():
            raise ValueError("code must be exactly 4 digits")
        return v


class ReasonPayload(BaseModel):
    """Optional free-text reason for decline / withdraw / cancel."""

    reason: Optional[str] = Field(default=None, max_length=500)


# ---------------------------------------------------------------------------
# API requests
# ---------------------------------------------------------------------------


class CreateEngagementRequest(BaseModel):
    initiator_id: str = Field(min_length=1, max_length=64)
    recipient_id: str = Field(min_length=1, max_length=64)
    match_id: Optional[str] = None
    note: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def _distinct_participants(self):
        if self.initiator_id == self.recipient_id:
            raise ValueError("initiator_id and recipient_id must differ")
        return self


class TransitionRequest(BaseModel):
    """Generic guarded transition: the caller states the status it last saw."""

    participant_id: str
    expected_status: EngagementStatus
    action: EngagementAction
    payload: dict[str, Any] = Field(default_factory=dict)


class ParticipantRequest(BaseModel):
    participant_id: str
    expected_status: Optional[EngagementStatus] = None


class CodeRequest(ParticipantRequest):
    code: str


class ChatRequest(BaseModel):
    participant_id: str


# ---------------------------------------------------------------------------
# API responses
# ---------------------------------------------------------------------------


class EngagementView(BaseModel):
    """What a participant sees. Codes appear only for the participant owed them."""

    id: str
    initiator_id: str
    recipient_id: str
    match_id: Optional[str] = None
    note: Optional[str] = None
    status: str
    role: Optional[str] = None
    schedule: Optional[ScheduleDetails] = None
    scheduled_by: Optional[str] = None
    confirmation_code: Optional[str] = None
    handshake_code: Optional[str] = None
    handshake_initiated_by: Optional[str] = None
    chat_ref: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    decline_reason: Optional[str] = None

    created_at: Optional[str] = None
    responded_at: Optional[str] = None
    scheduled_at: Optional[str] = None
    verification_started_at: Optional[str] = None
    verified_at: Optional[str] = None
    completed_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    declined_at: Optional[str] = None
    withdrawn_at: Optional[str] = None

    version: int
    bucket: Optional[str] = None
    allowed_actions: list[str] = []


class EngagementEventOut(BaseModel):
    id: str
    engagement_id: str
    event_type: str
    actor_id: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    data: Optional[dict] = None
    created_at: Optional[str] = None

