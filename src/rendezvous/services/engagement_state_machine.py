"""Engagement state machine: validates actions and enforces participant rules.

Encodes the date-proposal lifecycle:

    requested -> accepted | declined | withdrawn
    accepted -> scheduled | cancelled
    scheduled -> verification_pending | completed | cancelled
    verification_pending -> in_progress | scheduled (failed handshake) | cancelled
    in_progress -> completed | cancelled
"""

import math
from datetime import datetime, timedelta
from typing import NamedTuple, Optional

from rendezvous.domain.enums import EngagementAction, EngagementStatus, ParticipantRole
from rendezvous.domain.errors import InvalidTransitionError, VerificationLockedError
from rendezvous.services.clock import as_utc, utc_now


class Edge(NamedTuple):
    target: EngagementStatus
    roles: frozenset


# ---------------------------------------------------------------------------
# Transition map: from_status -> {action: Edge(to_status, allowed_roles)}
# ---------------------------------------------------------------------------

S = EngagementStatus
A = EngagementAction
R = ParticipantRole

EITHER = frozenset({R.INITIATOR, R.RECIPIENT})

TRANSITION_MAP: dict[EngagementStatus, dict[EngagementAction, Edge]] = {
    S.REQUESTED: {
        A.ACCEPT: Edge(S.ACCEPTED, frozenset({R.RECIPIENT})),
        A.DECLINE: Edge(S.DECLINED, frozenset({R.RECIPIENT})),
        A.WITHDRAW: Edge(S.WITHDRAWN, frozenset({R.INITIATOR})),
    },
    S.ACCEPTED: {
        A.SCHEDULE: Edge(S.SCHEDULED, EITHER),
    },
    S.SCHEDULED: {
        A.START_VERIFICATION: Edge(S.VERIFICATION_PENDING, EITHER),
        A.SUBMIT_CONFIRMATION_CODE: Edge(S.COMPLETED, EITHER),
    },
    S.VERIFICATION_PENDING: {
        A.SUBMIT_HANDSHAKE_CODE: Edge(S.IN_PROGRESS, EITHER),
    },
    S.IN_PROGRESS: {
        A.SUBMIT_CONFIRMATION_CODE: Edge(S.COMPLETED, EITHER),
        A.COMPLETE: Edge(S.COMPLETED, EITHER),
    },
}

TERMINAL_STATES: set[EngagementStatus] = {
    S.DECLINED,
    S.WITHDRAWN,
    S.CANCELLED,
    S.COMPLETED,
}

# Before acceptance the request is declined or withdrawn, never cancelled
CANCELLABLE_STATES: set[EngagementStatus] = {
    S.ACCEPTED,
    S.SCHEDULED,
    S.VERIFICATION_PENDING,
    S.IN_PROGRESS,
}

# A wrong handshake code sends the engagement back for a fresh code
HANDSHAKE_REVERT_STATUS = S.SCHEDULED

# Every status change the store may commit, as (from, to) pairs
STATUS_GRAPH: set[tuple[EngagementStatus, EngagementStatus]] = (
    {(src, edge.target) for src, edges in TRANSITION_MAP.items() for edge in edges.values()}
    | {(src, S.CANCELLED) for src in CANCELLABLE_STATES}
    | {(S.VERIFICATION_PENDING, HANDSHAKE_REVERT_STATUS)}
)


class EngagementStateMachine:
    """Validates engagement actions and enforces participant rules."""

    def __init__(self, handshake_max_failures: int = 0, handshake_cooldown_seconds: int = 0):
        self.handshake_max_failures = handshake_max_failures
        self.handshake_cooldown_seconds = handshake_cooldown_seconds

    def validate_transition(
        self,
        current_status: EngagementStatus,
        action: EngagementAction,
        role: ParticipantRole,
        engagement=None,
        participant_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EngagementStatus:
        """Return the target status. Raise InvalidTransitionError if not allowed.

        Checks:
        1. The status is not terminal.
        2. The action is in the map (or is a cancellation).
        3. The participant's role may perform it.
        4. The handshake initiator is not the one answering it.
        5. The handshake lockout window is not active.
        """
        if current_status in TERMINAL_STATES:
            raise InvalidTransitionError(
                current_status, action, f"{current_status.value} is terminal",
            )

        if action == A.CANCEL:
            if current_status not in CANCELLABLE_STATES:
                raise InvalidTransitionError(
                    current_status, action,
                    "a request that was never accepted is declined or withdrawn, not cancelled",
                )
            return S.CANCELLED

        allowed_actions = TRANSITION_MAP.get(current_status, {})
        edge = allowed_actions.get(action)
        if edge is None:
            raise InvalidTransitionError(
                current_status, action,
                f"{action.value} is not allowed from {current_status.value}",
            )

        if role not in edge.roles:
            raise InvalidTransitionError(
                current_status, action,
                f"Role {role.value} is not permitted for this action "
                f"(allowed: {', '.join(sorted(r.value for r in edge.roles))})",
            )

        if engagement is not None:
            self.check_guards(current_status, action, engagement, participant_id, now)

        return edge.target

    def check_guards(
        self,
        current_status: EngagementStatus,
        action: EngagementAction,
        engagement,
        participant_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Checks that depend on the engagement's stored fields, not only its status."""
        if (
            action == A.SUBMIT_HANDSHAKE_CODE
            and participant_id is not None
            and participant_id == engagement.handshake_initiated_by
        ):
            raise InvalidTransitionError(
                current_status, action,
                "the handshake code must be entered by the other participant",
            )

        if action == A.START_VERIFICATION:
            retry_after = self.handshake_retry_after(engagement, now or utc_now())
            if retry_after:
                raise VerificationLockedError(current_status, retry_after)

    def handshake_retry_after(self, engagement, now: datetime) -> int:
        """Seconds until a new handshake may start, 0 if it may start now."""
        if self.handshake_max_failures <= 0 or self.handshake_cooldown_seconds <= 0:
            return 0
        failures = getattr(engagement, "handshake_failures", 0) or 0
        last_failure = as_utc(getattr(engagement, "last_handshake_failure_at", None))
        if failures < self.handshake_max_failures or last_failure is None:
            return 0
        unlock_at = last_failure + timedelta(seconds=self.handshake_cooldown_seconds)
        remaining = (unlock_at - as_utc(now)).total_seconds()
        return max(0, math.ceil(remaining))

    def get_allowed_actions(
        self,
        current_status: EngagementStatus,
        role: ParticipantRole,
        engagement=None,
        participant_id: Optional[str] = None,
    ) -> list[EngagementAction]:
        """Return the actions this participant may take from the current status."""
        if current_status in TERMINAL_STATES:
            return []

        results: list[EngagementAction] = []
        for action, edge in TRANSITION_MAP.get(current_status, {}).items():
            if role not in edge.roles:
                continue
            if (
                action == A.SUBMIT_HANDSHAKE_CODE
                and engagement is not None
                and participant_id == engagement.handshake_initiated_by
            ):
                continue
            results.append(action)

        if current_status in CANCELLABLE_STATES:
            results.append(A.CANCEL)

        return results

    @staticmethod
    def is_valid_edge(from_status: EngagementStatus, to_status: EngagementStatus) -> bool:
        return (from_status, to_status) in STATUS_GRAPH
