"""Tests for the two-phase verification protocol."""

import pytest

from rendezvous.domain.enums import CodeKind, EngagementStatus
from rendezvous.domain.errors import (
    CodeMismatchError,
    ConflictError,
    InvalidPayloadError,
    InvalidTransitionError,
    VerificationLockedError,
)
from rendezvous.services.clock import as_utc
from rendezvous.services.verification_handler import VerificationHandler, visible_codes

from conftest import INITIATOR, OUTSIDER, RECIPIENT

S = EngagementStatus


@pytest.fixture
def handler(store):
    return VerificationHandler(store)


# ---------------------------------------------------------------------------
# Phase A: handshake
# ---------------------------------------------------------------------------


class TestHandshake:
    async def test_scenario_successful_handshake(self, store, handler, make_engagement):
        eng = await make_engagement(store, S.SCHEDULED)
        assert eng.confirmation_code == "4821"

        challenge = await handler.start_verification(eng.id, INITIATOR)
        assert challenge.code == "9053"
        assert challenge.engagement.status == S.VERIFICATION_PENDING.value
        assert challenge.engagement.handshake_initiated_by == INITIATOR
        assert challenge.engagement.verification_started_at is not None

        eng = await handler.submit_handshake_code(eng.id, RECIPIENT, "9053")
        assert eng.status == S.IN_PROGRESS.value
        assert eng.verified_at is not None
        assert eng.handshake_code is None
        assert eng.handshake_initiated_by is None

    async def test_scenario_wrong_handshake_reverts(self, store, handler, notifier, make_engagement):
        eng = await make_engagement(store, S.SCHEDULED)
        await handler.start_verification(eng.id, INITIATOR)
        notifier.sent.clear()

        with pytest.raises(CodeMismatchError) as exc_info:
            await handler.submit_handshake_code(eng.id, RECIPIENT, "0000")

        err = exc_info.value
        assert err.kind == CodeKind.HANDSHAKE
        assert err.reverted is True
        assert err.engagement.status == S.SCHEDULED.value

        eng = await store.get(eng.id)
        assert eng.status == S.SCHEDULED.value
        assert eng.handshake_code is None
        assert eng.handshake_initiated_by is None
        assert eng.handshake_failures == 1
        assert eng.last_handshake_failure_at is not None
        # Revert to scheduled is silent
        assert notifier.sent == []

        restarted = await handler.start_verification(eng.id, INITIATOR)
        assert restarted.code == "7310"
        assert restarted.code != "9053"

    async def test_initiator_cannot_submit_own_code(self, store, handler, make_engagement):
        eng = await make_engagement(store, S.SCHEDULED)
        challenge = await handler.start_verification(eng.id, RECIPIENT)

        with pytest.raises(InvalidTransitionError, match="other participant"):
            await handler.submit_handshake_code(eng.id, RECIPIENT, challenge.code)

        eng = await store.get(eng.id)
        assert eng.status == S.VERIFICATION_PENDING.value
        assert eng.handshake_code == challenge.code

    async def test_malformed_code_keeps_handshake(self, store, handler, make_engagement):
        eng = await make_engagement(store, S.SCHEDULED)
        challenge = await handler.start_verification(eng.id, INITIATOR)

        with pytest.raises(InvalidPayloadError):
            await handler.submit_handshake_code(eng.id, RECIPIENT, "12ab")

        eng = await store.get(eng.id)
        assert eng.status == S.VERIFICATION_PENDING.value
        assert eng.handshake_code == challenge.code

    async def test_verification_started_at_set_once(self, store, handler, make_engagement, clock):
        eng = await make_engagement(store, S.SCHEDULED)
        first = await handler.start_verification(eng.id, INITIATOR)
        started = first.engagement.verification_started_at
        with pytest.raises(CodeMismatchError):
            await handler.submit_handshake_code(eng.id, RECIPIENT, "0000")

        clock.advance(minutes=5)
        second = await handler.start_verification(eng.id, RECIPIENT)
        assert as_utc(second.engagement.verification_started_at) == as_utc(started)


class TestHandshakeLockout:
    async def test_lockout_disabled_by_default(self, store, handler, make_engagement):
        eng = await make_engagement(store, S.SCHEDULED)
        for _ in range(5):
            await handler.start_verification(eng.id, INITIATOR)
            with pytest.raises(CodeMismatchError):
                await handler.submit_handshake_code(eng.id, RECIPIENT, "0000")

        challenge = await handler.start_verification(eng.id, INITIATOR)
        assert challenge.engagement.status == S.VERIFICATION_PENDING.value

    async def test_lockout_after_max_failures(self, db_session, make_store, make_engagement, clock):
        store = make_store(db_session, codes=["4821", "9053", "7310", "2468"], max_failures=2, cooldown_seconds=600)
        handler = VerificationHandler(store)
        eng = await make_engagement(store, S.SCHEDULED)

        for _ in range(2):
            await handler.start_verification(eng.id, INITIATOR)
            with pytest.raises(CodeMismatchError):
                await handler.submit_handshake_code(eng.id, RECIPIENT, "0000")

        with pytest.raises(VerificationLockedError) as exc_info:
            await handler.start_verification(eng.id, RECIPIENT)
        assert 0 < exc_info.value.retry_after <= 600

        eng = await store.get(eng.id)
        assert eng.status == S.SCHEDULED.value

        # Confirmation stays open during the lockout
        assert eng.confirmation_code == "4821"

        clock.advance(seconds=600)
        challenge = await handler.start_verification(eng.id, RECIPIENT)
        assert challenge.engagement.status == S.VERIFICATION_PENDING.value
        assert challenge.engagement.handshake_failures == 0


# ---------------------------------------------------------------------------
# Phase B: confirmation
# ---------------------------------------------------------------------------


class TestConfirmation:
    async def test_scenario_confirmation_completes(self, store, handler, notifier, make_engagement):
        eng = await make_engagement(store, S.IN_PROGRESS)
        notifier.sent.clear()

        eng = await handler.submit_confirmation_code(eng.id, RECIPIENT, "4821")

        assert eng.status == S.COMPLETED.value
        assert eng.completed_at is not None
        assert sorted((u, k) for u, k, _, _ in notifier.sent) == [
            (INITIATOR, "completed"),
            (RECIPIENT, "completed"),
        ]
        assert {key for _, _, _, key in notifier.sent} == {f"{eng.id}:completed"}

    async def test_confirmation_from_scheduled(self, store, handler, make_engagement):
        eng = await make_engagement(store, S.SCHEDULED)
        eng = await handler.submit_confirmation_code(eng.id, INITIATOR, "4821", S.SCHEDULED)
        assert eng.status == S.COMPLETED.value
        assert eng.verified_at is None

    async def test_wrong_code_unchanged_and_retryable(self, store, handler, make_engagement):
        eng = await make_engagement(store, S.IN_PROGRESS)
        version = eng.version

        for wrong in ("0000", "1234", "4820", "9999", "4812"):
            with pytest.raises(CodeMismatchError) as exc_info:
                await handler.submit_confirmation_code(eng.id, INITIATOR, wrong)
            assert exc_info.value.kind == CodeKind.CONFIRMATION
            assert exc_info.value.reverted is False

        eng = await store.get(eng.id)
        assert eng.status == S.IN_PROGRESS.value
        assert eng.version == version
        assert eng.completed_at is None

        eng = await handler.submit_confirmation_code(eng.id, INITIATOR, "4821")
        assert eng.status == S.COMPLETED.value

    async def test_confirmation_not_valid_during_handshake(self, store, handler, make_engagement):
        eng = await make_engagement(store, S.VERIFICATION_PENDING)
        with pytest.raises(InvalidTransitionError):
            await handler.submit_confirmation_code(eng.id, RECIPIENT, "4821", S.VERIFICATION_PENDING)

    async def test_stale_caller_gets_conflict(self, store, handler, make_engagement):
        eng = await make_engagement(store, S.IN_PROGRESS)
        engagement_id = eng.id
        await handler.complete(engagement_id, INITIATOR)

        with pytest.raises(ConflictError) as exc_info:
            await handler.submit_confirmation_code(engagement_id, RECIPIENT, "4821")
        assert exc_info.value.actual_status == S.COMPLETED.value

    async def test_scheduled_confirmation_must_be_explicit(self, store, handler, make_engagement):
        eng = await make_engagement(store, S.SCHEDULED)
        with pytest.raises(ConflictError):
            await handler.submit_confirmation_code(eng.id, INITIATOR, "4821")
        assert (await store.get(eng.id)).status == S.SCHEDULED.value


class TestComplete:
    async def test_complete_from_in_progress(self, store, handler, notifier, make_engagement):
        eng = await make_engagement(store, S.IN_PROGRESS)
        notifier.sent.clear()

        eng = await handler.complete(eng.id, INITIATOR)

        assert eng.status == S.COMPLETED.value
        assert len(notifier.sent) == 2

    async def test_complete_requires_handshake(self, store, handler, make_engagement):
        eng = await make_engagement(store, S.SCHEDULED)
        with pytest.raises(InvalidTransitionError):
            await handler.complete(eng.id, INITIATOR, S.SCHEDULED)


# ---------------------------------------------------------------------------
# Code disclosure
# ---------------------------------------------------------------------------


class TestVisibleCodes:
    async def test_confirmation_code_only_for_scheduler(self, store, make_engagement):
        eng = await make_engagement(store, S.SCHEDULED)
        assert eng.scheduled_by == INITIATOR

        assert visible_codes(eng, INITIATOR)["confirmation_code"] == "4821"
        assert visible_codes(eng, RECIPIENT)["confirmation_code"] is None
        assert visible_codes(eng, OUTSIDER)["confirmation_code"] is None

    async def test_handshake_code_only_for_initiator(self, store, handler, make_engagement):
        eng = await make_engagement(store, S.SCHEDULED)
        challenge = await handler.start_verification(eng.id, RECIPIENT)

        assert visible_codes(challenge.engagement, RECIPIENT)["handshake_code"] == challenge.code
        assert visible_codes(challenge.engagement, INITIATOR)["handshake_code"] is None
