"""Unit tests for the quest engine: submissions, settlement and reviews."""

import asyncio
from datetime import timedelta
from typing import Any, Optional
from unittest.mock import AsyncMock

import httpx
import pytest

from src.models import (
    IncentiveDefinition,
    IncentiveType,
    Money,
    SocialShareEvidence,
    VerificationResult,
    utcnow,
)
from src.quest.adapters.check_in import CheckInVerifier
from src.quest.catalog import build_registry
from src.quest.engine import QuestEngine
from src.quest.errors import (
    IncentiveNotFoundError,
    InvalidStateError,
    InvalidTransitionError,
    PurchaseNotFoundError,
    ReviewNotFoundError,
)
from src.quest.registry import VerifierRegistry
from src.quest.verifier import Verifier

SHARE_URL = "https://twitter.com/user/status/1"


def probe_client(status_code=200):
    return httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(status_code)))


@pytest.fixture
def definitions(make_incentive):
    return [
        make_incentive("share", "social_share", 500),
        make_incentive("check-in", "check_in", 1000),
        make_incentive("referral", "referral", 1500),
        make_incentive("workshop", "sponsor_session", 300),
        make_incentive("late-feedback", "feedback", 200, expires_in=timedelta(days=-1)),
        make_incentive("other-share", "social_share", 500, event_id="evt-2"),
    ]


@pytest.fixture
async def ledger(test_db, definitions, make_purchase):
    await test_db.save_incentive_definitions(definitions)
    await test_db.create_purchase(make_purchase("p-1", amount=10_000, state="active"))
    await test_db.issue_check_in_code("VENUE-42")
    return test_db


@pytest.fixture
def engine(ledger, definitions):
    registry = build_registry(ledger, definitions, http_client=probe_client())
    return QuestEngine(ledger, registry, retry_attempts=3, retry_max_wait_seconds=0)


def engine_with(ledger, *verifiers, **kwargs):
    registry = VerifierRegistry()
    for verifier in verifiers:
        registry.register(verifier)
    kwargs.setdefault("retry_max_wait_seconds", 0)
    return QuestEngine(ledger, registry, **kwargs)


@pytest.mark.unit
class TestSubmissions:
    """Test how submissions are gated, dispatched and recorded."""

    async def test_end_to_end_discount(self, engine):
        share = await engine.submit("p-1", "share", {"url": SHARE_URL})
        check_in = await engine.submit("p-1", "check-in", {"code": "VENUE-42"})
        referral = await engine.submit("p-1", "referral", {"refereePurchaseId": "p-1"})

        assert share.result.status == "verified"
        assert check_in.result.status == "verified"
        assert referral.result.status == "rejected"

        quote = await engine.quote("p-1")
        assert quote.discount_bps == 1500
        assert quote.net_price.amount == 8500
        assert quote.frozen is False

    async def test_result_is_recorded_with_fingerprint(self, engine):
        submission = await engine.submit("p-1", "share", {"url": SHARE_URL})

        assert submission.applied is True
        record = submission.incentive
        assert record.status == "verified"
        assert record.discount_bps == 500
        assert record.incentive_type == IncentiveType.SOCIAL_SHARE
        assert len(record.evidence_hash) == 64
        assert record.verified_at is not None

    async def test_verified_incentive_is_a_no_op(self, engine):
        await engine.submit("p-1", "check-in", {"code": "VENUE-42"})

        again = await engine.submit("p-1", "check-in", {"code": "SOMETHING-ELSE"})

        assert again.applied is False
        assert again.result.status == "verified"
        assert again.incentive.attempts == 1

    async def test_rejected_incentive_can_be_retried(self, engine):
        first = await engine.submit("p-1", "check-in", {"code": "WRONG"})
        second = await engine.submit("p-1", "check-in", {"code": "VENUE-42"})

        assert first.result.status == "rejected"
        assert second.result.status == "verified"
        assert second.incentive.attempts == 2

    async def test_malformed_evidence_is_rejected_not_raised(self, engine):
        submission = await engine.submit("p-1", "share", None)

        assert submission.result.status == "rejected"
        assert submission.incentive.status == "rejected"

    async def test_expired_incentive_is_rejected_without_write(self, engine):
        submission = await engine.submit("p-1", "late-feedback", {"text": "x" * 60, "rating": 5})

        assert submission.result.status == "rejected"
        assert submission.result.reason == "Incentive has expired"
        assert submission.applied is False
        assert submission.incentive is None

    async def test_expiry_uses_server_clock_not_evidence_timestamp(self, engine):
        backdated = (utcnow() - timedelta(days=10)).isoformat()

        submission = await engine.submit(
            "p-1", "late-feedback", {"text": "x" * 60, "rating": 5, "submittedAt": backdated}
        )

        assert submission.result.status == "rejected"
        assert submission.result.reason == "Incentive has expired"
        assert await engine.db.get_incentive_result("p-1", "late-feedback") is None

    async def test_incentive_from_another_event(self, engine):
        with pytest.raises(IncentiveNotFoundError):
            await engine.submit("p-1", "other-share", {"url": SHARE_URL})

    async def test_unknown_purchase(self, engine):
        with pytest.raises(PurchaseNotFoundError):
            await engine.submit("p-missing", "share", {"url": SHARE_URL})

    async def test_purchase_must_be_active(self, engine, ledger, make_purchase):
        await ledger.create_purchase(make_purchase("p-2", state="authorized"))

        with pytest.raises(InvalidStateError):
            await engine.submit("p-2", "share", {"url": SHARE_URL})

    async def test_rate_limit_rejects_without_write(self, ledger, definitions):
        registry = build_registry(ledger, definitions, http_client=probe_client())
        engine = QuestEngine(ledger, registry, rate_limit_attempts=2, retry_max_wait_seconds=0)

        for _ in range(2):
            await engine.submit("p-1", "check-in", {"code": "WRONG"})
        limited = await engine.submit("p-1", "check-in", {"code": "VENUE-42"})

        assert limited.result.status == "rejected"
        assert "Too many" in limited.result.reason
        assert limited.applied is False
        assert limited.incentive.attempts == 2

    async def test_dependency_failure_is_retried(self, ledger):
        validate = AsyncMock(side_effect=[ConnectionError("scanner offline"), True])
        engine = engine_with(ledger, CheckInVerifier(validate), retry_attempts=3)

        submission = await engine.submit("p-1", "check-in", {"code": "VENUE-42"})

        assert submission.result.status == "verified"
        assert validate.await_count == 2

    async def test_exhausted_retries_leave_pending_manual(self, ledger):
        validate = AsyncMock(side_effect=ConnectionError("scanner offline"))
        engine = engine_with(ledger, CheckInVerifier(validate), retry_attempts=3)

        submission = await engine.submit("p-1", "check-in", {"code": "VENUE-42"})

        assert submission.result.status == "pending_manual"
        assert submission.result.retryable is True
        assert submission.incentive.status == "pending_manual"
        assert validate.await_count == 3

    async def test_missing_adapter_parks_claim(self, ledger):
        engine = engine_with(ledger)

        submission = await engine.submit("p-1", "workshop", {"description": "Attended"})

        assert submission.result.status == "pending_manual"
        assert "sponsor_session" in submission.result.reason
        assert submission.result.retryable is False

    async def test_concurrent_submissions_award_once(self, engine):
        first, second = await asyncio.gather(
            engine.submit("p-1", "check-in", {"code": "VENUE-42"}),
            engine.submit("p-1", "check-in", {"code": "VENUE-42"}),
        )

        assert [first.applied, second.applied].count(True) == 1
        record = await engine.db.get_incentive_result("p-1", "check-in")
        assert record.status == "verified"
        assert record.attempts == 1

    async def test_result_discarded_when_purchase_cancelled_mid_flight(self, ledger):
        class CancellingVerifier(Verifier):
            incentive_type = IncentiveType.SOCIAL_SHARE
            evidence_model = SocialShareEvidence

            async def verify(
                self, purchase_id: str, evidence: Any, incentive: Optional[IncentiveDefinition] = None
            ) -> VerificationResult:
                await ledger.transition_purchase(purchase_id, "active", "cancelled")
                return VerificationResult.verified("ok", awarded_bps=self.awarded_bps(incentive))

        engine = engine_with(ledger, CancellingVerifier())

        with pytest.raises(InvalidStateError):
            await engine.submit("p-1", "share", {"url": SHARE_URL})

        assert await ledger.get_incentive_result("p-1", "share") is None


@pytest.mark.unit
class TestSettlement:
    """Test lifecycle moves and the frozen settlement number."""

    async def test_settlement_freezes_discount(self, engine):
        await engine.submit("p-1", "share", {"url": SHARE_URL})
        await engine.submit("p-1", "check-in", {"code": "VENUE-42"})

        quote = await engine.begin_settlement("p-1")

        assert quote.frozen is True
        assert quote.state == "settling"
        assert quote.discount_bps == 1500
        assert quote.net_price.amount == 8500

    async def test_no_submissions_after_settling_begins(self, engine):
        await engine.begin_settlement("p-1")

        with pytest.raises(InvalidStateError):
            await engine.submit("p-1", "share", {"url": SHARE_URL})

    async def test_settled_purchase_keeps_frozen_number(self, engine):
        await engine.submit("p-1", "share", {"url": SHARE_URL})
        await engine.begin_settlement("p-1")

        purchase = await engine.transition("p-1", "settled")
        quote = await engine.quote("p-1")

        assert purchase.state == "settled"
        assert quote.frozen is True
        assert quote.net_price.amount == 9500

    async def test_begin_settlement_is_idempotent(self, engine):
        first = await engine.begin_settlement("p-1")
        second = await engine.begin_settlement("p-1")

        assert first == second

    async def test_cancel_discards_discounts(self, engine):
        await engine.submit("p-1", "share", {"url": SHARE_URL})
        await engine.begin_settlement("p-1")

        purchase = await engine.transition("p-1", "cancelled")

        assert purchase.discount_bps is None
        assert purchase.net_price is None
        with pytest.raises(InvalidStateError):
            await engine.quote("p-1")

    async def test_invalid_transition(self, engine):
        with pytest.raises(InvalidTransitionError):
            await engine.transition("p-1", "settled")

    async def test_transition_to_current_state_is_a_no_op(self, engine):
        purchase = await engine.transition("p-1", "active")

        assert purchase.state == "active"

    async def test_create_purchase_is_idempotent(self, engine):
        first = await engine.create_purchase("p-9", "evt-1", Money(amount=2500))
        second = await engine.create_purchase("p-9", "evt-1", Money(amount=9999))

        assert first.state == "authorized"
        assert second.base_price.amount == 2500


@pytest.mark.unit
class TestManualReview:
    """Test the human-review round trip."""

    async def test_approved_review_awards_discount(self, engine):
        submission = await engine.submit("p-1", "workshop", {"description": "Attended the partner workshop"})
        review_id = submission.result.metadata["review_id"]

        assert submission.incentive.status == "pending_manual"
        assert submission.incentive.review_id == review_id
        assert (await engine.quote("p-1")).all_resolved is False

        record = await engine.resolve_review(review_id, approved=True)

        assert record.status == "verified"
        quote = await engine.quote("p-1")
        assert quote.discount_bps == 300
        assert quote.all_resolved is True
        assert (await engine.db.get_review(review_id)).status == "approved"

    async def test_rejected_review(self, engine):
        submission = await engine.submit("p-1", "workshop", {"description": "Attended"})

        record = await engine.resolve_review(
            submission.result.metadata["review_id"], approved=False, reason="Not on the attendee list"
        )

        assert record.status == "rejected"
        assert record.reason == "Not on the attendee list"

    async def test_review_resolves_once(self, engine):
        submission = await engine.submit("p-1", "workshop", {"description": "Attended"})
        review_id = submission.result.metadata["review_id"]
        await engine.resolve_review(review_id, approved=False)

        with pytest.raises(InvalidStateError):
            await engine.resolve_review(review_id, approved=True)

    async def test_review_after_settling_is_refused(self, engine):
        submission = await engine.submit("p-1", "workshop", {"description": "Attended"})
        await engine.begin_settlement("p-1")

        with pytest.raises(InvalidStateError):
            await engine.resolve_review(submission.result.metadata["review_id"], approved=True)

    async def test_unknown_review(self, engine):
        with pytest.raises(ReviewNotFoundError):
            await engine.resolve_review("rev-missing", approved=True)
