"""Referral verification.

A referrer earns the discount by naming another buyer's purchase (the
referee). Each referee purchase can back at most one referral across the
whole system; that claim set lives in a shared store with an atomic
insert-if-absent, never in process memory.
"""

from typing import Any, Awaitable, Callable, Optional, Protocol

from src.models import IncentiveDefinition, IncentiveType, ReferralEvidence, VerificationResult
from src.quest.verifier import Verifier, call_dependency

# purchase_id -> True if the purchase exists and is in a qualifying state
PurchaseExistsValidator = Callable[[str], Awaitable[bool]]


class ReferralClaimStore(Protocol):
    """Durable claim set keyed on the referee purchase id."""

    async def get_referral_claim(self, referee_purchase_id: str) -> Optional[str]:
        """Return the referrer purchase id holding the claim, if any."""
        ...

    async def claim_referral(self, referee_purchase_id: str, referrer_purchase_id: str) -> bool:
        """Atomically claim the referee. False if another referrer holds it."""
        ...


class ReferralVerifier(Verifier):
    """Verifies referrals with self-referral and duplicate-claim defenses."""

    incentive_type = IncentiveType.REFERRAL
    evidence_model = ReferralEvidence
    evidence_reasons = {"referee_purchase_id": "Missing or invalid referee purchase ID"}

    def __init__(self, validate_purchase_exists: PurchaseExistsValidator, claims: ReferralClaimStore):
        """Initialize the adapter.

        Args:
            validate_purchase_exists: Confirms the referee purchase is real and qualifying.
            claims: Shared claim store backing the duplicate-referral defense.
        """
        if validate_purchase_exists is None or claims is None:
            raise ValueError("ReferralVerifier requires a purchase validator and a claim store")
        self.validate_purchase_exists = validate_purchase_exists
        self.claims = claims

    async def verify(
        self,
        purchase_id: str,
        evidence: Any,
        incentive: Optional[IncentiveDefinition] = None,
    ) -> VerificationResult:
        parsed, reason = self.parse_evidence(evidence)
        if parsed is None:
            return VerificationResult.rejected(reason)

        referee = parsed.referee_purchase_id
        if referee == purchase_id:
            return VerificationResult.rejected("Self-referral is not allowed")

        existing = await call_dependency(self.claims.get_referral_claim, referee)
        if existing.failed:
            return self._unverifiable()
        if existing.value is not None and existing.value != purchase_id:
            return self._already_used()

        exists = await call_dependency(self.validate_purchase_exists, referee)
        if exists.failed:
            return self._unverifiable()
        if not exists.value:
            return VerificationResult.rejected(
                "Referee purchase does not exist or is not in a confirmed state"
            )

        if existing.value is None:
            claimed = await call_dependency(self.claims.claim_referral, referee, purchase_id)
            if claimed.failed:
                return self._unverifiable()
            if not claimed.value:
                # Lost the race to a concurrent referrer
                return self._already_used()

        return VerificationResult.verified(
            "Referee purchase confirmed",
            metadata={"refereePurchaseId": referee},
            awarded_bps=self.awarded_bps(incentive),
        )

    @staticmethod
    def _already_used() -> VerificationResult:
        return VerificationResult.rejected(
            "This referee purchase ID has already been used for a referral"
        )

    @staticmethod
    def _unverifiable() -> VerificationResult:
        return VerificationResult.pending_manual(
            "Could not verify referee purchase; queued for manual review", retryable=True
        )
