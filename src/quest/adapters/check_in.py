"""Check-in verification against single-use venue codes."""

from typing import Any, Awaitable, Callable, Optional

from src.models import CheckInEvidence, IncentiveDefinition, IncentiveType, VerificationResult
from src.quest.verifier import Verifier, call_dependency

# (purchase_id, code) -> True if the code is valid for the purchase and unused.
# QR scans, NFC taps and kiosk entry all sit behind this function.
CheckInCodeValidator = Callable[[str, str], Awaitable[bool]]


class CheckInVerifier(Verifier):
    incentive_type = IncentiveType.CHECK_IN
    evidence_model = CheckInEvidence
    evidence_reasons = {"code": "Missing or invalid check-in code"}

    def __init__(self, validate_code: CheckInCodeValidator):
        if validate_code is None:
            raise ValueError("CheckInVerifier requires a code validator")
        self.validate_code = validate_code

    async def verify(
        self,
        purchase_id: str,
        evidence: Any,
        incentive: Optional[IncentiveDefinition] = None,
    ) -> VerificationResult:
        parsed, reason = self.parse_evidence(evidence)
        if parsed is None:
            return VerificationResult.rejected(reason)

        outcome = await call_dependency(self.validate_code, purchase_id, parsed.code)
        if outcome.failed:
            return VerificationResult.pending_manual(
                "Could not validate check-in code; queued for manual review", retryable=True
            )
        if not outcome.value:
            return VerificationResult.rejected("Check-in code is invalid or already used")

        return VerificationResult.verified(
            "Check-in code accepted",
            metadata={"code": parsed.code},
            awarded_bps=self.awarded_bps(incentive),
        )
