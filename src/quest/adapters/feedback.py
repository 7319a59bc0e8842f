"""Post-event feedback verification.

Purely local checks: no network dependency, so this adapter never returns
``pending_manual``.
"""

from datetime import datetime
from typing import Any, Optional

from src.models import (
    FeedbackEvidence,
    IncentiveDefinition,
    IncentiveType,
    VerificationResult,
    as_utc,
)
from src.quest.verifier import Verifier

DEFAULT_MIN_LENGTH = 50


class FeedbackVerifier(Verifier):
    """Checks feedback length, rating bounds and the submission deadline."""

    incentive_type = IncentiveType.FEEDBACK
    evidence_model = FeedbackEvidence
    evidence_reasons = {
        "text": "Missing or invalid feedback text",
        "rating": "Rating must be a number between 1 and 5",
        "submitted_at": "Missing or invalid submission timestamp",
    }

    def __init__(self, deadline: Optional[datetime] = None, min_length: int = DEFAULT_MIN_LENGTH):
        """Initialize the adapter.

        Args:
            deadline: Hard cutoff for submissions. When omitted, the claimed
                incentive's ``expires_at`` is used.
            min_length: Minimum trimmed text length.
        """
        if min_length < 1:
            raise ValueError("min_length must be a positive number")
        self.deadline = as_utc(deadline) if deadline else None
        self.min_length = min_length

    async def verify(
        self,
        purchase_id: str,
        evidence: Any,
        incentive: Optional[IncentiveDefinition] = None,
    ) -> VerificationResult:
        cfg = incentive.verification_config if incentive else {}
        min_length = cfg.get("minLength") if _positive_int(cfg.get("minLength")) else self.min_length
        parsed, reason = self.parse_evidence(evidence, context={"min_length": min_length})
        if parsed is None:
            return VerificationResult.rejected(reason)

        deadline = (
            _parse_deadline(cfg.get("deadline"))
            or self.deadline
            or (incentive.expires_at if incentive else None)
        )
        if deadline is not None and parsed.submitted_at > deadline:
            return VerificationResult.rejected("Feedback submitted after deadline")

        return VerificationResult.verified(
            "Feedback accepted",
            metadata={"length": len(parsed.text.strip()), "rating": parsed.rating},
            awarded_bps=self.awarded_bps(incentive),
        )

    def validate_config(self, config: dict[str, Any]) -> list[str]:
        errors = []
        min_length = config.get("minLength")
        if min_length is not None and not _positive_int(min_length):
            errors.append("minLength must be a positive integer")
        deadline = config.get("deadline")
        if deadline is not None and _parse_deadline(deadline) is None:
            errors.append("deadline must be an ISO-8601 timestamp")
        return errors


def _positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _parse_deadline(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return as_utc(datetime.fromisoformat(str(value)))
    except ValueError:
        return None
