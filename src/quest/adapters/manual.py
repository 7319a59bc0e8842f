"""Manual-review fallback for incentives that cannot be automated.

Sponsor-session attendance and organizer-defined actions are parked in a
review queue; a human later promotes them to ``verified`` or ``rejected``.
This adapter never verifies anything itself.
"""

import uuid
from typing import Any, Awaitable, Callable, Optional, Union

from src.logging_utils import get_logger
from src.models import (
    IncentiveDefinition,
    IncentiveType,
    ManualEvidence,
    ReviewQueueItem,
    VerificationResult,
)
from src.quest.verifier import Verifier, call_dependency

logger = get_logger(__name__)

EnqueueFn = Callable[[ReviewQueueItem], Awaitable[None]]


class ManualVerifier(Verifier):
    evidence_model = ManualEvidence
    evidence_reasons = {
        "description": "Missing or invalid description",
        "evidence_url": "Evidence URL must be a string",
    }

    def __init__(
        self,
        enqueue: EnqueueFn,
        incentive_type: Union[IncentiveType, str] = IncentiveType.MANUAL,
    ):
        """Initialize the adapter.

        Args:
            enqueue: Hands a review item to the human-review workflow.
            incentive_type: Registry key; ``sponsor_session`` reuses this adapter.
        """
        if enqueue is None:
            raise ValueError("ManualVerifier requires an enqueue function")
        self.enqueue = enqueue
        self.incentive_type = IncentiveType(incentive_type)

    async def verify(
        self,
        purchase_id: str,
        evidence: Any,
        incentive: Optional[IncentiveDefinition] = None,
    ) -> VerificationResult:
        parsed, reason = self.parse_evidence(evidence)
        if parsed is None:
            return VerificationResult.rejected(reason)

        item = ReviewQueueItem(
            review_id=f"rev-{uuid.uuid4().hex[:12]}",
            purchase_id=purchase_id,
            incentive_id=incentive.id if incentive else None,
            incentive_type=self.incentive_type,
            evidence=parsed.model_dump(by_alias=True, exclude_none=True),
        )

        outcome = await call_dependency(self.enqueue, item)
        if outcome.failed:
            return VerificationResult.pending_manual(
                "Could not queue submission for review; please retry", retryable=True
            )

        logger.info(f"Queued review {item.review_id} for purchase {purchase_id}")
        return VerificationResult.pending_manual(
            "Submitted for manual review",
            metadata={"review_id": item.review_id, "queued_at": item.submitted_at.isoformat()},
        )
