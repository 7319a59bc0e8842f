"""Quest engine: runs buyer submissions through the registry and owns the
purchase lifecycle around them.

The engine is the caller the verifier contract assumes. It decides whether a
submission may run at all (purchase state, expiry, rate limit), treats an
already-verified incentive as a no-op, retries dependency failures with
backoff, and commits results only while the purchase is still active.
"""

import asyncio
import weakref
from typing import Any, Optional

from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, wait_exponential

from src.config import config
from src.database import Database
from src.logging_utils import PurchaseContext, get_logger
from src.models import (
    IncentiveDefinition,
    IncentiveResult,
    Money,
    PriceQuote,
    Purchase,
    PurchaseState,
    Submission,
    VerificationResult,
    utcnow,
)
from src.quest.discount import all_incentives_resolved, apply_discount, total_discount_bps
from src.quest.errors import (
    IncentiveNotFoundError,
    InvalidStateError,
    InvalidTransitionError,
    PurchaseNotFoundError,
    ReviewNotFoundError,
)
from src.quest.lifecycle import accepts_submissions, can_transition
from src.quest.registry import VerifierRegistry
from src.quest.verifier import evidence_fingerprint

logger = get_logger(__name__)


class QuestEngine:
    """Coordinates verification, persistence and settlement for purchases."""

    def __init__(
        self,
        database: Database,
        registry: VerifierRegistry,
        rate_limit_attempts: Optional[int] = None,
        rate_limit_window_seconds: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        retry_max_wait_seconds: Optional[float] = None,
    ):
        """Initialize the engine.

        Args:
            database: Ledger holding purchases and incentive results.
            registry: Verifier registry to dispatch submissions to.
            rate_limit_attempts: Attempts per purchase per window. Defaults to config.
            rate_limit_window_seconds: Window length. Defaults to config.
            retry_attempts: Dispatch attempts for retryable outcomes. Defaults to config.
            retry_max_wait_seconds: Backoff ceiling between attempts. Defaults to config.
        """
        self.db = database
        self.registry = registry
        self.rate_limit_attempts = rate_limit_attempts or config.verify_rate_limit_attempts
        self.rate_limit_window_seconds = (
            rate_limit_window_seconds or config.verify_rate_limit_window_seconds
        )
        self.retry_attempts = retry_attempts or config.verify_retry_attempts
        self.retry_max_wait_seconds = (
            config.verify_retry_max_wait_seconds
            if retry_max_wait_seconds is None
            else retry_max_wait_seconds
        )
        self._locks: "weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    # Purchases
    async def create_purchase(
        self,
        purchase_id: str,
        event_id: str,
        base_price: Money,
        payment_ref: Optional[str] = None,
    ) -> Purchase:
        """Record a newly authorized purchase (idempotent on the purchase ID)."""
        purchase = Purchase(
            id=purchase_id,
            event_id=event_id,
            base_price=base_price,
            state="authorized",
            payment_ref=payment_ref,
        )
        if not await self.db.create_purchase(purchase):
            logger.info(f"Purchase {purchase_id} already recorded")
        return await self._require_purchase(purchase_id)

    async def get_purchase(self, purchase_id: str) -> Purchase:
        return await self._require_purchase(purchase_id)

    async def transition(self, purchase_id: str, new_state: PurchaseState) -> Purchase:
        """Move a purchase to ``new_state``.

        Entering ``settling`` freezes the aggregated discount and net price.
        Requesting the state the purchase is already in is a no-op.

        Raises:
            PurchaseNotFoundError: Unknown purchase.
            InvalidTransitionError: The lifecycle does not allow the move.
        """
        with PurchaseContext(purchase_id):
            purchase = await self._require_purchase(purchase_id)
            if purchase.state == new_state:
                return purchase
            if not can_transition(purchase.state, new_state):
                raise InvalidTransitionError(purchase_id, purchase.state, new_state)

            if not await self.db.transition_purchase(purchase_id, purchase.state, new_state):
                current = await self._require_purchase(purchase_id)
                if current.state == new_state:
                    return current
                raise InvalidTransitionError(purchase_id, current.state, new_state)

            if new_state == "settling":
                await self._freeze(purchase_id)
            elif new_state == "cancelled":
                logger.info(f"Purchase {purchase_id} cancelled; accumulated discounts discarded")

            return await self._require_purchase(purchase_id)

    async def begin_settlement(self, purchase_id: str) -> PriceQuote:
        """Close the quest window and return the number settlement should use."""
        purchase = await self._require_purchase(purchase_id)
        if purchase.state not in ("settling", "settled"):
            await self.transition(purchase_id, "settling")
        elif purchase.discount_bps is None:
            # Transition committed but the freeze did not
            await self._freeze(purchase_id)
        return await self.quote(purchase_id)

    async def quote(self, purchase_id: str) -> PriceQuote:
        """Current price for a purchase: frozen once settling, live before.

        Raises:
            InvalidStateError: The purchase was cancelled.
        """
        purchase = await self._require_purchase(purchase_id)
        if purchase.state == "cancelled":
            raise InvalidStateError(f"Purchase {purchase_id} is cancelled and has no price")

        if purchase.discount_bps is not None and purchase.net_price is not None:
            return PriceQuote(
                purchase_id=purchase.id,
                state=purchase.state,
                base_price=purchase.base_price,
                discount_bps=purchase.discount_bps,
                net_price=purchase.net_price,
                frozen=True,
                all_resolved=all_incentives_resolved(purchase),
            )

        bps = total_discount_bps(purchase.incentives)
        return PriceQuote(
            purchase_id=purchase.id,
            state=purchase.state,
            base_price=purchase.base_price,
            discount_bps=bps,
            net_price=apply_discount(purchase.base_price, bps),
            frozen=False,
            all_resolved=all_incentives_resolved(purchase),
        )

    # Verification
    async def submit(
        self,
        purchase_id: str,
        incentive_id: str,
        evidence: Any,
    ) -> Submission:
        """Verify a buyer's evidence for one incentive on one purchase.

        Args:
            purchase_id: Purchase claiming the incentive.
            incentive_id: Incentive being claimed.
            evidence: Raw evidence payload.

        Returns:
            The decision for this attempt and the stored record after it.

        Raises:
            PurchaseNotFoundError: Unknown purchase.
            IncentiveNotFoundError: Incentive is not part of the purchase's event.
            InvalidStateError: The purchase does not accept submissions, or left
                ``active`` while the verification was in flight.
        """
        with PurchaseContext(purchase_id):
            purchase = await self._require_purchase(purchase_id)
            self._require_accepts_submissions(purchase)
            incentive = await self._require_incentive(purchase, incentive_id)

            lock = self._lock_for(purchase_id, incentive_id)
            async with lock:
                existing = await self.db.get_incentive_result(purchase_id, incentive_id)
                if existing is not None and existing.status == "verified":
                    logger.info(f"Incentive {incentive_id} already verified; submission ignored")
                    return Submission(
                        result=VerificationResult.verified(
                            "Incentive already verified",
                            metadata=existing.metadata,
                            awarded_bps=existing.discount_bps,
                        ),
                        incentive=existing,
                        applied=False,
                    )

                if utcnow() > incentive.expires_at:
                    return Submission(
                        result=VerificationResult.rejected("Incentive has expired"),
                        incentive=existing,
                        applied=False,
                    )

                allowed = await self.db.hit_rate_limit(
                    f"verify:{purchase_id}",
                    self.rate_limit_attempts,
                    self.rate_limit_window_seconds,
                )
                if not allowed:
                    return Submission(
                        result=VerificationResult.rejected(
                            "Too many verification attempts; try again later"
                        ),
                        incentive=existing,
                        applied=False,
                    )

                result = await self._dispatch(incentive, purchase_id, evidence)
                return await self._commit(incentive, purchase_id, evidence, result)

    async def resolve_review(
        self, review_id: str, approved: bool, reason: Optional[str] = None
    ) -> Optional[IncentiveResult]:
        """Apply a human reviewer's decision to the parked incentive result.

        Raises:
            ReviewNotFoundError: Unknown review item.
            InvalidStateError: Already resolved, or the purchase no longer
                accepts changes.
        """
        item = await self.db.get_review(review_id)
        if item is None:
            raise ReviewNotFoundError(review_id)
        if item.status != "pending":
            raise InvalidStateError(f"Review {review_id} already {item.status}")

        status = "verified" if approved else "rejected"
        reason = reason or ("Approved by reviewer" if approved else "Rejected by reviewer")

        with PurchaseContext(item.purchase_id):
            if item.incentive_id is not None:
                applied = await self.db.resolve_reviewed_result(
                    item.purchase_id, item.incentive_id, review_id, status, reason
                )
                if not applied:
                    purchase = await self._require_purchase(item.purchase_id)
                    if not accepts_submissions(purchase.state):
                        raise InvalidStateError(
                            f"Purchase {item.purchase_id} is {purchase.state}; review result discarded"
                        )
                    logger.info(f"Review {review_id} no longer matches a parked result")

            await self.db.mark_review_resolved(review_id, "approved" if approved else "rejected", reason)
            logger.info(f"Review {review_id} resolved as {status}")

            if item.incentive_id is None:
                return None
            return await self.db.get_incentive_result(item.purchase_id, item.incentive_id)

    async def _dispatch(
        self, incentive: IncentiveDefinition, purchase_id: str, evidence: Any
    ) -> VerificationResult:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=0.5, max=self.retry_max_wait_seconds),
            retry=retry_if_result(lambda result: result.retryable),
            retry_error_callback=lambda state: state.outcome.result(),
        )
        return await retrying(self.registry.verify, incentive.type, purchase_id, evidence, incentive)

    async def _commit(
        self,
        incentive: IncentiveDefinition,
        purchase_id: str,
        evidence: Any,
        result: VerificationResult,
    ) -> Submission:
        now = utcnow()
        record = IncentiveResult(
            purchase_id=purchase_id,
            incentive_id=incentive.id,
            incentive_type=incentive.type,
            discount_bps=incentive.discount_bps,
            status=result.status,
            reason=result.reason,
            metadata=result.metadata,
            evidence_hash=evidence_fingerprint(evidence),
            review_id=(result.metadata or {}).get("review_id"),
            updated_at=now,
            verified_at=now if result.status == "verified" else None,
        )

        applied = await self.db.record_incentive_result(record)
        if not applied:
            current = await self._require_purchase(purchase_id)
            if not accepts_submissions(current.state):
                logger.warning(
                    f"Discarding {result.status} result for {incentive.id}: purchase is {current.state}"
                )
                raise InvalidStateError(
                    f"Purchase {purchase_id} is {current.state}; verification result discarded"
                )
            logger.info(f"Incentive {incentive.id} was verified concurrently; result not applied")

        stored = await self.db.get_incentive_result(purchase_id, incentive.id)
        return Submission(result=result, incentive=stored, applied=applied)

    async def _freeze(self, purchase_id: str) -> None:
        # Result writes require state == active, so nothing can change the
        # incentive set between the transition and this read.
        purchase = await self._require_purchase(purchase_id)
        if not all_incentives_resolved(purchase):
            logger.info(f"Settling {purchase_id} with incentives still awaiting a decision; they earn nothing")
        bps = total_discount_bps(purchase.incentives)
        price = apply_discount(purchase.base_price, bps)
        if await self.db.freeze_settlement(purchase_id, bps, price.amount):
            logger.info(
                f"Froze settlement for {purchase_id}: {bps} bps, "
                f"net {price.amount} {price.currency} (base {purchase.base_price.amount})"
            )

    async def _require_purchase(self, purchase_id: str) -> Purchase:
        purchase = await self.db.get_purchase(purchase_id)
        if purchase is None:
            raise PurchaseNotFoundError(purchase_id)
        return purchase

    async def _require_incentive(self, purchase: Purchase, incentive_id: str) -> IncentiveDefinition:
        incentive = await self.db.get_incentive_definition(incentive_id)
        if incentive is None or incentive.event_id != purchase.event_id:
            raise IncentiveNotFoundError(incentive_id, purchase.event_id)
        return incentive

    @staticmethod
    def _require_accepts_submissions(purchase: Purchase) -> None:
        if not accepts_submissions(purchase.state):
            raise InvalidStateError(
                f"Purchase {purchase.id} is {purchase.state}; submissions are not accepted"
            )

    def _lock_for(self, purchase_id: str, incentive_id: str) -> asyncio.Lock:
        key = (purchase_id, incentive_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock
