"""Shared data models for the Quest Payments engine.

All Pydantic models used across the engine, database and HTTP layer. Evidence
payloads are modelled per incentive type; adapters validate raw buyer input
against their own arm so malformed evidence becomes a rejection, never a fault.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationInfo,
    field_validator,
)
from pydantic_core import PydanticCustomError

MAX_DISCOUNT_BPS = 10_000

VerificationStatus = Literal["verified", "rejected", "pending_manual"]
IncentiveStatus = Literal["pending", "verified", "rejected", "pending_manual"]
PurchaseState = Literal["authorized", "active", "settling", "settled", "cancelled"]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so every comparison is between aware values."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class IncentiveType(str, Enum):
    """Buyer-completable actions a campaign can attach a discount to."""

    SOCIAL_SHARE = "social_share"
    REFERRAL = "referral"
    CHECK_IN = "check_in"
    SPONSOR_SESSION = "sponsor_session"
    FEEDBACK = "feedback"
    MANUAL = "manual"


class IncentiveDefinition(BaseModel):
    """Incentive authored in the campaign editor."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(description="Unique incentive identifier")
    event_id: str = Field(alias="eventId", description="Event the incentive belongs to")
    type: IncentiveType = Field(description="Incentive type, selects the verifier adapter")
    discount_bps: int = Field(
        alias="discountBps", ge=1, le=MAX_DISCOUNT_BPS, description="Discount in basis points"
    )
    description: str = Field(default="", description="Text shown to buyers")
    expires_at: datetime = Field(alias="expiresAt", description="Submissions after this are rejected")
    verification_config: dict[str, Any] = Field(
        default_factory=dict,
        alias="verificationConfig",
        description="Adapter-specific configuration blob",
    )

    @field_validator("expires_at")
    @classmethod
    def _expires_at_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class VerificationResult(BaseModel):
    """Outcome of one verification attempt."""

    model_config = ConfigDict(frozen=True)

    status: VerificationStatus
    reason: str = Field(description="Human-readable explanation")
    metadata: Optional[dict[str, Any]] = Field(default=None, description="Evidence metadata")
    awarded_bps: int = Field(default=0, ge=0, le=MAX_DISCOUNT_BPS)
    retryable: bool = Field(
        default=False,
        description="True when pending_manual was caused by a dependency failure",
    )

    @classmethod
    def verified(
        cls, reason: str, metadata: Optional[dict[str, Any]] = None, awarded_bps: int = 0
    ) -> "VerificationResult":
        return cls(status="verified", reason=reason, metadata=metadata, awarded_bps=awarded_bps)

    @classmethod
    def rejected(cls, reason: str) -> "VerificationResult":
        return cls(status="rejected", reason=reason)

    @classmethod
    def pending_manual(
        cls, reason: str, metadata: Optional[dict[str, Any]] = None, retryable: bool = False
    ) -> "VerificationResult":
        return cls(status="pending_manual", reason=reason, metadata=metadata, retryable=retryable)


# Evidence arms, one per incentive type


class EvidenceModel(BaseModel):
    """Base for buyer evidence payloads (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SocialShareEvidence(EvidenceModel):
    url: StrictStr = Field(min_length=1)


class CheckInEvidence(EvidenceModel):
    code: StrictStr = Field(min_length=1)


class ReferralEvidence(EvidenceModel):
    referee_purchase_id: StrictStr = Field(alias="refereePurchaseId", min_length=1)


class FeedbackEvidence(EvidenceModel):
    """Post-event feedback.

    The minimum text length is supplied through the validation context
    (``{"min_length": n}``) so each adapter instance can enforce its own.
    Fields are declared in the order their checks must apply.
    """

    text: StrictStr
    rating: Union[StrictInt, StrictFloat]
    submitted_at: datetime = Field(alias="submittedAt")

    @field_validator("text")
    @classmethod
    def _text_long_enough(cls, value: str, info: ValidationInfo) -> str:
        min_length = (info.context or {}).get("min_length", 50)
        actual = len(value.strip())
        if actual < min_length:
            raise PydanticCustomError(
                "text_too_short",
                "Feedback must be at least {min_length} characters (got {actual})",
                {"min_length": min_length, "actual": actual},
            )
        return value

    @field_validator("rating")
    @classmethod
    def _rating_in_range(cls, value: Union[int, float]) -> Union[int, float]:
        if not 1 <= value <= 5:
            raise ValueError("rating out of range")
        return value

    @field_validator("submitted_at")
    @classmethod
    def _submitted_at_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class ManualEvidence(EvidenceModel):
    description: StrictStr = Field(min_length=1)
    evidence_url: Optional[StrictStr] = Field(default=None, alias="evidenceUrl")


# Purchases and incentive records


class Money(BaseModel):
    """Amount in the currency's smallest unit (cents for USD, 6 decimals for USDC)."""

    model_config = ConfigDict(frozen=True)

    amount: int = Field(ge=0)
    currency: Literal["USD", "USDC"] = Field(default="USD")


class IncentiveResult(BaseModel):
    """Current verification state of one claimed incentive on a purchase."""

    purchase_id: str
    incentive_id: str
    incentive_type: IncentiveType
    discount_bps: int = Field(ge=1, le=MAX_DISCOUNT_BPS, description="Bps the incentive is worth")
    status: IncentiveStatus = Field(default="pending")
    reason: Optional[str] = Field(default=None)
    metadata: Optional[dict[str, Any]] = Field(default=None)
    evidence_hash: Optional[str] = Field(default=None, description="SHA-256 of submitted evidence")
    attempts: int = Field(default=0, ge=0)
    review_id: Optional[str] = Field(default=None, description="Linked manual review item")
    updated_at: datetime = Field(default_factory=utcnow)
    verified_at: Optional[datetime] = Field(default=None)


class Purchase(BaseModel):
    """Ticket purchase moving through the quest lifecycle."""

    id: str = Field(description="Purchase identifier")
    event_id: str = Field(description="Event the ticket is for")
    base_price: Money
    state: PurchaseState = Field(default="authorized")
    incentives: list[IncentiveResult] = Field(default_factory=list)
    payment_ref: Optional[str] = Field(default=None, description="Payment provider reference")
    discount_bps: Optional[int] = Field(default=None, description="Frozen when settling begins")
    net_price: Optional[Money] = Field(default=None, description="Frozen when settling begins")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Submission(BaseModel):
    """Outcome of one buyer submission as seen by the caller."""

    result: VerificationResult = Field(description="Decision for this attempt")
    incentive: Optional[IncentiveResult] = Field(
        default=None, description="Stored record after the attempt, if one exists"
    )
    applied: bool = Field(description="Whether this attempt changed the stored record")


class PriceQuote(BaseModel):
    """Discount aggregation output handed to the settlement collaborator."""

    purchase_id: str
    state: PurchaseState
    base_price: Money
    discount_bps: int = Field(ge=0, le=MAX_DISCOUNT_BPS)
    net_price: Money
    frozen: bool = Field(description="True once the number is fixed for settlement")
    all_resolved: bool = Field(
        default=True, description="No claimed incentive is still awaiting a decision"
    )


class ReviewQueueItem(BaseModel):
    """Work item handed to the human-review workflow."""

    review_id: str
    purchase_id: str
    incentive_id: Optional[str] = None
    incentive_type: IncentiveType
    evidence: dict[str, Any]
    submitted_at: datetime = Field(default_factory=utcnow)
    status: Literal["pending", "approved", "rejected"] = Field(default="pending")
    resolved_at: Optional[datetime] = None
    resolution_reason: Optional[str] = None


# Payment-rail webhooks


PaymentEventType = Literal[
    "payment.authorized",
    "quest.opened",
    "quest.closed",
    "payment.captured",
    "payment.cancelled",
    "payment.failed",
    "payment.refunded",
]


class PaymentWebhook(BaseModel):
    """State-transition event pushed by the payment rail."""

    webhook_id: str = Field(description="Unique webhook identifier for idempotency")
    type: PaymentEventType
    purchase_id: str
    event_id: Optional[str] = Field(default=None, description="Required for payment.authorized")
    amount: Optional[int] = Field(default=None, ge=0, description="Minor units")
    currency: Literal["USD", "USDC"] = Field(default="USD")
    payment_ref: Optional[str] = Field(default=None)
    timestamp: datetime = Field(default_factory=utcnow)


class WebhookRecord(BaseModel):
    """Database record for webhook processing tracking."""

    webhook_id: str
    purchase_id: str
    type: str
    status: Literal["processing", "completed", "failed"] = Field(default="processing")
    received_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = Field(default=None)
    error_message: Optional[str] = Field(default=None)


# HTTP request bodies


class VerifyIncentiveRequest(BaseModel):
    """Buyer submission; evidence stays raw so malformed input is judged by the adapter."""

    evidence: Any = None


class ReviewResolution(BaseModel):
    """Decision posted back by the manual-review workflow."""

    approved: bool
    reason: Optional[str] = None
