"""Core verifier contract. Every incentive type implements this.

A verifier receives the buyer's raw evidence and returns a decision. It must
never raise for buyer-supplied input: malformed evidence is a ``rejected``
result, and an unreachable dependency is a ``pending_manual`` result marked
retryable, so a transient outage never disqualifies a legitimate claim.
"""

import hashlib
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, ClassVar, Optional

from pydantic import ValidationError

from src.logging_utils import get_logger
from src.models import EvidenceModel, IncentiveDefinition, IncentiveType, VerificationResult

logger = get_logger(__name__)

# Pydantic error types whose message is already buyer-facing
BUYER_FACING_ERROR_TYPES = {"text_too_short"}


@dataclass(frozen=True)
class DependencyOutcome:
    """Result of calling an injected dependency: a value, or the error it raised."""

    value: Any = None
    error: Optional[BaseException] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


async def call_dependency(fn: Callable[..., Awaitable[Any]], *args: Any) -> DependencyOutcome:
    """Await an injected dependency, turning any failure into a value.

    Validators, claim stores and queues are owned by other systems; whatever
    they raise means "could not find out", which adapters map to
    ``pending_manual`` rather than letting it escape.
    """
    try:
        return DependencyOutcome(value=await fn(*args))
    except Exception as e:
        logger.warning(f"Dependency {getattr(fn, '__qualname__', fn)!s} failed: {e}", exc_info=True)
        return DependencyOutcome(error=e)


def evidence_fingerprint(evidence: Any) -> str:
    """SHA-256 over a canonical JSON rendering of the evidence."""
    if isinstance(evidence, EvidenceModel):
        evidence = evidence.model_dump(by_alias=True)
    canonical = json.dumps(evidence, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


class Verifier(ABC):
    """Adapter interface that each incentive type implements.

    Subclasses set ``incentive_type`` (the registry key), ``evidence_model``
    (the evidence arm for that type) and ``evidence_reasons`` (rejection text
    per evidence field).
    """

    incentive_type: IncentiveType
    evidence_model: ClassVar[type[EvidenceModel]]
    evidence_reasons: ClassVar[dict[str, str]] = {}

    @abstractmethod
    async def verify(
        self,
        purchase_id: str,
        evidence: Any,
        incentive: Optional[IncentiveDefinition] = None,
    ) -> VerificationResult:
        """Validate the evidence and return a verification decision.

        Implementations must be idempotent and must not raise for malformed
        evidence.

        Args:
            purchase_id: Purchase claiming the incentive.
            evidence: Raw evidence payload submitted by the buyer.
            incentive: Definition being claimed, when the caller has it.

        Returns:
            The verification decision.
        """

    def validate_config(self, config: dict[str, Any]) -> list[str]:
        """Check an incentive's verification config before the event goes live.

        Returns:
            Human-readable problems; empty when the config is usable.
        """
        return []

    def parse_evidence(
        self, evidence: Any, context: Optional[dict[str, Any]] = None
    ) -> tuple[Optional[EvidenceModel], Optional[str]]:
        """Validate raw evidence against this adapter's evidence arm.

        Returns:
            ``(evidence, None)`` when valid, ``(None, reason)`` otherwise. The
            reason describes the first failing field in declaration order.
        """
        if isinstance(evidence, self.evidence_model):
            return evidence, None
        try:
            return self.evidence_model.model_validate(evidence, context=context), None
        except ValidationError as e:
            return None, self._rejection_reason(e)

    def _rejection_reason(self, error: ValidationError) -> str:
        first = error.errors()[0]
        if first["type"] in BUYER_FACING_ERROR_TYPES:
            return first["msg"]
        if not first["loc"]:
            return "Missing or malformed evidence"

        names_by_alias = {
            (field.alias or name): name for name, field in self.evidence_model.model_fields.items()
        }
        loc = first["loc"][0]
        field_name = names_by_alias.get(loc, loc)
        return self.evidence_reasons.get(field_name, f"Missing or invalid {field_name}")

    @staticmethod
    def awarded_bps(incentive: Optional[IncentiveDefinition]) -> int:
        return incentive.discount_bps if incentive else 0
