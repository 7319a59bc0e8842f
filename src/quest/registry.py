"""Registry mapping incentive types to verifier adapters.

Dispatch is keyed by ``IncentiveType``. A type with no registered adapter
falls through to an explicit "no adapter" arm that parks the claim as
``pending_manual`` instead of rejecting it.
"""

from typing import Any, Optional, Union

from src.logging_utils import get_logger
from src.models import IncentiveDefinition, IncentiveType, VerificationResult
from src.quest.verifier import Verifier

logger = get_logger(__name__)


class VerifierRegistry:
    """Holds one verifier per incentive type and dispatches requests to it."""

    def __init__(self) -> None:
        self._adapters: dict[IncentiveType, Verifier] = {}

    def register(self, verifier: Verifier) -> None:
        """Register an adapter for its incentive type.

        A later registration for the same type replaces the earlier one.
        """
        key = IncentiveType(verifier.incentive_type)
        previous = self._adapters.get(key)
        if previous is not None and previous is not verifier:
            logger.info(
                f"Replacing verifier for {key.value}: "
                f"{type(previous).__name__} -> {type(verifier).__name__}"
            )
        self._adapters[key] = verifier
        logger.debug(f"Registered {type(verifier).__name__} for {key.value}")

    def get(self, incentive_type: Union[IncentiveType, str]) -> Optional[Verifier]:
        key = self._coerce(incentive_type)
        return self._adapters.get(key) if key is not None else None

    def has(self, incentive_type: Union[IncentiveType, str]) -> bool:
        return self.get(incentive_type) is not None

    def incentive_types(self) -> list[IncentiveType]:
        """List the incentive types that currently have an adapter."""
        return list(self._adapters)

    async def verify(
        self,
        incentive_type: Union[IncentiveType, str],
        purchase_id: str,
        evidence: Any,
        incentive: Optional[IncentiveDefinition] = None,
    ) -> VerificationResult:
        """Look up the adapter for ``incentive_type`` and invoke it.

        Args:
            incentive_type: Type of the incentive being claimed.
            purchase_id: Purchase claiming it.
            evidence: Raw evidence payload.
            incentive: Definition being claimed, forwarded to the adapter.

        Returns:
            The adapter's decision, or ``pending_manual`` when no adapter is
            registered for the type.
        """
        verifier = self.get(incentive_type)
        if verifier is None:
            name = getattr(incentive_type, "value", incentive_type)
            logger.warning(f"Configuration gap: no adapter registered for incentive type {name!r}")
            return VerificationResult.pending_manual(
                f"No adapter registered for incentive type: {name}; queued for manual review"
            )

        result = await verifier.verify(purchase_id, evidence, incentive)
        logger.info(
            f"{type(verifier).__name__} decided {result.status} for purchase {purchase_id}: {result.reason}"
        )
        return result

    @staticmethod
    def _coerce(incentive_type: Union[IncentiveType, str]) -> Optional[IncentiveType]:
        try:
            return IncentiveType(incentive_type)
        except ValueError:
            return None
