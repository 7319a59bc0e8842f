"""Purchase lifecycle.

    authorized ──► active ──► settling ──► settled
         └──────────┴───────────┴─────────► cancelled
"""

from src.models import PurchaseState

VALID_TRANSITIONS: dict[str, frozenset[str]] = {
    "authorized": frozenset({"active", "cancelled"}),
    "active": frozenset({"settling", "cancelled"}),
    "settling": frozenset({"settled", "cancelled"}),
    "settled": frozenset(),
    "cancelled": frozenset(),
}

# Only purchases in this state accept verification submissions
SUBMISSION_STATE: PurchaseState = "active"


def can_transition(current: PurchaseState, new: PurchaseState) -> bool:
    return new in VALID_TRANSITIONS.get(current, frozenset())


def accepts_submissions(state: PurchaseState) -> bool:
    return state == SUBMISSION_STATE
