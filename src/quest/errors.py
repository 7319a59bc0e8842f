"""Engine-level errors.

These signal caller misuse or missing records, never a problem with buyer
evidence (which is always a VerificationResult).
"""


class QuestError(Exception):
    """Base class for engine errors."""


class PurchaseNotFoundError(QuestError):
    def __init__(self, purchase_id: str):
        super().__init__(f"Purchase not found: {purchase_id}")
        self.purchase_id = purchase_id


class IncentiveNotFoundError(QuestError):
    def __init__(self, incentive_id: str, event_id: str):
        super().__init__(f"Incentive {incentive_id} not found for event {event_id}")
        self.incentive_id = incentive_id


class ReviewNotFoundError(QuestError):
    def __init__(self, review_id: str):
        super().__init__(f"Review item not found: {review_id}")
        self.review_id = review_id


class InvalidStateError(QuestError):
    """The purchase is not in a state that allows the requested operation."""


class InvalidTransitionError(InvalidStateError):
    def __init__(self, purchase_id: str, current: str, new: str):
        super().__init__(f"Purchase {purchase_id} cannot transition from {current} to {new}")
        self.current = current
        self.new = new
