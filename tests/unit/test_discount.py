"""Unit tests for discount aggregation and the purchase lifecycle."""

import pytest

from src.models import IncentiveResult, Money
from src.quest.discount import all_incentives_resolved, apply_discount, net_price, total_discount_bps
from src.quest.lifecycle import accepts_submissions, can_transition


def result(incentive_id, bps, status):
    return IncentiveResult(
        purchase_id="p-1",
        incentive_id=incentive_id,
        incentive_type="manual",
        discount_bps=bps,
        status=status,
    )


@pytest.mark.unit
class TestDiscountAggregation:
    """Test bps totals, the 100% cap and net-price rounding."""

    def test_only_verified_results_count(self):
        results = [
            result("share", 500, "verified"),
            result("check-in", 1000, "verified"),
            result("referral", 1500, "rejected"),
            result("workshop", 300, "pending_manual"),
        ]

        assert total_discount_bps(results) == 1500

    def test_total_is_capped_at_full_price(self):
        results = [result(f"i-{n}", 4000, "verified") for n in range(3)]

        assert total_discount_bps(results) == 10_000

    def test_no_results_means_no_discount(self):
        assert total_discount_bps([]) == 0

    def test_net_price(self, make_purchase):
        purchase = make_purchase("p-1", amount=10_000)
        purchase.incentives = [result("share", 500, "verified"), result("check-in", 1000, "verified")]

        assert net_price(purchase) == Money(amount=8_500, currency="USD")

    @pytest.mark.parametrize(
        "amount,bps,expected",
        [
            (999, 500, 949),  # 49.95 rounds up to 50
            (1001, 500, 951),  # 50.05 rounds down to 50
            (10, 5000, 5),
            (1, 5000, 0),  # half rounds up
            (1234, 10_000, 0),
            (1234, 0, 1234),
        ],
    )
    def test_discount_rounds_half_up(self, amount, bps, expected):
        assert apply_discount(Money(amount=amount), bps).amount == expected

    def test_currency_is_preserved(self):
        assert apply_discount(Money(amount=5_000_000, currency="USDC"), 2500) == Money(
            amount=3_750_000, currency="USDC"
        )

    def test_all_incentives_resolved(self, make_purchase):
        purchase = make_purchase("p-1")
        assert all_incentives_resolved(purchase) is True

        purchase.incentives = [result("share", 500, "verified"), result("ref", 500, "rejected")]
        assert all_incentives_resolved(purchase) is True

        purchase.incentives.append(result("workshop", 300, "pending_manual"))
        assert all_incentives_resolved(purchase) is False


@pytest.mark.unit
class TestLifecycle:
    @pytest.mark.parametrize(
        "current,new",
        [
            ("authorized", "active"),
            ("active", "settling"),
            ("settling", "settled"),
            ("authorized", "cancelled"),
            ("active", "cancelled"),
            ("settling", "cancelled"),
        ],
    )
    def test_allowed_transitions(self, current, new):
        assert can_transition(current, new) is True

    @pytest.mark.parametrize(
        "current,new",
        [
            ("authorized", "settling"),
            ("active", "settled"),
            ("settling", "active"),
            ("settled", "cancelled"),
            ("cancelled", "active"),
        ],
    )
    def test_rejected_transitions(self, current, new):
        assert can_transition(current, new) is False

    def test_only_active_accepts_submissions(self):
        assert accepts_submissions("active")
        assert not any(
            accepts_submissions(state) for state in ("authorized", "settling", "settled", "cancelled")
        )
