import os
from datetime import timedelta

import pytest

# Set test environment before src.config is imported by any test
os.environ.setdefault("WEBHOOK_SECRET", "test_webhook_secret")
os.environ.setdefault("LOG_FORMAT", "text")

from src.database import Database
from src.models import IncentiveDefinition, Money, Purchase, utcnow


@pytest.fixture
async def test_db(tmp_path):
    """Create a temporary test database."""
    db = Database(str(tmp_path / "test.db"))
    await db.initialize()
    return db


@pytest.fixture
def make_incentive():
    """Factory for incentive definitions on event ``evt-1``."""

    def _make(
        incentive_id,
        incentive_type,
        discount_bps=500,
        event_id="evt-1",
        expires_in=timedelta(days=30),
        **verification_config,
    ):
        return IncentiveDefinition(
            id=incentive_id,
            event_id=event_id,
            type=incentive_type,
            discount_bps=discount_bps,
            description=f"{incentive_type} incentive",
            expires_at=utcnow() + expires_in,
            verification_config=verification_config,
        )

    return _make


@pytest.fixture
def make_purchase():
    """Factory for purchases priced in cents."""

    def _make(purchase_id, amount=10_000, state="authorized", event_id="evt-1"):
        return Purchase(
            id=purchase_id,
            event_id=event_id,
            base_price=Money(amount=amount, currency="USD"),
            state=state,
        )

    return _make
