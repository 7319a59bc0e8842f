"""Unit tests for the check-in adapter."""

from unittest.mock import AsyncMock

import pytest

from src.quest.adapters.check_in import CheckInVerifier


@pytest.mark.unit
class TestCheckInVerifier:
    async def test_valid_code_is_verified(self, make_incentive):
        validate = AsyncMock(return_value=True)
        verifier = CheckInVerifier(validate)

        result = await verifier.verify("p-1", {"code": "VENUE-42"}, make_incentive("ci", "check_in", 1000))

        assert result.status == "verified"
        assert result.metadata == {"code": "VENUE-42"}
        assert result.awarded_bps == 1000
        validate.assert_awaited_once_with("p-1", "VENUE-42")

    async def test_invalid_code_is_rejected(self):
        verifier = CheckInVerifier(AsyncMock(return_value=False))

        result = await verifier.verify("p-1", {"code": "WRONG"})

        assert result.status == "rejected"
        assert result.reason == "Check-in code is invalid or already used"

    async def test_validator_failure_is_pending_manual(self):
        verifier = CheckInVerifier(AsyncMock(side_effect=ConnectionError("scanner offline")))

        result = await verifier.verify("p-1", {"code": "VENUE-42"})

        assert result.status == "pending_manual"
        assert result.retryable is True

    @pytest.mark.parametrize("evidence", [None, {}, {"code": ""}, {"code": 1234}])
    async def test_missing_code_is_rejected_without_calling_validator(self, evidence):
        validate = AsyncMock(return_value=True)

        result = await CheckInVerifier(validate).verify("p-1", evidence)

        assert result.status == "rejected"
        validate.assert_not_awaited()

    def test_requires_validator(self):
        with pytest.raises(ValueError):
            CheckInVerifier(None)
