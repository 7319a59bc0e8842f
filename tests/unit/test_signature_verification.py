"""Unit tests for payment-rail webhook signature verification."""

import hashlib
import hmac

import pytest

from src.quest.webhooks import sign_payload, verify_webhook_signature


@pytest.mark.unit
class TestSignatureVerification:
    """Test HMAC-SHA256 signature verification."""

    payload = b'{"webhook_id":"wh-123","type":"quest.opened","purchase_id":"p-1"}'
    secret = "my_secret_key"

    def test_valid_signature(self):
        """Test that valid signatures pass verification."""
        expected_sig = hmac.new(self.secret.encode(), self.payload, hashlib.sha256).hexdigest()

        assert verify_webhook_signature(self.payload, expected_sig, self.secret) is True

    def test_sign_payload_matches_verifier(self):
        signature = sign_payload(self.payload, self.secret)
        assert verify_webhook_signature(self.payload, signature, self.secret) is True

    def test_invalid_signature(self):
        """Test that invalid signatures fail verification."""
        assert verify_webhook_signature(self.payload, "0" * 64, self.secret) is False

    def test_wrong_secret(self):
        """Test that signatures made with another secret fail."""
        wrong_sig = sign_payload(self.payload, "wrong_secret")
        assert verify_webhook_signature(self.payload, wrong_sig, self.secret) is False

    def test_modified_payload(self):
        """Test that modified payloads fail verification."""
        signature = sign_payload(self.payload, self.secret)
        modified = self.payload.replace(b"quest.opened", b"quest.closed")

        assert verify_webhook_signature(modified, signature, self.secret) is False

    def test_empty_signature(self):
        assert verify_webhook_signature(self.payload, "", self.secret) is False
