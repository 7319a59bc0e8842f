"""Webhook handling for payment-rail events.

Implements signature checks, idempotency and the purchase lifecycle moves
that the payment rail drives.
"""

import hashlib
import hmac
from typing import Any, Dict

from src.config import config
from src.logging_utils import PurchaseContext, get_logger
from src.models import Money, PaymentWebhook, WebhookRecord
from src.quest.engine import QuestEngine
from src.quest.errors import QuestError

logger = get_logger(__name__)

# Lifecycle state each event moves the purchase to
EVENT_TRANSITIONS = {
    "quest.opened": "active",
    "quest.closed": "settling",
    "payment.captured": "settled",
    "payment.cancelled": "cancelled",
    "payment.failed": "cancelled",
}


def verify_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
    """Verify HMAC-SHA256 signature for webhook authenticity.

    Args:
        payload: Raw webhook payload bytes.
        signature: Hex-encoded HMAC signature from header.
        secret: Shared secret for HMAC.

    Returns:
        True if signature is valid, False otherwise.
    """
    expected_signature = hmac.new(
        secret.encode(),
        payload,
        hashlib.sha256,
    ).hexdigest()

    return hmac.compare_digest(expected_signature, signature)


def sign_payload(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of a payload, as the payment rail sends it."""
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


class PaymentWebhookHandler:
    """Applies payment-rail events to purchases exactly once."""

    def __init__(self, engine: QuestEngine, secret: str = None):
        """Initialize webhook handler.

        Args:
            engine: Quest engine owning the purchases.
            secret: Shared HMAC secret. Defaults to config.webhook_secret.
        """
        self.engine = engine
        self.db = engine.db
        self.secret = secret or config.webhook_secret

    async def process_webhook(
        self,
        webhook: PaymentWebhook,
        signature: str,
        raw_payload: bytes,
    ) -> Dict[str, Any]:
        """Process a payment-rail webhook.

        Args:
            webhook: Parsed webhook payload.
            signature: HMAC signature from header.
            raw_payload: Raw payload bytes for signature verification.

        Returns:
            Dict with status and details.
        """
        logger.info(f"Processing {webhook.type} webhook {webhook.webhook_id} for purchase {webhook.purchase_id}")

        if not verify_webhook_signature(raw_payload, signature, self.secret):
            logger.error(f"Invalid webhook signature for {webhook.webhook_id}")
            return {
                "status": "error",
                "error": "Invalid signature",
                "webhook_id": webhook.webhook_id,
            }

        existing_webhook = await self.db.get_webhook(webhook.webhook_id)
        if existing_webhook:
            logger.info(
                f"Webhook {webhook.webhook_id} already processed (idempotency): "
                f"status={existing_webhook.status}"
            )
            if existing_webhook.status == "completed":
                return {
                    "status": "success",
                    "message": "Webhook already processed (idempotent)",
                    "webhook_id": webhook.webhook_id,
                }
            elif existing_webhook.status == "failed":
                return {
                    "status": "error",
                    "error": existing_webhook.error_message,
                    "webhook_id": webhook.webhook_id,
                }
            else:
                return {
                    "status": "processing",
                    "message": "Webhook is currently being processed",
                    "webhook_id": webhook.webhook_id,
                }

        record = WebhookRecord(
            webhook_id=webhook.webhook_id,
            purchase_id=webhook.purchase_id,
            type=webhook.type,
        )
        if not await self.db.create_webhook(record):
            logger.warning(f"Race condition detected for webhook {webhook.webhook_id}")
            return {
                "status": "processing",
                "message": "Webhook is being processed by another request",
                "webhook_id": webhook.webhook_id,
            }

        with PurchaseContext(webhook.purchase_id):
            try:
                state = await self._apply(webhook)
            except (QuestError, ValueError) as e:
                error_msg = str(e)
                logger.error(f"Webhook {webhook.webhook_id} rejected: {error_msg}")
                await self.db.update_webhook_status(webhook.webhook_id, "failed", error_msg)
                return {
                    "status": "error",
                    "error": error_msg,
                    "webhook_id": webhook.webhook_id,
                }

        await self.db.update_webhook_status(webhook.webhook_id, "completed")
        return {
            "status": "success",
            "message": f"Applied {webhook.type}",
            "webhook_id": webhook.webhook_id,
            "purchase_id": webhook.purchase_id,
            "state": state,
        }

    async def _apply(self, webhook: PaymentWebhook) -> str:
        if webhook.type == "payment.authorized":
            if webhook.event_id is None or webhook.amount is None:
                raise ValueError("payment.authorized requires event_id and amount")
            purchase = await self.engine.create_purchase(
                webhook.purchase_id,
                webhook.event_id,
                Money(amount=webhook.amount, currency=webhook.currency),
                payment_ref=webhook.payment_ref,
            )
            return purchase.state

        if webhook.type == "payment.refunded":
            purchase = await self.engine.get_purchase(webhook.purchase_id)
            logger.info(f"Refund recorded for purchase {purchase.id} ({purchase.state})")
            return purchase.state

        purchase = await self.engine.transition(webhook.purchase_id, EVENT_TRANSITIONS[webhook.type])
        return purchase.state
