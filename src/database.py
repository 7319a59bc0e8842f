"""SQLite database interface for the quest ledger.

Stores incentive definitions, purchases and their incentive results, and the
shared anti-gaming state (referral claims, single-use check-in codes, rate
limit windows). Every correctness-critical write is a single conditional
statement so it stays safe when several service processes share the file.
"""

import asyncio
import json
import sqlite3
from datetime import datetime
from typing import Iterable, Optional

import aiosqlite

from .config import config
from .logging_utils import get_logger
from .models import (
    IncentiveDefinition,
    IncentiveResult,
    Money,
    Purchase,
    ReviewQueueItem,
    WebhookRecord,
    utcnow,
)

logger = get_logger(__name__)

# Purchase states in which a purchase can serve as a referee
REFERRAL_QUALIFYING_STATES = ("active", "settling", "settled")

# SQL Schema
SCHEMA_SQL = """
-- Incentives exported by the campaign editor
CREATE TABLE IF NOT EXISTS incentive_definitions (
    incentive_id TEXT PRIMARY KEY,
    event_id TEXT NOT NULL,
    type TEXT NOT NULL,
    discount_bps INTEGER NOT NULL CHECK(discount_bps BETWEEN 1 AND 10000),
    description TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    verification_config TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Purchases and their lifecycle state
CREATE TABLE IF NOT EXISTS purchases (
    purchase_id TEXT PRIMARY KEY,
    event_id TEXT NOT NULL,
    base_amount INTEGER NOT NULL CHECK(base_amount >= 0),
    currency TEXT NOT NULL,
    state TEXT NOT NULL CHECK(state IN ('authorized', 'active', 'settling', 'settled', 'cancelled')),
    payment_ref TEXT,
    discount_bps INTEGER,
    net_amount INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- One row per claimed incentive per purchase
CREATE TABLE IF NOT EXISTS incentive_results (
    purchase_id TEXT NOT NULL,
    incentive_id TEXT NOT NULL,
    incentive_type TEXT NOT NULL,
    discount_bps INTEGER NOT NULL,
    status TEXT NOT NULL CHECK(status IN ('pending', 'verified', 'rejected', 'pending_manual')),
    reason TEXT,
    metadata TEXT,
    evidence_hash TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    review_id TEXT,
    updated_at TEXT NOT NULL,
    verified_at TEXT,
    PRIMARY KEY (purchase_id, incentive_id),
    FOREIGN KEY (purchase_id) REFERENCES purchases(purchase_id)
);

-- Referral claim set (a referee backs at most one referral)
CREATE TABLE IF NOT EXISTS referral_claims (
    referee_purchase_id TEXT PRIMARY KEY,
    referrer_purchase_id TEXT NOT NULL,
    claimed_at TEXT NOT NULL
);

-- Single-use check-in codes; purchase_id NULL means any purchase may redeem
CREATE TABLE IF NOT EXISTS check_in_codes (
    code TEXT PRIMARY KEY,
    purchase_id TEXT,
    issued_at TEXT NOT NULL,
    redeemed_by TEXT,
    used_at TEXT
);

-- Manual review queue
CREATE TABLE IF NOT EXISTS review_queue (
    review_id TEXT PRIMARY KEY,
    purchase_id TEXT NOT NULL,
    incentive_id TEXT,
    incentive_type TEXT NOT NULL,
    evidence TEXT NOT NULL,
    submitted_at TEXT NOT NULL,
    status TEXT NOT NULL CHECK(status IN ('pending', 'approved', 'rejected')),
    resolved_at TEXT,
    resolution_reason TEXT
);

-- Fixed-window attempt counters
CREATE TABLE IF NOT EXISTS rate_limits (
    key TEXT PRIMARY KEY,
    window_start INTEGER NOT NULL,
    count INTEGER NOT NULL
);

-- Payment-rail webhook tracking (for idempotency)
CREATE TABLE IF NOT EXISTS webhooks (
    webhook_id TEXT PRIMARY KEY,
    purchase_id TEXT NOT NULL,
    type TEXT NOT NULL,
    status TEXT NOT NULL CHECK(status IN ('processing', 'completed', 'failed')),
    received_at TEXT NOT NULL,
    processed_at TEXT,
    error_message TEXT
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_definitions_event_id ON incentive_definitions(event_id);
CREATE INDEX IF NOT EXISTS idx_purchases_state ON purchases(state);
CREATE INDEX IF NOT EXISTS idx_results_review_id ON incentive_results(review_id);
CREATE INDEX IF NOT EXISTS idx_review_queue_status ON review_queue(status);
CREATE INDEX IF NOT EXISTS idx_webhooks_purchase_id ON webhooks(purchase_id);
"""


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Database:
    """Async database interface for the quest ledger."""

    def __init__(self, db_path: str = None):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file. Defaults to config.database_path.
        """
        self.db_path = db_path or config.database_path
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.executescript(SCHEMA_SQL)
            await db.commit()
        logger.info(f"Database initialized at {self.db_path}")

    # Incentive definitions
    async def save_incentive_definitions(self, definitions: Iterable[IncentiveDefinition]) -> int:
        """Insert or refresh incentive definitions from the campaign editor.

        Returns:
            Number of definitions written.
        """
        now = utcnow().isoformat()
        rows = [
            (
                d.id,
                d.event_id,
                d.type.value,
                d.discount_bps,
                d.description,
                d.expires_at.isoformat(),
                json.dumps(d.verification_config),
                now,
            )
            for d in definitions
        ]
        async with aiosqlite.connect(self.db_path) as db:
            await db.executemany(
                """
                INSERT INTO incentive_definitions
                (incentive_id, event_id, type, discount_bps, description, expires_at,
                 verification_config, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(incentive_id) DO UPDATE SET
                    event_id = excluded.event_id,
                    type = excluded.type,
                    discount_bps = excluded.discount_bps,
                    description = excluded.description,
                    expires_at = excluded.expires_at,
                    verification_config = excluded.verification_config,
                    updated_at = excluded.updated_at
                """,
                rows,
            )
            await db.commit()
        logger.info(f"Saved {len(rows)} incentive definitions")
        return len(rows)

    async def get_incentive_definition(self, incentive_id: str) -> Optional[IncentiveDefinition]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM incentive_definitions WHERE incentive_id = ?",
                (incentive_id,),
            )
            row = await cursor.fetchone()
            return self._row_to_definition(row) if row else None

    async def list_incentive_definitions(self, event_id: Optional[str] = None) -> list[IncentiveDefinition]:
        query = "SELECT * FROM incentive_definitions"
        params: tuple = ()
        if event_id is not None:
            query += " WHERE event_id = ?"
            params = (event_id,)
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query + " ORDER BY incentive_id", params)
            return [self._row_to_definition(row) for row in await cursor.fetchall()]

    # Purchase operations
    async def create_purchase(self, purchase: Purchase) -> bool:
        """Create a purchase record.

        Returns:
            True if created, False if a purchase with that ID already exists.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO purchases
                    (purchase_id, event_id, base_amount, currency, state, payment_ref,
                     created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        purchase.id,
                        purchase.event_id,
                        purchase.base_price.amount,
                        purchase.base_price.currency,
                        purchase.state,
                        purchase.payment_ref,
                        purchase.created_at.isoformat(),
                        purchase.updated_at.isoformat(),
                    ),
                )
                await db.commit()
            logger.info(f"Created purchase: {purchase.id}")
            return True
        except sqlite3.IntegrityError:
            logger.warning(f"Purchase already exists: {purchase.id}")
            return False

    async def get_purchase(self, purchase_id: str) -> Optional[Purchase]:
        """Get a purchase with its incentive results in claim order."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM purchases WHERE purchase_id = ?",
                (purchase_id,),
            )
            row = await cursor.fetchone()
            if not row:
                return None

            cursor = await db.execute(
                "SELECT * FROM incentive_results WHERE purchase_id = ? ORDER BY rowid",
                (purchase_id,),
            )
            results = [self._row_to_result(r) for r in await cursor.fetchall()]

        net_price = None
        if row["net_amount"] is not None:
            net_price = Money(amount=row["net_amount"], currency=row["currency"])
        return Purchase(
            id=row["purchase_id"],
            event_id=row["event_id"],
            base_price=Money(amount=row["base_amount"], currency=row["currency"]),
            state=row["state"],
            incentives=results,
            payment_ref=row["payment_ref"],
            discount_bps=row["discount_bps"],
            net_price=net_price,
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    async def purchase_qualifies_as_referee(self, purchase_id: str) -> bool:
        """True if the purchase exists and has progressed past authorization."""
        placeholders = ", ".join("?" for _ in REFERRAL_QUALIFYING_STATES)
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"SELECT 1 FROM purchases WHERE purchase_id = ? AND state IN ({placeholders})",
                (purchase_id, *REFERRAL_QUALIFYING_STATES),
            )
            return await cursor.fetchone() is not None

    async def transition_purchase(self, purchase_id: str, expected: str, new: str) -> bool:
        """Compare-and-set the purchase state.

        Cancelling also clears any frozen settlement numbers.

        Returns:
            True if the purchase was in ``expected`` and is now in ``new``.
        """
        clear = ", discount_bps = NULL, net_amount = NULL" if new == "cancelled" else ""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"UPDATE purchases SET state = ?, updated_at = ?{clear} "
                "WHERE purchase_id = ? AND state = ?",
                (new, utcnow().isoformat(), purchase_id, expected),
            )
            await db.commit()
            changed = cursor.rowcount == 1
        if changed:
            logger.info(f"Purchase {purchase_id}: {expected} -> {new}")
        return changed

    async def freeze_settlement(self, purchase_id: str, discount_bps: int, net_amount: int) -> bool:
        """Record the settlement numbers once, while the purchase is settling."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE purchases
                SET discount_bps = ?, net_amount = ?, updated_at = ?
                WHERE purchase_id = ? AND state = 'settling' AND discount_bps IS NULL
                """,
                (discount_bps, net_amount, utcnow().isoformat(), purchase_id),
            )
            await db.commit()
            return cursor.rowcount == 1

    # Incentive result operations
    async def get_incentive_result(self, purchase_id: str, incentive_id: str) -> Optional[IncentiveResult]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM incentive_results WHERE purchase_id = ? AND incentive_id = ?",
                (purchase_id, incentive_id),
            )
            row = await cursor.fetchone()
            return self._row_to_result(row) if row else None

    async def record_incentive_result(self, result: IncentiveResult) -> bool:
        """Write a verification outcome if it may still be applied.

        The write happens only while the purchase is ``active`` and the
        stored result is not already ``verified``; both conditions are part
        of the same statement, so concurrent writers cannot double-award.

        Returns:
            True if the result was written.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO incentive_results
                (purchase_id, incentive_id, incentive_type, discount_bps, status, reason,
                 metadata, evidence_hash, attempts, review_id, updated_at, verified_at)
                SELECT ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?
                WHERE EXISTS (
                    SELECT 1 FROM purchases WHERE purchase_id = ? AND state = 'active'
                )
                ON CONFLICT(purchase_id, incentive_id) DO UPDATE SET
                    status = excluded.status,
                    reason = excluded.reason,
                    metadata = excluded.metadata,
                    evidence_hash = excluded.evidence_hash,
                    attempts = incentive_results.attempts + 1,
                    review_id = COALESCE(excluded.review_id, incentive_results.review_id),
                    updated_at = excluded.updated_at,
                    verified_at = excluded.verified_at
                WHERE incentive_results.status != 'verified'
                """,
                (
                    result.purchase_id,
                    result.incentive_id,
                    result.incentive_type.value,
                    result.discount_bps,
                    result.status,
                    result.reason,
                    json.dumps(result.metadata) if result.metadata is not None else None,
                    result.evidence_hash,
                    result.review_id,
                    result.updated_at.isoformat(),
                    result.verified_at.isoformat() if result.verified_at else None,
                    result.purchase_id,
                ),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def resolve_reviewed_result(
        self,
        purchase_id: str,
        incentive_id: str,
        review_id: str,
        status: str,
        reason: str,
    ) -> bool:
        """Promote a parked result after human review.

        Only a result still waiting on this review, on an active purchase, is
        changed.
        """
        now = utcnow().isoformat()
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE incentive_results
                SET status = ?, reason = ?, updated_at = ?,
                    verified_at = CASE WHEN ? = 'verified' THEN ? ELSE NULL END
                WHERE purchase_id = ? AND incentive_id = ? AND review_id = ?
                  AND status = 'pending_manual'
                  AND EXISTS (
                      SELECT 1 FROM purchases WHERE purchase_id = ? AND state = 'active'
                  )
                """,
                (status, reason, now, status, now, purchase_id, incentive_id, review_id, purchase_id),
            )
            await db.commit()
            return cursor.rowcount == 1

    # Referral claims
    async def get_referral_claim(self, referee_purchase_id: str) -> Optional[str]:
        """Return the referrer holding the claim on a referee, if any."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT referrer_purchase_id FROM referral_claims WHERE referee_purchase_id = ?",
                (referee_purchase_id,),
            )
            row = await cursor.fetchone()
            return row[0] if row else None

    async def claim_referral(self, referee_purchase_id: str, referrer_purchase_id: str) -> bool:
        """Atomically claim a referee for a referrer (insert-if-absent).

        Returns:
            True if the referrer now holds the claim (new or already theirs).
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR IGNORE INTO referral_claims
                (referee_purchase_id, referrer_purchase_id, claimed_at)
                VALUES (?, ?, ?)
                """,
                (referee_purchase_id, referrer_purchase_id, utcnow().isoformat()),
            )
            await db.commit()
            cursor = await db.execute(
                "SELECT referrer_purchase_id FROM referral_claims WHERE referee_purchase_id = ?",
                (referee_purchase_id,),
            )
            row = await cursor.fetchone()

        holder = row[0] if row else None
        if holder != referrer_purchase_id:
            logger.warning(
                f"Referral claim on {referee_purchase_id} already held by {holder}"
            )
            return False
        return True

    # Check-in codes
    async def issue_check_in_code(self, code: str, purchase_id: Optional[str] = None) -> None:
        """Issue a single-use check-in code, optionally bound to one purchase."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT INTO check_in_codes (code, purchase_id, issued_at) VALUES (?, ?, ?)",
                (code, purchase_id, utcnow().isoformat()),
            )
            await db.commit()
        logger.info(f"Issued check-in code for {purchase_id or 'any purchase'}")

    async def redeem_check_in_code(self, purchase_id: str, code: str) -> bool:
        """Redeem a check-in code for a purchase.

        Returns:
            True if the code existed, was usable by this purchase and unused.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE check_in_codes
                SET used_at = ?, redeemed_by = ?
                WHERE code = ? AND used_at IS NULL
                  AND (purchase_id IS NULL OR purchase_id = ?)
                """,
                (utcnow().isoformat(), purchase_id, code, purchase_id),
            )
            await db.commit()
            return cursor.rowcount == 1

    # Review queue
    async def enqueue_review(self, item: ReviewQueueItem) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO review_queue
                (review_id, purchase_id, incentive_id, incentive_type, evidence,
                 submitted_at, status)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item.review_id,
                    item.purchase_id,
                    item.incentive_id,
                    item.incentive_type.value,
                    json.dumps(item.evidence),
                    item.submitted_at.isoformat(),
                    item.status,
                ),
            )
            await db.commit()
        logger.info(f"Enqueued review item: {item.review_id}")

    async def get_review(self, review_id: str) -> Optional[ReviewQueueItem]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM review_queue WHERE review_id = ?",
                (review_id,),
            )
            row = await cursor.fetchone()

            if row:
                return ReviewQueueItem(
                    review_id=row["review_id"],
                    purchase_id=row["purchase_id"],
                    incentive_id=row["incentive_id"],
                    incentive_type=row["incentive_type"],
                    evidence=json.loads(row["evidence"]),
                    submitted_at=datetime.fromisoformat(row["submitted_at"]),
                    status=row["status"],
                    resolved_at=_dt(row["resolved_at"]),
                    resolution_reason=row["resolution_reason"],
                )
            return None

    async def list_pending_reviews(self) -> list[str]:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT review_id FROM review_queue WHERE status = 'pending' ORDER BY submitted_at"
            )
            return [row[0] for row in await cursor.fetchall()]

    async def mark_review_resolved(self, review_id: str, status: str, reason: Optional[str]) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE review_queue
                SET status = ?, resolved_at = ?, resolution_reason = ?
                WHERE review_id = ? AND status = 'pending'
                """,
                (status, utcnow().isoformat(), reason, review_id),
            )
            await db.commit()
            return cursor.rowcount == 1

    # Rate limiting
    async def hit_rate_limit(
        self, key: str, limit: int, window_seconds: int, now: Optional[datetime] = None
    ) -> bool:
        """Count one attempt against a fixed window.

        Returns:
            True if the attempt is within the limit, False if it exceeds it.
        """
        timestamp = (now or utcnow()).timestamp()
        window_start = int(timestamp // window_seconds) * window_seconds

        async with self._lock:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO rate_limits (key, window_start, count) VALUES (?, ?, 1)
                    ON CONFLICT(key) DO UPDATE SET
                        count = CASE WHEN rate_limits.window_start = excluded.window_start
                                     THEN rate_limits.count + 1 ELSE 1 END,
                        window_start = excluded.window_start
                    """,
                    (key, window_start),
                )
                await db.commit()
                cursor = await db.execute("SELECT count FROM rate_limits WHERE key = ?", (key,))
                row = await cursor.fetchone()

        count = row[0] if row else 0
        if count > limit:
            logger.warning(f"Rate limit exceeded for {key}: {count} attempts in window")
            return False
        return True

    # Webhook operations (idempotency)
    async def create_webhook(self, webhook: WebhookRecord) -> bool:
        """Create a webhook record for idempotency tracking.

        Returns:
            True if record was created (first time), False if duplicate.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO webhooks
                    (webhook_id, purchase_id, type, status, received_at, processed_at, error_message)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        webhook.webhook_id,
                        webhook.purchase_id,
                        webhook.type,
                        webhook.status,
                        webhook.received_at.isoformat(),
                        webhook.processed_at.isoformat() if webhook.processed_at else None,
                        webhook.error_message,
                    ),
                )
                await db.commit()
            logger.info(f"Created webhook record: {webhook.webhook_id}")
            return True
        except sqlite3.IntegrityError:
            logger.warning(f"Webhook already exists (idempotency): {webhook.webhook_id}")
            return False

    async def get_webhook(self, webhook_id: str) -> Optional[WebhookRecord]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM webhooks WHERE webhook_id = ?",
                (webhook_id,),
            )
            row = await cursor.fetchone()

            if row:
                return WebhookRecord(
                    webhook_id=row["webhook_id"],
                    purchase_id=row["purchase_id"],
                    type=row["type"],
                    status=row["status"],
                    received_at=datetime.fromisoformat(row["received_at"]),
                    processed_at=_dt(row["processed_at"]),
                    error_message=row["error_message"],
                )
            return None

    async def update_webhook_status(
        self,
        webhook_id: str,
        status: str,
        error_message: Optional[str] = None,
    ) -> None:
        """Update webhook processing status.

        Args:
            webhook_id: Webhook to update.
            status: New status (processing, completed, failed).
            error_message: Error message if failed.
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE webhooks
                SET status = ?, processed_at = ?, error_message = ?
                WHERE webhook_id = ?
                """,
                (status, utcnow().isoformat(), error_message, webhook_id),
            )
            await db.commit()
        logger.info(f"Updated webhook {webhook_id} status to {status}")

    @staticmethod
    def _row_to_definition(row: aiosqlite.Row) -> IncentiveDefinition:
        return IncentiveDefinition(
            id=row["incentive_id"],
            event_id=row["event_id"],
            type=row["type"],
            discount_bps=row["discount_bps"],
            description=row["description"],
            expires_at=datetime.fromisoformat(row["expires_at"]),
            verification_config=json.loads(row["verification_config"]),
        )

    @staticmethod
    def _row_to_result(row: aiosqlite.Row) -> IncentiveResult:
        return IncentiveResult(
            purchase_id=row["purchase_id"],
            incentive_id=row["incentive_id"],
            incentive_type=row["incentive_type"],
            discount_bps=row["discount_bps"],
            status=row["status"],
            reason=row["reason"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else None,
            evidence_hash=row["evidence_hash"],
            attempts=row["attempts"],
            review_id=row["review_id"],
            updated_at=datetime.fromisoformat(row["updated_at"]),
            verified_at=_dt(row["verified_at"]),
        )


# Global database instance
db = Database()
