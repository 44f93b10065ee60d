"""Idempotency record model.

One row per external operation key (Stripe checkout session ID). The row is
inserted by a single conditional INSERT when processing starts ("claimed"),
and filled in once the ledger mutation succeeded ("finalized"). Any later
sighting of the same key is a no-op.

A claimed row that is never finalized (crash between claim and ledger write)
becomes eligible for exactly one re-claim after CLAIM_GRACE_SECONDS.
"""

import uuid
from datetime import datetime, timezone

from stagepay.extensions import db


class IdempotencyRecord(db.Model):
    __tablename__ = "idempotency_records"

    STATUS_CLAIMED = "claimed"
    STATUS_FINALIZED = "finalized"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    external_key = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "cs_live_a1B2..."
    status = db.Column(db.String(20), nullable=False, default=STATUS_CLAIMED)
    account_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
    credits_applied = db.Column(db.Integer, nullable=True)
    claimed_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    reclaim_count = db.Column(db.Integer, nullable=False, default=0)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def is_finalized(self):
        return self.status == self.STATUS_FINALIZED

    def to_dict(self):
        return {
            "external_key": self.external_key,
            "status": self.status,
            "account_id": self.account_id,
            "credits_applied": self.credits_applied,
            "claimed_at": self.claimed_at.isoformat() if self.claimed_at else None,
            "reclaim_count": self.reclaim_count,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }

    def __repr__(self):
        return f"<IdempotencyRecord {self.external_key} ({self.status})>"
