"""Ledger entry model (append-only).

Every credit change is one immutable row. For a given account, entries are
totally ordered by `sequence`, and each entry's balance_before equals the
previous entry's balance_after.

The (account_id, reason, external_ref) unique constraint means one external
reference (payment session, checkout token, order id) can be applied at most
once per reason, even if the idempotency registry were bypassed.
"""

import uuid
from datetime import datetime, timezone

from stagepay.extensions import db


class LedgerReason:
    PURCHASE = "purchase"
    USAGE = "usage"
    ADMIN_ADD = "admin_add"
    ADMIN_SUBTRACT = "admin_subtract"
    REFUND = "refund"
    EXPIRATION = "expiration"

    ALL = (PURCHASE, USAGE, ADMIN_ADD, ADMIN_SUBTRACT, REFUND, EXPIRATION)
    GRANTS = (PURCHASE, ADMIN_ADD, REFUND)
    DEBITS = (USAGE, ADMIN_SUBTRACT, EXPIRATION)


class LedgerEntry(db.Model):
    __tablename__ = "ledger_entries"
    __table_args__ = (
        db.UniqueConstraint(
            "account_id", "sequence", name="uq_ledger_entries_account_sequence"
        ),
        db.UniqueConstraint(
            "account_id", "reason", "external_ref",
            name="uq_ledger_entries_account_reason_ref",
        ),
        db.CheckConstraint(
            "balance_after = balance_before + delta",
            name="ck_ledger_entries_arithmetic",
        ),
    )

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    account_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    sequence = db.Column(db.Integer, nullable=False)
    delta = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(32), nullable=False)
    balance_before = db.Column(db.Integer, nullable=False)
    balance_after = db.Column(db.Integer, nullable=False)
    external_ref = db.Column(db.String(255), nullable=True, index=True)  # e.g. "cs_test_..."
    order_ref = db.Column(db.String(36), nullable=True)
    note = db.Column(db.String(255), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "sequence": self.sequence,
            "delta": self.delta,
            "reason": self.reason,
            "balance_before": self.balance_before,
            "balance_after": self.balance_after,
            "external_ref": self.external_ref,
            "order_ref": self.order_ref,
            "note": self.note,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<LedgerEntry {self.account_id}#{self.sequence} {self.delta:+d} ({self.reason})>"
