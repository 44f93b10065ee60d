"""Account balance model.

One row per account. `balance` is a derived value: it always equals the sum
of the account's ledger deltas and is written only by
ledger_service.apply_delta(). `version` increments on every mutation and is
the compare-and-swap token that serializes concurrent writers.
"""

from datetime import datetime, timezone

from stagepay.extensions import db


class AccountBalance(db.Model):
    __tablename__ = "account_balances"
    __table_args__ = (
        db.CheckConstraint("balance >= 0", name="ck_account_balances_non_negative"),
    )

    account_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), primary_key=True
    )
    balance = db.Column(db.Integer, nullable=False, default=0)
    version = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="balance")

    def __repr__(self):
        return f"<AccountBalance {self.account_id}={self.balance} v{self.version}>"
