"""Checkout lock model.

Short-lived lease over a customer identity while a checkout is being
initiated. A row whose expires_at is in the past is treated as absent.
"""

from stagepay.extensions import db


class CheckoutLock(db.Model):
    __tablename__ = "checkout_locks"

    identity_key = db.Column(db.String(255), primary_key=True)  # "email:..." or "account:..."
    token = db.Column(db.String(64), nullable=False)
    acquired_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    def __repr__(self):
        return f"<CheckoutLock {self.identity_key}>"
