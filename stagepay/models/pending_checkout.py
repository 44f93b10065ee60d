"""Pending checkout model — the server-side cart.

Created when a customer starts a Stripe checkout. It carries everything the
webhook needs to materialize orders (uploaded image refs, staging style),
keyed by a random checkout token that travels in the Stripe session metadata.
Nothing financial is read from the browser.
"""

import uuid
from datetime import datetime, timezone

from stagepay.extensions import db


class PendingCheckout(db.Model):
    __tablename__ = "pending_checkouts"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    token = db.Column(db.String(64), unique=True, nullable=False)
    account_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
    customer_email = db.Column(db.String(255), nullable=False)
    bundle_id = db.Column(db.String(50), nullable=False)
    credits = db.Column(db.Integer, nullable=False)
    image_refs = db.Column(db.JSON, default=list)
    staging_style = db.Column(db.String(100), nullable=True)
    stripe_session_id = db.Column(db.String(255), unique=True, nullable=True)
    lock_token = db.Column(db.String(64), nullable=True)  # checkout lock lease held for this cart
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self):
        return f"<PendingCheckout {self.token[:8]}… {self.bundle_id}>"
