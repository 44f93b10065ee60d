"""Order model.

One row per staged photo. Orders are created `pending` by the reconciliation
engine (paid checkouts) or by a credit order; the staging pipeline moves them
through processing to completed/failed.

source_ref ties every order to the payment session or checkout token that
produced it, so re-running materialization never duplicates orders.
"""

import uuid

from stagepay.extensions import db


def _order_number():
    return f"ORD-{uuid.uuid4().hex[:8].upper()}"


class Order(db.Model):
    __tablename__ = "orders"

    STATUS_PENDING = "pending"
    STATUS_PROCESSING = "processing"
    STATUS_COMPLETED = "completed"
    STATUS_FAILED = "failed"

    # status -> allowed next statuses
    TRANSITIONS = {
        STATUS_PENDING: (STATUS_PROCESSING, STATUS_FAILED),
        STATUS_PROCESSING: (STATUS_COMPLETED, STATUS_FAILED),
        STATUS_COMPLETED: (),
        STATUS_FAILED: (),
    }

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    order_number = db.Column(
        db.String(20), unique=True, nullable=False, default=_order_number
    )
    account_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    credits_used = db.Column(db.Integer, nullable=False, default=1)
    status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING)
    source_ref = db.Column(db.String(255), nullable=False, index=True)
    image_ref = db.Column(db.String(1024), nullable=True)  # storage path of the original photo
    staging_style = db.Column(db.String(100), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="orders")

    def can_transition_to(self, status):
        return status in self.TRANSITIONS.get(self.status, ())

    def to_dict(self):
        return {
            "id": self.id,
            "order_number": self.order_number,
            "account_id": self.account_id,
            "credits_used": self.credits_used,
            "status": self.status,
            "source_ref": self.source_ref,
            "image_ref": self.image_ref,
            "staging_style": self.staging_style,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Order {self.order_number} ({self.status})>"
