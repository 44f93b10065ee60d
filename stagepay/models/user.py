"""User model.

A user is the customer identity that owns a credit account.
Flask-Login integration via UserMixin.
"""

import uuid

from flask_login import UserMixin

from stagepay.extensions import db


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email = db.Column(db.String(255), unique=True, nullable=False)  # stored lower-cased
    password_hash = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(255))
    is_admin = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True)
    # True when the account was auto-created from a guest payment.
    provisioned = db.Column(db.Boolean, default=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    balance = db.relationship(
        "AccountBalance", back_populates="user", uselist=False
    )
    orders = db.relationship("Order", back_populates="user", lazy="dynamic")

    def __repr__(self):
        return f"<User {self.email}>"
