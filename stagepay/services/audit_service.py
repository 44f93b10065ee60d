"""Audit service — durable system event log (audit_events table)."""

import logging

from stagepay.extensions import db
from stagepay.models.audit import AuditEvent

logger = logging.getLogger(__name__)


def log_event(action, account_id=None, actor_user_id=None, metadata=None, commit=True):
    """Record an audit event.

    Actor is None for system-initiated events (webhooks, sweepers).
    With commit=False the caller owns the transaction boundary.
    """
    event = AuditEvent(
        account_id=account_id,
        actor_user_id=actor_user_id,
        action=action,
        metadata_=metadata or {},
    )
    db.session.add(event)
    if commit:
        db.session.commit()
    logger.info(f"Audit: {action} account={account_id}")
    return event


def list_events(account_id=None, action=None, limit=50):
    query = AuditEvent.query
    if account_id:
        query = query.filter_by(account_id=account_id)
    if action:
        query = query.filter_by(action=action)
    return query.order_by(AuditEvent.created_at.desc()).limit(limit).all()
