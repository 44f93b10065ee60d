"""Reconciliation engine — payment confirmation to credits, exactly once.

Every confirmation walks one state machine:

    RECEIVED -> CLAIMED -> LEDGER_APPLIED -> ORDERS_MATERIALIZED -> NOTIFIED -> DONE
       |          |
       |          +-> DUPLICATE   (key already claimed; a success outcome)
       +-> REJECTED               (unpaid / malformed / unresolvable account)

Guarantees:
- the idempotency claim is the only dedup decision; nothing here does
  check-then-act on "was this processed?"
- credits move only through ledger_service.apply_delta()
- side effects after the ledger (orders, pending checkout completion,
  lock release, notification) are idempotent by session id and never
  undo the ledger change
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.exc import OperationalError

from stagepay.errors import (
    DuplicateNotification,
    StagePayError,
    TransientInfrastructureFailure,
    ValidationFailure,
)
from stagepay.extensions import db
from stagepay.models.ledger import LedgerReason
from stagepay.models.order import Order
from stagepay.models.pending_checkout import PendingCheckout
from stagepay.services import (
    account_service,
    audit_service,
    checkout_lock_service,
    idempotency_service,
    ledger_service,
    notification_service,
    stripe_service,
)

logger = logging.getLogger(__name__)

# --- States ---
RECEIVED = "received"
CLAIMED = "claimed"
LEDGER_APPLIED = "ledger_applied"
ORDERS_MATERIALIZED = "orders_materialized"
NOTIFIED = "notified"
DONE = "done"
REJECTED = "rejected"
DUPLICATE = "duplicate"

# --- Gateway outcomes ---
STATUS_PROCESSED = "processed"
STATUS_DUPLICATE = "duplicate"
STATUS_IGNORED = "ignored"
STATUS_DEFERRED = "deferred"
STATUS_REJECTED = "rejected"


@dataclass
class ReconciliationResult:
    status: str
    state: str
    session_id: Optional[str] = None
    account_id: Optional[str] = None
    credits: int = 0
    orders: List[str] = field(default_factory=list)
    message: str = ""

    def to_dict(self):
        return {
            "status": self.status,
            "state": self.state,
            "session_id": self.session_id,
            "account_id": self.account_id,
            "credits": self.credits,
            "orders": self.orders,
            "message": self.message,
        }


# ──────────────────────────────────────────────
# Entry points
# ──────────────────────────────────────────────

def handle_event(event):
    """Reconcile a verified Stripe event.

    Unhandled event types, and completed-but-unpaid sessions (delayed
    payment methods, which arrive later as async_payment_succeeded), are
    acknowledged as ignored.
    Raises TransientInfrastructureFailure if the claim cannot be recorded.
    """
    event_type = event["type"]
    if event_type not in stripe_service.HANDLED_EVENTS:
        logger.info(f"Ignoring Stripe event {event['id']} of type {event_type}")
        return ReconciliationResult(status=STATUS_IGNORED, state=RECEIVED)

    session = event["data"]["object"]
    if (
        event_type == "checkout.session.completed"
        and session.get("payment_status") == "unpaid"
    ):
        logger.info(f"Session {session.get('id')} completed but unpaid, awaiting async payment")
        return ReconciliationResult(
            status=STATUS_IGNORED, state=RECEIVED, session_id=session.get("id")
        )

    try:
        confirmation = stripe_service.parse_confirmation(session)
    except ValidationFailure as e:
        return _reject(session.get("id"), None, e, claimed=False)

    return reconcile(confirmation)


def reconcile(confirmation):
    """Drive one PaymentConfirmation through the state machine."""
    session_id = confirmation.session_id

    # RECEIVED -> CLAIMED | DUPLICATE
    claim = idempotency_service.claim(session_id)
    if not claim.claimed:
        logger.info(f"Duplicate notification for {session_id}")
        return ReconciliationResult(
            status=STATUS_DUPLICATE,
            state=DUPLICATE,
            session_id=session_id,
            message="already processed",
        )

    # CLAIMED -> LEDGER_APPLIED
    try:
        user = account_service.resolve_account(
            account_id=confirmation.account_id, email=confirmation.email
        )
        _apply_purchase(confirmation, user.id, recovered=claim.recovered)
        idempotency_service.finalize(session_id, user.id, confirmation.credits)
    except (TransientInfrastructureFailure, OperationalError) as e:
        db.session.rollback()
        logger.error(f"Deferred {session_id}, claim kept for recovery: {e}")
        return ReconciliationResult(
            status=STATUS_DEFERRED,
            state=CLAIMED,
            session_id=session_id,
            message="temporarily unable to apply credits",
        )
    except StagePayError as e:
        return _reject(session_id, confirmation, e, claimed=True)

    audit_service.log_event(
        "credits.purchased",
        account_id=user.id,
        metadata={
            "session_id": session_id,
            "credits": confirmation.credits,
            "bundle_id": confirmation.bundle_id,
            "amount_total": confirmation.amount_total,
            "recovered": claim.recovered,
        },
    )

    return _complete(
        session_id, user.id, confirmation.credits, find_pending_for(confirmation)
    )


def redrive(external_key, notify=True):
    """Re-run the post-ledger side effects for a finalized key.

    Never touches the ledger purchase entry; order materialization is
    guarded by source_ref so a redrive cannot duplicate orders.
    """
    record = idempotency_service.get_record(external_key)
    if record is None or not record.is_finalized:
        raise ValidationFailure(
            f"{external_key} is not finalized and cannot be redriven",
            user_message="Only finalized payments can be redriven.",
        )
    logger.info(f"Redriving side effects for {external_key}")
    audit_service.log_event(
        "reconciliation.redrive",
        account_id=record.account_id,
        metadata={"session_id": external_key},
    )
    return _complete(
        external_key,
        record.account_id,
        record.credits_applied,
        _find_pending_checkout(external_key),
        notify=notify,
    )


def recover_abandoned_claims():
    """Re-fetch each abandoned session from Stripe and reconcile it again.

    The claim primitive hands each abandoned key to at most one recovery
    run; a key whose recovery was itself abandoned is reported as stuck.
    Returns a list of ReconciliationResult.
    """
    results = []
    for record in idempotency_service.list_abandoned():
        key = record.external_key
        try:
            session = stripe_service.retrieve_session(key)
            confirmation = stripe_service.parse_confirmation(session)
        except ValidationFailure as e:
            results.append(_reject(key, None, e, claimed=True))
            continue
        except TransientInfrastructureFailure as e:
            logger.warning(f"Could not recover {key} yet: {e}")
            results.append(ReconciliationResult(
                status=STATUS_DEFERRED, state=CLAIMED, session_id=key, message=str(e)
            ))
            continue

        results.append(reconcile(confirmation))
    return results


# ──────────────────────────────────────────────
# Steps
# ──────────────────────────────────────────────

def _apply_purchase(confirmation, account_id, recovered):
    session_id = confirmation.session_id
    if recovered and ledger_service.find_entry(account_id, LedgerReason.PURCHASE, session_id):
        logger.warning(f"Recovered claim {session_id} already has its purchase entry")
        return

    try:
        ledger_service.apply_delta(
            account_id,
            confirmation.credits,
            LedgerReason.PURCHASE,
            external_ref=session_id,
            note=f"Stripe checkout ({confirmation.bundle_id or 'custom'})",
        )
    except DuplicateNotification:
        logger.warning(f"Purchase for {session_id} was already in the ledger")


def _complete(session_id, account_id, credits, pending, notify=True):
    """LEDGER_APPLIED -> ORDERS_MATERIALIZED -> NOTIFIED -> DONE."""
    orders = _materialize_orders(session_id, account_id, credits, pending)
    _finish_checkout(session_id, pending)

    if notify:
        _notify(session_id, account_id, credits, orders)

    logger.info(
        f"Reconciled {session_id}: {credits} credits to {account_id}, "
        f"{len(orders)} orders"
    )
    return ReconciliationResult(
        status=STATUS_PROCESSED,
        state=DONE,
        session_id=session_id,
        account_id=account_id,
        credits=credits,
        orders=[o.order_number for o in orders],
    )


def _find_pending_checkout(session_id):
    return PendingCheckout.query.filter_by(stripe_session_id=session_id).first()


def find_pending_for(confirmation):
    """PendingCheckout for a confirmation, by token first, then session id."""
    if confirmation.checkout_token:
        pending = PendingCheckout.query.filter_by(token=confirmation.checkout_token).first()
        if pending is not None:
            return pending
    return _find_pending_checkout(confirmation.session_id)


def _materialize_orders(session_id, account_id, credits, pending):
    """One pending order per uploaded image, paid for by a usage entry.

    The orders and the usage entry commit together. Orders already
    carrying this source_ref mean the step ran before.
    """
    existing = Order.query.filter_by(source_ref=session_id).order_by(Order.created_at).all()
    if existing:
        return existing
    if pending is None or pending.account_id not in (None, account_id):
        return []

    image_refs = list(pending.image_refs or [])[:credits]
    if not image_refs:
        return []

    created = []

    def attach(entry):
        created.clear()
        for image_ref in image_refs:
            order = Order(
                account_id=account_id,
                credits_used=1,
                source_ref=session_id,
                image_ref=image_ref,
                staging_style=pending.staging_style,
            )
            db.session.add(order)
            created.append(order)

    try:
        ledger_service.apply_delta(
            account_id,
            -len(image_refs),
            LedgerReason.USAGE,
            external_ref=session_id,
            note=f"{len(image_refs)} orders from checkout",
            attach=attach,
        )
    except DuplicateNotification:
        return Order.query.filter_by(source_ref=session_id).all()
    except StagePayError as e:
        logger.error(f"Could not create orders for {session_id}: {e}", exc_info=True)
        audit_service.log_event(
            "orders.failed",
            account_id=account_id,
            metadata={"session_id": session_id, "error": e.code},
        )
        notification_service.alert_support(
            f"Orders not created for paid checkout {session_id}",
            {"account_id": account_id, "images": len(image_refs), "error": str(e)},
        )
        return []

    return created


def _finish_checkout(session_id, pending):
    if pending is None:
        return
    if pending.completed_at is None:
        pending.completed_at = datetime.now(timezone.utc)
        pending.stripe_session_id = pending.stripe_session_id or session_id
        db.session.commit()
    # Only this cart's lease: a newer checkout may hold the lock by now.
    if pending.lock_token:
        checkout_lock_service.release(
            checkout_lock_service.identity_key_for(email=pending.customer_email),
            pending.lock_token,
        )


def _notify(session_id, account_id, credits, orders):
    try:
        notification_service.notify(
            notification_service.EVENT_CREDITS_PURCHASED,
            account_id,
            {
                "credits": credits,
                "balance": ledger_service.get_balance(account_id),
                "orders_created": len(orders),
                "session_id": session_id,
            },
        )
    except Exception as e:
        db.session.rollback()
        logger.error(f"Notification for {session_id} failed: {e}", exc_info=True)
        audit_service.log_event(
            "notification.failed",
            account_id=account_id,
            metadata={"session_id": session_id, "error": str(e)},
        )


def _reject(session_id, confirmation, error, claimed):
    """Terminal REJECTED: release the claim (if held) and tell support."""
    db.session.rollback()
    if claimed and session_id:
        idempotency_service.release(session_id)

    logger.warning(f"Rejected payment {session_id}: {error}")
    metadata = {"session_id": session_id, "error": getattr(error, "code", "error")}
    if confirmation is not None:
        metadata.update({
            "credits": confirmation.credits,
            "email": confirmation.email,
            "account_id": confirmation.account_id,
        })
    audit_service.log_event("reconciliation.rejected", metadata=metadata)
    if claimed:
        notification_service.alert_support(
            f"Payment {session_id} could not be credited",
            {**metadata, "detail": str(error)},
        )
    return ReconciliationResult(
        status=STATUS_REJECTED,
        state=REJECTED,
        session_id=session_id,
        message=getattr(error, "user_message", str(error)),
    )
