"""Order service — spending credits on staging orders.

Responsible for:
- Credit orders: turning existing balance into pending orders, atomically
  with the usage ledger entry, idempotent on the client checkout token
- Status transitions driven by the staging pipeline, with a completion
  notice to the customer
- Refunding the credit of a failed order (once per order), in the same
  transaction as the failed status
"""

import logging

from stagepay.errors import DuplicateNotification, ValidationFailure
from stagepay.extensions import db
from stagepay.models.ledger import LedgerReason
from stagepay.models.order import Order
from stagepay.services import (
    audit_service,
    checkout_lock_service,
    ledger_service,
    notification_service,
)

logger = logging.getLogger(__name__)

MAX_IMAGES_PER_ORDER = 100


def _validate_images(image_refs):
    if not isinstance(image_refs, list) or not image_refs:
        raise ValidationFailure(
            "image_refs must be a non-empty list",
            user_message="Please upload at least one photo.",
        )
    if len(image_refs) > MAX_IMAGES_PER_ORDER:
        raise ValidationFailure(
            f"{len(image_refs)} images exceeds {MAX_IMAGES_PER_ORDER}",
            user_message=f"You can stage at most {MAX_IMAGES_PER_ORDER} photos at once.",
        )
    if not all(isinstance(ref, str) and ref.strip() for ref in image_refs):
        raise ValidationFailure(
            "image_refs must be non-empty strings",
            user_message="One of the uploaded photos is invalid.",
        )


def orders_for_token(account_id, checkout_token):
    return (
        Order.query
        .filter_by(account_id=account_id, source_ref=checkout_token)
        .order_by(Order.created_at.asc())
        .all()
    )


def create_credit_order(user, checkout_token, image_refs, staging_style=None):
    """Create one pending order per image, paid from the account balance.

    Serialized per customer by the checkout lock; the balance check and
    deduction are a single apply_delta, so two concurrent orders can never
    spend the same credit. Re-submitting the same checkout token returns
    the orders it already created.

    Returns (orders, balance, replayed).
    Raises ValidationFailure, InsufficientBalance or CheckoutInProgress.
    """
    if not checkout_token or not isinstance(checkout_token, str):
        raise ValidationFailure(
            "checkout_token is required",
            user_message="Missing checkout token. Please refresh and try again.",
        )
    _validate_images(image_refs)

    existing = orders_for_token(user.id, checkout_token)
    if existing:
        return existing, ledger_service.get_balance(user.id), True

    identity = checkout_lock_service.identity_key_for(email=user.email)
    created = []

    def attach(entry):
        created.clear()
        for image_ref in image_refs:
            order = Order(
                account_id=user.id,
                credits_used=1,
                source_ref=checkout_token,
                image_ref=image_ref.strip(),
                staging_style=staging_style,
            )
            db.session.add(order)
            created.append(order)

    with checkout_lock_service.checkout_lock(identity):
        try:
            result = ledger_service.apply_delta(
                user.id,
                -len(image_refs),
                LedgerReason.USAGE,
                external_ref=checkout_token,
                note=f"{len(image_refs)} staging orders",
                attach=attach,
            )
        except DuplicateNotification:
            return orders_for_token(user.id, checkout_token), ledger_service.get_balance(user.id), True

    order_numbers = [o.order_number for o in created]
    audit_service.log_event(
        "order.created",
        account_id=user.id,
        actor_user_id=user.id,
        metadata={"orders": order_numbers, "checkout_token": checkout_token},
    )

    try:
        notification_service.notify(
            notification_service.EVENT_ORDER_CREATED,
            user.id,
            {"order_numbers": order_numbers, "balance": result.balance},
        )
    except Exception as e:
        db.session.rollback()
        logger.error(f"Order notification for {user.email} failed: {e}", exc_info=True)
        audit_service.log_event(
            "notification.failed",
            account_id=user.id,
            metadata={"orders": order_numbers, "error": str(e)},
        )

    logger.info(f"Credit order by {user.email}: {order_numbers}")
    return created, result.balance, False


def list_orders(account_id, page=1, per_page=20):
    return db.paginate(
        db.select(Order)
        .where(Order.account_id == account_id)
        .order_by(Order.created_at.desc()),
        page=page,
        per_page=per_page,
        max_per_page=100,
        error_out=False,
    )


# ──────────────────────────────────────────────
# Status transitions
# ──────────────────────────────────────────────

def update_status(order_id, status, actor_user_id=None, notes=None):
    """Move an order along pending -> processing -> completed|failed.

    Failing an order and refunding its credit commit together: the refund
    entry is keyed by the order id and the status change rides in the same
    transaction, so a failed refund leaves the order where it was and the
    call can simply be retried.
    Returns the order.
    """
    order = db.session.get(Order, order_id)
    if order is None:
        raise ValidationFailure(f"No order {order_id}", user_message="Order not found.")

    if not order.can_transition_to(status):
        raise ValidationFailure(
            f"Order {order.order_number} cannot go from {order.status} to {status}",
            user_message=f"Order cannot move from {order.status} to {status}.",
        )

    old_status = order.status

    def record(entry=None):
        order.status = status
        if notes:
            order.notes = notes
        audit_service.log_event(
            "order.status_changed",
            account_id=order.account_id,
            actor_user_id=actor_user_id,
            metadata={
                "order_number": order.order_number,
                "from": old_status,
                "to": status,
                "refunded": entry is not None,
            },
            commit=False,
        )

    if status == Order.STATUS_FAILED:
        refund_order(order, attach=record)
    else:
        record()
        db.session.commit()
    logger.info(f"Order {order.order_number}: {old_status} -> {status}")

    if status == Order.STATUS_COMPLETED:
        _notify_completed(order)

    return order


def refund_order(order, attach=None):
    """Return a failed order's credit to its account.

    Returns the LedgerResult, or None if the order was already refunded
    (`attach` is then run and committed on its own).
    """
    try:
        result = ledger_service.apply_delta(
            order.account_id,
            order.credits_used,
            LedgerReason.REFUND,
            external_ref=order.id,
            order_ref=order.id,
            note=f"Refund for failed order {order.order_number}",
            attach=attach,
        )
    except DuplicateNotification:
        logger.info(f"Order {order.order_number} was already refunded")
        if attach is not None:
            attach()
            db.session.commit()
        return None
    return result


def _notify_completed(order):
    try:
        notification_service.notify(
            notification_service.EVENT_ORDER_COMPLETED,
            order.account_id,
            {
                "order_number": order.order_number,
                "staging_style": order.staging_style,
                "image_ref": order.image_ref,
            },
        )
    except Exception as e:
        db.session.rollback()
        logger.error(f"Completion notice for {order.order_number} failed: {e}", exc_info=True)
        audit_service.log_event(
            "notification.failed",
            account_id=order.account_id,
            metadata={"order_number": order.order_number, "error": str(e)},
        )
