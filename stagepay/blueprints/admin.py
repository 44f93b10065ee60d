"""Admin blueprint — /admin/*

Credit adjustments, ledger inspection, order pipeline, reconciliation
repair. All routes protected by @admin_required decorator.

Route Map:
  POST /admin/accounts/<id>/credits                 — Add / subtract credits
  GET  /admin/accounts/<id>/ledger                  — Ledger + invariant check
  POST /admin/orders/<id>/status                    — Advance an order
  GET  /admin/reconciliation/abandoned              — Claims never finalized
  POST /admin/reconciliation/<key>/redrive          — Re-run side effects
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user

from stagepay.decorators import admin_required
from stagepay.errors import AccountNotFound, DuplicateNotification, ValidationFailure
from stagepay.extensions import db
from stagepay.models.ledger import LedgerReason
from stagepay.models.user import User
from stagepay.services import (
    audit_service,
    idempotency_service,
    ledger_service,
    order_service,
    reconciliation_service,
)

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


# ══════════════════════════════════════════════
#  ACCOUNTS
# ══════════════════════════════════════════════

@admin_bp.route("/accounts/<account_id>/credits", methods=["POST"])
@admin_required
def adjust_credits(account_id):
    """Body: {amount: int (signed), note?, reference?}

    Positive amounts are admin_add, negative admin_subtract. A reference,
    if given, makes the adjustment idempotent (same reference = applied once).
    """
    if db.session.get(User, account_id) is None:
        raise AccountNotFound(f"No account {account_id}", user_message="Account not found.")

    data = request.get_json(silent=True) or {}
    amount = data.get("amount")
    if not isinstance(amount, int) or isinstance(amount, bool) or amount == 0:
        raise ValidationFailure(
            f"Invalid amount {amount!r}", user_message="Amount must be a non-zero whole number."
        )

    reason = LedgerReason.ADMIN_ADD if amount > 0 else LedgerReason.ADMIN_SUBTRACT
    note = (data.get("note") or "").strip()[:255] or None
    reference = data.get("reference") or None
    try:
        result = ledger_service.apply_delta(
            account_id,
            amount,
            reason,
            external_ref=reference,
            note=note,
        )
    except DuplicateNotification:
        logger.info(f"Admin adjustment {reference} for {account_id} already applied")
        return jsonify({
            "success": True,
            "duplicate": True,
            "balance": ledger_service.get_balance(account_id),
            "entry": ledger_service.find_entry(account_id, reason, reference).to_dict(),
        })

    audit_service.log_event(
        f"credits.{reason}",
        account_id=account_id,
        actor_user_id=current_user.id,
        metadata={"amount": amount, "note": note, "balance": result.balance},
    )
    logger.info(f"Admin {current_user.email} adjusted {account_id} by {amount:+d}")

    return jsonify({
        "success": True,
        "balance": result.balance,
        "entry": result.entry.to_dict(),
    })


@admin_bp.route("/accounts/<account_id>/ledger")
@admin_required
def account_ledger(account_id):
    user = db.session.get(User, account_id)
    if user is None:
        raise AccountNotFound(f"No account {account_id}", user_message="Account not found.")

    page = max(request.args.get("page", 1, type=int), 1)
    per_page = min(max(request.args.get("per_page", 50, type=int), 1), 100)
    pagination = ledger_service.list_entries(account_id, page=page, per_page=per_page)
    problems = ledger_service.verify_account(account_id)

    return jsonify({
        "success": True,
        "account": {"id": user.id, "email": user.email},
        "balance": ledger_service.get_balance(account_id),
        "consistent": not problems,
        "problems": problems,
        "entries": [e.to_dict() for e in pagination.items],
        "page": pagination.page,
        "total": pagination.total,
    })


# ══════════════════════════════════════════════
#  ORDERS
# ══════════════════════════════════════════════

@admin_bp.route("/orders/<order_id>/status", methods=["POST"])
@admin_required
def order_status(order_id):
    """Body: {status, notes?}. Failing an order refunds its credit."""
    data = request.get_json(silent=True) or {}
    order = order_service.update_status(
        order_id,
        data.get("status"),
        actor_user_id=current_user.id,
        notes=data.get("notes"),
    )
    return jsonify({
        "success": True,
        "order": order.to_dict(),
        "balance": ledger_service.get_balance(order.account_id),
    })


# ══════════════════════════════════════════════
#  RECONCILIATION
# ══════════════════════════════════════════════

@admin_bp.route("/reconciliation/abandoned")
@admin_required
def abandoned_claims():
    records = idempotency_service.list_abandoned()
    return jsonify({
        "success": True,
        "claims": [r.to_dict() for r in records],
    })


@admin_bp.route("/reconciliation/<external_key>/redrive", methods=["POST"])
@admin_required
def redrive(external_key):
    notify = bool((request.get_json(silent=True) or {}).get("notify", False))
    result = reconciliation_service.redrive(external_key, notify=notify)
    return jsonify({"success": True, "result": result.to_dict()})
