"""Customer API blueprint — /api/*

Routes:
- GET  /api/credits               — current balance
- GET  /api/credits/transactions  — ledger history (paginated, newest first)
- POST /api/orders                — spend credits on staging orders
- GET  /api/orders                — order history
"""

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from stagepay.extensions import limiter
from stagepay.services import ledger_service, order_service

api_bp = Blueprint("api", __name__, url_prefix="/api")


def _page_args():
    page = request.args.get("page", 1, type=int)
    per_page = request.args.get("per_page", 20, type=int)
    return max(page, 1), min(max(per_page, 1), 100)


def _page_meta(pagination):
    return {
        "page": pagination.page,
        "per_page": pagination.per_page,
        "total": pagination.total,
        "pages": pagination.pages,
    }


@api_bp.route("/credits")
@login_required
def credits():
    return jsonify({
        "success": True,
        "account_id": current_user.id,
        "balance": ledger_service.get_balance(current_user.id),
    })


@api_bp.route("/credits/transactions")
@login_required
def transactions():
    page, per_page = _page_args()
    pagination = ledger_service.list_entries(current_user.id, page=page, per_page=per_page)
    return jsonify({
        "success": True,
        "transactions": [e.to_dict() for e in pagination.items],
        **_page_meta(pagination),
    })


@api_bp.route("/orders", methods=["POST"])
@login_required
@limiter.limit("20 per minute")
def create_order():
    """Body: {checkout_token, image_refs: [...], staging_style?}

    201 with the new orders; 200 when the checkout token was already used
    (the original orders are returned and nothing is charged again).
    """
    data = request.get_json(silent=True) or {}
    orders, balance, replayed = order_service.create_credit_order(
        current_user,
        checkout_token=data.get("checkout_token"),
        image_refs=data.get("image_refs"),
        staging_style=data.get("staging_style"),
    )
    return jsonify({
        "success": True,
        "orders": [o.to_dict() for o in orders],
        "balance": balance,
        "replayed": replayed,
    }), (200 if replayed else 201)


@api_bp.route("/orders")
@login_required
def list_orders():
    page, per_page = _page_args()
    pagination = order_service.list_orders(current_user.id, page=page, per_page=per_page)
    return jsonify({
        "success": True,
        "orders": [o.to_dict() for o in pagination.items],
        **_page_meta(pagination),
    })
