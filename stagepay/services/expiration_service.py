"""Credit expiration sweep and advance warnings.

Credits are valid for CREDIT_EXPIRY_DAYS after the account's most recent
purchase. The sweep zeroes the remaining balance of lapsed accounts with an
`expiration` ledger entry and tells the customer; the warning sweep emails
customers whose expiry is CREDIT_EXPIRY_WARNING_DAYS away.
"""

import logging
import math
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import func, select

from stagepay.errors import DuplicateNotification, InsufficientBalance
from stagepay.extensions import db
from stagepay.models.account import AccountBalance
from stagepay.models.ledger import LedgerEntry, LedgerReason
from stagepay.services import audit_service, ledger_service, notification_service

logger = logging.getLogger(__name__)


def find_expired_accounts(now=None):
    """Return (account_id, balance, last_purchase_at) for lapsed accounts with credit left."""
    days = current_app.config.get("CREDIT_EXPIRY_DAYS", 365)
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)

    last_purchase = (
        select(
            LedgerEntry.account_id,
            func.max(LedgerEntry.created_at).label("last_purchase_at"),
        )
        .where(LedgerEntry.reason == LedgerReason.PURCHASE)
        .group_by(LedgerEntry.account_id)
        .subquery()
    )

    rows = db.session.execute(
        select(
            AccountBalance.account_id,
            AccountBalance.balance,
            last_purchase.c.last_purchase_at,
        )
        .join(last_purchase, last_purchase.c.account_id == AccountBalance.account_id)
        .where(
            AccountBalance.balance > 0,
            last_purchase.c.last_purchase_at < cutoff,
        )
    ).all()
    return [(r.account_id, r.balance, r.last_purchase_at) for r in rows]


def expire_credits(dry_run=False):
    """Expire the remaining balance of every lapsed account.

    The expiration entry is keyed by the sweep date so re-running the sweep
    on the same day is a no-op. Returns a list of (account_id, credits).
    """
    expired = []
    sweep_ref = f"expiry:{datetime.now(timezone.utc).date().isoformat()}"
    expiry_days = current_app.config.get("CREDIT_EXPIRY_DAYS", 365)

    for account_id, balance, last_purchase_at in find_expired_accounts():
        if dry_run:
            expired.append((account_id, balance))
            continue

        # Re-read inside apply_delta's transaction; the balance may have
        # moved since the scan.
        current = ledger_service.get_balance(account_id)
        if current <= 0:
            continue
        try:
            ledger_service.apply_delta(
                account_id,
                -current,
                LedgerReason.EXPIRATION,
                external_ref=sweep_ref,
                note=f"Credits expired (no purchase for {expiry_days} days)",
            )
        except (DuplicateNotification, InsufficientBalance) as e:
            logger.info(f"Skipping expiry for {account_id}: {e}")
            continue

        expired.append((account_id, current))
        audit_service.log_event(
            "credits.expired",
            account_id=account_id,
            metadata={"credits": current, "last_purchase_at": str(last_purchase_at)},
        )
        try:
            notification_service.notify(
                notification_service.EVENT_CREDITS_EXPIRED,
                account_id,
                {"credits": current, "expiry_days": expiry_days},
            )
        except Exception as e:
            db.session.rollback()
            logger.error(f"Expiry notification for {account_id} failed: {e}", exc_info=True)

    logger.info(f"Expired credits on {len(expired)} accounts (dry_run={dry_run})")
    return expired


# ──────────────────────────────────────────────
# Advance warnings
# ──────────────────────────────────────────────

def _aware(value):
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def find_expiring_accounts(now=None):
    """Return (account_id, balance, expires_at, days_left, threshold) for
    accounts with credit left whose expiry falls inside a warning window.

    `threshold` is the tightest CREDIT_EXPIRY_WARNING_DAYS value reached.
    """
    now = now or datetime.now(timezone.utc)
    days = current_app.config.get("CREDIT_EXPIRY_DAYS", 365)
    thresholds = sorted(current_app.config.get("CREDIT_EXPIRY_WARNING_DAYS", (30, 7)))
    if not thresholds:
        return []

    last_purchase = (
        select(
            LedgerEntry.account_id,
            func.max(LedgerEntry.created_at).label("last_purchase_at"),
        )
        .where(LedgerEntry.reason == LedgerReason.PURCHASE)
        .group_by(LedgerEntry.account_id)
        .subquery()
    )
    rows = db.session.execute(
        select(
            AccountBalance.account_id,
            AccountBalance.balance,
            last_purchase.c.last_purchase_at,
        )
        .join(last_purchase, last_purchase.c.account_id == AccountBalance.account_id)
        .where(
            AccountBalance.balance > 0,
            last_purchase.c.last_purchase_at >= now - timedelta(days=days),
            last_purchase.c.last_purchase_at < now - timedelta(days=days - thresholds[-1]),
        )
    ).all()

    expiring = []
    for row in rows:
        expires_at = _aware(row.last_purchase_at) + timedelta(days=days)
        days_left = math.ceil((expires_at - now).total_seconds() / 86400)
        threshold = next((t for t in thresholds if days_left <= t), None)
        if threshold is not None:
            expiring.append((row.account_id, row.balance, expires_at, days_left, threshold))
    return expiring


def _warning_key(threshold, expires_at):
    return f"{threshold}d:{expires_at.date().isoformat()}"


def _already_warned(account_id, warning_key):
    return any(
        (event.metadata_ or {}).get("warning_key") == warning_key
        for event in audit_service.list_events(
            account_id=account_id, action="credits.expiring", limit=100
        )
    )


def warn_expiring_credits(dry_run=False, now=None):
    """Email customers whose credits expire soon.

    One warning per account, threshold and expiry date: a fresh purchase
    moves the expiry date and re-arms the warnings. A warning whose email
    fails is not recorded, so the next sweep tries again.
    Returns a list of (account_id, credits, days_left).
    """
    warned = []
    for account_id, balance, expires_at, days_left, threshold in find_expiring_accounts(now):
        warning_key = _warning_key(threshold, expires_at)
        if _already_warned(account_id, warning_key):
            continue
        if dry_run:
            warned.append((account_id, balance, days_left))
            continue

        try:
            notification_service.notify(
                notification_service.EVENT_CREDITS_EXPIRING,
                account_id,
                {
                    "credits": balance,
                    "days_left": days_left,
                    "threshold_days": threshold,
                    "expires_on": expires_at.date().isoformat(),
                },
            )
        except Exception as e:
            db.session.rollback()
            logger.error(f"Expiry warning for {account_id} failed: {e}", exc_info=True)
            continue

        audit_service.log_event(
            "credits.expiring",
            account_id=account_id,
            metadata={
                "warning_key": warning_key,
                "credits": balance,
                "days_left": days_left,
            },
        )
        warned.append((account_id, balance, days_left))

    logger.info(f"Warned {len(warned)} accounts of expiring credits (dry_run={dry_run})")
    return warned
