"""Ledger service — the only writer of credit balances.

Responsible for:
- apply_delta(): one atomic transaction that reads the balance, rejects
  overdrafts, appends a LedgerEntry and moves the balance
- Serializing concurrent writers per account (compare-and-swap on
  account_balances.version, plus SELECT ... FOR UPDATE where supported)
- Read surface: current balance, paginated history, ledger replay and
  invariant verification
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from flask import current_app
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError

from stagepay.errors import (
    AccountNotFound,
    DuplicateNotification,
    InsufficientBalance,
    TransientInfrastructureFailure,
    ValidationFailure,
)
from stagepay.extensions import db
from stagepay.models.account import AccountBalance
from stagepay.models.ledger import LedgerEntry, LedgerReason
from stagepay.models.user import User
from stagepay.services.db_helpers import insert_or_ignore

logger = logging.getLogger(__name__)


@dataclass
class LedgerResult:
    ok: bool
    balance: int
    message: str
    entry: Optional[LedgerEntry] = None


def _validate(delta, reason):
    if reason not in LedgerReason.ALL:
        raise ValidationFailure(f"Unknown ledger reason {reason!r}")
    if not isinstance(delta, int) or isinstance(delta, bool) or delta == 0:
        raise ValidationFailure(f"Ledger delta must be a non-zero integer, got {delta!r}")
    if reason in LedgerReason.GRANTS and delta < 0:
        raise ValidationFailure(f"{reason} requires a positive delta, got {delta}")
    if reason in LedgerReason.DEBITS and delta > 0:
        raise ValidationFailure(f"{reason} requires a negative delta, got {delta}")


def _read_balance(account_id):
    """Return (balance, version) for the account, locking the row if the DB can."""
    row = db.session.execute(
        select(AccountBalance.balance, AccountBalance.version)
        .where(AccountBalance.account_id == account_id)
        .with_for_update()
    ).one()
    return row.balance, row.version


def apply_delta(account_id: str, delta: int, reason: str,
                external_ref: Optional[str] = None,
                order_ref: Optional[str] = None,
                note: Optional[str] = None,
                attach: Optional[Callable[[LedgerEntry], None]] = None) -> LedgerResult:
    """Apply a signed credit delta to an account as one atomic transaction.

    1. read the current balance and version
    2. reject with InsufficientBalance if balance + delta < 0
    3. swap the balance in only if the version is still the one read
    4. append the LedgerEntry (balance_before / balance_after from step 1)

    A lost swap means another writer committed in between: roll back,
    re-read and try again, up to LEDGER_CAS_ATTEMPTS times.

    `attach`, if given, is called with the new entry before commit so the
    caller can add rows (e.g. orders) that must commit atomically with it.
    It may be called more than once if the swap is retried.

    Raises ValidationFailure, AccountNotFound, InsufficientBalance,
    DuplicateNotification (external_ref already applied for this reason)
    or TransientInfrastructureFailure.
    """
    _validate(delta, reason)

    if db.session.get(User, account_id) is None:
        raise AccountNotFound(f"No account {account_id}")

    attempts = current_app.config.get("LEDGER_CAS_ATTEMPTS", 5)

    for attempt in range(1, attempts + 1):
        try:
            insert_or_ignore(
                AccountBalance,
                {
                    "account_id": account_id,
                    "balance": 0,
                    "version": 0,
                    "updated_at": datetime.now(timezone.utc),
                },
                ["account_id"],
            )

            balance_before, version = _read_balance(account_id)
            balance_after = balance_before + delta

            if balance_after < 0:
                db.session.rollback()
                logger.warning(
                    f"Rejected {reason} of {delta} for account {account_id}: "
                    f"balance {balance_before}"
                )
                raise InsufficientBalance(required=-delta, available=balance_before)

            swapped = db.session.execute(
                update(AccountBalance)
                .where(
                    AccountBalance.account_id == account_id,
                    AccountBalance.version == version,
                )
                .values(
                    balance=balance_after,
                    version=version + 1,
                    updated_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            if swapped.rowcount != 1:
                db.session.rollback()
                logger.info(
                    f"Balance of {account_id} moved during {reason} "
                    f"(attempt {attempt}/{attempts}), retrying"
                )
                continue

            entry = LedgerEntry(
                account_id=account_id,
                sequence=version + 1,
                delta=delta,
                reason=reason,
                balance_before=balance_before,
                balance_after=balance_after,
                external_ref=external_ref,
                order_ref=order_ref,
                note=note,
            )
            db.session.add(entry)
            if attach is not None:
                attach(entry)
            db.session.commit()

        except IntegrityError:
            db.session.rollback()
            if external_ref and find_entry(account_id, reason, external_ref):
                raise DuplicateNotification(
                    f"{reason} for {external_ref} already applied to {account_id}"
                )
            logger.warning(
                f"Integrity conflict writing ledger for {account_id} "
                f"(attempt {attempt}/{attempts}), retrying"
            )
            continue
        except OperationalError as e:
            db.session.rollback()
            logger.warning(
                f"Database busy applying {reason} for {account_id} "
                f"(attempt {attempt}/{attempts}): {e}"
            )
            time.sleep(0.05 * attempt)
            continue

        logger.info(
            f"Ledger {account_id}#{entry.sequence}: {delta:+d} ({reason}) "
            f"{balance_before} -> {balance_after}"
        )
        return LedgerResult(
            ok=True,
            balance=balance_after,
            message=f"Balance is now {balance_after}",
            entry=entry,
        )

    raise TransientInfrastructureFailure(
        f"Could not apply {reason} of {delta} to {account_id} after {attempts} attempts"
    )


# ──────────────────────────────────────────────
# Read surface
# ──────────────────────────────────────────────

def get_balance(account_id):
    """Current balance; 0 for an account that has never been credited."""
    balance = db.session.execute(
        select(AccountBalance.balance).where(AccountBalance.account_id == account_id)
    ).scalar_one_or_none()
    return balance or 0


def find_entry(account_id, reason, external_ref):
    return LedgerEntry.query.filter_by(
        account_id=account_id, reason=reason, external_ref=external_ref
    ).first()


def find_entry_by_ref(reason, external_ref):
    """Find an entry for an external reference regardless of account."""
    return LedgerEntry.query.filter_by(
        reason=reason, external_ref=external_ref
    ).first()


def list_entries(account_id, page=1, per_page=20):
    """Paginated transaction history, newest first."""
    return db.paginate(
        select(LedgerEntry)
        .where(LedgerEntry.account_id == account_id)
        .order_by(LedgerEntry.sequence.desc()),
        page=page,
        per_page=per_page,
        max_per_page=100,
        error_out=False,
    )


def replay_balance(account_id):
    """Sum of all ledger deltas for the account."""
    return db.session.execute(
        select(func.coalesce(func.sum(LedgerEntry.delta), 0))
        .where(LedgerEntry.account_id == account_id)
    ).scalar_one()


def verify_account(account_id):
    """Replay the ledger and return a list of invariant violations (empty if sound)."""
    problems = []
    entries = (
        LedgerEntry.query
        .filter_by(account_id=account_id)
        .order_by(LedgerEntry.sequence.asc())
        .all()
    )

    running = 0
    for expected_sequence, entry in enumerate(entries, start=1):
        if entry.sequence != expected_sequence:
            problems.append(
                f"sequence gap: expected {expected_sequence}, found {entry.sequence}"
            )
        if entry.balance_before != running:
            problems.append(
                f"entry #{entry.sequence} balance_before={entry.balance_before}, "
                f"previous balance_after={running}"
            )
        if entry.balance_after != entry.balance_before + entry.delta:
            problems.append(f"entry #{entry.sequence} arithmetic mismatch")
        running = entry.balance_after

    stored = db.session.get(AccountBalance, account_id)
    stored_balance = stored.balance if stored else 0
    replayed = sum(e.delta for e in entries)
    if stored_balance != replayed:
        problems.append(f"balance {stored_balance} != sum(ledger) {replayed}")
    if stored is not None and stored.version != len(entries):
        problems.append(f"version {stored.version} != entry count {len(entries)}")

    return problems
