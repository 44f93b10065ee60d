"""Idempotency registry — at-most-once processing of external operations.

Responsible for:
- claim(): the single atomic "have I seen this key?" primitive
- finalize() once the ledger mutation committed
- release(): compensating unclaim after a non-transient failure
- One-shot recovery of abandoned claims (crash between claim and finalize)
- Retention pruning of finalized rows
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import delete, update
from sqlalchemy.exc import OperationalError

from stagepay.errors import TransientInfrastructureFailure
from stagepay.extensions import db
from stagepay.models.idempotency import IdempotencyRecord
from stagepay.services.db_helpers import insert_or_ignore

logger = logging.getLogger(__name__)

CLAIM_ATTEMPTS = 3


@dataclass
class ClaimResult:
    claimed: bool
    recovered: bool = False


def _grace_cutoff():
    grace = current_app.config.get("CLAIM_GRACE_SECONDS", 300)
    return datetime.now(timezone.utc) - timedelta(seconds=grace)


def _try_claim(external_key):
    now = datetime.now(timezone.utc)
    inserted = insert_or_ignore(
        IdempotencyRecord,
        {
            "external_key": external_key,
            "status": IdempotencyRecord.STATUS_CLAIMED,
            "claimed_at": now,
            "reclaim_count": 0,
        },
        ["external_key"],
    )
    if inserted:
        db.session.commit()
        return ClaimResult(claimed=True)

    # Key already present. Only an abandoned first claim may be taken over,
    # and only once; the WHERE clause makes the takeover a single winner.
    reclaimed = db.session.execute(
        update(IdempotencyRecord)
        .where(
            IdempotencyRecord.external_key == external_key,
            IdempotencyRecord.status == IdempotencyRecord.STATUS_CLAIMED,
            IdempotencyRecord.claimed_at < _grace_cutoff(),
            IdempotencyRecord.reclaim_count == 0,
        )
        .values(claimed_at=now, reclaim_count=IdempotencyRecord.reclaim_count + 1)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    if reclaimed.rowcount == 1:
        return ClaimResult(claimed=True, recovered=True)
    return ClaimResult(claimed=False)


def claim(external_key):
    """Atomically claim an external key for processing.

    Returns ClaimResult(claimed=True) to exactly one caller per key
    (plus at most one recovery caller if that first claim is abandoned).
    Raises TransientInfrastructureFailure if the claim cannot be recorded.
    """
    for attempt in range(1, CLAIM_ATTEMPTS + 1):
        try:
            result = _try_claim(external_key)
        except OperationalError as e:
            db.session.rollback()
            logger.warning(
                f"Could not claim {external_key} (attempt {attempt}/{CLAIM_ATTEMPTS}): {e}"
            )
            time.sleep(0.05 * attempt)
            continue

        if result.recovered:
            logger.warning(f"Recovered abandoned claim for {external_key}")
        elif result.claimed:
            logger.info(f"Claimed {external_key}")
        else:
            _report_if_stuck(external_key)
        return result

    raise TransientInfrastructureFailure(f"Could not record claim for {external_key}")


def _report_if_stuck(external_key):
    """A key whose single re-claim was abandoned too needs a human."""
    record = get_record(external_key)
    if (
        record is None
        or record.is_finalized
        or record.reclaim_count == 0
    ):
        return

    stuck = db.session.execute(
        db.select(IdempotencyRecord.id).where(
            IdempotencyRecord.id == record.id,
            IdempotencyRecord.claimed_at < _grace_cutoff(),
        )
    ).first()
    if stuck is None:
        return

    from stagepay.services import audit_service, notification_service

    logger.error(f"Claim for {external_key} abandoned twice, manual attention required")
    audit_service.log_event(
        "reconciliation.stuck_claim",
        account_id=record.account_id,
        metadata={"external_key": external_key, "reclaim_count": record.reclaim_count},
    )
    notification_service.alert_support(
        f"Stuck payment claim {external_key}",
        {
            "external_key": external_key,
            "claimed_at": record.claimed_at.isoformat() if record.claimed_at else None,
            "reclaim_count": record.reclaim_count,
        },
    )


def finalize(external_key, account_id, credits_applied):
    """Mark a claimed key as fully applied."""
    record = get_record(external_key)
    if record is None:
        raise TransientInfrastructureFailure(f"No claim recorded for {external_key}")
    record.status = IdempotencyRecord.STATUS_FINALIZED
    record.account_id = account_id
    record.credits_applied = credits_applied
    record.processed_at = datetime.now(timezone.utc)
    db.session.commit()
    logger.info(f"Finalized {external_key}: {credits_applied} credits to {account_id}")
    return record


def release(external_key):
    """Undo a claim that will never be finalized so a corrected retry can proceed.

    Finalized rows are never removed. Returns True if a claim was released.
    """
    result = db.session.execute(
        delete(IdempotencyRecord)
        .where(
            IdempotencyRecord.external_key == external_key,
            IdempotencyRecord.status == IdempotencyRecord.STATUS_CLAIMED,
        )
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    released = result.rowcount == 1
    if released:
        logger.info(f"Released claim for {external_key}")
    return released


def get_record(external_key):
    return IdempotencyRecord.query.filter_by(external_key=external_key).first()


def list_abandoned():
    """Claimed rows past the grace period, oldest first."""
    return (
        IdempotencyRecord.query
        .filter(
            IdempotencyRecord.status == IdempotencyRecord.STATUS_CLAIMED,
            IdempotencyRecord.claimed_at < _grace_cutoff(),
        )
        .order_by(IdempotencyRecord.claimed_at.asc())
        .all()
    )


def prune(older_than_days=None):
    """Delete finalized records processed more than N days ago. Returns the count."""
    if older_than_days is None:
        older_than_days = current_app.config.get("IDEMPOTENCY_RETENTION_DAYS", 90)
    cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
    result = db.session.execute(
        delete(IdempotencyRecord)
        .where(
            IdempotencyRecord.status == IdempotencyRecord.STATUS_FINALIZED,
            IdempotencyRecord.processed_at < cutoff,
        )
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    logger.info(f"Pruned {result.rowcount} idempotency records older than {older_than_days} days")
    return result.rowcount
