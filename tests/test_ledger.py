"""Tests for the ledger service.

Covers:
- Grants, consumption and the running balance
- Overdraft rejection leaves balance and ledger untouched
- Sign validation per reason, zero deltas
- One external reference applied once per reason
- Lost compare-and-swap is retried on a fresh read
- Concurrent writers on one account (threaded, file-backed DB)
- Replay / verification of the balance invariant
- Orders attached to the same transaction
"""

import threading

import pytest

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
from stagepay.models.order import Order
from stagepay.services import ledger_service


class TestApplyDelta:
    """Basic credit movements."""

    def test_first_grant_creates_balance(self, seed_data):
        """A purchase on a fresh account creates the balance row lazily."""
        account = seed_data["customer_id"]
        assert ledger_service.get_balance(account) == 0

        result = ledger_service.apply_delta(
            account, 5, LedgerReason.PURCHASE, external_ref="cs_test_1"
        )

        assert result.ok is True
        assert result.balance == 5
        assert result.entry.sequence == 1
        assert result.entry.balance_before == 0
        assert result.entry.balance_after == 5
        assert ledger_service.get_balance(account) == 5

    def test_entries_chain(self, seed_data):
        """Each entry's balance_before is the previous balance_after."""
        account = seed_data["customer_id"]
        ledger_service.apply_delta(account, 10, LedgerReason.PURCHASE, external_ref="cs_a")
        ledger_service.apply_delta(account, -3, LedgerReason.USAGE, external_ref="tok_a")
        ledger_service.apply_delta(account, 2, LedgerReason.ADMIN_ADD)

        entries = (
            LedgerEntry.query.filter_by(account_id=account)
            .order_by(LedgerEntry.sequence)
            .all()
        )
        assert [e.sequence for e in entries] == [1, 2, 3]
        assert [(e.balance_before, e.balance_after) for e in entries] == [
            (0, 10), (10, 7), (7, 9),
        ]
        balance = db.session.get(AccountBalance, account)
        assert balance.balance == 9
        assert balance.version == 3

    def test_unknown_account_rejected(self, seed_data):
        """Ledger writes for an account that does not exist -> AccountNotFound."""
        with pytest.raises(AccountNotFound):
            ledger_service.apply_delta("no-such-account", 5, LedgerReason.PURCHASE)


class TestOverdraft:
    """Balance floor."""

    def test_usage_beyond_balance_rejected(self, seed_data):
        """Funded account (10) cannot spend 11; nothing changes."""
        account = seed_data["funded_id"]

        with pytest.raises(InsufficientBalance) as exc:
            ledger_service.apply_delta(account, -11, LedgerReason.USAGE, external_ref="tok_big")

        assert exc.value.required == 11
        assert exc.value.available == 10
        assert ledger_service.get_balance(account) == 10
        assert LedgerEntry.query.filter_by(account_id=account).count() == 1

    def test_exact_balance_can_be_spent(self, seed_data):
        account = seed_data["funded_id"]
        result = ledger_service.apply_delta(account, -10, LedgerReason.USAGE, external_ref="tok_all")
        assert result.balance == 0

    def test_admin_subtract_respects_floor(self, seed_data):
        """The floor applies to every negative reason, not only usage."""
        with pytest.raises(InsufficientBalance):
            ledger_service.apply_delta(
                seed_data["customer_id"], -1, LedgerReason.ADMIN_SUBTRACT
            )


class TestValidation:
    """Sign rules per reason."""

    @pytest.mark.parametrize("reason,delta", [
        (LedgerReason.PURCHASE, -1),
        (LedgerReason.ADMIN_ADD, -5),
        (LedgerReason.REFUND, -1),
        (LedgerReason.USAGE, 1),
        (LedgerReason.ADMIN_SUBTRACT, 3),
        (LedgerReason.EXPIRATION, 2),
        (LedgerReason.PURCHASE, 0),
        ("bonus", 5),
    ])
    def test_wrong_sign_rejected(self, seed_data, reason, delta):
        with pytest.raises(ValidationFailure):
            ledger_service.apply_delta(seed_data["funded_id"], delta, reason)
        assert ledger_service.get_balance(seed_data["funded_id"]) == 10

    def test_non_integer_delta_rejected(self, seed_data):
        with pytest.raises(ValidationFailure):
            ledger_service.apply_delta(seed_data["funded_id"], 1.5, LedgerReason.ADMIN_ADD)


class TestExternalReference:
    """Last line of defence against double application."""

    def test_same_reference_twice_is_duplicate(self, seed_data):
        """Second purchase with the same session id -> DuplicateNotification, balance unchanged."""
        account = seed_data["customer_id"]
        ledger_service.apply_delta(account, 5, LedgerReason.PURCHASE, external_ref="cs_dup")

        with pytest.raises(DuplicateNotification):
            ledger_service.apply_delta(account, 5, LedgerReason.PURCHASE, external_ref="cs_dup")

        assert ledger_service.get_balance(account) == 5
        assert ledger_service.verify_account(account) == []

    def test_same_reference_different_reason_allowed(self, seed_data):
        """Purchase and usage can share a session id (orders bought at checkout)."""
        account = seed_data["customer_id"]
        ledger_service.apply_delta(account, 5, LedgerReason.PURCHASE, external_ref="cs_shared")
        ledger_service.apply_delta(account, -2, LedgerReason.USAGE, external_ref="cs_shared")
        assert ledger_service.get_balance(account) == 3


class TestCompareAndSwap:
    """Optimistic concurrency on account_balances.version."""

    def test_stale_read_is_retried(self, seed_data, monkeypatch):
        """A writer that read an outdated version re-reads and applies once."""
        account = seed_data["funded_id"]
        real_read = ledger_service._read_balance
        calls = []

        def stale_then_real(account_id):
            calls.append(account_id)
            if len(calls) == 1:
                return 10, 0  # version 0 is stale, the seed grant made it 1
            return real_read(account_id)

        monkeypatch.setattr(ledger_service, "_read_balance", stale_then_real)

        result = ledger_service.apply_delta(account, -4, LedgerReason.USAGE, external_ref="tok_cas")

        assert len(calls) == 2
        assert result.balance == 6
        assert result.entry.sequence == 2
        assert ledger_service.verify_account(account) == []

    def test_gives_up_after_bounded_attempts(self, seed_data, monkeypatch):
        """Every read stale -> TransientInfrastructureFailure, nothing written."""
        account = seed_data["funded_id"]
        monkeypatch.setattr(ledger_service, "_read_balance", lambda account_id: (10, 99))

        with pytest.raises(TransientInfrastructureFailure):
            ledger_service.apply_delta(account, -1, LedgerReason.USAGE, external_ref="tok_x")

        assert ledger_service.get_balance(account) == 10
        assert LedgerEntry.query.filter_by(account_id=account).count() == 1


class TestConcurrentWriters:
    """Threads racing on one account."""

    def test_parallel_spends_never_overdraw(self, file_app, make_user):
        """8 threads each spend 2 from a balance of 10: exactly 5 succeed."""
        with file_app.app_context():
            user = make_user("race@example.com")
            account = user.id
            ledger_service.apply_delta(account, 10, LedgerReason.PURCHASE, external_ref="cs_race")

        outcomes = []
        lock = threading.Lock()

        def spend(i):
            with file_app.app_context():
                try:
                    ledger_service.apply_delta(
                        account, -2, LedgerReason.USAGE, external_ref=f"tok_{i}"
                    )
                    result = "ok"
                except InsufficientBalance:
                    result = "insufficient"
                finally:
                    db.session.remove()
                with lock:
                    outcomes.append(result)

        threads = [threading.Thread(target=spend, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 5
        assert outcomes.count("insufficient") == 3

        with file_app.app_context():
            assert ledger_service.get_balance(account) == 0
            assert ledger_service.replay_balance(account) == 0
            assert ledger_service.verify_account(account) == []


class TestAttach:
    """Rows committed atomically with the ledger entry."""

    def test_attached_orders_commit_with_entry(self, seed_data):
        account = seed_data["funded_id"]

        def attach(entry):
            db.session.add(Order(account_id=account, source_ref="tok_att", image_ref="a.jpg"))

        ledger_service.apply_delta(account, -1, LedgerReason.USAGE, external_ref="tok_att", attach=attach)
        assert Order.query.filter_by(source_ref="tok_att").count() == 1

    def test_rejected_delta_drops_attached_rows(self, seed_data):
        """Overdraft: the attach hook never runs, no orders appear."""
        account = seed_data["customer_id"]
        called = []

        with pytest.raises(InsufficientBalance):
            ledger_service.apply_delta(
                account, -1, LedgerReason.USAGE, external_ref="tok_none",
                attach=lambda entry: called.append(entry),
            )

        assert called == []
        assert Order.query.count() == 0


class TestReadSurface:
    """History and verification."""

    def test_history_newest_first_paginated(self, seed_data):
        account = seed_data["customer_id"]
        for i in range(5):
            ledger_service.apply_delta(account, 1, LedgerReason.ADMIN_ADD, note=f"n{i}")

        page = ledger_service.list_entries(account, page=1, per_page=2)
        assert page.total == 5
        assert [e.sequence for e in page.items] == [5, 4]

        last = ledger_service.list_entries(account, page=3, per_page=2)
        assert [e.sequence for e in last.items] == [1]

    def test_verify_detects_tampered_balance(self, seed_data):
        account = seed_data["funded_id"]
        db.session.get(AccountBalance, account).balance = 50
        db.session.commit()

        problems = ledger_service.verify_account(account)
        assert any("sum(ledger)" in p for p in problems)

    def test_replay_matches_balance(self, seed_data):
        account = seed_data["funded_id"]
        ledger_service.apply_delta(account, -3, LedgerReason.USAGE, external_ref="tok_r")
        assert ledger_service.replay_balance(account) == ledger_service.get_balance(account) == 7
