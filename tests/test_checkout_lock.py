"""Tests for the checkout lock manager."""

import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from stagepay.errors import CheckoutInProgress
from stagepay.extensions import db
from stagepay.models.checkout_lock import CheckoutLock
from stagepay.services import checkout_lock_service

KEY = "email:jane@example.com"


def _expire(identity_key):
    db.session.execute(
        update(CheckoutLock)
        .where(CheckoutLock.identity_key == identity_key)
        .values(expires_at=datetime.now(timezone.utc) - timedelta(seconds=1))
    )
    db.session.commit()


class TestIdentityKey:

    def test_email_normalised(self):
        assert checkout_lock_service.identity_key_for(email="  Jane@Example.COM ") == KEY

    def test_account_fallback(self):
        assert checkout_lock_service.identity_key_for(account_id="abc") == "account:abc"

    def test_requires_identity(self):
        with pytest.raises(ValueError):
            checkout_lock_service.identity_key_for()


class TestAcquireRelease:

    def test_acquire_then_contended(self, app):
        token = checkout_lock_service.acquire(KEY)

        assert token
        assert checkout_lock_service.is_held(KEY)
        assert checkout_lock_service.acquire(KEY) is None

    def test_other_identity_independent(self, app):
        assert checkout_lock_service.acquire(KEY)
        assert checkout_lock_service.acquire("email:rich@example.com")

    def test_release_with_wrong_token_keeps_lock(self, app):
        token = checkout_lock_service.acquire(KEY)

        assert checkout_lock_service.release(KEY, "not-the-token") is False
        assert checkout_lock_service.is_held(KEY)
        assert checkout_lock_service.release(KEY, token) is True
        assert not checkout_lock_service.is_held(KEY)

    def test_expired_lock_taken_over(self, app):
        """A crashed holder blocks the customer for at most the TTL."""
        first = checkout_lock_service.acquire(KEY)
        _expire(KEY)

        assert not checkout_lock_service.is_held(KEY)
        second = checkout_lock_service.acquire(KEY)
        assert second and second != first
        assert CheckoutLock.query.count() == 1

    def test_stale_holder_cannot_release_new_lock(self, app):
        first = checkout_lock_service.acquire(KEY)
        _expire(KEY)
        checkout_lock_service.acquire(KEY)

        assert checkout_lock_service.release(KEY, first) is False
        assert checkout_lock_service.is_held(KEY)

    def test_release_expired_sweeps(self, app):
        checkout_lock_service.acquire(KEY)
        checkout_lock_service.acquire("email:rich@example.com")
        _expire(KEY)

        assert checkout_lock_service.release_expired() == 1
        assert CheckoutLock.query.count() == 1

    def test_store_unavailable_means_not_acquired(self, app, monkeypatch):
        def boom(*args, **kwargs):
            raise OperationalError("INSERT", {}, Exception("database is locked"))

        monkeypatch.setattr(checkout_lock_service, "insert_or_ignore", boom)
        assert checkout_lock_service.acquire(KEY) is None


class TestContextManager:

    def test_held_inside_released_after(self, app):
        with checkout_lock_service.checkout_lock(KEY) as token:
            assert token
            assert checkout_lock_service.is_held(KEY)
        assert not checkout_lock_service.is_held(KEY)

    def test_contention_raises(self, app):
        checkout_lock_service.acquire(KEY)
        with pytest.raises(CheckoutInProgress):
            with checkout_lock_service.checkout_lock(KEY):
                pass

    def test_released_when_block_raises(self, app):
        with pytest.raises(RuntimeError):
            with checkout_lock_service.checkout_lock(KEY):
                raise RuntimeError("boom")
        assert not checkout_lock_service.is_held(KEY)


class TestConcurrentAcquire:
    """Two tabs starting a checkout for the same customer at once."""

    def test_exactly_one_thread_acquires(self, file_app):
        barrier = threading.Barrier(8)
        tokens = []
        lock = threading.Lock()

        def worker():
            with file_app.app_context():
                barrier.wait()
                try:
                    token = checkout_lock_service.acquire(KEY)
                finally:
                    db.session.remove()
                with lock:
                    tokens.append(token)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [t for t in tokens if t is not None]
        assert len(tokens) == 8
        assert len(winners) == 1
        with file_app.app_context():
            assert CheckoutLock.query.one().token == winners[0]
