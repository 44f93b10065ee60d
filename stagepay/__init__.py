import os
import logging

import click
from flask import Flask, jsonify
from flask_wtf.csrf import CSRFError
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash

from stagepay.config import config_by_name
from stagepay.errors import StagePayError
from stagepay.extensions import db, migrate, login_manager, csrf, limiter

logger = logging.getLogger(__name__)


def create_app(config_name=None, config_overrides=None):
    """Application factory.

    config_overrides is applied on top of the config class, before any
    extension binds (e.g. a file-backed database URI for threaded tests).
    """

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])
    if config_overrides:
        app.config.update(config_overrides)

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from stagepay import models  # noqa: F401

    # --- Register blueprints ---
    from stagepay.blueprints.auth import auth_bp
    from stagepay.blueprints.api import api_bp
    from stagepay.blueprints.billing import billing_bp
    from stagepay.blueprints.admin import admin_bp
    from stagepay.blueprints.webhooks import webhooks_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(api_bp)
    app.register_blueprint(billing_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(webhooks_bp)

    # Exempt webhooks from CSRF — raw body needed for Stripe signature verification
    csrf.exempt(webhooks_bp)

    # --- Health check ---
    @app.route("/health")
    def health():
        return jsonify({"status": "ok"})

    # --- Error handlers ---
    register_error_handlers(app)

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Control referrer information
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON API: nothing to render, nothing to embed
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_error_handlers(app):
    """Render every error as {"success": false, "error": code, "message": ...}."""

    @app.errorhandler(StagePayError)
    def handle_stagepay_error(e):
        if e.http_status >= 500:
            db.session.rollback()
            logger.error(f"{e.code}: {e.message}")
        else:
            logger.info(f"{e.code}: {e.message}")
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(CSRFError)
    def handle_csrf_error(e):
        return jsonify({
            "success": False,
            "error": "csrf_failed",
            "message": e.description,
        }), 400

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return jsonify({
            "success": False,
            "error": e.name.lower().replace(" ", "_"),
            "message": e.description,
        }), e.code

    @app.errorhandler(500)
    def server_error(e):
        db.session.rollback()
        return jsonify({
            "success": False,
            "error": "internal_error",
            "message": StagePayError.user_message,
        }), 500


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("seed-admin")
    @click.option("--email", default="admin@stagepay.local", help="Admin email")
    @click.option("--password", default="admin123", help="Admin password")
    def seed_admin(email, password):
        """Create the admin user.

        Usage:
            flask seed-admin
            flask seed-admin --email admin@example.com --password s3cret
        """
        from stagepay.models.user import User

        email = email.strip().lower()
        existing = User.query.filter_by(email=email).first()
        if existing:
            if not existing.is_admin:
                existing.is_admin = True
                db.session.commit()
                click.echo(f"Promoted existing user to admin: {email}")
            else:
                click.echo(f"Admin user already exists: {email}")
            return

        db.session.add(User(
            email=email,
            password_hash=generate_password_hash(password),
            full_name="Admin",
            is_admin=True,
        ))
        db.session.commit()
        click.echo(f"Created admin user: {email}")

    @app.cli.command("recover-claims")
    def recover_claims():
        """Re-drive payments whose claim was never finalized.

        Each abandoned session is re-fetched from Stripe and reconciled
        again. Safe to run from cron: a claim is recovered at most once.
        """
        from stagepay.services.reconciliation_service import recover_abandoned_claims

        results = recover_abandoned_claims()
        for result in results:
            click.echo(f"  {result.session_id}: {result.status} ({result.state})")
        click.echo(f"Processed {len(results)} abandoned claims.")

    @app.cli.command("prune-idempotency")
    @click.option("--days", type=int, default=None,
                  help="Keep finalized records this many days (default IDEMPOTENCY_RETENTION_DAYS).")
    def prune_idempotency(days):
        """Delete old finalized idempotency records and stale unpaid carts."""
        from stagepay.services import checkout_service, idempotency_service

        pruned = idempotency_service.prune(days)
        purged = checkout_service.purge_stale_pending()
        click.echo(f"Pruned {pruned} idempotency records, purged {purged} abandoned checkouts.")

    @app.cli.command("expire-credits")
    @click.option("--dry-run", is_flag=True, help="List what would expire without changing balances.")
    def expire_credits(dry_run):
        """Expire balances with no purchase in CREDIT_EXPIRY_DAYS.

        Usage:
            flask expire-credits
            flask expire-credits --dry-run
        """
        from stagepay.services.expiration_service import expire_credits as run_expiry

        expired = run_expiry(dry_run=dry_run)
        for account_id, credits in expired:
            click.echo(f"  {account_id}: {credits} credits")
        verb = "Would expire" if dry_run else "Expired"
        click.echo(f"{verb} credits on {len(expired)} accounts.")

    @app.cli.command("warn-expiring-credits")
    @click.option("--dry-run", is_flag=True, help="List who would be warned without emailing.")
    def warn_expiring_credits(dry_run):
        """Email customers whose credits expire within CREDIT_EXPIRY_WARNING_DAYS.

        Usage:
            flask warn-expiring-credits
        """
        from stagepay.services.expiration_service import warn_expiring_credits as run_warnings

        warned = run_warnings(dry_run=dry_run)
        for account_id, credits, days_left in warned:
            click.echo(f"  {account_id}: {credits} credits, {days_left} days left")
        verb = "Would warn" if dry_run else "Warned"
        click.echo(f"{verb} {len(warned)} accounts.")

    @app.cli.command("verify-ledger")
    @click.option("--account-id", default=None, help="Check a single account.")
    def verify_ledger(account_id):
        """Replay ledgers and report accounts whose balance disagrees."""
        from stagepay.models.account import AccountBalance
        from stagepay.services.ledger_service import verify_account

        if account_id:
            account_ids = [account_id]
        else:
            account_ids = [a.account_id for a in AccountBalance.query.all()]

        bad = 0
        for aid in account_ids:
            problems = verify_account(aid)
            if problems:
                bad += 1
                click.echo(f"  {aid}:")
                for problem in problems:
                    click.echo(f"    - {problem}")

        click.echo(f"Checked {len(account_ids)} accounts, {bad} inconsistent.")
        if bad:
            raise SystemExit(1)

    @app.cli.command("release-expired-locks")
    def release_expired_locks():
        """Delete checkout locks whose TTL has passed."""
        from stagepay.services.checkout_lock_service import release_expired

        click.echo(f"Released {release_expired()} expired checkout locks.")

    @app.cli.command("verify-payment")
    @click.argument("session_id")
    @click.option("--email", envvar="STAGEPAY_EMAIL", required=True, help="Account email.")
    @click.option("--password", envvar="STAGEPAY_PASSWORD", required=True, help="Account password.")
    def verify_payment(session_id, email, password):
        """Verify a checkout session through the HTTP API (with retries).

        Usage:
            flask verify-payment cs_test_123 --email me@example.com --password ...
        """
        from stagepay.client import EngineClient, EngineRequestError, TryAgainLater

        client = EngineClient.from_config(app.config)
        try:
            client.login(email, password)
            result = client.verify_payment(session_id)
        except EngineRequestError as e:
            click.echo(f"Rejected ({e.status_code}): {e}")
            raise SystemExit(1)
        except TryAgainLater as e:
            click.echo(str(e))
            raise SystemExit(2)

        if result.get("success"):
            click.echo(f"Verified: {result.get('credits')} credits. {result.get('message', '')}".strip())
        elif result.get("status") == "processing":
            click.echo(f"Still processing: {result.get('message')}")
            raise SystemExit(2)
        else:
            click.echo(f"Not verified: {result.get('message')}")
