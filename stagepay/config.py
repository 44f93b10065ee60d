import os


def _env_bool(name, default=""):
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


def _env_delays(name, default):
    """Parse a comma-separated list of seconds, e.g. "1,2"."""
    raw = os.environ.get(name)
    if not raw:
        return default
    return tuple(float(part) for part in raw.split(",") if part.strip())


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    STRIPE_PUBLISHABLE_KEY = os.environ.get("STRIPE_PUBLISHABLE_KEY")
    # Max age (seconds) of a signed webhook payload before it is treated as a replay.
    STRIPE_WEBHOOK_TOLERANCE = int(os.environ.get("STRIPE_WEBHOOK_TOLERANCE", 300))
    STRIPE_TIMEOUT_SECONDS = int(os.environ.get("STRIPE_TIMEOUT_SECONDS", 10))
    APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:5000")

    # --- Reconciliation ---
    CHECKOUT_LOCK_TTL_SECONDS = int(os.environ.get("CHECKOUT_LOCK_TTL_SECONDS", 30))
    # A claim older than this with no finalize is considered abandoned.
    CLAIM_GRACE_SECONDS = int(os.environ.get("CLAIM_GRACE_SECONDS", 300))
    IDEMPOTENCY_RETENTION_DAYS = int(os.environ.get("IDEMPOTENCY_RETENTION_DAYS", 90))
    PENDING_CHECKOUT_RETENTION_HOURS = int(
        os.environ.get("PENDING_CHECKOUT_RETENTION_HOURS", 48)
    )
    # "provision" creates an account for an unknown paying email,
    # "reject" releases the claim and alerts support.
    UNRESOLVED_ACCOUNT_POLICY = os.environ.get("UNRESOLVED_ACCOUNT_POLICY", "provision")
    CREDIT_EXPIRY_DAYS = int(os.environ.get("CREDIT_EXPIRY_DAYS", 365))
    CREDIT_EXPIRY_WARNING_DAYS = tuple(
        int(d) for d in os.environ.get("CREDIT_EXPIRY_WARNING_DAYS", "30,7").split(",") if d.strip()
    )
    LEDGER_CAS_ATTEMPTS = int(os.environ.get("LEDGER_CAS_ATTEMPTS", 5))

    # --- Engine client (admin tooling) ---
    ENGINE_BASE_URL = os.environ.get("ENGINE_BASE_URL", "http://localhost:5000")
    ENGINE_RETRY_DELAYS = _env_delays("ENGINE_RETRY_DELAYS", (1.0, 2.0))
    ENGINE_TIMEOUT_SECONDS = int(os.environ.get("ENGINE_TIMEOUT_SECONDS", 10))

    # --- Email (SMTP) ---
    MAIL_ENABLED = _env_bool("MAIL_ENABLED", "true")
    MAIL_SMTP_HOST = os.environ.get("MAIL_SMTP_HOST", "smtp.gmail.com")
    MAIL_SMTP_PORT = int(os.environ.get("MAIL_SMTP_PORT", 587))
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_FROM_NAME = os.environ.get("MAIL_FROM_NAME", "StagePay")
    MAIL_FROM_ADDRESS = os.environ.get("MAIL_FROM_ADDRESS")  # defaults to MAIL_USERNAME
    MAIL_TIMEOUT_SECONDS = int(os.environ.get("MAIL_TIMEOUT_SECONDS", 30))
    SUPPORT_EMAIL = os.environ.get("SUPPORT_EMAIL", "support@stagepay.local")

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # --- Session / cookies ---
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    REMEMBER_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_SAMESITE = "Lax"

    # --- WTF / CSRF ---
    WTF_CSRF_ENABLED = True

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "STRIPE_SECRET_KEY",
            "STRIPE_WEBHOOK_SECRET",
            "APP_BASE_URL",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )
        policy = os.environ.get("UNRESOLVED_ACCOUNT_POLICY", "provision")
        if policy not in ("provision", "reject"):
            raise RuntimeError(
                f"UNRESOLVED_ACCOUNT_POLICY must be 'provision' or 'reject', got {policy!r}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False


class TestConfig(Config):
    """Testing — in-memory SQLite, CSRF disabled."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    STRIPE_PUBLISHABLE_KEY = "pk_test_fake"
    APP_BASE_URL = "http://localhost:5000"
    UNRESOLVED_ACCOUNT_POLICY = "provision"
    MAIL_ENABLED = False  # never open SMTP connections from tests
    ENGINE_RETRY_DELAYS = (1.0, 2.0)
    WTF_CSRF_ENABLED = False  # disable CSRF for test forms
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production (Postgres)."""

    DEBUG = False
    SESSION_COOKIE_SECURE = True
    REMEMBER_COOKIE_SECURE = True
    # Bound every DB round trip so no request blocks indefinitely.
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
        "pool_timeout": 10,
        "connect_args": {
            "connect_timeout": 5,
            "options": "-c statement_timeout=5000 -c lock_timeout=3000",
        },
    }


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
