# Models package — import all models here so Alembic can discover them.

from stagepay.models.user import User  # noqa: F401
from stagepay.models.account import AccountBalance  # noqa: F401
from stagepay.models.ledger import LedgerEntry, LedgerReason  # noqa: F401
from stagepay.models.idempotency import IdempotencyRecord  # noqa: F401
from stagepay.models.checkout_lock import CheckoutLock  # noqa: F401
from stagepay.models.order import Order  # noqa: F401
from stagepay.models.pending_checkout import PendingCheckout  # noqa: F401
from stagepay.models.audit import AuditEvent  # noqa: F401
