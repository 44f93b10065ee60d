"""Error taxonomy for the reconciliation core.

Every error carries:
- code:          stable machine-readable identifier (returned to API callers)
- message:       internal detail, safe to log
- http_status:   status used when the error escapes a request handler
- user_message:  what the customer sees
- retryable:     whether the same request may succeed if simply retried

Propagation policy:
    AuthenticityFailure / ValidationFailure  -> reject, never retry
    DuplicateNotification                    -> not an error, short-circuit success
    InsufficientBalance                      -> business rejection, no retry
    TransientInfrastructureFailure           -> retry with bounded backoff
    CheckoutInProgress                       -> retry shortly
"""

TRY_AGAIN = "Something went wrong on our side. Please try again in a moment."


class StagePayError(Exception):
    """Base application error."""

    code = "internal_error"
    http_status = 500
    user_message = TRY_AGAIN
    retryable = False

    def __init__(self, message=None, user_message=None):
        self.message = message or self.user_message
        if user_message:
            self.user_message = user_message
        super().__init__(self.message)

    def to_dict(self):
        return {
            "success": False,
            "error": self.code,
            "message": self.user_message,
        }


class AuthenticityFailure(StagePayError):
    """Inbound payload failed signature / timestamp verification."""

    code = "authenticity_failure"
    http_status = 400
    user_message = "Invalid signature."


class ValidationFailure(StagePayError):
    """Payload is well-signed but unusable (missing fields, bad counts)."""

    code = "validation_failure"
    http_status = 400
    user_message = "The request could not be processed. Please contact support."


class AccountNotFound(ValidationFailure):
    code = "account_not_found"
    http_status = 404
    user_message = "We could not find an account for this payment. Please contact support."


class DuplicateNotification(StagePayError):
    """The external reference was already applied. Callers treat this as success."""

    code = "duplicate"
    http_status = 200
    user_message = "This payment has already been processed."


class InsufficientBalance(StagePayError):
    code = "insufficient_balance"
    http_status = 402

    def __init__(self, required, available):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient balance: required {required}, available {available}",
            user_message=(
                f"You need {required} credits but only have {available}. "
                "Please purchase more credits."
            ),
        )

    def to_dict(self):
        data = super().to_dict()
        data["required"] = self.required
        data["available"] = self.available
        return data


class TransientInfrastructureFailure(StagePayError):
    code = "transient_failure"
    http_status = 503
    retryable = True


class AbandonedClaim(StagePayError):
    """A claim was never finalized and its single recovery attempt is spent."""

    code = "abandoned_claim"
    http_status = 500
    user_message = "Your payment needs attention. Our support team has been notified."


class CheckoutInProgress(StagePayError):
    code = "checkout_in_progress"
    http_status = 409
    user_message = "A checkout is already in progress. Please try again in a few seconds."
    retryable = True


class Unauthorized(StagePayError):
    code = "unauthorized"
    http_status = 403
    user_message = "You are not allowed to access this payment."
