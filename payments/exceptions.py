"""Error taxonomy for the payment flow.

These are raised inside the orchestrator and handed back to callers as the
``error`` of a result object; views map ``code`` to an HTTP status.
"""


class PaymentError(Exception):
    code = "payment_error"

    def __init__(self, message, *, errors=None):
        super().__init__(message)
        self.message = message
        self.errors = errors or {}


class ValidationError(PaymentError):
    code = "validation_error"


class NotFound(PaymentError):
    code = "not_found"


class InvalidState(PaymentError):
    code = "invalid_state"


class ConflictError(PaymentError):
    code = "conflict"


class GatewayError(PaymentError):
    """Non-success, malformed or unreachable gateway. ``raw`` keeps the response for audit."""
    code = "gateway_error"

    def __init__(self, message, *, raw=None, status_code=None):
        super().__init__(message)
        self.raw = raw
        self.status_code = status_code

    def as_payload(self) -> dict:
        return {"status_code": self.status_code, "message": self.message, "body": self.raw}


class PaymentDeclined(InvalidState):
    """The gateway reported a non-completed outcome for the payment."""
    code = "payment_declined"
