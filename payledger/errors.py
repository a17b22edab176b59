"""Exception taxonomy shared by the ledger services and the HTTP layer."""

from typing import Optional


class PaymentError(Exception):
    """Base class for all ledger errors."""

    status_code = 500

    def __init__(self, message: str = "", *, cause: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class ValidationError(PaymentError):
    """Missing or malformed owner, amount or identifier."""

    status_code = 400


class NotFoundError(PaymentError):
    """The target row does not exist or belongs to someone else."""

    status_code = 404


class ConflictError(PaymentError):
    """An identifier is already bound to a different row."""

    status_code = 409


class UpstreamGatewayError(PaymentError):
    """The payment gateway failed or answered with an unexpected shape."""

    status_code = 502


class StoreError(PaymentError):
    """Unexpected persistence failure."""

    status_code = 500


class ConstraintViolation(StoreError):
    """A uniqueness rule of the payments table rejected a write.

    ``constraint`` is one of ``gateway_order_id``, ``gateway_capture_id``,
    ``client_correlation_token``, ``pending_bucket`` or ``unknown``.
    """

    def __init__(self, constraint: str, *, cause: Optional[Exception] = None):
        super().__init__(f"unique constraint violated: {constraint}", cause=cause)
        self.constraint = constraint
