class AppError(Exception):
    status_code = 500
    error = "Application error"

    def __init__(self, message, status_code=None):
        super().__init__(message)
        if status_code:
            self.status_code = status_code
        self.message = message


class ValidationError(AppError):
    """Malformed phone number, amount or request data. Raised before any network call."""
    status_code = 400
    error = "Validation error"


class PaymentNotFound(AppError):
    status_code = 404
    error = "Payment not found"


class IdempotencyConflict(AppError):
    """The Idempotency-Key already belongs to another user's payment."""
    status_code = 409
    error = "Idempotency key conflict"


class AuthenticationError(AppError):
    """Token acquisition against the gateway OAuth endpoint failed."""
    status_code = 502
    error = "Gateway authentication failed"

    def __init__(self, message, raw_body=None, status_code=None):
        super().__init__(message, status_code)
        self.raw_body = raw_body


class RetryableGatewayError(AppError):
    """Transport-level failure (timeout, connection error, 5xx)."""
    status_code = 503
    error = "Gateway unreachable"


class GatewayRejection(AppError):
    """The gateway answered but refused the request with an application-level code."""
    status_code = 402
    error = "Payment rejected"

    def __init__(self, message, response_code=None, raw_response=None, status_code=None):
        super().__init__(message, status_code)
        self.response_code = response_code
        self.raw_response = raw_response or {}


class UnknownPaymentError(AppError):
    status_code = 404
    error = "Unknown payment"

    def __init__(self, checkout_request_id, message=None):
        super().__init__(message or f'No payment holds checkout request ID {checkout_request_id!r}')
        self.checkout_request_id = checkout_request_id


class InvalidTransitionError(AppError):
    status_code = 409
    error = "Invalid status transition"

    def __init__(self, current, target, message=None):
        super().__init__(message or f'Cannot move payment from {current} to {target}')
        self.current = current
        self.target = target


class AmountMismatchError(AppError):
    status_code = 409
    error = "Amount mismatch"

    def __init__(self, expected, received):
        super().__init__(f'Settled amount {received} does not match requested amount {expected}')
        self.expected = expected
        self.received = received
