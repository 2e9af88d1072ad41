from foodhub.errors.exceptions import (
    AppError,
    ValidationError,
    PaymentNotFound,
    IdempotencyConflict,
    AuthenticationError,
    RetryableGatewayError,
    GatewayRejection,
    UnknownPaymentError,
    InvalidTransitionError,
    AmountMismatchError,
)

__all__ = [
    'AppError',
    'ValidationError',
    'PaymentNotFound',
    'IdempotencyConflict',
    'AuthenticationError',
    'RetryableGatewayError',
    'GatewayRejection',
    'UnknownPaymentError',
    'InvalidTransitionError',
    'AmountMismatchError',
]
