"""
Schemas Package
Marshmallow schemas for request/response validation
"""

from foodhub.schemas.payment_schema import (
    InitiateMpesaPaymentSchema,
    RefundPaymentSchema,
    CancelPaymentSchema,
    ResolveDisputeSchema,
    PaymentSchema,
    AdminPaymentSchema
)
from foodhub.schemas.callback_schema import (
    CallbackEventSchema,
    StkCallbackSchema,
    AuditLogSchema
)

__all__ = [
    'InitiateMpesaPaymentSchema',
    'RefundPaymentSchema',
    'CancelPaymentSchema',
    'ResolveDisputeSchema',
    'PaymentSchema',
    'AdminPaymentSchema',
    'CallbackEventSchema',
    'StkCallbackSchema',
    'AuditLogSchema'
]
