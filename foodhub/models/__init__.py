from foodhub.models.payment import Payment, PaymentStatus, PaymentMethod
from foodhub.models.audit_log import AuditLog
from foodhub.models.callback_event import CallbackEvent, CallbackOutcome

__all__ = ['Payment', 'PaymentStatus', 'PaymentMethod', 'AuditLog', 'CallbackEvent', 'CallbackOutcome']
