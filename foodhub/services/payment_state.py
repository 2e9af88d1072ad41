"""
Payment State Machine

    pending   -> completed | failed | cancelled | disputed
    disputed  -> completed | failed          (manual resolution)
    completed -> refunded

failed, cancelled and refunded are terminal. Every status write goes through
transition(), which applies a compare-and-swap UPDATE so two writers racing on
the same payment cannot both succeed.
"""

import logging
from typing import Any, Dict, Union

from foodhub.errors import InvalidTransitionError
from foodhub.extensions import db
from foodhub.models import Payment, PaymentStatus

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    PaymentStatus.PENDING: {
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
        PaymentStatus.DISPUTED,
    },
    PaymentStatus.DISPUTED: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED},
}

TERMINAL_STATUSES = frozenset({PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.REFUNDED})

# Fields that transition() is allowed to write alongside the status
_WRITABLE_FIELDS = frozenset({
    'merchant_request_id',
    'mpesa_receipt_number',
    'gateway_transaction_id',
    'gateway_response',
    'phone_number',
    'processed_at',
    'failure_reason',
    'refund_amount',
    'refund_reason',
    'refunded_at',
})


def _status(value: Union[str, PaymentStatus]) -> PaymentStatus:
    return value if isinstance(value, PaymentStatus) else PaymentStatus(value)


def can_transition(current: Union[str, PaymentStatus], target: Union[str, PaymentStatus]) -> bool:
    return _status(target) in ALLOWED_TRANSITIONS.get(_status(current), set())


def is_terminal(status: Union[str, PaymentStatus]) -> bool:
    return _status(status) in TERMINAL_STATUSES


def transition(payment: Payment, target: Union[str, PaymentStatus], **changes: Any) -> Payment:
    """
    Move a payment to ``target`` and persist ``changes`` in the same UPDATE.

    Raises:
        InvalidTransitionError: target is not reachable from the current
            status, or another writer changed the status first. The stored
            row is left untouched in both cases.
    """
    current = _status(payment.status)
    target = _status(target)

    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value)

    unknown = set(changes) - _WRITABLE_FIELDS
    if unknown:
        raise ValueError(f'transition() cannot write {", ".join(sorted(unknown))}')

    values: Dict[str, Any] = dict(changes, status=target.value)

    rows = (
        db.session.query(Payment)
        .filter(Payment.id == payment.id, Payment.status == current.value)
        .update(values, synchronize_session=False)
    )

    if rows != 1:
        db.session.rollback()
        raise InvalidTransitionError(
            current.value,
            target.value,
            message=f'Payment {payment.id} left {current.value} before it could move to {target.value}',
        )

    db.session.commit()
    db.session.refresh(payment)

    logger.info('Payment %s: %s -> %s', payment.id, current.value, target.value)
    return payment
