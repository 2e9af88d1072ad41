"""
Payment status notifications.

The payment core calls PaymentNotifier.notify() after a status transition has
been committed. Subscribers (live updates, the order subsystem) run after the
fact: a failing subscriber is logged and never undoes or blocks settlement.
"""

import logging
from typing import Callable, List

import requests
from flask import current_app

from foodhub.models import Payment

logger = logging.getLogger(__name__)

Listener = Callable[[Payment, str], None]


class PaymentNotifier:
    """Fan-out of payment status change events"""

    def __init__(self):
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Listener:
        if listener not in self._listeners:
            self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def notify(self, payment: Payment, event_type: str) -> None:
        for listener in self._listeners:
            try:
                listener(payment, event_type)
            except Exception:
                logger.exception(
                    'Payment notification %s for %s failed in %s',
                    event_type, payment.id, getattr(listener, '__name__', listener),
                )


def notify_order_service(payment: Payment, event_type: str) -> None:
    """POST the status change to the order subsystem, when one is configured."""
    base_url = current_app.config.get('ORDER_SERVICE_URL')
    if not base_url:
        return

    resp = requests.post(
        f"{base_url.rstrip('/')}/orders/{payment.order_reference}/payment-status",
        json={
            'event_type': event_type,
            'payment_id': str(payment.id),
            'status': payment.status,
            'mpesa_receipt_number': payment.mpesa_receipt_number,
            'failure_reason': payment.failure_reason,
        },
        timeout=current_app.config.get('ORDER_SERVICE_TIMEOUT', 5),
    )
    resp.raise_for_status()


payment_notifier = PaymentNotifier()
