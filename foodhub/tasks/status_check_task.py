"""
Fallback reconciliation for lost or late M-Pesa callbacks.

After a push is accepted, a bounded series of status queries is scheduled
(+30s, +90s, +5min by default). Each run is a no-op once the payment has left
``pending``; cancel_status_checks() additionally revokes the queued runs as
soon as a callback settles the payment.
"""

import logging
import uuid
from typing import List

from flask import current_app

from foodhub.errors import AuthenticationError, GatewayRejection, RetryableGatewayError
from foodhub.extensions import celery_app, db
from foodhub.models import Payment

logger = logging.getLogger(__name__)

DEFAULT_STATUS_CHECK_DELAYS = (30, 90, 300)


@celery_app.task(name='check_payment_status_task')
def check_payment_status(payment_id: str) -> str:
    """
    Query the gateway for a pending payment and settle it if the result is final.

    Returns:
        The reconciliation outcome, or 'skipped' when there is nothing to do
    """
    from foodhub.services.reconciliation_service import ReconciliationService

    payment = db.session.get(Payment, uuid.UUID(str(payment_id)))

    if not payment:
        logger.error('Status check for unknown payment %s', payment_id)
        return 'skipped'

    if not payment.is_pending or not payment.checkout_request_id:
        return 'skipped'

    try:
        return ReconciliationService.reconcile_status_query(payment)
    except (AuthenticationError, GatewayRejection, RetryableGatewayError) as exc:
        # The next scheduled check, or the callback, gets another chance
        logger.warning('Status check for payment %s failed: %s', payment.id, exc.message)
        return 'error'


def schedule_status_checks(payment: Payment) -> List[str]:
    """Queue the delayed status queries for a freshly accepted push."""
    delays = current_app.config.get('MPESA_STATUS_CHECK_DELAYS') or DEFAULT_STATUS_CHECK_DELAYS

    task_ids = []
    for delay in delays:
        result = check_payment_status.apply_async(args=[str(payment.id)], countdown=delay)
        task_ids.append(result.id)

    logger.info('Scheduled %d status checks for payment %s', len(task_ids), payment.id)
    return task_ids


def cancel_status_checks(payment: Payment) -> None:
    """Revoke queued status queries once the payment is no longer pending."""
    task_ids = payment.status_check_task_ids or []
    if not task_ids or celery_app.conf.task_always_eager:
        return

    for task_id in task_ids:
        try:
            celery_app.control.revoke(task_id)
        except Exception as exc:
            # check_payment_status skips payments that are no longer pending
            logger.warning('Could not revoke status check %s for payment %s: %s', task_id, payment.id, exc)
