"""
Reconciliation Service
Matches gateway results (callbacks and status queries) to payments and
settles them exactly once
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from flask import current_app

from foodhub.errors import (
    AmountMismatchError,
    InvalidTransitionError,
    UnknownPaymentError,
    ValidationError,
)
from foodhub.extensions import db
from foodhub.models import CallbackEvent, CallbackOutcome, Payment, PaymentStatus
from foodhub.providers import ReversalResult, SettlementResult, get_gateway_client
from foodhub.services.audit_service import AuditService
from foodhub.services.notification_service import payment_notifier
from foodhub.services.payment_state import transition
from foodhub.tasks.status_check_task import cancel_status_checks

logger = logging.getLogger(__name__)


class ReconciliationService:
    """Settles payments from asynchronous gateway results"""

    @staticmethod
    def receive_callback(payload: Any) -> CallbackEvent:
        """
        Persist a raw callback before anything else touches it

        Args:
            payload: Parsed JSON body posted by the gateway

        Returns:
            Created CallbackEvent
        """
        checkout_id = None
        if isinstance(payload, dict):
            stk = (payload.get('Body') or {}).get('stkCallback') or {}
            if isinstance(stk, dict):
                checkout_id = stk.get('CheckoutRequestID')

            reversal = payload.get('Result')
            if isinstance(reversal, dict):
                checkout_id = reversal.get('ConversationID')

        event = CallbackEvent(
            checkout_request_id=checkout_id,
            payload=payload if isinstance(payload, dict) else {'raw': payload},
            processed=False
        )

        db.session.add(event)
        db.session.commit()

        return event

    @staticmethod
    def process_callback(event_id: uuid.UUID) -> str:
        """
        Reconcile a stored callback against its payment

        Args:
            event_id: UUID of the CallbackEvent

        Returns:
            One of the CallbackOutcome values
        """
        event = db.session.get(CallbackEvent, event_id)

        if not event:
            raise ValueError(f'Callback event {event_id} not found')

        if event.processed:
            return event.outcome

        if isinstance(event.payload, dict) and 'Result' in event.payload:
            return ReconciliationService._process_reversal_result(event)

        try:
            result = get_gateway_client().parse_callback(event.payload)
        except ValidationError as e:
            logger.error('Discarding malformed M-Pesa callback %s: %s', event.id, e.message)
            return ReconciliationService._finish(event, CallbackOutcome.INVALID, error=e.message)

        try:
            if result.is_success and ReconciliationService._needs_confirmation(result):
                confirmation = get_gateway_client().query_status(result.checkout_request_id)

                if not confirmation.is_terminal:
                    # Kept for reprocessing; the scheduled status checks settle it meanwhile
                    logger.warning(
                        'M-Pesa callback %s reports success for %s but the gateway has not confirmed it',
                        event.id, result.checkout_request_id
                    )
                    return ReconciliationService._finish(
                        event, CallbackOutcome.UNCONFIRMED,
                        error='Status query has no final result yet', processed=False
                    )

                if not confirmation.is_success:
                    logger.error(
                        'M-Pesa callback %s reports success for %s but the status query says %s: %s',
                        event.id, result.checkout_request_id, confirmation.result_code, confirmation.result_desc
                    )
                    result = confirmation

            outcome, payment = ReconciliationService.apply_settlement(result)
        except UnknownPaymentError as e:
            # Left unprocessed so it shows up for manual reconciliation
            logger.error('M-Pesa callback %s: %s', event.id, e.message)
            return ReconciliationService._finish(
                event, CallbackOutcome.UNKNOWN_PAYMENT, error=e.message, processed=False
            )
        except Exception as e:
            db.session.rollback()
            logger.exception('M-Pesa callback %s could not be reconciled', event.id)
            return ReconciliationService._finish(
                event, CallbackOutcome.ERROR, error=str(e), processed=False
            )

        return ReconciliationService._finish(event, outcome, payment=payment)

    @staticmethod
    def reconcile_status_query(payment: Payment) -> str:
        """
        Poll the gateway for a pending payment and settle it if the answer is final

        Returns:
            'pending' while the gateway is still waiting on the customer,
            otherwise the settlement outcome
        """
        result = get_gateway_client().query_status(payment.checkout_request_id)

        if not result.is_terminal:
            logger.info('Payment %s still pending at gateway: %s', payment.id, result.result_desc)
            return PaymentStatus.PENDING.value

        outcome, _ = ReconciliationService.apply_settlement(result)
        return outcome

    @staticmethod
    def apply_settlement(result: SettlementResult) -> Tuple[str, Payment]:
        """
        Apply a terminal gateway result to the payment it belongs to

        The payment row is locked for the duration; a payment that has already
        left ``pending`` is not touched again.

        Raises:
            UnknownPaymentError: no payment holds the checkout request ID
        """
        payment = (
            Payment.query
            .filter_by(checkout_request_id=result.checkout_request_id)
            .with_for_update()
            .first()
        )

        if payment is None:
            db.session.rollback()
            raise UnknownPaymentError(result.checkout_request_id)

        if not payment.is_pending:
            db.session.commit()
            logger.info(
                'Ignoring %s result for payment %s: already %s',
                result.source, payment.id, payment.status
            )
            return CallbackOutcome.DUPLICATE, payment

        gateway_response = dict(payment.gateway_response or {})
        gateway_response[result.source] = result.raw

        mismatch = ReconciliationService._amount_mismatch(payment, result) if result.is_success else None

        try:
            if not result.is_success:
                transition(
                    payment,
                    PaymentStatus.FAILED,
                    failure_reason=result.result_desc or f'Gateway result code {result.result_code}',
                    gateway_response=gateway_response
                )
                outcome = CallbackOutcome.FAILED

            elif mismatch is not None:
                logger.error('Payment %s flagged for manual review: %s', payment.id, mismatch.message)
                transition(
                    payment,
                    PaymentStatus.DISPUTED,
                    mpesa_receipt_number=result.receipt_number,
                    failure_reason=mismatch.message,
                    gateway_response=gateway_response
                )
                outcome = CallbackOutcome.DISPUTED

            else:
                transition(
                    payment,
                    PaymentStatus.COMPLETED,
                    mpesa_receipt_number=result.receipt_number,
                    gateway_transaction_id=result.receipt_number,
                    processed_at=datetime.utcnow(),
                    gateway_response=gateway_response
                )
                outcome = CallbackOutcome.COMPLETED

        except InvalidTransitionError as e:
            # Another delivery settled the payment between our read and write
            logger.warning('Concurrent settlement of payment %s: %s', payment.id, e.message)
            return CallbackOutcome.DUPLICATE, payment

        cancel_status_checks(payment)

        AuditService.log_event(
            payment_id=payment.id,
            event_type=f'payment.{outcome}',
            event_data=ReconciliationService._audit_data(result, payment)
        )

        payment_notifier.notify(payment, f'payment.{outcome}')

        return outcome, payment

    @staticmethod
    def apply_reversal_result(result: ReversalResult) -> Tuple[str, Payment]:
        """
        Finish a refund once the gateway reports the reversal outcome

        A successful reversal moves the payment to ``refunded``; a failed one
        leaves it ``completed`` and free to be refunded again.

        Raises:
            UnknownPaymentError: no payment is waiting on this conversation
        """
        conversation_ids = [cid for cid in (result.conversation_id, result.originator_conversation_id) if cid]

        payment = (
            Payment.query
            .filter(Payment.reversal_conversation_id.in_(conversation_ids))
            .with_for_update()
            .first()
        )

        if payment is None:
            db.session.rollback()
            raise UnknownPaymentError(
                result.conversation_id,
                message=f'No payment awaits reversal {result.conversation_id or result.originator_conversation_id!r}'
            )

        if payment.status != PaymentStatus.COMPLETED.value:
            db.session.commit()
            logger.info('Ignoring reversal result for payment %s: already %s', payment.id, payment.status)
            return CallbackOutcome.DUPLICATE, payment

        gateway_response = dict(payment.gateway_response or {})
        gateway_response['reversal_result'] = result.raw
        requested = gateway_response.get('reversal') or {}

        if result.is_success:
            try:
                transition(
                    payment,
                    PaymentStatus.REFUNDED,
                    refund_amount=Decimal(requested.get('amount') or payment.amount),
                    refund_reason=requested.get('reason'),
                    refunded_at=datetime.utcnow(),
                    gateway_response=gateway_response
                )
            except InvalidTransitionError as e:
                logger.warning('Concurrent update of payment %s: %s', payment.id, e.message)
                return CallbackOutcome.DUPLICATE, payment

            outcome = CallbackOutcome.REFUNDED
            event_type = 'refund.completed'
        else:
            logger.error('Reversal for payment %s failed: %s', payment.id, result.result_desc)
            payment.gateway_response = gateway_response
            payment.reversal_conversation_id = None
            db.session.commit()

            outcome = CallbackOutcome.REVERSAL_FAILED
            event_type = 'refund.failed'

        AuditService.log_event(
            payment_id=payment.id,
            event_type=event_type,
            event_data={
                'conversation_id': result.conversation_id,
                'result_code': result.result_code,
                'result_desc': result.result_desc,
                'transaction_id': result.transaction_id
            }
        )

        if result.is_success:
            payment_notifier.notify(payment, 'payment.refunded')

        return outcome, payment

    @staticmethod
    def reprocess_callback(event_id: uuid.UUID) -> str:
        """Retry an unmatched or errored callback, e.g. after a payment record was repaired"""
        event = db.session.get(CallbackEvent, event_id)

        if not event:
            raise ValueError(f'Callback event {event_id} not found')

        event.processed = False
        event.outcome = None
        db.session.commit()

        return ReconciliationService.process_callback(event.id)

    @staticmethod
    def get_unmatched_callbacks():
        """Callbacks retained for manual reconciliation"""
        return CallbackEvent.query.filter(
            CallbackEvent.processed == False,  # noqa: E712
        ).order_by(CallbackEvent.created_at.desc()).all()

    @staticmethod
    def _amount_mismatch(payment: Payment, result: SettlementResult) -> Optional[AmountMismatchError]:
        expected = Decimal(payment.amount)

        if result.amount is None:
            # Status queries do not echo the amount; callbacks must
            return AmountMismatchError(expected, None) if result.source == 'callback' else None

        if Decimal(result.amount) != expected:
            return AmountMismatchError(expected, result.amount)
        return None

    @staticmethod
    def _needs_confirmation(result: SettlementResult) -> bool:
        """Success callbacks for a still-pending payment are checked against a status query"""
        if not current_app.config.get('MPESA_CONFIRM_CALLBACKS', True):
            return False

        payment = Payment.query.filter_by(checkout_request_id=result.checkout_request_id).first()
        return payment is not None and payment.is_pending

    @staticmethod
    def _process_reversal_result(event: CallbackEvent) -> str:
        try:
            result = get_gateway_client().parse_reversal_result(event.payload)
        except ValidationError as e:
            logger.error('Discarding malformed M-Pesa reversal result %s: %s', event.id, e.message)
            return ReconciliationService._finish(event, CallbackOutcome.INVALID, error=e.message)

        try:
            outcome, payment = ReconciliationService.apply_reversal_result(result)
        except UnknownPaymentError as e:
            logger.error('M-Pesa reversal result %s: %s', event.id, e.message)
            return ReconciliationService._finish(
                event, CallbackOutcome.UNKNOWN_PAYMENT, error=e.message, processed=False
            )
        except Exception as e:
            db.session.rollback()
            logger.exception('M-Pesa reversal result %s could not be applied', event.id)
            return ReconciliationService._finish(
                event, CallbackOutcome.ERROR, error=str(e), processed=False
            )

        return ReconciliationService._finish(event, outcome, payment=payment)

    @staticmethod
    def _finish(
            event: CallbackEvent,
            outcome: str,
            payment: Optional[Payment] = None,
            error: Optional[str] = None,
            processed: bool = True
    ) -> str:
        event.outcome = outcome
        event.processed = processed
        event.error_message = error
        if payment is not None:
            event.payment_id = payment.id
        if processed:
            event.processed_at = datetime.utcnow()
        db.session.commit()
        return outcome

    @staticmethod
    def _audit_data(result: SettlementResult, payment: Payment) -> Dict[str, Any]:
        return {
            'source': result.source,
            'checkout_request_id': result.checkout_request_id,
            'result_code': result.result_code,
            'result_desc': result.result_desc,
            'receipt_number': result.receipt_number,
            'amount': str(result.amount) if result.amount is not None else None,
            'transaction_date': result.transaction_date.isoformat() if result.transaction_date else None,
            'new_status': payment.status
        }
