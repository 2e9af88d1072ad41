import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from flask import current_app

from foodhub.errors import (
    AppError,
    AuthenticationError,
    GatewayRejection,
    IdempotencyConflict,
    InvalidTransitionError,
    PaymentNotFound,
    RetryableGatewayError,
    ValidationError,
)
from foodhub.extensions import db
from foodhub.models import Payment, PaymentMethod, PaymentStatus
from foodhub.providers import get_gateway_client
from foodhub.providers.mpesa_request import ACCOUNT_REFERENCE_MAX, normalize_phone, validate_amount
from foodhub.services.audit_service import AuditService
from foodhub.services.notification_service import payment_notifier
from foodhub.services.payment_state import transition
from foodhub.services.reconciliation_service import ReconciliationService
from foodhub.tasks.status_check_task import cancel_status_checks, schedule_status_checks
from foodhub.utils.logger import get_logger

logger = get_logger(__name__)

GATEWAY_UNREACHABLE = 'gateway unreachable'


class PaymentService:
    """Core payment processing service"""

    @staticmethod
    def initiate_mpesa_payment(
            order_reference: str,
            phone_number: str,
            amount: Any,
            description: Optional[str] = None,
            user_reference: Optional[str] = None,
            currency: str = 'KES',
            idempotency_key: Optional[str] = None
    ) -> Payment:
        """
        Create a payment and send an STK push to the customer's phone

        Args:
            order_reference: Order the payment settles
            phone_number: Customer phone, local or international format
            amount: Whole-shilling amount
            description: Short text shown on the customer's phone
            user_reference: Paying user
            currency: Currency code
            idempotency_key: Client-supplied key; a repeat returns the original payment

        Returns:
            Payment in ``pending`` with its checkout request ID

        Raises:
            ValidationError: phone or amount malformed; nothing is stored
            IdempotencyConflict: another user already paid with this idempotency key
            GatewayRejection: gateway refused the push; payment marked failed
            RetryableGatewayError: gateway unreachable after retries; payment marked failed
        """

        # Check if payment with idempotency key already exists
        if idempotency_key:
            existing = Payment.query.filter_by(idempotency_key=idempotency_key).first()
            if existing:
                if existing.user_reference != user_reference:
                    raise IdempotencyConflict(
                        f'Idempotency-Key {idempotency_key!r} is already in use; send a new key'
                    )
                return existing

        if not order_reference:
            raise ValidationError('order_reference is required')

        msisdn = normalize_phone(phone_number)
        whole_amount = validate_amount(amount)

        callback_url = current_app.config.get('MPESA_CALLBACK_URL')
        if not callback_url:
            raise ValidationError('MPESA_CALLBACK_URL is not configured')

        description = description or f'Order {order_reference}'

        payment = Payment(
            idempotency_key=idempotency_key or str(uuid.uuid4()),
            order_reference=order_reference,
            user_reference=user_reference,
            amount=Decimal(whole_amount),
            currency=currency,
            method=PaymentMethod.MPESA.value,
            status=PaymentStatus.PENDING.value,
            phone_number=msisdn,
            account_reference=order_reference[:ACCOUNT_REFERENCE_MAX],
            description=description
        )

        db.session.add(payment)
        db.session.commit()

        AuditService.log_event(
            payment_id=payment.id,
            event_type='payment.initiated',
            event_data={
                'order_reference': order_reference,
                'amount': whole_amount,
                'currency': currency,
                'phone_number': msisdn
            },
            user_id=user_reference
        )

        try:
            result = get_gateway_client().initiate_push(
                phone=msisdn,
                amount=whole_amount,
                account_reference=order_reference,
                description=description,
                callback_url=callback_url
            )

        except GatewayRejection as e:
            PaymentService._fail(payment, e.message, {'error': e.message, 'response': e.raw_response})
            raise

        except (RetryableGatewayError, AuthenticationError) as e:
            PaymentService._fail(payment, GATEWAY_UNREACHABLE, {'error': e.message})
            raise

        payment.checkout_request_id = result.checkout_request_id
        payment.merchant_request_id = result.merchant_request_id
        payment.gateway_response = {'push': result.raw_response}
        db.session.commit()

        payment.status_check_task_ids = schedule_status_checks(payment)
        db.session.commit()

        AuditService.log_event(
            payment_id=payment.id,
            event_type='payment.push_sent',
            event_data={
                'checkout_request_id': result.checkout_request_id,
                'merchant_request_id': result.merchant_request_id,
                'customer_message': result.customer_message
            },
            user_id=user_reference
        )

        payment_notifier.notify(payment, 'payment.initiated')

        logger.info(f'STK push sent for payment {payment.id} (checkout {result.checkout_request_id})')

        return payment

    @staticmethod
    def verify_payment(payment_id: uuid.UUID) -> Payment:
        """
        Ask the gateway for the outcome of a pending payment

        Settled payments are returned unchanged.
        """
        payment = PaymentService.get_payment(payment_id)

        if not payment.is_pending or not payment.checkout_request_id:
            return payment

        outcome = ReconciliationService.reconcile_status_query(payment)
        logger.info(f'Verification of payment {payment.id}: {outcome}')

        db.session.refresh(payment)
        return payment

    @staticmethod
    def cancel_payment(payment_id: uuid.UUID, reason: Optional[str] = None, user_id: Optional[str] = None) -> Payment:
        """Abandon a pending payment, e.g. when its order is cancelled"""
        payment = PaymentService.get_payment(payment_id)

        transition(payment, PaymentStatus.CANCELLED, failure_reason=reason or 'Cancelled')
        cancel_status_checks(payment)

        AuditService.log_event(
            payment_id=payment.id,
            event_type='payment.cancelled',
            event_data={'reason': reason},
            user_id=user_id
        )

        payment_notifier.notify(payment, 'payment.cancelled')

        return payment

    @staticmethod
    def refund_payment(
            payment_id: uuid.UUID,
            amount: Optional[Any] = None,
            reason: Optional[str] = None,
            user_id: Optional[str] = None
    ) -> Payment:
        """
        Refund a completed payment

        Args:
            payment_id: Payment UUID
            amount: Refund amount (None for full refund)
            reason: Refund reason

        Returns:
            The payment, ``refunded`` for a manual refund. A gateway reversal
            leaves it ``completed`` until the reversal result arrives.

        Raises:
            InvalidTransitionError: payment not completed, or a reversal is already in flight
        """
        payment = PaymentService._lock_payment(payment_id)

        try:
            if payment.status != PaymentStatus.COMPLETED.value:
                raise InvalidTransitionError(payment.status, PaymentStatus.REFUNDED.value)

            if payment.reversal_conversation_id:
                raise InvalidTransitionError(
                    payment.status, PaymentStatus.REFUNDED.value,
                    message=f'Payment {payment.id} already has a reversal awaiting the gateway result'
                )

            refund_amount = Decimal(validate_amount(amount)) if amount is not None else Decimal(payment.amount)
            if refund_amount > Decimal(payment.amount):
                raise ValidationError(f'Refund amount {refund_amount} exceeds payment amount {payment.amount}')
        except AppError:
            db.session.rollback()
            raise

        gateway_response = dict(payment.gateway_response or {})
        client = get_gateway_client()

        if client.supports_reversal:
            # The row stays locked until the conversation ID is stored, so a
            # concurrent refund cannot send a second reversal
            try:
                reversal = client.request_reversal(
                    transaction_id=payment.mpesa_receipt_number,
                    amount=refund_amount,
                    reason=reason
                )
            except (GatewayRejection, RetryableGatewayError, AuthenticationError) as e:
                db.session.rollback()
                AuditService.log_event(
                    payment_id=payment.id,
                    event_type='refund.failed',
                    event_data={'error': e.message},
                    user_id=user_id
                )
                raise

            gateway_response['reversal'] = dict(reversal, amount=str(refund_amount), reason=reason)
            payment.gateway_response = gateway_response
            payment.reversal_conversation_id = reversal.get('conversation_id') or reversal.get(
                'originator_conversation_id'
            )
            db.session.commit()

            AuditService.log_event(
                payment_id=payment.id,
                event_type='refund.requested',
                event_data={
                    'amount': str(refund_amount),
                    'reason': reason,
                    'conversation_id': payment.reversal_conversation_id
                },
                user_id=user_id
            )

            return payment

        logger.warning(f'Reversal credentials not configured; payment {payment.id} refunded manually')
        gateway_response['reversal'] = {'manual': True, 'amount': str(refund_amount), 'reason': reason}

        transition(
            payment,
            PaymentStatus.REFUNDED,
            refund_amount=refund_amount,
            refund_reason=reason,
            refunded_at=datetime.utcnow(),
            gateway_response=gateway_response
        )

        AuditService.log_event(
            payment_id=payment.id,
            event_type='refund.completed',
            event_data=gateway_response['reversal'],
            user_id=user_id
        )

        payment_notifier.notify(payment, 'payment.refunded')

        return payment

    @staticmethod
    def resolve_dispute(
            payment_id: uuid.UUID,
            resolution: str,
            note: Optional[str] = None,
            user_id: Optional[str] = None
    ) -> Payment:
        """
        Settle a disputed payment after manual review

        Args:
            resolution: 'completed' to accept the gateway's receipt, 'failed' to reject it
        """
        payment = PaymentService.get_payment(payment_id)

        if payment.status != PaymentStatus.DISPUTED.value:
            raise InvalidTransitionError(
                payment.status, resolution,
                message=f'Payment {payment.id} is {payment.status}, only disputed payments can be resolved'
            )

        if resolution == PaymentStatus.COMPLETED.value:
            transition(
                payment,
                PaymentStatus.COMPLETED,
                gateway_transaction_id=payment.mpesa_receipt_number,
                processed_at=datetime.utcnow()
            )
        elif resolution == PaymentStatus.FAILED.value:
            transition(payment, PaymentStatus.FAILED, failure_reason=note or payment.failure_reason)
        else:
            raise ValidationError(f"Resolution must be 'completed' or 'failed', got {resolution!r}")

        AuditService.log_event(
            payment_id=payment.id,
            event_type='payment.resolved',
            event_data={'resolution': resolution, 'note': note},
            user_id=user_id
        )

        payment_notifier.notify(payment, f'payment.{payment.status}')

        return payment

    @staticmethod
    def get_payment(payment_id: uuid.UUID) -> Payment:
        """Get payment by ID"""
        try:
            key = payment_id if isinstance(payment_id, uuid.UUID) else uuid.UUID(str(payment_id))
        except ValueError:
            raise PaymentNotFound(f'Payment {payment_id} not found')

        payment = db.session.get(Payment, key)

        if not payment:
            raise PaymentNotFound(f'Payment {payment_id} not found')

        return payment

    @staticmethod
    def _lock_payment(payment_id: uuid.UUID) -> Payment:
        """Load a payment FOR UPDATE; the lock lasts until the next commit or rollback"""
        payment = PaymentService.get_payment(payment_id)

        return (
            Payment.query
            .filter_by(id=payment.id)
            .with_for_update()
            .populate_existing()
            .one()
        )

    @staticmethod
    def list_payments(
            status: Optional[str] = None,
            order_reference: Optional[str] = None,
            user_reference: Optional[str] = None,
            page: int = 1,
            per_page: int = 20
    ):
        """Paginated payments, newest first"""
        query = Payment.query

        if status:
            query = query.filter_by(status=status)
        if order_reference:
            query = query.filter_by(order_reference=order_reference)
        if user_reference:
            query = query.filter_by(user_reference=user_reference)

        return query.order_by(Payment.created_at.desc()).paginate(
            page=page,
            per_page=per_page,
            error_out=False
        )

    @staticmethod
    def _fail(payment: Payment, reason: str, response: dict) -> None:
        transition(payment, PaymentStatus.FAILED, failure_reason=reason, gateway_response={'push': response})

        AuditService.log_event(
            payment_id=payment.id,
            event_type='payment.failed',
            event_data={'reason': reason}
        )

        payment_notifier.notify(payment, 'payment.failed')
