from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required, get_jwt_identity, get_jwt
from marshmallow import ValidationError as SchemaValidationError

from foodhub.errors import AppError, PaymentNotFound
from foodhub.schemas.callback_schema import StkCallbackSchema
from foodhub.schemas.payment_schema import (
    InitiateMpesaPaymentSchema,
    CancelPaymentSchema,
    PaymentSchema
)
from foodhub.services.idempotency_service import idempotent
from foodhub.services.payment_service import PaymentService
from foodhub.services.reconciliation_service import ReconciliationService
from foodhub.utils.decorators import validate_content_type
from foodhub.utils.logger import get_logger

payments_bp = Blueprint('payments', __name__)
logger = get_logger(__name__)

initiate_schema = InitiateMpesaPaymentSchema()
cancel_schema = CancelPaymentSchema()
callback_schema = StkCallbackSchema()
payment_schema = PaymentSchema()

# Acknowledgement the gateway expects, whatever happened on our side
CALLBACK_ACK = {'ResultCode': 0, 'ResultDesc': 'Accepted'}


def error_response(e: AppError):
    return jsonify({
        'success': False,
        'error': e.error,
        'message': e.message
    }), e.status_code


def _schema_error(e: SchemaValidationError):
    return jsonify({
        'success': False,
        'error': 'Validation error',
        'details': e.messages
    }), 400


def _is_admin() -> bool:
    return bool(get_jwt().get('is_admin', False))


def _owned_payment(payment_id):
    """Load a payment the caller may see; other users' payments look missing"""
    payment = PaymentService.get_payment(payment_id)
    if not _is_admin() and payment.user_reference != str(get_jwt_identity()):
        raise PaymentNotFound(f'Payment {payment_id} not found')
    return payment


@payments_bp.route('/mpesa/stk-push', methods=['POST'])
@jwt_required()
@validate_content_type('application/json')
@idempotent(ttl=86400)
def initiate_stk_push():
    """
    Send an M-Pesa STK push for an order

    Headers:
        - Authorization: Bearer <JWT>
        - Idempotency-Key: UUID v4 for request idempotency

    Body:
        {
            "order_reference": "ORD-12345",
            "phone_number": "0712345678",
            "amount": 500,
            "description": "FoodHub order"
        }
    """
    try:
        data = initiate_schema.load(request.get_json(silent=True) or {})

        payment = PaymentService.initiate_mpesa_payment(
            order_reference=data['order_reference'],
            phone_number=data['phone_number'],
            amount=data['amount'],
            description=data.get('description'),
            user_reference=str(get_jwt_identity()),
            currency=data['currency'],
            idempotency_key=request.headers.get('Idempotency-Key')
        )

        return jsonify({
            'success': True,
            'message': 'Enter your M-Pesa PIN on your phone to complete the payment',
            'data': payment_schema.dump(payment)
        }), 201

    except SchemaValidationError as e:
        return _schema_error(e)

    except AppError as e:
        return error_response(e)

    except Exception as e:
        logger.exception(f'STK push failed: {str(e)}')
        return jsonify({
            'success': False,
            'error': str(e)
        }), 500


@payments_bp.route('/mpesa/callback', methods=['POST'])
def mpesa_callback():
    """
    Receive the asynchronous STK result from Safaricom

    Always acknowledged with 200; malformed, unmatched and failed callbacks are
    stored for manual reconciliation instead of being bounced back.
    """
    payload = request.get_json(silent=True)

    if payload is None:
        logger.error(f'M-Pesa callback with unparseable body: {request.get_data(as_text=True)[:500]}')
        return jsonify(CALLBACK_ACK), 200

    try:
        errors = callback_schema.validate(payload) if isinstance(payload, dict) else {'_schema': ['Not an object']}
        if errors:
            logger.warning(f'M-Pesa callback failed schema validation: {errors}')

        event = ReconciliationService.receive_callback(payload)
        outcome = ReconciliationService.process_callback(event.id)

        logger.info(f'M-Pesa callback {event.id} for {event.checkout_request_id}: {outcome}')

    except Exception as e:
        logger.exception(f'M-Pesa callback could not be stored: {str(e)}')

    return jsonify(CALLBACK_ACK), 200


@payments_bp.route('/mpesa/reversal/result', methods=['POST'])
@payments_bp.route('/mpesa/reversal/timeout', methods=['POST'])
def mpesa_reversal_result():
    """
    Receive the asynchronous outcome of a refund reversal

    Configure MPESA_RESULT_URL and MPESA_QUEUE_TIMEOUT_URL to point here.
    """
    payload = request.get_json(silent=True)

    if not isinstance(payload, dict) or not isinstance(payload.get('Result'), dict):
        logger.error(f'M-Pesa reversal result without a Result object: {request.get_data(as_text=True)[:500]}')
        return jsonify(CALLBACK_ACK), 200

    try:
        event = ReconciliationService.receive_callback(payload)
        outcome = ReconciliationService.process_callback(event.id)

        logger.info(f'M-Pesa reversal result {event.id} for {event.checkout_request_id}: {outcome}')

    except Exception as e:
        logger.exception(f'M-Pesa reversal result could not be stored: {str(e)}')

    return jsonify(CALLBACK_ACK), 200


@payments_bp.route('/<uuid:payment_id>', methods=['GET'])
@jwt_required()
def get_payment(payment_id):
    """
    Get payment details

    Path Parameters:
        - payment_id: Payment UUID
    """
    try:
        payment = _owned_payment(payment_id)

        return jsonify({
            'success': True,
            'data': payment_schema.dump(payment)
        }), 200

    except AppError as e:
        return error_response(e)


@payments_bp.route('/<uuid:payment_id>/verify', methods=['POST'])
@jwt_required()
def verify_payment(payment_id):
    """
    Query the gateway for the outcome of a pending payment

    Path Parameters:
        - payment_id: Payment UUID
    """
    try:
        _owned_payment(payment_id)
        payment = PaymentService.verify_payment(payment_id)

        return jsonify({
            'success': True,
            'data': payment_schema.dump(payment)
        }), 200

    except AppError as e:
        return error_response(e)

    except Exception as e:
        logger.exception(f'Verification of payment {payment_id} failed: {str(e)}')
        return jsonify({
            'success': False,
            'error': str(e)
        }), 500


@payments_bp.route('/<uuid:payment_id>/cancel', methods=['POST'])
@jwt_required()
def cancel_payment(payment_id):
    """
    Cancel a pending payment

    Body:
        {
            "reason": "Order cancelled by customer"
        }
    """
    try:
        data = cancel_schema.load(request.get_json(silent=True) or {})

        _owned_payment(payment_id)
        payment = PaymentService.cancel_payment(
            payment_id,
            reason=data.get('reason'),
            user_id=str(get_jwt_identity())
        )

        return jsonify({
            'success': True,
            'data': payment_schema.dump(payment)
        }), 200

    except SchemaValidationError as e:
        return _schema_error(e)

    except AppError as e:
        return error_response(e)


@payments_bp.route('', methods=['GET'])
@jwt_required()
def list_payments():
    """
    List payments with filters

    Query Parameters:
        - status: Filter by status (optional)
        - order_reference: Filter by order (optional)
        - page: Page number (default: 1)
        - per_page: Items per page (default: 20, max: 100)
    """
    try:
        page = int(request.args.get('page', 1))
        per_page = min(int(request.args.get('per_page', 20)), 100)
    except ValueError:
        return jsonify({
            'success': False,
            'error': 'Validation error',
            'message': 'page and per_page must be integers'
        }), 400

    # Customers only ever see their own payments
    user_reference = request.args.get('user_reference') if _is_admin() else str(get_jwt_identity())

    pagination = PaymentService.list_payments(
        status=request.args.get('status'),
        order_reference=request.args.get('order_reference'),
        user_reference=user_reference,
        page=page,
        per_page=per_page
    )

    return jsonify({
        'success': True,
        'data': {
            'items': payment_schema.dump(pagination.items, many=True),
            'pagination': {
                'page': pagination.page,
                'per_page': pagination.per_page,
                'total': pagination.total,
                'pages': pagination.pages,
                'has_next': pagination.has_next,
                'has_prev': pagination.has_prev
            }
        }
    }), 200
