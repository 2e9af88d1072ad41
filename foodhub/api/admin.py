"""
Admin API Endpoints
Manual reconciliation of disputed payments and unmatched callbacks
"""

from flask import Blueprint, request, jsonify
from flask_jwt_extended import get_jwt_identity
from marshmallow import ValidationError as SchemaValidationError

from foodhub.api.payments import error_response
from foodhub.errors import AppError
from foodhub.models import PaymentStatus
from foodhub.schemas.callback_schema import CallbackEventSchema, AuditLogSchema
from foodhub.schemas.payment_schema import (
    AdminPaymentSchema,
    RefundPaymentSchema,
    ResolveDisputeSchema
)
from foodhub.services.audit_service import AuditService
from foodhub.services.idempotency_service import idempotent
from foodhub.services.payment_service import PaymentService
from foodhub.services.reconciliation_service import ReconciliationService
from foodhub.utils.decorators import admin_required

admin_bp = Blueprint('admin', __name__)

payment_schema = AdminPaymentSchema()
refund_schema = RefundPaymentSchema()
resolve_schema = ResolveDisputeSchema()
callback_event_schema = CallbackEventSchema()
audit_log_schema = AuditLogSchema()


@admin_bp.route('/payments/disputed', methods=['GET'])
@admin_required
def list_disputed_payments():
    """
    Payments whose callback failed the amount check

    Query Parameters:
        - page: Page number (default: 1)
        - per_page: Items per page (default: 20, max: 100)
    """
    page = request.args.get('page', 1, type=int)
    per_page = min(request.args.get('per_page', 20, type=int), 100)

    pagination = PaymentService.list_payments(
        status=PaymentStatus.DISPUTED.value,
        page=page,
        per_page=per_page
    )

    return jsonify({
        'success': True,
        'data': {
            'items': payment_schema.dump(pagination.items, many=True),
            'total': pagination.total
        }
    }), 200


@admin_bp.route('/payments/<uuid:payment_id>', methods=['GET'])
@admin_required
def get_payment_details(payment_id):
    """Payment with gateway responses, for manual review"""
    try:
        payment = PaymentService.get_payment(payment_id)

        return jsonify({
            'success': True,
            'data': payment_schema.dump(payment)
        }), 200

    except AppError as e:
        return error_response(e)


@admin_bp.route('/payments/<uuid:payment_id>/resolve', methods=['POST'])
@admin_required
def resolve_dispute(payment_id):
    """
    Resolve a disputed payment

    Body:
        {
            "resolution": "completed" | "failed",
            "note": "Customer paid 450, difference collected in cash"
        }
    """
    try:
        data = resolve_schema.load(request.get_json(silent=True) or {})

        payment = PaymentService.resolve_dispute(
            payment_id,
            resolution=data['resolution'],
            note=data.get('note'),
            user_id=str(get_jwt_identity())
        )

        return jsonify({
            'success': True,
            'data': payment_schema.dump(payment)
        }), 200

    except SchemaValidationError as e:
        return jsonify({
            'success': False,
            'error': 'Validation error',
            'details': e.messages
        }), 400

    except AppError as e:
        return error_response(e)


@admin_bp.route('/payments/<uuid:payment_id>/refund', methods=['POST'])
@admin_required
@idempotent(ttl=86400)
def refund_payment(payment_id):
    """
    Refund a completed payment

    Headers:
        - Idempotency-Key: UUID v4 for request idempotency

    Body:
        {
            "amount": 500,  // Optional, full refund if not specified
            "reason": "Order not delivered"
        }
    """
    try:
        data = refund_schema.load(request.get_json(silent=True) or {})

        payment = PaymentService.refund_payment(
            payment_id,
            amount=data.get('amount'),
            reason=data.get('reason'),
            user_id=str(get_jwt_identity())
        )

        # A gateway reversal settles later through the reversal result URL
        if payment.status == PaymentStatus.REFUNDED.value:
            return jsonify({
                'success': True,
                'data': payment_schema.dump(payment)
            }), 200

        return jsonify({
            'success': True,
            'message': 'Reversal requested; the payment moves to refunded when M-Pesa confirms it',
            'data': payment_schema.dump(payment)
        }), 202

    except SchemaValidationError as e:
        return jsonify({
            'success': False,
            'error': 'Validation error',
            'details': e.messages
        }), 400

    except AppError as e:
        return error_response(e)


@admin_bp.route('/payments/<uuid:payment_id>/audit', methods=['GET'])
@admin_required
def get_audit_trail(payment_id):
    """Full event trail for a payment"""
    try:
        PaymentService.get_payment(payment_id)
    except AppError as e:
        return error_response(e)

    logs = AuditService.get_payment_audit_trail(payment_id)

    return jsonify({
        'success': True,
        'data': audit_log_schema.dump(logs, many=True)
    }), 200


@admin_bp.route('/callbacks/unmatched', methods=['GET'])
@admin_required
def list_unmatched_callbacks():
    """Callbacks that did not settle a payment and await manual reconciliation"""
    events = ReconciliationService.get_unmatched_callbacks()

    return jsonify({
        'success': True,
        'data': callback_event_schema.dump(events, many=True)
    }), 200


@admin_bp.route('/callbacks/<uuid:event_id>/reprocess', methods=['POST'])
@admin_required
def reprocess_callback(event_id):
    """Run a stored callback through reconciliation again"""
    try:
        outcome = ReconciliationService.reprocess_callback(event_id)
    except ValueError as e:
        return jsonify({
            'success': False,
            'error': str(e)
        }), 404

    return jsonify({
        'success': True,
        'data': {'event_id': str(event_id), 'outcome': outcome}
    }), 200
