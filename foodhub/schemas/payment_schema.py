from marshmallow import Schema, fields, validate, validates, ValidationError

from foodhub.models import PaymentStatus


class InitiateMpesaPaymentSchema(Schema):
    """STK push initiation schema"""
    order_reference = fields.Str(required=True, validate=validate.Length(min=1, max=64))
    phone_number = fields.Str(required=True)
    amount = fields.Decimal(required=True)
    description = fields.Str(required=False, validate=validate.Length(max=255))
    currency = fields.Str(required=False, load_default='KES', validate=validate.OneOf(['KES']))

    @validates('amount')
    def validate_amount(self, value, **kwargs):
        if value <= 0:
            raise ValidationError('Amount must be greater than 0')
        if value != value.to_integral_value():
            raise ValidationError('Amount must be a whole number of shillings')


class RefundPaymentSchema(Schema):
    """Refund payment schema"""
    amount = fields.Decimal(required=False)
    reason = fields.Str(required=False, validate=validate.Length(max=255))

    @validates('amount')
    def validate_amount(self, value, **kwargs):
        if value is not None and value <= 0:
            raise ValidationError('Refund amount must be greater than 0')


class CancelPaymentSchema(Schema):
    reason = fields.Str(required=False, validate=validate.Length(max=255))


class ResolveDisputeSchema(Schema):
    """Manual resolution of a disputed payment"""
    resolution = fields.Str(
        required=True,
        validate=validate.OneOf([PaymentStatus.COMPLETED.value, PaymentStatus.FAILED.value])
    )
    note = fields.Str(required=False, validate=validate.Length(max=500))


class PaymentSchema(Schema):
    """Payment response schema"""
    id = fields.UUID(dump_only=True)
    order_reference = fields.Str(dump_only=True)
    user_reference = fields.Str(dump_only=True)
    amount = fields.Decimal(places=2, as_string=True, dump_only=True)
    currency = fields.Str(dump_only=True)
    method = fields.Str(dump_only=True)
    status = fields.Str(dump_only=True)
    phone_number = fields.Str(dump_only=True)
    account_reference = fields.Str(dump_only=True)
    description = fields.Str(dump_only=True)
    checkout_request_id = fields.Str(dump_only=True)
    merchant_request_id = fields.Str(dump_only=True)
    mpesa_receipt_number = fields.Str(dump_only=True)
    failure_reason = fields.Str(dump_only=True)
    refund_amount = fields.Decimal(places=2, as_string=True, dump_only=True)
    refund_reason = fields.Str(dump_only=True)
    processed_at = fields.DateTime(dump_only=True)
    refunded_at = fields.DateTime(dump_only=True)
    created_at = fields.DateTime(dump_only=True)
    updated_at = fields.DateTime(dump_only=True)


class AdminPaymentSchema(PaymentSchema):
    """Payment schema with gateway internals, for manual review"""
    idempotency_key = fields.Str(dump_only=True)
    gateway_transaction_id = fields.Str(dump_only=True)
    gateway_response = fields.Dict(dump_only=True)
    status_check_task_ids = fields.List(fields.Str(), dump_only=True)
    reversal_conversation_id = fields.Str(dump_only=True)
