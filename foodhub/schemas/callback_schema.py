"""
Callback Schemas
"""

from marshmallow import Schema, fields, validates, ValidationError


class CallbackEventSchema(Schema):
    """Stored callback schema for responses"""
    id = fields.UUID(dump_only=True)
    payment_id = fields.UUID(dump_only=True)
    checkout_request_id = fields.Str(dump_only=True)
    payload = fields.Dict(dump_only=True)
    processed = fields.Bool(dump_only=True)
    outcome = fields.Str(dump_only=True)
    error_message = fields.Str(dump_only=True)
    created_at = fields.DateTime(dump_only=True)
    processed_at = fields.DateTime(dump_only=True)


class StkCallbackSchema(Schema):
    """M-Pesa STK callback envelope"""
    Body = fields.Dict(required=True)

    @validates('Body')
    def validate_body(self, value, **kwargs):
        if 'stkCallback' not in value:
            raise ValidationError('Missing stkCallback in Body')


class AuditLogSchema(Schema):
    id = fields.UUID(dump_only=True)
    payment_id = fields.UUID(dump_only=True)
    event_type = fields.Str(dump_only=True)
    event_data = fields.Dict(dump_only=True)
    user_id = fields.Str(dump_only=True)
    ip_address = fields.Str(dump_only=True)
    timestamp = fields.DateTime(dump_only=True)
