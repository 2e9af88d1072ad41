import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, Uuid
from sqlalchemy.dialects.postgresql import JSONB

from foodhub.extensions import db

# JSONB on PostgreSQL, plain JSON on SQLite
JsonType = JSON().with_variant(JSONB(), 'postgresql')


class PaymentStatus(str, Enum):
    PENDING = 'pending'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'
    REFUNDED = 'refunded'
    DISPUTED = 'disputed'


class PaymentMethod(str, Enum):
    MPESA = 'mpesa'
    CARD = 'card'
    CASH = 'cash'
    BANK_TRANSFER = 'bank_transfer'


class Payment(db.Model):
    __tablename__ = 'payments'

    id = db.Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    idempotency_key = db.Column(db.String(255), unique=True, index=True)

    # Owning order and customer, both managed outside this service
    order_reference = db.Column(db.String(64), nullable=False, index=True)
    user_reference = db.Column(db.String(64), index=True)

    # Payment details
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default='KES')
    method = db.Column(db.String(20), nullable=False, default=PaymentMethod.MPESA.value)
    status = db.Column(db.String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True)

    # Gateway correlation
    checkout_request_id = db.Column(db.String(100), unique=True, index=True)
    merchant_request_id = db.Column(db.String(100))
    mpesa_receipt_number = db.Column(db.String(50), index=True)
    gateway_transaction_id = db.Column(db.String(100))
    gateway_response = db.Column(JsonType)

    # Charge details
    phone_number = db.Column(db.String(15))
    account_reference = db.Column(db.String(12))
    description = db.Column(db.String(255))

    # Settlement
    processed_at = db.Column(db.DateTime)
    failure_reason = db.Column(db.Text)
    refund_amount = db.Column(db.Numeric(12, 2))
    refund_reason = db.Column(db.Text)
    refunded_at = db.Column(db.DateTime)
    # Latest gateway reversal; cleared again if the gateway reports it failed
    reversal_conversation_id = db.Column(db.String(100), unique=True, index=True)

    status_check_task_ids = db.Column(JsonType)

    # Timestamps
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    audit_logs = db.relationship('AuditLog', backref='payment', lazy='dynamic')
    callback_events = db.relationship('CallbackEvent', backref='payment', lazy='dynamic')

    @property
    def is_pending(self) -> bool:
        return self.status == PaymentStatus.PENDING.value

    def to_dict(self):
        return {
            'id': str(self.id),
            'order_reference': self.order_reference,
            'user_reference': self.user_reference,
            'amount': str(self.amount) if self.amount is not None else None,
            'currency': self.currency,
            'method': self.method,
            'status': self.status,
            'phone_number': self.phone_number,
            'checkout_request_id': self.checkout_request_id,
            'merchant_request_id': self.merchant_request_id,
            'mpesa_receipt_number': self.mpesa_receipt_number,
            'gateway_transaction_id': self.gateway_transaction_id,
            'failure_reason': self.failure_reason,
            'refund_amount': str(self.refund_amount) if self.refund_amount is not None else None,
            'refund_reason': self.refund_reason,
            'processed_at': self.processed_at.isoformat() if self.processed_at else None,
            'refunded_at': self.refunded_at.isoformat() if self.refunded_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None
        }

    def __repr__(self):
        return f'<Payment {self.id} - {self.status}>'
