import uuid
from datetime import datetime

from sqlalchemy import Uuid

from foodhub.extensions import db
from foodhub.models.payment import JsonType


class CallbackOutcome:
    COMPLETED = 'completed'
    FAILED = 'failed'
    DISPUTED = 'disputed'
    DUPLICATE = 'duplicate'
    UNKNOWN_PAYMENT = 'unknown_payment'
    INVALID = 'invalid'
    ERROR = 'error'
    UNCONFIRMED = 'unconfirmed'
    REFUNDED = 'refunded'
    REVERSAL_FAILED = 'reversal_failed'


class CallbackEvent(db.Model):
    """Raw gateway callback, kept whether or not it matched a payment."""
    __tablename__ = 'callback_events'

    id = db.Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    payment_id = db.Column(Uuid(as_uuid=True), db.ForeignKey('payments.id'), index=True)

    # CheckoutRequestID for STK callbacks, ConversationID for reversal results
    checkout_request_id = db.Column(db.String(100), index=True)
    payload = db.Column(JsonType, nullable=False)

    # Processing status
    processed = db.Column(db.Boolean, default=False, index=True)
    outcome = db.Column(db.String(30), index=True)
    error_message = db.Column(db.Text)

    # Timestamps
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    processed_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'id': str(self.id),
            'payment_id': str(self.payment_id) if self.payment_id else None,
            'checkout_request_id': self.checkout_request_id,
            'processed': self.processed,
            'outcome': self.outcome,
            'error_message': self.error_message,
            'payload': self.payload,
            'created_at': self.created_at.isoformat(),
            'processed_at': self.processed_at.isoformat() if self.processed_at else None
        }

    def __repr__(self):
        return f'<CallbackEvent {self.id} - {self.outcome}>'
