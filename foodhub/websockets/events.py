from flask_socketio import emit, join_room, leave_room

from foodhub.extensions import socketio
from foodhub.models import Payment
from foodhub.utils.logger import get_logger

logger = get_logger(__name__)


@socketio.on('connect')
def handle_connect():
    """Handle client connection"""
    logger.info('Socket client connected')
    emit('connected', {'message': 'Connected to payment updates'})


@socketio.on('disconnect')
def handle_disconnect():
    """Handle client disconnection"""
    logger.info('Socket client disconnected')


@socketio.on('subscribe_payment')
def handle_subscribe_payment(data):
    """Subscribe to payment updates"""
    payment_id = (data or {}).get('payment_id')
    if payment_id:
        room = f'payment_{payment_id}'
        join_room(room)
        emit('subscribed', {
            'message': f'Subscribed to payment {payment_id}',
            'room': room
        })


@socketio.on('unsubscribe_payment')
def handle_unsubscribe_payment(data):
    """Unsubscribe from payment updates"""
    payment_id = (data or {}).get('payment_id')
    if payment_id:
        leave_room(f'payment_{payment_id}')
        emit('unsubscribed', {
            'message': f'Unsubscribed from payment {payment_id}'
        })


def emit_payment_update(payment: Payment, event_type: str):
    """
    Push a payment status change to subscribed clients

    Args:
        payment: Payment object
        event_type: Type of event (e.g., 'payment.completed')
    """
    message = {
        'event_type': event_type,
        'payment': payment.to_dict()
    }

    socketio.emit('payment_update', message, room=f'payment_{payment.id}')
