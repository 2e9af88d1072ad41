"""
Custom Decorators
Access control and request guards for the payment endpoints
"""

from functools import wraps
from flask import request, jsonify
from flask_jwt_extended import verify_jwt_in_request, get_jwt

# JWT claim set by the FoodHub auth service for staff accounts
ADMIN_CLAIM = 'is_admin'


def admin_required(f):
    """Only staff tokens may reconcile, resolve or refund payments"""

    @wraps(f)
    def decorated_function(*args, **kwargs):
        verify_jwt_in_request()

        if not get_jwt().get(ADMIN_CLAIM, False):
            return jsonify({
                'success': False,
                'error': 'Forbidden',
                'message': 'Payment administration requires a staff account'
            }), 403

        return f(*args, **kwargs)

    return decorated_function


def validate_content_type(content_type='application/json'):
    """
    Reject bodies that are not ``content_type`` with 415

    Usage:
        @validate_content_type('application/json')
        def initiate_stk_push():
            ...
    """

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not (request.mimetype or '').startswith(content_type):
                return jsonify({
                    'success': False,
                    'error': 'Unsupported media type',
                    'message': f'Send the payment request as {content_type}'
                }), 415

            return f(*args, **kwargs)

        return decorated_function

    return decorator
