import json
from functools import wraps
from flask import request, jsonify
from flask_jwt_extended import get_jwt_identity, verify_jwt_in_request

from foodhub.extensions import redis_client


class IdempotencyService:
    """Replay responses for repeated Idempotency-Key requests using Redis"""

    DEFAULT_TTL = 86400  # 24 hours

    @staticmethod
    def get_key(idempotency_key: str, scope: str = '') -> str:
        """Generate Redis key for idempotency"""
        if scope:
            return f'idempotency:{scope}:{idempotency_key}'
        return f'idempotency:{idempotency_key}'

    @staticmethod
    def get_cached_response(idempotency_key: str, scope: str = ''):
        """Get cached response for idempotency key"""
        key = IdempotencyService.get_key(idempotency_key, scope)
        cached = redis_client.get(key)

        if cached:
            return json.loads(cached)
        return None

    @staticmethod
    def cache_response(idempotency_key: str, response_data: dict, status_code: int,
                       ttl: int = DEFAULT_TTL, scope: str = ''):
        """Cache response for future idempotent requests"""
        key = IdempotencyService.get_key(idempotency_key, scope)
        redis_client.set(key, json.dumps({'status_code': status_code, 'body': response_data}), ex=ttl)

    @staticmethod
    def delete_cached_response(idempotency_key: str, scope: str = ''):
        """Delete cached response"""
        key = IdempotencyService.get_key(idempotency_key, scope)
        redis_client.delete(key)


def idempotent(ttl: int = IdempotencyService.DEFAULT_TTL):
    """Decorator to make endpoints idempotent"""

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            # Get idempotency key from header
            idempotency_key = request.headers.get('Idempotency-Key')

            if not idempotency_key:
                return jsonify({
                    'success': False,
                    'error': 'Missing Idempotency-Key header',
                    'message': 'Payment requests require an Idempotency-Key header'
                }), 400

            # Keys are per caller: two users may pick the same key
            verify_jwt_in_request(optional=True)
            identity = get_jwt_identity()
            scope = f'{identity}:{request.path}' if identity else request.path

            # Check for cached response
            cached = IdempotencyService.get_cached_response(idempotency_key, scope)

            if cached:
                return jsonify(cached['body']), cached['status_code']

            result = f(*args, **kwargs)

            # Server errors are not cached so the client can retry with the same key
            if isinstance(result, tuple):
                response_data, status_code = result
                if status_code < 500:
                    if hasattr(response_data, 'get_json'):
                        response_json = response_data.get_json()
                    else:
                        response_json = response_data
                    IdempotencyService.cache_response(idempotency_key, response_json, status_code, ttl, scope)

            return result

        return decorated_function

    return decorator
