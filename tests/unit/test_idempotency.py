"""
Unit Tests for Idempotency Service
"""

from flask import jsonify
from flask_jwt_extended import create_access_token

from foodhub.services.idempotency_service import IdempotencyService, idempotent


class TestIdempotencyService:
    """Test cases for IdempotencyService"""

    def test_get_key(self):
        assert IdempotencyService.get_key('test-key-123') == 'idempotency:test-key-123'
        assert IdempotencyService.get_key('k', scope='/api/v1/x') == 'idempotency:/api/v1/x:k'

    def test_get_cached_response_not_found(self, redis_client):
        assert IdempotencyService.get_cached_response('nonexistent-key') is None

    def test_cache_and_get_response(self, redis_client):
        IdempotencyService.cache_response('test-key', {'success': True, 'data': 'test'}, 201, ttl=60)

        cached = IdempotencyService.get_cached_response('test-key')

        assert cached == {'status_code': 201, 'body': {'success': True, 'data': 'test'}}
        assert 0 < redis_client.ttl('idempotency:test-key') <= 60

    def test_delete_cached_response(self, redis_client):
        IdempotencyService.cache_response('test-key', {'success': True}, 200)
        IdempotencyService.delete_cached_response('test-key')

        assert IdempotencyService.get_cached_response('test-key') is None


class TestIdempotentDecorator:

    def _view(self, status_code):
        calls = []

        @idempotent(ttl=60)
        def view():
            calls.append(1)
            return jsonify({'success': status_code < 400, 'call': len(calls)}), status_code

        return view, calls

    def test_missing_header(self, app, redis_client):
        view, calls = self._view(201)

        with app.test_request_context('/pay', method='POST'):
            response, status = view()

        assert status == 400
        assert calls == []

    def test_replays_cached_response(self, app, redis_client):
        view, calls = self._view(201)

        for _ in range(2):
            with app.test_request_context('/pay', method='POST', headers={'Idempotency-Key': 'k1'}):
                response, status = view()

        assert status == 201
        assert response.get_json() == {'success': True, 'call': 1}
        assert len(calls) == 1

    def test_server_errors_are_not_cached(self, app, redis_client):
        view, calls = self._view(503)

        for _ in range(2):
            with app.test_request_context('/pay', method='POST', headers={'Idempotency-Key': 'k2'}):
                view()

        assert len(calls) == 2

    def test_same_key_from_different_users_is_not_shared(self, app, redis_client):
        view, calls = self._view(201)
        responses = []

        for user in ('user-1', 'user-2', 'user-1'):
            headers = {
                'Idempotency-Key': 'k1',
                'Authorization': f'Bearer {create_access_token(identity=user)}'
            }
            with app.test_request_context('/pay', method='POST', headers=headers):
                response, _ = view()
                responses.append(response.get_json())

        assert len(calls) == 2
        assert responses[0] == responses[2] == {'success': True, 'call': 1}
        assert responses[1] == {'success': True, 'call': 2}
        assert redis_client.exists('idempotency:user-1:/pay:k1', 'idempotency:user-2:/pay:k1') == 2
