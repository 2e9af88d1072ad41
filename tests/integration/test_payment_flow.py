"""
Integration Tests for the STK push flow, end to end through the API
"""

from unittest.mock import patch

import pytest
import requests

from foodhub.extensions import db
from foodhub.models import AuditLog, Payment
from foodhub.providers import get_gateway_client

CALLBACK_URL = '/api/v1/payments/mpesa/callback'
STK_PUSH_URL = '/api/v1/payments/mpesa/stk-push'

PUSH_ACCEPTED = {
    'MerchantRequestID': '29115-34620561-1',
    'CheckoutRequestID': 'ws_1',
    'ResponseCode': '0',
    'ResponseDescription': 'Success. Request accepted for processing',
    'CustomerMessage': 'Success. Request accepted for processing'
}

QUERY_PAID = {
    'ResponseCode': '0',
    'ResponseDescription': 'The service request has been accepted successfully',
    'MerchantRequestID': '29115-34620561-1',
    'CheckoutRequestID': 'ws_1',
    'ResultCode': '0',
    'ResultDesc': 'The service request is processed successfully.'
}


@pytest.fixture
def gateway_post(app, mpesa_token):
    """Patch the HTTP session of the app's gateway client"""
    with patch.object(get_gateway_client()._session, 'post') as mock_post:
        yield mock_post


def start_payment(client, auth_headers, key='order-123-attempt-1', **overrides):
    body = {'order_reference': 'ORD-123', 'phone_number': '0712345678', 'amount': 500}
    body.update(overrides)
    return client.post(STK_PUSH_URL, json=body, headers={**auth_headers, 'Idempotency-Key': key})


class TestPaymentFlow:

    def test_push_then_callback_completes(self, client, auth_headers, gateway_post, http_response,
                                          stk_callback, no_status_checks):
        gateway_post.side_effect = [http_response(200, PUSH_ACCEPTED), http_response(200, QUERY_PAID)]

        response = start_payment(client, auth_headers)

        assert response.status_code == 201
        data = response.get_json()['data']
        assert data['status'] == 'pending'
        assert data['checkout_request_id'] == 'ws_1'
        assert data['phone_number'] == '254712345678'
        assert gateway_post.call_args.kwargs['json']['PhoneNumber'] == '254712345678'

        callback = client.post(CALLBACK_URL, json=stk_callback('ws_1', amount=500, receipt='ABC123'))

        assert callback.status_code == 200
        assert callback.get_json() == {'ResultCode': 0, 'ResultDesc': 'Accepted'}
        assert gateway_post.call_args.kwargs['json']['CheckoutRequestID'] == 'ws_1'

        payment = Payment.query.filter_by(checkout_request_id='ws_1').one()
        assert payment.status == 'completed'
        assert payment.mpesa_receipt_number == 'ABC123'

        status = client.get(f'/api/v1/payments/{payment.id}', headers=auth_headers)
        assert status.get_json()['data']['status'] == 'completed'

    def test_timeouts_then_success_makes_one_payment(self, client, auth_headers, gateway_post, mpesa_token,
                                                     http_response, no_status_checks):
        gateway_post.side_effect = [
            requests.Timeout('slow'),
            requests.Timeout('slow'),
            http_response(200, PUSH_ACCEPTED),
        ]

        response = start_payment(client, auth_headers)

        assert response.status_code == 201
        assert gateway_post.call_count == 3
        assert Payment.query.count() == 1

        # Each retry asked for a fresh token
        assert mpesa_token.call_count == 3

    def test_retry_exhaustion_returns_503(self, client, auth_headers, gateway_post, no_status_checks):
        gateway_post.side_effect = requests.Timeout('slow')

        response = start_payment(client, auth_headers)

        assert response.status_code == 503
        payment = Payment.query.one()
        assert payment.status == 'failed'
        assert payment.failure_reason == 'gateway unreachable'

    def test_rejection_returns_402(self, client, auth_headers, gateway_post, http_response, no_status_checks):
        gateway_post.return_value = http_response(200, dict(PUSH_ACCEPTED, ResponseCode='1',
                                                            ResponseDescription='Rejected'))

        response = start_payment(client, auth_headers)

        assert response.status_code == 402
        assert gateway_post.call_count == 1
        assert Payment.query.one().status == 'failed'

    def test_invalid_phone_never_reaches_gateway(self, client, auth_headers, gateway_post, no_status_checks):
        response = start_payment(client, auth_headers, phone_number='12345')

        assert response.status_code == 400
        gateway_post.assert_not_called()
        assert Payment.query.count() == 0

    def test_fractional_amount_is_rejected(self, client, auth_headers, gateway_post, no_status_checks):
        response = start_payment(client, auth_headers, amount='500.50')

        assert response.status_code == 400
        gateway_post.assert_not_called()

    def test_same_idempotency_key_replays(self, client, auth_headers, gateway_post, http_response,
                                          no_status_checks):
        gateway_post.return_value = http_response(200, PUSH_ACCEPTED)

        first = start_payment(client, auth_headers, key='same-key')
        second = start_payment(client, auth_headers, key='same-key')

        assert first.status_code == second.status_code == 201
        assert first.get_json() == second.get_json()
        assert gateway_post.call_count == 1

    def test_same_key_from_another_user_conflicts(self, client, auth_headers, gateway_post, http_response,
                                                  no_status_checks):
        from flask_jwt_extended import create_access_token
        other = {'Authorization': f'Bearer {create_access_token(identity="user-2")}'}
        gateway_post.return_value = http_response(200, PUSH_ACCEPTED)

        first = start_payment(client, auth_headers, key='k1')
        second = start_payment(client, other, key='k1', order_reference='ORD-777')

        assert first.status_code == 201
        assert second.status_code == 409
        assert 'data' not in second.get_json()
        assert first.get_json()['data']['id'] not in second.get_data(as_text=True)
        assert gateway_post.call_count == 1

    def test_callback_url_cannot_be_chosen_by_client(self, client, auth_headers, gateway_post, no_status_checks):
        response = start_payment(client, auth_headers, callback_url='https://attacker.example/cb')

        assert response.status_code == 400
        assert 'callback_url' in response.get_json()['details']
        gateway_post.assert_not_called()

    def test_missing_idempotency_key(self, client, auth_headers, gateway_post):
        response = client.post(STK_PUSH_URL, json={'order_reference': 'ORD-1', 'phone_number': '0712345678',
                                                   'amount': 1}, headers=auth_headers)

        assert response.status_code == 400

    def test_requires_jwt(self, client):
        response = client.post(STK_PUSH_URL, json={}, headers={'Idempotency-Key': 'k'})

        assert response.status_code == 401

    def test_verify_settles_from_status_query(self, client, auth_headers, gateway_post, http_response,
                                              no_status_checks):
        gateway_post.side_effect = [
            http_response(200, PUSH_ACCEPTED),
            http_response(200, {
                'ResponseCode': '0',
                'MerchantRequestID': '29115-34620561-1',
                'CheckoutRequestID': 'ws_1',
                'ResultCode': '1032',
                'ResultDesc': 'Request cancelled by user'
            }),
        ]

        payment_id = start_payment(client, auth_headers).get_json()['data']['id']
        response = client.post(f'/api/v1/payments/{payment_id}/verify', headers=auth_headers)

        assert response.status_code == 200
        data = response.get_json()['data']
        assert data['status'] == 'failed'
        assert data['failure_reason'] == 'Request cancelled by user'

    def test_other_users_cannot_see_payment(self, client, auth_headers, sample_payment):
        from flask_jwt_extended import create_access_token
        other = {'Authorization': f'Bearer {create_access_token(identity="user-2")}'}

        assert client.get(f'/api/v1/payments/{sample_payment.id}', headers=auth_headers).status_code == 200
        assert client.get(f'/api/v1/payments/{sample_payment.id}', headers=other).status_code == 404

    def test_cancel_then_late_callback_is_ignored(self, client, auth_headers, sample_payment, stk_callback):
        response = client.post(f'/api/v1/payments/{sample_payment.id}/cancel', json={'reason': 'Changed my mind'},
                               headers=auth_headers)
        assert response.status_code == 200
        assert response.get_json()['data']['status'] == 'cancelled'

        client.post(CALLBACK_URL, json=stk_callback(sample_payment.checkout_request_id))

        assert db.session.get(Payment, sample_payment.id).status == 'cancelled'
        assert AuditLog.query.filter_by(payment_id=sample_payment.id, event_type='payment.completed').count() == 0
