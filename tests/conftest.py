"""
Pytest Configuration and Fixtures
"""
from decimal import Decimal
from unittest.mock import Mock, patch

import fakeredis
import pytest
from flask_jwt_extended import create_access_token

from foodhub import create_app
from foodhub.extensions import db as _db
from foodhub.models import Payment, PaymentStatus
from foodhub.providers import SettlementResult, reset_providers
from foodhub.providers.mpesa_provider import MPesaGatewayClient
from foodhub.services.notification_service import payment_notifier


@pytest.fixture(scope='function')
def app():
    """Create application for testing"""
    app = create_app('testing')

    # Establish application context
    ctx = app.app_context()
    ctx.push()

    _db.create_all()

    yield app

    _db.session.remove()
    _db.drop_all()
    reset_providers(app)
    ctx.pop()


@pytest.fixture(scope='function')
def db(app):
    return _db


@pytest.fixture(scope='function')
def session(db):
    """Database session for a test"""
    return db.session


@pytest.fixture(scope="function")
def redis_client():
    """
    Fake Redis for tests + patch the app redis client.
    """
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)

    with patch("foodhub.services.idempotency_service.redis_client", fake_redis):
        yield fake_redis

    fake_redis.flushall()


@pytest.fixture(autouse=True)
def clear_redis(redis_client):
    yield
    redis_client.flushall()


@pytest.fixture(scope='function')
def notifications(app):
    """Records every (payment_id, event_type) the notifier sends"""
    events = []

    def record(payment, event_type):
        events.append((payment.id, event_type))

    payment_notifier.subscribe(record)
    yield events
    payment_notifier.unsubscribe(record)


@pytest.fixture(scope='function')
def client(app):
    """Create a test client"""
    return app.test_client()


@pytest.fixture(scope='function')
def auth_headers(app):
    token = create_access_token(identity='user-1')
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def admin_headers(app):
    token = create_access_token(identity='admin-1', additional_claims={'is_admin': True})
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def no_status_checks():
    """Stop initiate from queueing the delayed status queries"""
    with patch('foodhub.services.payment_service.schedule_status_checks', return_value=['task-1', 'task-2']) as m:
        yield m


@pytest.fixture(scope='function')
def sample_payment(session):
    """A pending payment awaiting its callback"""
    payment = Payment(
        idempotency_key='test-idempotency-key-123',
        order_reference='ORD-123',
        user_reference='user-1',
        amount=Decimal('500.00'),
        currency='KES',
        method='mpesa',
        status=PaymentStatus.PENDING.value,
        phone_number='254712345678',
        account_reference='ORD-123',
        description='Order ORD-123',
        checkout_request_id='ws_CO_191220191020363925',
        merchant_request_id='29115-34620561-1'
    )

    session.add(payment)
    session.commit()

    return payment


def _stk_callback(checkout_request_id, result_code=0, amount=500, receipt='NLJ7RT61SV',
                 result_desc=None, phone=254712345678):
    """Body posted by Safaricom to the callback URL"""
    stk = {
        'MerchantRequestID': '29115-34620561-1',
        'CheckoutRequestID': checkout_request_id,
        'ResultCode': result_code,
        'ResultDesc': result_desc or (
            'The service request is processed successfully.' if result_code == 0
            else 'Request cancelled by user'
        ),
    }
    if result_code == 0:
        stk['CallbackMetadata'] = {
            'Item': [
                {'Name': 'Amount', 'Value': amount},
                {'Name': 'MpesaReceiptNumber', 'Value': receipt},
                {'Name': 'TransactionDate', 'Value': 20191219102115},
                {'Name': 'PhoneNumber', 'Value': phone},
            ]
        }
    return {'Body': {'stkCallback': stk}}


def _http_response(status_code=200, json_data=None, text=None):
    """Stand-in for requests.Response"""
    resp = Mock()
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 400
    if json_data is None:
        resp.json.side_effect = ValueError('No JSON')
        resp.text = text or ''
    else:
        resp.json.return_value = json_data
        resp.text = text or str(json_data)
    return resp


@pytest.fixture(scope='function')
def mpesa_token():
    """Successful OAuth token endpoint"""
    with patch('foodhub.providers.mpesa_auth.requests.get') as mock_get:
        mock_get.return_value = _http_response(200, {'access_token': 'test-token', 'expires_in': '3599'})
        yield mock_get


@pytest.fixture
def stk_callback():
    return _stk_callback


@pytest.fixture
def http_response():
    return _http_response


@pytest.fixture(scope='function')
def gateway_confirms():
    """Status query that agrees the customer paid; set return_value/side_effect to disagree"""

    def paid(checkout_request_id):
        return SettlementResult(
            checkout_request_id=checkout_request_id,
            result_code=0,
            result_desc='The service request is processed successfully.',
            source='status_query'
        )

    with patch.object(MPesaGatewayClient, 'query_status', side_effect=paid) as mock_query:
        yield mock_query


def _reversal_result(conversation_id, result_code=0, result_desc=None, transaction_id='OAR0000000'):
    """Body posted by Safaricom to the reversal result URL"""
    return {
        'Result': {
            'ResultType': 0,
            'ResultCode': result_code,
            'ResultDesc': result_desc or (
                'The service request is processed successfully.' if result_code == 0
                else 'The transaction has already been reversed.'
            ),
            'OriginatorConversationID': '10819-695089-1',
            'ConversationID': conversation_id,
            'TransactionID': transaction_id,
        }
    }


@pytest.fixture
def reversal_result():
    return _reversal_result
