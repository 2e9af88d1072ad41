"""
Unit Tests for M-Pesa token management
"""

import logging
from unittest.mock import patch

import pytest
import requests

from foodhub.errors import AuthenticationError
from foodhub.providers.mpesa_auth import TokenManager


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def manager(clock):
    return TokenManager(
        base_url='https://sandbox.safaricom.co.ke',
        consumer_key='key',
        consumer_secret='secret',
        alert_threshold=3,
        clock=clock
    )


class TestTokenManager:

    def test_fetches_token_with_basic_auth(self, manager, http_response):
        with patch('foodhub.providers.mpesa_auth.requests.get') as mock_get:
            mock_get.return_value = http_response(200, {'access_token': 'abc', 'expires_in': '3599'})

            assert manager.get_access_token() == 'abc'

            args, kwargs = mock_get.call_args
            assert args[0] == 'https://sandbox.safaricom.co.ke/oauth/v1/generate'
            assert kwargs['params'] == {'grant_type': 'client_credentials'}
            assert kwargs['auth'] == ('key', 'secret')
            assert kwargs['timeout'] == 15

    def test_token_is_cached(self, manager, http_response):
        with patch('foodhub.providers.mpesa_auth.requests.get') as mock_get:
            mock_get.return_value = http_response(200, {'access_token': 'abc', 'expires_in': '3599'})

            manager.get_access_token()
            manager.get_access_token()

            assert mock_get.call_count == 1
            assert manager.has_valid_token

    def test_refreshes_inside_safety_margin(self, manager, clock, http_response):
        with patch('foodhub.providers.mpesa_auth.requests.get') as mock_get:
            mock_get.side_effect = [
                http_response(200, {'access_token': 'first', 'expires_in': '3599'}),
                http_response(200, {'access_token': 'second', 'expires_in': '3599'}),
            ]

            assert manager.get_access_token() == 'first'

            clock.now += 3599 - 60 - 1
            assert manager.get_access_token() == 'first'

            clock.now += 2
            assert manager.get_access_token() == 'second'

    def test_invalidate_forces_refresh(self, manager, http_response):
        with patch('foodhub.providers.mpesa_auth.requests.get') as mock_get:
            mock_get.return_value = http_response(200, {'access_token': 'abc', 'expires_in': '3599'})

            manager.get_access_token()
            manager.invalidate()

            assert not manager.has_valid_token
            manager.get_access_token()
            assert mock_get.call_count == 2

    def test_non_200_raises_with_raw_body(self, manager, http_response):
        with patch('foodhub.providers.mpesa_auth.requests.get') as mock_get:
            mock_get.return_value = http_response(400, {'errorMessage': 'Invalid credentials'}, text='bad creds')

            with pytest.raises(AuthenticationError) as exc_info:
                manager.get_access_token()

            assert exc_info.value.raw_body == 'bad creds'

    def test_missing_token_raises(self, manager, http_response):
        with patch('foodhub.providers.mpesa_auth.requests.get') as mock_get:
            mock_get.return_value = http_response(200, {'expires_in': '3599'})

            with pytest.raises(AuthenticationError):
                manager.get_access_token()

    def test_network_error_raises(self, manager):
        with patch('foodhub.providers.mpesa_auth.requests.get', side_effect=requests.ConnectionError('down')):
            with pytest.raises(AuthenticationError):
                manager.get_access_token()

    def test_alert_after_consecutive_failures(self, manager, caplog, http_response):
        with patch('foodhub.providers.mpesa_auth.requests.get') as mock_get:
            mock_get.return_value = http_response(500, text='oops')

            with caplog.at_level(logging.WARNING, logger='foodhub.providers.mpesa_auth'):
                for _ in range(3):
                    with pytest.raises(AuthenticationError):
                        manager.get_access_token()

            assert manager.consecutive_failures == 3
            assert [r.levelno for r in caplog.records].count(logging.CRITICAL) == 1

    def test_success_resets_failure_count(self, manager, http_response):
        with patch('foodhub.providers.mpesa_auth.requests.get') as mock_get:
            mock_get.side_effect = [
                http_response(500, text='oops'),
                http_response(200, {'access_token': 'abc', 'expires_in': '3599'}),
            ]

            with pytest.raises(AuthenticationError):
                manager.get_access_token()
            manager.get_access_token()

            assert manager.consecutive_failures == 0

    def test_requires_credentials(self):
        with pytest.raises(ValueError):
            TokenManager('https://sandbox.safaricom.co.ke', '', 'secret')
