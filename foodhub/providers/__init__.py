from typing import Dict, Type
from flask import current_app

from foodhub.providers.base import PaymentGateway, PushResult, ReversalResult, SettlementResult
from foodhub.providers.mpesa_provider import MPesaGatewayClient

# Gateway registry
PROVIDERS: Dict[str, Type[PaymentGateway]] = {
    'mpesa': MPesaGatewayClient,
}

_EXTENSION_KEY = 'foodhub.gateways'


def get_provider(provider_name: str = 'mpesa') -> PaymentGateway:
    """
    Get the gateway client for a provider.

    One client is built per Flask app and reused, so its TokenManager keeps
    the access token cached across requests.

    Raises:
        ValueError: If provider not found
    """
    name = provider_name.lower()
    provider_class = PROVIDERS.get(name)

    if not provider_class:
        raise ValueError(f'Unknown provider: {provider_name}')

    gateways = current_app.extensions.setdefault(_EXTENSION_KEY, {})
    if name not in gateways:
        gateways[name] = provider_class.from_config(_get_provider_config(name))
    return gateways[name]


def get_gateway_client() -> MPesaGatewayClient:
    return get_provider('mpesa')


def reset_providers(app=None):
    """Forget cached clients (after a config change, or between tests)."""
    (app or current_app).extensions.pop(_EXTENSION_KEY, None)


def _get_provider_config(provider_name: str) -> dict:
    """Get provider configuration from Flask app config."""

    if provider_name == 'mpesa':
        return {
            # Required
            'consumer_key':    current_app.config.get('MPESA_CONSUMER_KEY'),
            'consumer_secret': current_app.config.get('MPESA_CONSUMER_SECRET'),
            'shortcode':       current_app.config.get('MPESA_SHORTCODE'),
            'passkey':         current_app.config.get('MPESA_PASSKEY'),
            # Environment
            'environment':     current_app.config.get('MPESA_ENV', 'sandbox'),
            'utc_offset_hours': current_app.config.get('MPESA_UTC_OFFSET_HOURS', 3),
            # Behaviour
            'transaction_type':     current_app.config.get('MPESA_TRANSACTION_TYPE', 'CustomerPayBillOnline'),
            'timeout':              current_app.config.get('MPESA_TIMEOUT', 30),
            'max_attempts':         current_app.config.get('MPESA_MAX_ATTEMPTS', 3),
            'retry_backoff':        current_app.config.get('MPESA_RETRY_BACKOFF', [1, 2, 4]),
            'auth_alert_threshold': current_app.config.get('MPESA_AUTH_ALERT_THRESHOLD', 3),
            # Optional – needed for reversals
            'initiator_name':      current_app.config.get('MPESA_INITIATOR_NAME', ''),
            'security_credential': current_app.config.get('MPESA_SECURITY_CREDENTIAL', ''),
            'result_url':          current_app.config.get('MPESA_RESULT_URL', ''),
            'queue_timeout_url':   current_app.config.get('MPESA_QUEUE_TIMEOUT_URL', ''),
        }

    return {}


__all__ = [
    'get_provider',
    'get_gateway_client',
    'reset_providers',
    'PROVIDERS',
    'PaymentGateway',
    'PushResult',
    'ReversalResult',
    'SettlementResult',
]
