import os
from datetime import timedelta
from dotenv import load_dotenv

load_dotenv()


def _int_list(value, default):
    if not value:
        return default
    return [int(part) for part in value.split(',') if part.strip()]


class Config:
    """Base configuration"""
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key')
    JWT_SECRET_KEY = os.getenv('JWT_SECRET_KEY', 'dev-jwt-secret')
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(hours=1)

    SQLALCHEMY_DATABASE_URI = os.getenv('DATABASE_URL', 'postgresql://localhost/foodhub_dev')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')

    CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', 'redis://localhost:6379/1')
    CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', 'redis://localhost:6379/2')
    CELERY_TASK_ALWAYS_EAGER = False

    LOG_DIR = os.getenv('LOG_DIR', 'logs')

    # M-Pesa (Daraja) configuration
    MPESA_ENV = os.getenv('MPESA_ENV', 'sandbox')
    MPESA_CONSUMER_KEY = os.getenv('MPESA_CONSUMER_KEY')
    MPESA_CONSUMER_SECRET = os.getenv('MPESA_CONSUMER_SECRET')
    MPESA_SHORTCODE = os.getenv('MPESA_SHORTCODE', '174379')
    MPESA_PASSKEY = os.getenv('MPESA_PASSKEY')
    MPESA_CALLBACK_URL = os.getenv('MPESA_CALLBACK_URL', '')
    MPESA_TRANSACTION_TYPE = os.getenv('MPESA_TRANSACTION_TYPE', 'CustomerPayBillOnline')
    MPESA_UTC_OFFSET_HOURS = int(os.getenv('MPESA_UTC_OFFSET_HOURS', '3'))

    MPESA_TIMEOUT = int(os.getenv('MPESA_TIMEOUT', '30'))
    MPESA_MAX_ATTEMPTS = int(os.getenv('MPESA_MAX_ATTEMPTS', '3'))
    MPESA_RETRY_BACKOFF = _int_list(os.getenv('MPESA_RETRY_BACKOFF'), [1, 2, 4])
    MPESA_STATUS_CHECK_DELAYS = _int_list(os.getenv('MPESA_STATUS_CHECK_DELAYS'), [30, 90, 300])
    MPESA_AUTH_ALERT_THRESHOLD = int(os.getenv('MPESA_AUTH_ALERT_THRESHOLD', '3'))
    # Success callbacks are settled only once a status query agrees
    MPESA_CONFIRM_CALLBACKS = os.getenv('MPESA_CONFIRM_CALLBACKS', 'true').lower() == 'true'

    # Needed only for reversals
    MPESA_INITIATOR_NAME = os.getenv('MPESA_INITIATOR_NAME', '')
    MPESA_SECURITY_CREDENTIAL = os.getenv('MPESA_SECURITY_CREDENTIAL', '')
    MPESA_RESULT_URL = os.getenv('MPESA_RESULT_URL', '')
    MPESA_QUEUE_TIMEOUT_URL = os.getenv('MPESA_QUEUE_TIMEOUT_URL', '')

    # Order subsystem hook for payment status changes
    ORDER_SERVICE_URL = os.getenv('ORDER_SERVICE_URL', '')
    ORDER_SERVICE_TIMEOUT = int(os.getenv('ORDER_SERVICE_TIMEOUT', '5'))


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    TESTING = False


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    TESTING = False
    MPESA_ENV = os.getenv('MPESA_ENV', 'production')


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'

    CELERY_BROKER_URL = 'memory://'
    CELERY_RESULT_BACKEND = 'cache+memory://'
    CELERY_TASK_ALWAYS_EAGER = True

    MPESA_CONSUMER_KEY = 'test_consumer_key'
    MPESA_CONSUMER_SECRET = 'test_consumer_secret'
    MPESA_SHORTCODE = '174379'
    MPESA_PASSKEY = 'test_passkey'
    MPESA_CALLBACK_URL = 'https://example.com/api/v1/payments/mpesa/callback'
    MPESA_RETRY_BACKOFF = [0, 0, 0]
    MPESA_INITIATOR_NAME = ''
    MPESA_SECURITY_CREDENTIAL = ''
    ORDER_SERVICE_URL = ''


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
