"""
Logging Configuration
Centralized logging setup for the FoodHub backend
"""

import logging
import os
import sys
import time
from logging.handlers import RotatingFileHandler

from flask import g, request


def _log_dir() -> str:
    log_dir = os.getenv('LOG_DIR', 'logs')
    if not os.path.exists(log_dir):
        try:
            os.makedirs(log_dir)
        except OSError:
            return ''
    return log_dir


def get_logger(name: str) -> logging.Logger:
    """
    Get a configured logger instance

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger
    """
    logger = logging.getLogger(name)

    # Only configure if not already configured
    if not logger.handlers:
        logger.setLevel(logging.INFO)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(logging.Formatter('%(levelname)s - %(name)s - %(message)s'))
        logger.addHandler(console_handler)

        log_dir = _log_dir()
        if log_dir:
            file_handler = RotatingFileHandler(
                os.path.join(log_dir, 'foodhub.log'),
                maxBytes=10485760,  # 10MB
                backupCount=10
            )
            file_handler.setLevel(logging.INFO)
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
            logger.addHandler(file_handler)

    return logger


def configure_app_logging(app):
    """
    Configure logging for the Flask application and the payment core

    Args:
        app: Flask application instance
    """
    app.logger.setLevel(logging.INFO)

    # Module loggers under foodhub.* (gateway client, token manager, state machine)
    payment_logger = logging.getLogger('foodhub')
    payment_logger.setLevel(logging.DEBUG if app.debug else logging.INFO)

    log_dir = _log_dir()
    if not log_dir or app.testing:
        return

    error_handler = RotatingFileHandler(
        os.path.join(log_dir, 'error.log'),
        maxBytes=10485760,
        backupCount=10
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s\n%(pathname)s:%(lineno)d',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))

    app.logger.addHandler(error_handler)
    payment_logger.addHandler(error_handler)


class RequestLogger:
    """Logs one line per API request, with its status and duration"""

    # Probes hit these every few seconds
    QUIET_PATHS = ('/api/v1/health/live', '/api/v1/health/ready')

    def __init__(self, app=None):
        self.app = app
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        logger = get_logger('foodhub.requests')

        @app.before_request
        def start_timer():
            g.request_started = time.perf_counter()

        @app.after_request
        def log_response(response):
            if request.path in self.QUIET_PATHS:
                return response

            started = g.get('request_started')
            elapsed_ms = (time.perf_counter() - started) * 1000 if started else 0.0
            logger.info(
                f'{request.method} {request.path} {response.status_code} '
                f'{elapsed_ms:.1f}ms ip={request.remote_addr}'
            )
            return response
