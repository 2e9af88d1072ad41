"""
Utils Package
Utility functions and helpers
"""

from foodhub.utils.logger import get_logger, configure_app_logging, RequestLogger
from foodhub.utils.decorators import admin_required, validate_content_type

__all__ = [
    'get_logger',
    'configure_app_logging',
    'RequestLogger',
    'admin_required',
    'validate_content_type',
]
