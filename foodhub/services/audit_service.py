"""
Audit Service
Keeps the per-payment event trail used for financial audit
"""

import logging
import uuid
from typing import Dict, Any, Optional
from flask import has_request_context, request

from foodhub.extensions import db
from foodhub.models import AuditLog

logger = logging.getLogger(__name__)


class AuditService:
    """Service for creating and reading audit logs"""

    @staticmethod
    def log_event(
            payment_id: uuid.UUID,
            event_type: str,
            event_data: Dict[str, Any],
            user_id: Optional[str] = None,
            ip_address: Optional[str] = None,
            user_agent: Optional[str] = None
    ) -> AuditLog:
        """
        Create an audit log entry

        Args:
            payment_id: UUID of the payment
            event_type: Type of event (e.g., 'payment.initiated', 'payment.completed')
            event_data: JSON-serialisable event data
            user_id: User ID if available
            ip_address: IP address of the request
            user_agent: User agent string

        Returns:
            Created AuditLog object
        """
        # Callbacks processed by Celery workers have no request context
        if has_request_context():
            if not ip_address:
                ip_address = AuditService._get_client_ip()
            if not user_agent:
                user_agent = request.headers.get('User-Agent')

        audit_log = AuditLog(
            payment_id=payment_id,
            event_type=event_type,
            event_data=event_data,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent
        )

        db.session.add(audit_log)

        try:
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            logger.error(f'Failed to create audit log: {str(e)}')
            raise

        return audit_log

    @staticmethod
    def get_payment_audit_trail(payment_id: uuid.UUID) -> list:
        """Complete audit trail for a payment, oldest first"""
        return AuditLog.query.filter_by(
            payment_id=payment_id
        ).order_by(AuditLog.timestamp.asc()).all()

    @staticmethod
    def _get_client_ip() -> Optional[str]:
        """
        Get client IP address from request
        Handles proxy headers (X-Forwarded-For, X-Real-IP)
        """
        if request.headers.get('X-Forwarded-For'):
            # X-Forwarded-For can contain multiple IPs, get the first one
            return request.headers.get('X-Forwarded-For').split(',')[0].strip()
        if request.headers.get('X-Real-IP'):
            return request.headers.get('X-Real-IP')
        return request.remote_addr
