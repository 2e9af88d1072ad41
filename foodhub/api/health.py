"""
Health Check and System Monitoring Endpoints
"""

from flask import Blueprint, current_app, jsonify
from datetime import datetime
import os
import psutil
from sqlalchemy import text

from foodhub.extensions import db, redis_client

health_bp = Blueprint('health', __name__)

SERVICE_NAME = 'foodhub-payments'
SERVICE_VERSION = '1.0.0'

MPESA_REQUIRED_SETTINGS = (
    'MPESA_CONSUMER_KEY',
    'MPESA_CONSUMER_SECRET',
    'MPESA_SHORTCODE',
    'MPESA_PASSKEY',
    'MPESA_CALLBACK_URL',
)


def _check_database():
    db.session.execute(text('SELECT 1'))
    return 'Database connection OK'


def _check_redis():
    redis_client.set('health_check', 'ok', ex=10)
    if redis_client.get('health_check') != 'ok':
        raise RuntimeError('Redis read/write failed')
    return 'Redis connection OK'


def _check_mpesa():
    # Configuration only: probing Daraja here would spend OAuth calls on every poll
    missing = [name for name in MPESA_REQUIRED_SETTINGS if not current_app.config.get(name)]
    if missing:
        raise RuntimeError(f'Missing settings: {", ".join(missing)}')
    return f'M-Pesa {current_app.config.get("MPESA_ENV", "sandbox")} configured'


def _run_checks(checks):
    results = {}
    healthy = True
    for name, check in checks.items():
        try:
            results[name] = {'status': 'healthy', 'message': check()}
        except Exception as e:
            results[name] = {'status': 'unhealthy', 'message': str(e)}
            healthy = False
    return healthy, results


@health_bp.route('/health', methods=['GET'])
def health_check():
    """
    Full health check: database, Redis and M-Pesa configuration

    Returns:
        200 if every check passes, 503 otherwise
    """
    healthy, checks = _run_checks({
        'database': _check_database,
        'redis': _check_redis,
        'mpesa': _check_mpesa,
    })

    return jsonify({
        'status': 'healthy' if healthy else 'unhealthy',
        'timestamp': datetime.utcnow().isoformat(),
        'service': SERVICE_NAME,
        'version': SERVICE_VERSION,
        'checks': checks
    }), 200 if healthy else 503


@health_bp.route('/health/live', methods=['GET'])
def liveness_probe():
    """Kubernetes liveness probe"""
    return jsonify({
        'status': 'alive',
        'timestamp': datetime.utcnow().isoformat()
    }), 200


@health_bp.route('/health/ready', methods=['GET'])
def readiness_probe():
    """
    Kubernetes readiness probe
    Callbacks cannot be stored without the database, nor STK pushes deduplicated without Redis
    """
    ready, results = _run_checks({
        'database': _check_database,
        'redis': redis_client.ping,
    })

    return jsonify({
        'status': 'ready' if ready else 'not_ready',
        'checks': {name: 'ready' if r['status'] == 'healthy' else 'not_ready' for name, r in results.items()},
        'timestamp': datetime.utcnow().isoformat()
    }), 200 if ready else 503


@health_bp.route('/metrics', methods=['GET'])
def metrics():
    """Process and payment counters"""
    from foodhub.models import Payment, PaymentStatus, CallbackEvent, AuditLog

    memory = psutil.virtual_memory()
    process = psutil.Process()

    payments = {'total': Payment.query.count()}
    for status in PaymentStatus:
        payments[status.value] = Payment.query.filter_by(status=status.value).count()

    return jsonify({
        'timestamp': datetime.utcnow().isoformat(),
        'system': {
            'cpu_percent': psutil.cpu_percent(interval=None),
            'memory_percent': memory.percent,
            'process': {
                'pid': os.getpid(),
                'threads': process.num_threads(),
                'rss_bytes': process.memory_info().rss
            }
        },
        'application': {
            'payments': payments,
            'callbacks': {
                'total': CallbackEvent.query.count(),
                'unmatched': CallbackEvent.query.filter_by(processed=False).count()
            },
            'audit_logs': AuditLog.query.count()
        }
    }), 200
