from flask import Flask
from flask_cors import CORS
from foodhub.extensions import db, migrate, jwt, redis_client, socketio, celery_app
from foodhub.celery_ext import init_celery
from foodhub.config import config


def create_app(config_name='development'):
    """Application factory pattern"""
    app = Flask(__name__)

    # Load configuration
    app.config.from_object(config[config_name])

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    jwt.init_app(app)
    redis_client.init_app(app)
    socketio.init_app(app, cors_allowed_origins="*")
    CORS(app)
    init_celery(celery_app, app)

    # Logging
    from foodhub.utils.logger import configure_app_logging, RequestLogger
    configure_app_logging(app)
    RequestLogger(app)

    # Register blueprints
    from foodhub.api import register_blueprints
    register_blueprints(app)

    # Tasks and socket handlers register themselves on import
    import foodhub.tasks.status_check_task  # noqa: F401
    from foodhub.websockets.events import emit_payment_update

    # Status change subscribers
    from foodhub.services.notification_service import payment_notifier, notify_order_service
    payment_notifier.subscribe(emit_payment_update)
    payment_notifier.subscribe(notify_order_service)

    # Error handlers
    register_error_handlers(app)

    return app


def register_error_handlers(app):
    """Register error handlers"""
    from flask import jsonify
    from foodhub.errors import AppError

    @app.errorhandler(AppError)
    def app_error(error):
        return jsonify({'success': False, 'error': error.error, 'message': error.message}), error.status_code

    @app.errorhandler(400)
    def bad_request(error):
        return jsonify({'error': 'Bad request', 'message': str(error)}), 400

    @app.errorhandler(401)
    def unauthorized(error):
        return jsonify({'error': 'Unauthorized', 'message': str(error)}), 401

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'error': 'Not found', 'message': str(error)}), 404

    @app.errorhandler(500)
    def internal_error(error):
        return jsonify({'error': 'Internal server error', 'message': str(error)}), 500
