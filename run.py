import os
from foodhub import create_app, socketio
from foodhub.extensions import db, celery_app  # noqa: F401  (celery -A run.celery_app worker)

app = create_app(os.getenv('FLASK_ENV', 'development'))


@app.shell_context_processor
def make_shell_context():
    from foodhub.models import Payment, AuditLog, CallbackEvent
    return {
        'db': db,
        'Payment': Payment,
        'AuditLog': AuditLog,
        'CallbackEvent': CallbackEvent
    }


if __name__ == '__main__':
    socketio.run(app, debug=True, host='0.0.0.0', port=5000)
