from celery import Celery, Task
from flask import has_app_context


class ContextTask(Task):
    """Runs every task inside the Flask app context it was bound to."""
    flask_app = None

    def __call__(self, *args, **kwargs):
        if self.flask_app is None or has_app_context():
            return super().__call__(*args, **kwargs)
        with self.flask_app.app_context():
            return super().__call__(*args, **kwargs)


def create_celery(app=None):
    celery = Celery(__name__, task_cls=ContextTask)

    if app:
        init_celery(celery, app)

    return celery


def init_celery(celery, app):
    celery.conf.update(
        broker_url=app.config["CELERY_BROKER_URL"],
        result_backend=app.config["CELERY_RESULT_BACKEND"],
        task_always_eager=app.config.get("CELERY_TASK_ALWAYS_EAGER", False),
        task_track_started=True,
        task_time_limit=30 * 60,
    )

    ContextTask.flask_app = app
