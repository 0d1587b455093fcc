import os
import importlib
from celery import Celery
from celery.schedules import crontab

# You can override where the factory lives if you ever move it (e.g., wsgi:create_app)
FLASK_FACTORY = os.getenv("FLASK_FACTORY", "app:create_app")

def _load_flask_app():
    module_name, _, factory_name = FLASK_FACTORY.partition(":")
    module = importlib.import_module(module_name)
    factory = getattr(module, factory_name or "create_app", None)
    if factory is not None:
        return factory()
    if hasattr(module, "app"):
        return getattr(module, "app")
    raise RuntimeError(f"Could not find factory '{factory_name}' or 'app' in module '{module_name}'.")


celery = Celery(
    __name__,
    include=[
        "credits.tasks",
    ],
)
celery_app = celery
celery.conf.update(
    broker_url=os.getenv('CELERY_BROKER_URL', 'redis://127.0.0.1:6379/0'),
    result_backend=os.getenv('CELERY_RESULT_BACKEND', 'redis://127.0.0.1:6379/1'),
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone=os.getenv('CELERY_TIMEZONE', 'UTC'),
    enable_utc=True,
    task_ignore_result=False,
    worker_max_tasks_per_child=100,
    broker_connection_retry_on_startup=True,
)
celery.conf.beat_schedule = {
    "credits-reset-free-usage-monthly": {
        "task": "credits.reset_free_usage",
        "schedule": crontab(minute=5, hour=0, day_of_month=1),  # 00:05 UTC on the 1st
    },
}

# Ensure every Celery task runs inside Flask app context
class AppContextTask(celery.Task):
    _flask_app = None

    def __call__(self, *args, **kwargs):
        if self._flask_app is None:
            self._flask_app = _load_flask_app()
        with self._flask_app.app_context():
            return self.run(*args, **kwargs)


celery.Task = AppContextTask
