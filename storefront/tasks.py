import logging
from concurrent.futures import ThreadPoolExecutor

from flask import current_app

logger = logging.getLogger(__name__)


def init_background_tasks(app):
    workers = max(1, int(app.config.get("BACKGROUND_WORKERS", 4) or 4))
    app.extensions["background_executor"] = ThreadPoolExecutor(
        max_workers=workers, thread_name_prefix="storefront-bg"
    )


def dispatch_background(task, *args, **kwargs):
    """Run ``task`` outside the request; failures are logged, never raised."""
    app = current_app._get_current_object()

    def runner():
        with app.app_context():
            try:
                task(*args, **kwargs)
            except Exception:
                logger.exception("Background task %s failed", getattr(task, "__name__", task))

    if app.config.get("BACKGROUND_TASKS_SYNC"):
        runner()
        return None

    executor = app.extensions.get("background_executor")
    if executor is None:
        runner()
        return None
    return executor.submit(runner)
