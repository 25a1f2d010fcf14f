"""
Module: celery_app.

But: Initialiser l'instance Celery du pipeline et charger la config runtime.

Notes:
- Une queue Celery par source (`ingest.{source}`) pour préserver l'ordre intra-source
  quand chaque queue est consommée par un worker à concurrence 1.
- Branche l'instrumentation Prometheus/OTEL des tâches via bind_celery_signals.
"""

from celery import Celery
from kombu import Queue

from contentpipe.core.constants import celery_queue_for
from contentpipe.core.settings import get_settings
from contentpipe.infra.monitoring.celery_exporter import bind_celery_signals

_settings = get_settings()

celery_app = Celery(
    "contentpipe",
    broker=_settings.CELERY_BROKER_URL,
    backend=_settings.CELERY_RESULT_BACKEND,
    include=["contentpipe.tasks.ingest_tasks"],
)
# Load configuration from module (acks, timeouts)
celery_app.config_from_object("contentpipe.app.celeryconfig")
celery_app.conf.task_queues = [Queue(celery_queue_for(src)) for src in _settings.INGEST_SOURCES]
celery_app.conf.task_default_queue = celery_queue_for(_settings.INGEST_SOURCES[0])

bind_celery_signals(celery_app)

__all__ = ["celery_app"]
