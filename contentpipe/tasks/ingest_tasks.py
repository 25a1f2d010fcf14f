"""
Tâches Celery du pipeline d'ingestion.

- `ingest_envelope`: route un message brut (mêmes règles que la file Redis/in-memory).
- `resume_envelope`: reprise planifiée par `CeleryRetryScheduler` après backoff.

Chaque process worker construit son propre conteneur (sans workers de drainage: la
consommation est faite par Celery) et le ferme à l'arrêt.
"""

from __future__ import annotations

import threading
from typing import Any

import structlog
from celery import signals

from contentpipe.app.celery_app import celery_app
from contentpipe.core.constants import INGEST_TASK_NAME, RESUME_TASK_NAME
from contentpipe.core.container import Container

log = structlog.get_logger(__name__).bind(component="ingest_tasks")

_container: Container | None = None
_container_lock = threading.Lock()


def get_worker_container() -> Container:
    """Conteneur du process worker, construit à la première utilisation."""
    global _container
    with _container_lock:
        if _container is None:
            _container = Container()
            _container.start(workers=False)
        return _container


def set_worker_container(container: Container | None) -> None:
    """Remplace le conteneur du process (tests en mode eager)."""
    global _container
    with _container_lock:
        _container = container


@signals.worker_process_init.connect(weak=False)
def _init_worker_container(**_kw) -> None:  # type: ignore[no-untyped-def]
    get_worker_container()


@signals.worker_process_shutdown.connect(weak=False)
def _close_worker_container(**_kw) -> None:  # type: ignore[no-untyped-def]
    global _container
    with _container_lock:
        if _container is not None:
            _container.close()
            _container = None


@celery_app.task(name=INGEST_TASK_NAME)
def ingest_envelope(source: str, message: dict[str, Any]) -> dict[str, Any]:
    result = get_worker_container().pipeline.ingest(message, source=source)
    outcome = result.outcome
    log.info("task_ingest_done", source=source, route=result.kind.value)
    return {
        "route": result.kind.value,
        "status": outcome.status.value if outcome else None,
        "reason": result.reason,
    }


@celery_app.task(name=RESUME_TASK_NAME)
def resume_envelope(source: str, idempotency_key: str) -> str:
    record = get_worker_container().pipeline.resume(source, idempotency_key)
    if record is None:
        return "not_found"
    return record.status.value
