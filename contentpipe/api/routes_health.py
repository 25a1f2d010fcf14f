"""
Endpoint de santé pour vérifier la disponibilité de l'API et du pipeline.

Expose `/health` pour signaler l'état général de l'application, du stockage et des workers.
"""

from fastapi import APIRouter, Depends
from sqlalchemy import text

from contentpipe.api.deps import get_container
from contentpipe.core.container import Container

router = APIRouter(tags=["health"])


@router.get("/health")
def health(container: Container = Depends(get_container)):
    """Vérifie la disponibilité de l'API, de la base et des workers de drainage."""
    try:
        with container.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        database = "ok"
    except Exception:
        database = "error"
    return {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "queue_backend": container.settings.QUEUE_BACKEND,
        "workers": container.workers.running,
        "sources": container.settings.INGEST_SOURCES,
    }
