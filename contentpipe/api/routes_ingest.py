"""
Ingress HTTP: dépôt d'enveloppes dans la file de leur source.

La réponse `202` est un simple accusé de réception: le résultat final (commit, retry,
dead-letter) n'est jamais attendu par la source.
"""

from typing import Any

from fastapi import APIRouter, Body, Depends

from contentpipe.api.deps import get_container
from contentpipe.api.errors import APIError, ErrorCodes
from contentpipe.api.schemas import IngestAccepted
from contentpipe.core.constants import MESSAGE_KIND_INGEST
from contentpipe.core.container import Container

router = APIRouter(prefix="/v1/ingest", tags=["ingest"])


@router.post("/{source}", status_code=202, response_model=IngestAccepted)
def enqueue_envelope(
    source: str,
    message: dict[str, Any] = Body(...),
    container: Container = Depends(get_container),
):
    """Met le message en file; la validation complète est faite par le Router."""
    if source not in container.settings.INGEST_SOURCES:
        raise APIError(404, ErrorCodes.NOT_FOUND, f"unknown source: {source}")
    container.queues.put(source, {"kind": MESSAGE_KIND_INGEST, "envelope": message})
    key = message.get("idempotency_key") or message.get("key")
    return IngestAccepted(source=source, idempotency_key=key)
