# ============================================================
# Module : contentpipe/core/constants.py
# Objet  : Constantes partagées (clés Redis, statuts HTTP, limites).
# ============================================================

from __future__ import annotations

HTTP_STATUS_CLIENT_ERROR_MIN = 400
HTTP_STATUS_CLIENT_ERROR_MAX = 500
HTTP_STATUS_SERVER_ERROR_MIN = 500
HTTP_STATUS_SERVER_ERROR_MAX = 600
HTTP_STATUS_REQUEST_TIMEOUT = 408
HTTP_STATUS_TOO_MANY_REQUESTS = 429

QUEUE_KEY_PREFIX = "ingest:queue"
INFLIGHT_KEY_PREFIX = "ingest:inflight"

# Optimistic fallback when two writers race on (content_id, version)
MAX_VERSION_CONFLICT_RETRIES = 5

CONTENT_ID_PREFIX = "C"
CONTENT_ID_HEX_LEN = 12

MESSAGE_KIND_INGEST = "ingest"
MESSAGE_KIND_RESUME = "resume"
MESSAGE_KIND_REPLAY = "replay"

CELERY_QUEUE_PREFIX = "ingest"
RESUME_TASK_NAME = "contentpipe.tasks.resume_envelope"
INGEST_TASK_NAME = "contentpipe.tasks.ingest_envelope"


def celery_queue_for(source: str) -> str:
    """Nom de la queue Celery dédiée à une source (ordre intra-source)."""
    return f"{CELERY_QUEUE_PREFIX}.{source}"
