"""
Surface d'administration: dead-letters, inspection, rejeu, annulation, audit,
catégories de métadonnées.
"""

from fastapi import APIRouter, Depends, Query, Response

from contentpipe.api.deps import get_container
from contentpipe.api.schemas import (
    AuditRecordOut,
    CancelRequest,
    CategoryIn,
    CategoryOut,
    CategoryParentIn,
    EnvelopeList,
    EnvelopeOut,
    ReplayQueued,
)
from contentpipe.core.constants import MESSAGE_KIND_REPLAY
from contentpipe.core.container import Container
from contentpipe.domain.audit import AuditOperation
from contentpipe.domain.envelope import EnvelopeRef, EnvelopeStatus
from contentpipe.domain.errors import InvalidTransitionError

router = APIRouter(prefix="/v1/admin", tags=["admin"])


@router.get("/dead-letters", response_model=EnvelopeList)
def list_dead_letters(
    source: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    container: Container = Depends(get_container),
):
    records = container.envelopes.list_by_status(
        EnvelopeStatus.DEAD_LETTERED, source=source, limit=limit
    )
    items = [EnvelopeOut(**r.to_dict()) for r in records]
    return EnvelopeList(items=items, count=len(items))


@router.get("/envelopes/{source}/{key}", response_model=EnvelopeOut)
def get_envelope(source: str, key: str, container: Container = Depends(get_container)):
    record = container.envelopes.require(EnvelopeRef(source=source, idempotency_key=key))
    return EnvelopeOut(**record.to_dict())


@router.post("/envelopes/{source}/{key}/replay", status_code=202, response_model=ReplayQueued)
def replay_envelope(source: str, key: str, container: Container = Depends(get_container)):
    """Remet une dead-letter dans la file de sa source (re-soumission via le Router)."""
    record = container.envelopes.require(EnvelopeRef(source=source, idempotency_key=key))
    if record.status is not EnvelopeStatus.DEAD_LETTERED:
        raise InvalidTransitionError(f"{source}:{key} is {record.status.value}, not dead_lettered")
    container.queues.put(
        source, {"kind": MESSAGE_KIND_REPLAY, "source": source, "idempotency_key": key}
    )
    return ReplayQueued(source=source, idempotency_key=key)


@router.post("/envelopes/{source}/{key}/cancel", response_model=EnvelopeOut)
def cancel_envelope(
    source: str,
    key: str,
    body: CancelRequest | None = None,
    container: Container = Depends(get_container),
):
    reason = body.reason if body else "operator request"
    record = container.pipeline.cancel(source, key, reason)
    return EnvelopeOut(**record.to_dict())


@router.get("/audit", response_model=list[AuditRecordOut])
def list_audit(
    resource_id: str | None = None,
    correlation_id: str | None = None,
    operation: AuditOperation | None = None,
    limit: int = Query(default=500, ge=1, le=5000),
    container: Container = Depends(get_container),
):
    records = container.audit.list_records(
        resource_id=resource_id, correlation_id=correlation_id, operation=operation, limit=limit
    )
    return [AuditRecordOut.from_domain(r) for r in records]


@router.get("/categories", response_model=list[CategoryOut])
def list_categories(container: Container = Depends(get_container)):
    return [CategoryOut.from_domain(c) for c in container.categories.list_categories()]


@router.post("/categories", status_code=201, response_model=CategoryOut)
def create_category(body: CategoryIn, container: Container = Depends(get_container)):
    created = container.categories.create_category(
        body.name, body.value_kind, description=body.description, parent_id=body.parent_id
    )
    return CategoryOut.from_domain(created)


@router.put("/categories/{category_id}/parent", response_model=CategoryOut)
def reparent_category(
    category_id: int, body: CategoryParentIn, container: Container = Depends(get_container)
):
    return CategoryOut.from_domain(
        container.categories.reparent_category(category_id, body.parent_id)
    )


@router.delete("/categories/{category_id}", status_code=204)
def delete_category(category_id: int, container: Container = Depends(get_container)):
    container.categories.delete_category(category_id)
    return Response(status_code=204)
