"""
Lecture des contenus versionnés: version courante, version précise et historique.
"""

from fastapi import APIRouter, Depends, Query

from contentpipe.api.deps import get_container
from contentpipe.api.errors import APIError, ErrorCodes
from contentpipe.api.schemas import ContentVersionOut
from contentpipe.core.container import Container

router = APIRouter(prefix="/v1/contents", tags=["contents"])


@router.get("/{content_id}/versions", response_model=list[ContentVersionOut])
def list_versions(content_id: str, container: Container = Depends(get_container)):
    versions = container.content.list_versions(content_id)
    if not versions:
        raise APIError(404, ErrorCodes.NOT_FOUND, f"unknown content id: {content_id}")
    return [ContentVersionOut.from_domain(v) for v in versions]


@router.get("/{content_id}", response_model=ContentVersionOut)
def get_current_version(
    content_id: str,
    version: int | None = Query(default=None, ge=1),
    container: Container = Depends(get_container),
):
    """Version courante, ou `?version=N` pour une version précise (même supprimée)."""
    found = container.content.get_version(content_id, version)
    if found is None:
        raise APIError(404, ErrorCodes.NOT_FOUND, f"unknown content version: {content_id}")
    return ContentVersionOut.from_domain(found)
