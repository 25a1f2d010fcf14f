"""Service de validation local (règles simples, sans dépendance externe).

S'applique à toutes les opérations: pour create/update il vérifie le texte et les
métadonnées brutes, pour delete il vérifie seulement la présence du content_id.
"""

from __future__ import annotations

from ...domain.envelope import OperationKind
from ...domain.errors import PermanentProcessingError
from ...domain.processing import ProcessingService, ServiceRequest, ServiceResult


class RuleValidationService(ProcessingService):
    """Validation de contenu par règles déclaratives."""

    name = "validation"

    def __init__(self, max_text_len: int = 1_000_000, max_metadata_items: int = 256) -> None:
        self.max_text_len = max_text_len
        self.max_metadata_items = max_metadata_items

    def process(self, request: ServiceRequest) -> ServiceResult:
        if request.operation is OperationKind.DELETE:
            if not request.content_id:
                raise PermanentProcessingError("delete without content id", self.name)
            return ServiceResult()
        text = request.text or ""
        if not text.strip() and not request.metadata:
            raise PermanentProcessingError("payload is empty", self.name)
        if len(text) > self.max_text_len:
            raise PermanentProcessingError(
                f"content text exceeds {self.max_text_len} characters", self.name
            )
        if len(request.metadata) > self.max_metadata_items:
            raise PermanentProcessingError("too many metadata entries", self.name)
        for key in request.metadata:
            if not str(key).strip():
                raise PermanentProcessingError("empty metadata key", self.name)
        return ServiceResult()
