# Schéma logique des messages d'enveloppe reçus sur les files (validation Pydantic).

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from .envelope import OperationKind

# Clés du payload qui ne sont pas des paires de métadonnées
_PAYLOAD_RESERVED = {"text", "metadata"}


class EnvelopeMessage(BaseModel):
    """Message d'enveloppe tel que poussé par une source.

    Champs:
    - idempotency_key (alias `key`): optionnel, dérivé si absent
    - source (alias `source_id`)
    - operation (alias `op`): create | update | delete
    - content_id (alias `contentId`): requis pour update/delete
    - payload: `{text?, metadata?, <clé>: <valeur>...}`; les clés hors `text`/`metadata`
      sont des paires de métadonnées brutes
    - received_at: horodatage de réception (défaut: maintenant)
    - correlation_id: optionnel
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    idempotency_key: str | None = Field(
        default=None, validation_alias=AliasChoices("idempotency_key", "key")
    )
    source: str = Field(validation_alias=AliasChoices("source", "source_id"), min_length=1)
    operation: OperationKind = Field(validation_alias=AliasChoices("operation", "op"))
    content_id: str | None = Field(
        default=None, validation_alias=AliasChoices("content_id", "contentId")
    )
    payload: dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    correlation_id: str | None = None

    @field_validator("idempotency_key", "content_id", "correlation_id")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("payload")
    @classmethod
    def _metadata_is_mapping(cls, value: dict[str, Any]) -> dict[str, Any]:
        if "metadata" in value and not isinstance(value["metadata"], dict):
            raise ValueError("payload.metadata must be an object")
        if "text" in value and value["text"] is not None and not isinstance(value["text"], str):
            raise ValueError("payload.text must be a string")
        return value

    @model_validator(mode="after")
    def _check_operation(self) -> EnvelopeMessage:
        if self.operation in (OperationKind.UPDATE, OperationKind.DELETE) and not self.content_id:
            raise ValueError(f"content_id is required for {self.operation.value}")
        if self.operation in (OperationKind.CREATE, OperationKind.UPDATE):
            if not (self.text.strip() or self.metadata):
                raise ValueError(f"payload must not be empty for {self.operation.value}")
        return self

    @property
    def text(self) -> str:
        return self.payload.get("text") or ""

    @property
    def metadata(self) -> dict[str, Any]:
        pairs = {k: v for k, v in self.payload.items() if k not in _PAYLOAD_RESERVED}
        pairs.update(self.payload.get("metadata") or {})
        return pairs
