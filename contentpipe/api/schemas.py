# Schémas Pydantic exposés par l'API (requêtes et réponses).

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from contentpipe.domain.audit import AuditRecord
from contentpipe.domain.content_version import ContentVersion, MetadataCategory, ValueKind


class IngestAccepted(BaseModel):
    """Accusé de réception d'une enveloppe mise en file (pas de résultat final)."""

    status: str = "queued"
    source: str
    idempotency_key: str | None = None


class EnvelopeOutcomeOut(BaseModel):
    content_id: str | None = None
    version_id: int | None = None
    version: int | None = None


class EnvelopeOut(BaseModel):
    """Vue admin d'une enveloppe stockée.

    Champs:
    - source, idempotency_key, operation, content_id, correlation_id
    - status: pending | processing | retry_scheduled | committed | dead_lettered
    - attempts: tentatives de traitement consommées
    - error: dernière erreur enregistrée
    - outcome: version écrite si `committed`
    """

    source: str
    idempotency_key: str
    operation: str
    content_id: str | None = None
    correlation_id: str
    received_at: str | None = None
    status: str
    attempts: int
    error: str | None = None
    outcome: EnvelopeOutcomeOut
    next_attempt_at: str | None = None
    archived_at: str | None = None


class EnvelopeList(BaseModel):
    items: list[EnvelopeOut]
    count: int


class CancelRequest(BaseModel):
    reason: str = Field(default="operator request", min_length=1, max_length=500)


class ReplayQueued(BaseModel):
    status: str = "queued"
    source: str
    idempotency_key: str


class AuditRecordOut(BaseModel):
    correlation_id: str
    operation: str
    resource_type: str
    resource_id: str
    actor: str
    timestamp: datetime
    detail: dict[str, Any] | None = None

    @classmethod
    def from_domain(cls, record: AuditRecord) -> AuditRecordOut:
        return cls(**record.to_dict())


class CategoryIn(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    value_kind: ValueKind = ValueKind.TEXT
    description: str = ""
    parent_id: int | None = None


class CategoryParentIn(BaseModel):
    parent_id: int | None = None


class CategoryOut(BaseModel):
    category_id: int
    name: str
    value_kind: ValueKind
    description: str = ""
    parent_id: int | None = None

    @classmethod
    def from_domain(cls, category: MetadataCategory) -> CategoryOut:
        return cls(
            category_id=category.category_id,
            name=category.name,
            value_kind=category.value_kind,
            description=category.description,
            parent_id=category.parent_id,
        )


class ContentVersionOut(BaseModel):
    version_id: int
    content_id: str
    version: int
    text: str
    status: str
    created_at: datetime
    author: str
    metadata: dict[str, Any] = {}

    @classmethod
    def from_domain(cls, v: ContentVersion) -> ContentVersionOut:
        return cls(
            version_id=v.version_id,
            content_id=v.content_id,
            version=v.version,
            text=v.text,
            status=v.status.value,
            created_at=v.created_at,
            author=v.author,
            metadata=v.metadata,
        )
