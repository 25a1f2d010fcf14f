"""SQLAlchemy models for persistence layer.

Deux bases déclaratives distinctes:
- `Base`: contenus versionnés, catégories, métadonnées et enveloppes;
- `AuditBase`: audit log, migrable et déployable sur un moteur indépendant.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Classe de base pour les modèles du Content Version Store et de l'Envelope Store."""

    metadata = MetaData()


class AuditBase(DeclarativeBase):
    """Classe de base de l'audit log (stockage indépendant)."""

    metadata = MetaData()


class ContentItemORM(Base):
    """Item logique: pointeur de version courante et état de cycle de vie."""

    __tablename__ = "content_items"

    content_id = Column(String(32), primary_key=True)
    current_version = Column(Integer, nullable=False)
    state = Column(String(16), nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ContentVersionORM(Base):
    """Modèle ORM pour les versions de contenu (jamais modifiées après écriture)."""

    __tablename__ = "content_versions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    content_id = Column(String(32), ForeignKey("content_items.content_id"), nullable=False)
    version = Column(Integer, nullable=False)
    text = Column(Text, nullable=False, default="")
    status = Column(String(16), nullable=False, default="active")
    author = Column(String(255), nullable=False)
    envelope_ref = Column(String(512), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (UniqueConstraint("content_id", "version", name="uq_content_version"),)


class MetadataCategoryORM(Base):
    """Nœud de l'arbre de catégories (forêt, parent optionnel)."""

    __tablename__ = "metadata_categories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(128), nullable=False, unique=True)
    description = Column(Text, nullable=False, default="")
    value_kind = Column(String(16), nullable=False, default="text")
    parent_id = Column(Integer, ForeignKey("metadata_categories.id"), nullable=True)


class MetadataValueORM(Base):
    """Valeur typée rattachée à une version et à une catégorie."""

    __tablename__ = "metadata_values"

    id = Column(Integer, primary_key=True, autoincrement=True)
    version_id = Column(Integer, ForeignKey("content_versions.id"), nullable=False)
    category_id = Column(Integer, ForeignKey("metadata_categories.id"), nullable=False)
    value_text = Column(Text, nullable=True)
    value_numeric = Column(Float, nullable=True)
    value_timestamp = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("version_id", "category_id", name="uq_version_category"),
    )


class EnvelopeORM(Base):
    """Enveloppe reçue, son état courant et son dernier résultat."""

    __tablename__ = "envelopes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source = Column(String(128), nullable=False)
    idempotency_key = Column(String(255), nullable=False)
    operation = Column(String(16), nullable=False)
    content_id = Column(String(32), nullable=True)
    payload = Column(JSON, nullable=False, default=dict)
    correlation_id = Column(String(512), nullable=False)
    received_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    status = Column(String(32), nullable=False, default="pending", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    outcome_content_id = Column(String(32), nullable=True)
    outcome_version_id = Column(Integer, nullable=True)
    outcome_version = Column(Integer, nullable=True)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    archived_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("source", "idempotency_key", name="uq_envelope_source_key"),
    )


class AuditRecordORM(AuditBase):
    """Fait d'audit append-only."""

    __tablename__ = "audit_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    correlation_id = Column(String(512), nullable=False)
    operation = Column(String(32), nullable=False)
    resource_type = Column(String(64), nullable=False)
    resource_id = Column(String(255), nullable=False)
    actor = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    detail = Column(JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "correlation_id", "resource_id", "operation", name="uq_audit_correlation_resource_op"
        ),
    )
