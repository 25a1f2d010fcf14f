# ============================================================
# Module : contentpipe/infra/repo/content_version_repo.py
# Objet  : Content Version Store (commit transactionnel versionné).
# Invariants :
#  - versions 1, 2, 3... sans trou ni doublon par content_id;
#  - version + métadonnées visibles ensemble ou pas du tout;
#  - une ligne de version n'est jamais modifiée après écriture.
# ============================================================

from __future__ import annotations

import uuid
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ...app.metrics import COMMITS_TOTAL, VERSION_CONFLICTS_TOTAL
from ...core.constants import (
    CONTENT_ID_HEX_LEN,
    CONTENT_ID_PREFIX,
    MAX_VERSION_CONFLICT_RETRIES,
)
from ...domain.content_version import (
    CommitResult,
    ContentItem,
    ContentState,
    ContentVersion,
)
from ...domain.envelope import OperationKind
from ...domain.errors import (
    ContentDeletedError,
    ContentNotFoundError,
    TransientProcessingError,
    VersionConflictError,
)
from ..ops.locks import KeyedLock
from ..ops.post_commit import register_action_after_commit
from .category_repo import CategoryRepo, decode_value
from .db import session_scope
from .models import (
    ContentItemORM,
    ContentVersionORM,
    MetadataCategoryORM,
    MetadataValueORM,
)

CommitListener = Callable[[CommitResult, OperationKind], None]


def new_content_id() -> str:
    """Alloue un identifiant de contenu opaque (`C` + hex)."""
    return f"{CONTENT_ID_PREFIX}{uuid.uuid4().hex[:CONTENT_ID_HEX_LEN]}"


def _is_allocation_conflict(exc: IntegrityError) -> bool:
    msg = str(getattr(exc, "orig", exc)).lower()
    return (
        "uq_content_version" in msg
        or "content_versions.content_id, content_versions.version" in msg
        or "content_items" in msg
    )


class ContentVersionStore:
    """Persistance versionnée des contenus et de leurs métadonnées.

    Les écritures sur un même content_id sont sérialisées par un verrou par clé
    (process-local) et par `SELECT ... FOR UPDATE` sur l'item (bases qui le
    supportent). La contrainte unique (content_id, version) reste le dernier garde-fou:
    un conflit est rejoué de façon transparente.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        categories: CategoryRepo | None = None,
        locks: KeyedLock | None = None,
        lock_timeout: float = 30.0,
    ) -> None:
        """Construit le store avec une factory de sessions (SQLAlchemy)."""
        self._factory = session_factory
        self.categories = categories or CategoryRepo(session_factory)
        self._locks = locks or KeyedLock()
        self._lock_timeout = lock_timeout
        self._listeners: list[CommitListener] = []
        self._log = structlog.get_logger(__name__).bind(component="content_version_store")

    def add_commit_listener(self, listener: CommitListener) -> None:
        """Enregistre un callback joué après chaque commit effectif (signal de cache...)."""
        self._listeners.append(listener)

    def commit(
        self,
        content_id: str | None,
        operation: OperationKind,
        text: str,
        metadata: Mapping[str, Any] | None = None,
        *,
        actor: str,
        envelope_ref: str | None = None,
    ) -> CommitResult:
        """Écrit une nouvelle version dans une transaction unique.

        Args:
            content_id: contenu ciblé (ignoré pour create).
            operation: create | update | delete.
            text: texte de la version.
            metadata: valeurs par nom de catégorie, attachées à la nouvelle version.
            actor: identité inscrite sur la version.
            envelope_ref: enveloppe à l'origine du commit; un second commit pour la même
                référence renvoie la version existante sans écrire.

        Raises:
            ContentNotFoundError, ContentDeletedError, MetadataError: erreurs permanentes.
            VersionConflictError, TransientProcessingError: erreurs transitoires.
        """
        operation = OperationKind(operation)
        metadata = dict(metadata or {})
        for _ in range(MAX_VERSION_CONFLICT_RETRIES):
            try:
                if operation is OperationKind.CREATE:
                    return self._commit_once(None, operation, text, metadata, actor, envelope_ref)
                if not content_id:
                    raise ContentNotFoundError(f"{operation.value} requires a content id")
                try:
                    with self._locks.hold(content_id, timeout=self._lock_timeout):
                        return self._commit_once(
                            content_id, operation, text, metadata, actor, envelope_ref
                        )
                except TimeoutError as exc:
                    raise TransientProcessingError(f"lock contention on {content_id}") from exc
            except IntegrityError as exc:
                if envelope_ref:
                    existing = self.get_by_envelope(envelope_ref)
                    if existing is not None:
                        return existing
                if not _is_allocation_conflict(exc):
                    raise
                VERSION_CONFLICTS_TOTAL.inc()
                self._log.warning("version_conflict_retry", content_id=content_id)
        raise VersionConflictError(f"version allocation kept conflicting for {content_id}")

    def _commit_once(
        self,
        content_id: str | None,
        operation: OperationKind,
        text: str,
        metadata: dict[str, Any],
        actor: str,
        envelope_ref: str | None,
    ) -> CommitResult:
        with session_scope(self._factory) as session:
            if envelope_ref:
                existing = self._find_by_envelope(session, envelope_ref)
                if existing is not None:
                    return existing
            now = datetime.now(UTC)
            if operation is OperationKind.CREATE:
                content_id = new_content_id()
                session.add(
                    ContentItemORM(
                        content_id=content_id,
                        current_version=1,
                        state=ContentState.ACTIVE.value,
                        created_at=now,
                        updated_at=now,
                    )
                )
                number = 1
            else:
                item = session.execute(
                    select(ContentItemORM)
                    .where(ContentItemORM.content_id == content_id)
                    .with_for_update()
                ).scalar_one_or_none()
                if item is None:
                    raise ContentNotFoundError(f"unknown content id: {content_id}")
                if item.state == ContentState.DELETED.value:
                    raise ContentDeletedError(f"content {content_id} is deleted")
                current = session.execute(
                    select(func.max(ContentVersionORM.version)).where(
                        ContentVersionORM.content_id == content_id
                    )
                ).scalar()
                number = int(current or 0) + 1
                item.current_version = number
                item.updated_at = now
                if operation is OperationKind.DELETE:
                    item.state = ContentState.DELETED.value
            status = (
                ContentState.DELETED if operation is OperationKind.DELETE else ContentState.ACTIVE
            )
            row = ContentVersionORM(
                content_id=content_id,
                version=number,
                text=text or "",
                status=status.value,
                author=actor,
                envelope_ref=envelope_ref,
                created_at=now,
            )
            session.add(row)
            session.flush()
            session.add_all(self.categories.build_values(session, row.id, metadata))
            session.flush()
            result = CommitResult(content_id=content_id, version_id=row.id, version=number)
            register_action_after_commit(session, COMMITS_TOTAL.labels(operation.value).inc)
            for listener in self._listeners:
                register_action_after_commit(session, listener, result, operation)
            self._log.info(
                "version_committed",
                content_id=content_id,
                version=number,
                operation=operation.value,
            )
            return result

    def _find_by_envelope(self, session: Session, envelope_ref: str) -> CommitResult | None:
        row = session.execute(
            select(ContentVersionORM).where(ContentVersionORM.envelope_ref == envelope_ref)
        ).scalar_one_or_none()
        if row is None:
            return None
        return CommitResult(
            content_id=row.content_id, version_id=row.id, version=row.version, created=False
        )

    def get_by_envelope(self, envelope_ref: str) -> CommitResult | None:
        """Version écrite pour une enveloppe donnée, si elle existe."""
        with session_scope(self._factory) as session:
            return self._find_by_envelope(session, envelope_ref)

    def get_item(self, content_id: str) -> ContentItem | None:
        """Retourne l'item logique, ou None s'il est absent."""
        with session_scope(self._factory) as session:
            row = session.get(ContentItemORM, content_id)
            if row is None:
                return None
            return ContentItem(
                content_id=row.content_id,
                current_version=row.current_version,
                state=ContentState(row.state),
            )

    def get_version(self, content_id: str, version: int | None = None) -> ContentVersion | None:
        """Retourne une version (la courante par défaut) avec ses métadonnées."""
        with session_scope(self._factory) as session:
            stmt = select(ContentVersionORM).where(ContentVersionORM.content_id == content_id)
            if version is None:
                stmt = stmt.order_by(ContentVersionORM.version.desc()).limit(1)
            else:
                stmt = stmt.where(ContentVersionORM.version == version)
            row = session.execute(stmt).scalars().first()
            if row is None:
                return None
            return self._to_domain(session, row)

    def list_versions(self, content_id: str) -> list[ContentVersion]:
        """Historique complet d'un contenu, par numéro de version croissant."""
        with session_scope(self._factory) as session:
            rows = session.execute(
                select(ContentVersionORM)
                .where(ContentVersionORM.content_id == content_id)
                .order_by(ContentVersionORM.version)
            ).scalars()
            return [self._to_domain(session, r) for r in rows.all()]

    def _to_domain(self, session: Session, row: ContentVersionORM) -> ContentVersion:
        values = session.execute(
            select(MetadataCategoryORM.name, MetadataValueORM)
            .join(MetadataValueORM, MetadataValueORM.category_id == MetadataCategoryORM.id)
            .where(MetadataValueORM.version_id == row.id)
        ).all()
        return ContentVersion(
            version_id=row.id,
            content_id=row.content_id,
            version=row.version,
            text=row.text,
            status=ContentState(row.status),
            created_at=row.created_at,
            author=row.author,
            metadata={name: decode_value(value) for name, value in values},
        )

    def get_metadata(self, content_id: str, version: int | None = None) -> dict[str, Any]:
        """Métadonnées d'une version (la courante par défaut); vide si inconnue."""
        found = self.get_version(content_id, version)
        return dict(found.metadata) if found else {}
