# ============================================================
# Module : contentpipe/infra/repo/category_repo.py
# Objet  : Arbre des catégories de métadonnées (forêt) + valeurs typées.
# Invariants :
#  - la relation parent forme une forêt (cycle refusé à l'écriture);
#  - suppression refusée tant qu'une valeur référence la catégorie.
# ============================================================

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ...domain.content_version import MetadataCategory, ValueKind
from ...domain.errors import (
    CategoryCycleError,
    CategoryError,
    CategoryInUseError,
    MetadataError,
)
from .db import session_scope
from .models import MetadataCategoryORM, MetadataValueORM


def _to_domain(row: MetadataCategoryORM) -> MetadataCategory:
    return MetadataCategory(
        category_id=row.id,
        name=row.name,
        value_kind=ValueKind(row.value_kind),
        description=row.description or "",
        parent_id=row.parent_id,
    )


def coerce_value(kind: ValueKind, raw: Any) -> dict[str, Any]:
    """Convertit une valeur brute vers la colonne déclarée par la catégorie.

    Returns:
        Les colonnes à renseigner (une seule non nulle).
    Raises:
        MetadataError: valeur non convertible.
    """
    if raw is None:
        raise MetadataError("metadata value must not be null")
    if kind is ValueKind.TEXT:
        return {"value_text": str(raw)}
    if kind is ValueKind.NUMERIC:
        if isinstance(raw, bool):
            raise MetadataError(f"boolean is not numeric: {raw!r}")
        try:
            return {"value_numeric": float(raw)}
        except (TypeError, ValueError) as exc:
            raise MetadataError(f"not a numeric value: {raw!r}") from exc
    if isinstance(raw, datetime):
        ts = raw
    else:
        try:
            ts = datetime.fromisoformat(str(raw))
        except ValueError as exc:
            raise MetadataError(f"not an ISO-8601 timestamp: {raw!r}") from exc
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return {"value_timestamp": ts}


def decode_value(row: MetadataValueORM) -> Any:
    """Valeur typée portée par une ligne de métadonnée."""
    if row.value_text is not None:
        return row.value_text
    if row.value_numeric is not None:
        return row.value_numeric
    return row.value_timestamp


class CategoryRepo:
    """CRUD des catégories et validation de forêt."""

    def __init__(self, session_factory: sessionmaker) -> None:
        """Construit le repo avec une factory de sessions (SQLAlchemy)."""
        self._factory = session_factory

    def create_category(
        self,
        name: str,
        value_kind: ValueKind | str = ValueKind.TEXT,
        description: str = "",
        parent_id: int | None = None,
    ) -> MetadataCategory:
        """Crée une catégorie; le parent doit exister. Lève CategoryError sur doublon de nom."""
        kind = ValueKind(value_kind)
        try:
            with session_scope(self._factory) as session:
                if parent_id is not None and session.get(MetadataCategoryORM, parent_id) is None:
                    raise CategoryError(f"unknown parent category: {parent_id}")
                row = MetadataCategoryORM(
                    name=name, description=description, value_kind=kind.value, parent_id=parent_id
                )
                session.add(row)
                session.flush()
                return _to_domain(row)
        except IntegrityError as exc:
            raise CategoryError(f"category already exists: {name}") from exc

    def reparent_category(self, category_id: int, parent_id: int | None) -> MetadataCategory:
        """Change le parent d'une catégorie après vérification d'absence de cycle."""
        with session_scope(self._factory) as session:
            row = session.get(MetadataCategoryORM, category_id)
            if row is None:
                raise CategoryError(f"unknown category: {category_id}")
            if parent_id is not None:
                self._check_no_cycle(session, category_id, parent_id)
            row.parent_id = parent_id
            session.flush()
            return _to_domain(row)

    def _check_no_cycle(self, session: Session, category_id: int, parent_id: int) -> None:
        # Remonte depuis le futur parent: rencontrer category_id signifie un cycle
        seen: set[int] = set()
        current: int | None = parent_id
        while current is not None:
            if current == category_id:
                raise CategoryCycleError(
                    f"category {category_id} cannot be placed under {parent_id}"
                )
            if current in seen:  # pragma: no cover - base déjà incohérente
                raise CategoryCycleError(f"existing cycle detected at {current}")
            seen.add(current)
            node = session.get(MetadataCategoryORM, current)
            if node is None:
                raise CategoryError(f"unknown parent category: {current}")
            current = node.parent_id

    def delete_category(self, category_id: int) -> None:
        """Supprime une catégorie non référencée et sans enfants."""
        with session_scope(self._factory) as session:
            row = session.get(MetadataCategoryORM, category_id)
            if row is None:
                raise CategoryError(f"unknown category: {category_id}")
            in_use = session.execute(
                select(func.count(MetadataValueORM.id)).where(
                    MetadataValueORM.category_id == category_id
                )
            ).scalar_one()
            if in_use:
                raise CategoryInUseError(
                    f"category {row.name} is referenced by {in_use} metadata values"
                )
            children = session.execute(
                select(func.count(MetadataCategoryORM.id)).where(
                    MetadataCategoryORM.parent_id == category_id
                )
            ).scalar_one()
            if children:
                raise CategoryError(f"category {row.name} still has {children} children")
            session.delete(row)

    def get_by_name(self, name: str) -> MetadataCategory | None:
        with session_scope(self._factory) as session:
            row = session.execute(
                select(MetadataCategoryORM).where(MetadataCategoryORM.name == name)
            ).scalar_one_or_none()
            return _to_domain(row) if row else None

    def list_categories(self) -> list[MetadataCategory]:
        with session_scope(self._factory) as session:
            rows = session.execute(select(MetadataCategoryORM).order_by(MetadataCategoryORM.id))
            return [_to_domain(r) for r in rows.scalars().all()]

    def ancestors(self, category_id: int) -> list[MetadataCategory]:
        """Chaîne des parents, du plus proche à la racine."""
        out: list[MetadataCategory] = []
        with session_scope(self._factory) as session:
            row = session.get(MetadataCategoryORM, category_id)
            while row is not None and row.parent_id is not None:
                row = session.get(MetadataCategoryORM, row.parent_id)
                if row is not None:
                    out.append(_to_domain(row))
        return out

    def build_values(
        self, session: Session, version_id: int, metadata: Mapping[str, Any]
    ) -> list[MetadataValueORM]:
        """Construit les lignes de métadonnées d'une version dans la transaction courante.

        Raises:
            MetadataError: catégorie inconnue ou valeur non convertible.
        """
        if not metadata:
            return []
        rows = session.execute(
            select(MetadataCategoryORM).where(MetadataCategoryORM.name.in_(list(metadata)))
        ).scalars()
        by_name = {r.name: r for r in rows}
        values: list[MetadataValueORM] = []
        for name, raw in metadata.items():
            category = by_name.get(name)
            if category is None:
                raise MetadataError(f"unknown metadata category: {name}")
            columns = coerce_value(ValueKind(category.value_kind), raw)
            values.append(MetadataValueORM(version_id=version_id, category_id=category.id, **columns))
        return values
