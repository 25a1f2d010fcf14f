# mypy: ignore-errors
"""
Migration Alembic initiale du pipeline d'ingestion.

Crée les tables du Content Version Store (items, versions, catégories, valeurs), de
l'Envelope Store et de l'audit log. Avec `-x db=content` ou `-x db=audit`, seules les
tables de la base ciblée sont créées (audit sur moteur indépendant).
"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import context, op

# revision identifiers, used by Alembic.
revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def _target() -> str:
    return context.get_x_argument(as_dictionary=True).get("db", "all")


def _upgrade_content() -> None:
    op.create_table(
        "content_items",
        sa.Column("content_id", sa.String(length=32), primary_key=True),
        sa.Column("current_version", sa.Integer(), nullable=False),
        sa.Column("state", sa.String(length=16), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_table(
        "content_versions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "content_id",
            sa.String(length=32),
            sa.ForeignKey("content_items.content_id"),
            nullable=False,
        ),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("author", sa.String(length=255), nullable=False),
        sa.Column("envelope_ref", sa.String(length=512), nullable=True, unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("content_id", "version", name="uq_content_version"),
    )
    op.create_table(
        "metadata_categories",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=128), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("value_kind", sa.String(length=16), nullable=False),
        sa.Column(
            "parent_id", sa.Integer(), sa.ForeignKey("metadata_categories.id"), nullable=True
        ),
    )
    op.create_table(
        "metadata_values",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "version_id", sa.Integer(), sa.ForeignKey("content_versions.id"), nullable=False
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("metadata_categories.id"), nullable=False
        ),
        sa.Column("value_text", sa.Text(), nullable=True),
        sa.Column("value_numeric", sa.Float(), nullable=True),
        sa.Column("value_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("version_id", "category_id", name="uq_version_category"),
    )
    op.create_table(
        "envelopes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("source", sa.String(length=128), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("operation", sa.String(length=16), nullable=False),
        sa.Column("content_id", sa.String(length=32), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("correlation_id", sa.String(length=512), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("outcome_content_id", sa.String(length=32), nullable=True),
        sa.Column("outcome_version_id", sa.Integer(), nullable=True),
        sa.Column("outcome_version", sa.Integer(), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("source", "idempotency_key", name="uq_envelope_source_key"),
    )
    op.create_index("ix_envelopes_status", "envelopes", ["status"])


def _upgrade_audit() -> None:
    op.create_table(
        "audit_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("correlation_id", sa.String(length=512), nullable=False),
        sa.Column("operation", sa.String(length=32), nullable=False),
        sa.Column("resource_type", sa.String(length=64), nullable=False),
        sa.Column("resource_id", sa.String(length=255), nullable=False),
        sa.Column("actor", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("detail", sa.JSON(), nullable=True),
        sa.UniqueConstraint(
            "correlation_id",
            "resource_id",
            "operation",
            name="uq_audit_correlation_resource_op",
        ),
    )


def upgrade() -> None:
    """Crée les tables de la (ou des) base(s) ciblée(s)."""
    target = _target()
    if target in ("all", "content"):
        _upgrade_content()
    if target in ("all", "audit"):
        _upgrade_audit()


def downgrade() -> None:
    """Supprime les tables créées par `upgrade`."""
    target = _target()
    if target in ("all", "audit"):
        op.drop_table("audit_records")
    if target in ("all", "content"):
        op.drop_index("ix_envelopes_status", table_name="envelopes")
        op.drop_table("envelopes")
        op.drop_table("metadata_values")
        op.drop_table("metadata_categories")
        op.drop_table("content_versions")
        op.drop_table("content_items")
