"""
Configuration de l'environnement Alembic pour les migrations de base de données.

Ce module configure Alembic pour gérer les migrations du pipeline, en modes offline et online.
`-x db=audit` migre la base d'audit (AUDIT_DATABASE_URL), `-x db=content` la base de contenu;
par défaut toutes les tables sont créées dans DATABASE_URL.
"""

from __future__ import annotations

import sys
from logging.config import fileConfig
from pathlib import Path

from sqlalchemy import create_engine, pool

from alembic import context  # type: ignore[attr-defined]

# Allow importing project modules when running via Alembic CLI
_this = Path(__file__).resolve()
for p in (_this.parent.parent, Path.cwd()):
    s = str(p)
    if s and s not in sys.path:
        sys.path.append(s)

from contentpipe.core.settings import get_settings  # noqa: E402
from contentpipe.infra.repo.models import AuditBase, Base  # noqa: E402

# this is the Alembic Config object, which provides
# access to the values within the .ini file in use.
config = context.config

# Interpret the config file for Python logging.
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

_db = context.get_x_argument(as_dictionary=True).get("db", "all")
_settings = get_settings()

if _db == "audit":
    target_metadata = AuditBase.metadata
    _url = _settings.AUDIT_DATABASE_URL or _settings.DATABASE_URL
elif _db == "content":
    target_metadata = Base.metadata
    _url = _settings.DATABASE_URL
else:
    target_metadata = [Base.metadata, AuditBase.metadata]
    _url = _settings.DATABASE_URL


def run_migrations_offline() -> None:
    """Exécute les migrations sans connexion (bindings littéraux)."""
    context.configure(url=_url, target_metadata=target_metadata, literal_binds=True)
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Exécute les migrations avec une connexion active à la base."""
    connectable = create_engine(_url, poolclass=pool.NullPool)
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
