"""Configuration de test pour pytest avec gestion des chemins.

Ce module ajoute la racine du projet au sys.path et fournit des conteneurs de pipeline
sur une base SQLite fichier (dans `tmp_path`) partagée entre threads.
"""

import os
import sys
from collections.abc import Callable, Iterator

import pytest

# Ensure project root is on sys.path so that
# imports like `from contentpipe...` resolve.
CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from contentpipe.core.container import Container  # noqa: E402
from contentpipe.core.settings import Settings  # noqa: E402
from contentpipe.infra.repo.db import get_engine, get_session_factory  # noqa: E402
from contentpipe.infra.repo.models import AuditBase, Base  # noqa: E402
from tests.fakes import RecordingScheduler  # noqa: E402


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings isolés: SQLite fichier, files in-memory, pas de service HTTP."""
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+pysqlite:///{tmp_path / 'content.db'}",
        AUDIT_DATABASE_URL=f"sqlite+pysqlite:///{tmp_path / 'audit.db'}",
        QUEUE_BACKEND="memory",
        INGEST_SOURCES=["src1", "src2"],
        QUEUE_POLL_TIMEOUT_S=0.05,
        RETRY_SCHEDULER="thread",
        RETRY_MAX_ATTEMPTS=3,
        RETRY_BASE_DELAY_S=0.01,
        RETRY_MAX_DELAY_S=0.05,
        SERVICE_TIMEOUT_S=2.0,
        PROCESSING_SERVICES_JSON="[]",
        COMPLIANCE_WEBHOOK_URL=None,
    )


@pytest.fixture
def session_factory(tmp_path):
    """Factory de sessions sur une base contenu/enveloppes vierge."""
    engine = get_engine(f"sqlite+pysqlite:///{tmp_path / 'store.db'}")
    Base.metadata.create_all(engine)
    yield get_session_factory(engine)
    engine.dispose()


@pytest.fixture
def audit_session_factory(tmp_path):
    """Factory de sessions sur une base d'audit vierge (moteur indépendant)."""
    engine = get_engine(f"sqlite+pysqlite:///{tmp_path / 'audit_only.db'}")
    AuditBase.metadata.create_all(engine)
    yield get_session_factory(engine)
    engine.dispose()


@pytest.fixture
def make_container(settings) -> Iterator[Callable[..., Container]]:
    """Construit des conteneurs (services et planificateur injectables), fermés en fin de test."""
    built: list[Container] = []

    def _make(services=None, scheduler=None, **overrides) -> Container:
        s = settings.model_copy(update=overrides) if overrides else settings
        c = Container(
            s,
            services=services if services is not None else [],
            scheduler=scheduler if scheduler is not None else RecordingScheduler(),
        )
        built.append(c)
        return c

    yield _make
    for c in built:
        c.close()
