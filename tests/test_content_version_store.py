# ============================================================
# Tests : tests/test_content_version_store.py
# Objet  : Commit versionné, monotonie, atomicité, suppression logique.
# ============================================================
"""
Tests pour le Content Version Store.

Base SQLite fichier (tmp_path) pour que les threads partagent les mêmes données.
"""

from __future__ import annotations

import threading

import pytest
from sqlalchemy import func, select

from contentpipe.domain.content_version import ContentState, ValueKind
from contentpipe.domain.envelope import OperationKind
from contentpipe.domain.errors import (
    ContentDeletedError,
    ContentNotFoundError,
    MetadataError,
)
from contentpipe.infra.repo.category_repo import CategoryRepo
from contentpipe.infra.repo.content_version_repo import ContentVersionStore
from contentpipe.infra.repo.db import session_scope
from contentpipe.infra.repo.models import ContentVersionORM, MetadataValueORM


def _store(session_factory) -> ContentVersionStore:
    return ContentVersionStore(session_factory, categories=CategoryRepo(session_factory))


def test_create_allocates_id_and_version_one(session_factory) -> None:
    """Un create attribue un content_id opaque et la version 1."""
    store = _store(session_factory)
    res = store.commit(None, OperationKind.CREATE, "Doc A", actor="tester")
    assert res.content_id.startswith("C") and len(res.content_id) == 13
    assert res.version == 1 and res.created is True
    item = store.get_item(res.content_id)
    assert item is not None and item.current_version == 1 and item.state is ContentState.ACTIVE


def test_updates_are_sequential(session_factory) -> None:
    """Les updates produisent 2, 3... et le pointeur courant suit."""
    store = _store(session_factory)
    cid = store.commit(None, "create", "v1", actor="t").content_id
    for i in range(2, 5):
        assert store.commit(cid, "update", f"v{i}", actor="t").version == i
    assert [v.version for v in store.list_versions(cid)] == [1, 2, 3, 4]
    assert store.get_version(cid).text == "v4"
    assert store.get_version(cid, 2).text == "v2"
    assert store.get_item(cid).current_version == 4


def test_concurrent_updates_never_share_a_version(session_factory) -> None:
    """Des updates concurrents sur un même content_id donnent 1..N sans trou ni doublon."""
    store = _store(session_factory)
    cid = store.commit(None, "create", "base", actor="t").content_id
    errors: list[BaseException] = []

    def worker(n: int) -> None:
        try:
            store.commit(cid, "update", f"w{n}", actor="t")
        except BaseException as exc:  # pragma: no cover - remonté par l'assert
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(12)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []
    assert [v.version for v in store.list_versions(cid)] == list(range(1, 14))


def test_update_unknown_content_is_permanent(session_factory) -> None:
    """Update d'un content_id inconnu: erreur permanente."""
    store = _store(session_factory)
    with pytest.raises(ContentNotFoundError):
        store.commit("Cdeadbeef0000", "update", "x", actor="t")


def test_delete_writes_deleted_version(session_factory) -> None:
    """Delete: nouvelle version `deleted`, item marqué supprimé, historique conservé."""
    store = _store(session_factory)
    cid = store.commit(None, "create", "alive", actor="t").content_id
    res = store.commit(cid, "delete", "", actor="t")
    assert res.version == 2
    assert store.get_item(cid).state is ContentState.DELETED
    versions = store.list_versions(cid)
    assert [v.status for v in versions] == [ContentState.ACTIVE, ContentState.DELETED]
    assert versions[0].text == "alive"
    with pytest.raises(ContentDeletedError):
        store.commit(cid, "update", "again", actor="t")


def test_metadata_is_attached_to_new_version(session_factory) -> None:
    """Les métadonnées sont typées et portées par la version écrite."""
    store = _store(session_factory)
    store.categories.create_category("title", ValueKind.TEXT)
    store.categories.create_category("pages", ValueKind.NUMERIC)
    cid = store.commit(
        None, "create", "doc", {"title": "Doc A", "pages": "12"}, actor="t"
    ).content_id
    assert store.get_metadata(cid) == {"title": "Doc A", "pages": 12.0}
    store.commit(cid, "update", "doc2", {"title": "Doc B"}, actor="t")
    assert store.get_metadata(cid, 1)["title"] == "Doc A"
    assert store.get_metadata(cid) == {"title": "Doc B"}


def test_failed_metadata_leaves_no_partial_version(session_factory) -> None:
    """Valeur non convertible: ni version ni métadonnée visibles (atomicité)."""
    store = _store(session_factory)
    store.categories.create_category("pages", ValueKind.NUMERIC)
    cid = store.commit(None, "create", "doc", {"pages": 1}, actor="t").content_id
    with pytest.raises(MetadataError):
        store.commit(cid, "update", "bad", {"pages": "many"}, actor="t")
    with pytest.raises(MetadataError):
        store.commit(cid, "update", "bad", {"unknown": "x"}, actor="t")
    assert [v.version for v in store.list_versions(cid)] == [1]
    assert store.get_item(cid).current_version == 1
    with session_scope(session_factory) as s:
        assert s.execute(select(func.count(ContentVersionORM.id))).scalar_one() == 1
        assert s.execute(select(func.count(MetadataValueORM.id))).scalar_one() == 1


def test_recommit_same_envelope_returns_existing_version(session_factory) -> None:
    """Un second commit pour la même enveloppe ne crée pas de version."""
    store = _store(session_factory)
    first = store.commit(None, "create", "doc", actor="t", envelope_ref="src1:abc")
    again = store.commit(None, "create", "doc", actor="t", envelope_ref="src1:abc")
    assert (again.content_id, again.version_id, again.version) == (
        first.content_id,
        first.version_id,
        first.version,
    )
    assert again.created is False
    assert store.get_by_envelope("src1:abc").content_id == first.content_id


def test_commit_listener_runs_after_commit_only(session_factory) -> None:
    """Le callback (signal de cache) n'est joué que pour un commit effectif."""
    store = _store(session_factory)
    seen: list[tuple[str, int]] = []
    store.add_commit_listener(lambda res, op: seen.append((res.content_id, res.version)))
    cid = store.commit(None, "create", "doc", actor="t").content_id
    with pytest.raises(ContentNotFoundError):
        store.commit("Cmissing00000", "update", "x", actor="t")
    assert seen == [(cid, 1)]


def test_version_rows_record_author(session_factory) -> None:
    store = _store(session_factory)
    cid = store.commit(None, "create", "doc", actor="importer-bot").content_id
    assert store.get_version(cid).author == "importer-bot"
