"""Tests pour le Processing Coordinator (fan-out, agrégation, timeouts, commit)."""

from __future__ import annotations

import time

import pytest

from contentpipe.domain.audit import AuditOperation
from contentpipe.domain.envelope import (
    ChangeEnvelope,
    EnvelopePayload,
    OperationKind,
    ProcessKind,
)
from contentpipe.infra.repo.audit_repo import AuditLog
from contentpipe.infra.repo.content_version_repo import ContentVersionStore
from contentpipe.services.coordinator import ProcessingCoordinator
from tests.fakes import CrashingService, FailingService, SlowService, StaticService


@pytest.fixture
def store(session_factory) -> ContentVersionStore:
    s = ContentVersionStore(session_factory)
    s.categories.create_category("title")
    s.categories.create_category("lang")
    return s


@pytest.fixture
def audit(audit_session_factory) -> AuditLog:
    return AuditLog(audit_session_factory)


def _env(key="k1", op=OperationKind.CREATE, content_id=None, text="Doc A", metadata=None):
    return ChangeEnvelope(
        idempotency_key=key,
        source="src1",
        operation=op,
        content_id=content_id,
        payload=EnvelopePayload(text=text, metadata=metadata or {}),
    )


def _coordinator(services, store, audit, **kw) -> ProcessingCoordinator:
    return ProcessingCoordinator(services, store, audit, actor="tester", **kw)


def test_all_services_succeed_commits_and_audits(store, audit) -> None:
    """Tous les services requis réussissent: un commit, un enregistrement CREATE."""
    validation = StaticService("validation")
    translation = StaticService("translation", text="Doc A (fr)", metadata={"lang": "fr"})
    coord = _coordinator([validation, translation], store, audit)
    try:
        result = coord.process(_env(metadata={"title": "Doc A"}))
    finally:
        coord.close()
    assert result.kind is ProcessKind.COMMITTED
    assert result.version == 1
    version = store.get_version(result.content_id)
    assert version.text == "Doc A (fr)"
    assert version.metadata == {"title": "Doc A", "lang": "fr"}
    records = audit.list_records(resource_id=result.content_id)
    assert [r.operation for r in records] == [AuditOperation.CREATE]
    assert records[0].detail["version"] == 1
    assert len(validation.calls) == 1 and validation.calls[0].text == "Doc A"


def test_merge_follows_configured_order(store, audit) -> None:
    """Le dernier texte renvoyé gagne; les métadonnées suivent l'ordre des services."""
    first = StaticService("a", text="from-a", metadata={"lang": "en"})
    second = StaticService("b", metadata={"lang": "fr"})
    coord = _coordinator([first, second], store, audit)
    try:
        result = coord.process(_env())
    finally:
        coord.close()
    version = store.get_version(result.content_id)
    assert version.text == "from-a"
    assert version.metadata == {"lang": "fr"}


def test_permanent_failure_wins_over_transient(store, audit) -> None:
    coord = _coordinator(
        [FailingService("flaky", "transient"), FailingService("validator", "permanent")],
        store,
        audit,
    )
    try:
        result = coord.process(_env())
    finally:
        coord.close()
    assert result.kind is ProcessKind.FAILED
    assert result.errors == ("validator rejected the payload",)
    assert audit.list_records() == []


def test_transient_failure_is_retryable_and_writes_nothing(store, audit, session_factory) -> None:
    coord = _coordinator([StaticService("ok"), FailingService("translation")], store, audit)
    try:
        result = coord.process(_env())
    finally:
        coord.close()
    assert result.kind is ProcessKind.RETRYABLE
    assert "translation unavailable" in result.error_text
    assert store.get_by_envelope("src1:k1") is None


def test_optional_service_failure_is_ignored(store, audit) -> None:
    coord = _coordinator(
        [StaticService("validation"), FailingService("enrich", "permanent", required=False)],
        store,
        audit,
    )
    try:
        assert coord.process(_env()).kind is ProcessKind.COMMITTED
    finally:
        coord.close()


def test_slow_service_is_abandoned_after_timeout(store, audit) -> None:
    """Service hors délai: abandon, résultat transitoire, pas d'attente du straggler."""
    slow = SlowService("slow", delay=1.0, timeout=0.1)
    coord = _coordinator([StaticService("fast"), slow], store, audit)
    try:
        start = time.monotonic()
        result = coord.process(_env())
        elapsed = time.monotonic() - start
    finally:
        coord.close()
    assert result.kind is ProcessKind.RETRYABLE
    assert result.errors == ("slow: timeout",)
    assert elapsed < 0.8
    assert store.get_by_envelope("src1:k1") is None


def test_unexpected_exception_is_transient(store, audit) -> None:
    coord = _coordinator([CrashingService()], store, audit)
    try:
        result = coord.process(_env())
    finally:
        coord.close()
    assert result.kind is ProcessKind.RETRYABLE
    assert "RuntimeError" in result.error_text


def test_services_are_filtered_by_operation(store, audit) -> None:
    creator = StaticService("create-only", operations={OperationKind.CREATE})
    coord = _coordinator([creator], store, audit)
    try:
        created = coord.process(_env("k1"))
        deleted = coord.process(_env("k2", OperationKind.DELETE, created.content_id, text=""))
    finally:
        coord.close()
    assert deleted.kind is ProcessKind.COMMITTED and deleted.version == 2
    assert len(creator.calls) == 1
    ops = [r.operation for r in audit.list_records(resource_id=created.content_id)]
    assert ops == [AuditOperation.CREATE, AuditOperation.DELETE]


def test_store_errors_are_classified(store, audit) -> None:
    """Contenu inconnu ou catégorie inconnue: échec permanent."""
    coord = _coordinator([], store, audit)
    try:
        missing = coord.process(_env(op=OperationKind.UPDATE, content_id="Cnothere00000"))
        unknown_meta = coord.process(_env("k2", metadata={"colour": "blue"}))
    finally:
        coord.close()
    assert missing.kind is ProcessKind.FAILED
    assert unknown_meta.kind is ProcessKind.FAILED
    assert "colour" in unknown_meta.error_text


def test_reprocessing_same_envelope_does_not_duplicate(store, audit) -> None:
    """Rejeu après commit: même version, audit non dupliqué."""
    coord = _coordinator([], store, audit)
    try:
        first = coord.process(_env())
        again = coord.process(_env())
    finally:
        coord.close()
    assert (again.content_id, again.version) == (first.content_id, first.version)
    assert len(store.list_versions(first.content_id)) == 1
    assert len(audit.list_records(resource_id=first.content_id)) == 1
