"""Tests pour l'Envelope Store (dédup par clé, machine à états)."""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

import pytest

from contentpipe.domain.envelope import (
    ChangeEnvelope,
    EnvelopePayload,
    EnvelopeRef,
    EnvelopeStatus,
    OperationKind,
)
from contentpipe.domain.errors import EnvelopeNotFoundError, InvalidTransitionError
from contentpipe.infra.repo.envelope_repo import EnvelopeStore


def _env(key: str = "k1", source: str = "src1") -> ChangeEnvelope:
    return ChangeEnvelope(
        idempotency_key=key,
        source=source,
        operation=OperationKind.CREATE,
        payload=EnvelopePayload(text="hello", metadata={"title": "T"}),
    )


def test_register_persists_pending(session_factory) -> None:
    """Première vue: enveloppe persistée en `pending`, payload conservé."""
    store = EnvelopeStore(session_factory)
    record, created = store.register(_env())
    assert created is True
    assert record.status is EnvelopeStatus.PENDING
    got = store.require(EnvelopeRef("src1", "k1"))
    assert got.envelope.payload.text == "hello"
    assert got.envelope.payload.metadata == {"title": "T"}
    assert got.envelope.correlation == "src1:k1"


def test_register_same_key_returns_existing(session_factory) -> None:
    """Clé déjà vue: pas de seconde ligne, résultat antérieur renvoyé."""
    store = EnvelopeStore(session_factory)
    store.register(_env())
    store.transition(EnvelopeRef("src1", "k1"), EnvelopeStatus.PROCESSING, increment_attempts=True)
    record, created = store.register(_env())
    assert created is False
    assert record.status is EnvelopeStatus.PROCESSING
    assert record.outcome.attempts == 1


def test_same_key_different_sources_are_distinct(session_factory) -> None:
    store = EnvelopeStore(session_factory)
    assert store.register(_env(source="src1"))[1] is True
    assert store.register(_env(source="src2"))[1] is True


def test_concurrent_register_creates_one_row(session_factory) -> None:
    """Soumissions concurrentes d'une même clé: une seule création."""
    store = EnvelopeStore(session_factory)
    created: list[bool] = []
    lock = threading.Lock()

    def worker() -> None:
        _, was_created = store.register(_env("race"))
        with lock:
            created.append(was_created)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert created.count(True) == 1
    assert len(created) == 8


def test_state_machine_happy_path_and_terminal(session_factory) -> None:
    """pending -> processing -> committed; aucun départ depuis un état terminal."""
    store = EnvelopeStore(session_factory)
    ref = EnvelopeRef("src1", "k1")
    store.register(_env())
    store.transition(ref, EnvelopeStatus.PROCESSING, increment_attempts=True)
    done = store.transition(ref, EnvelopeStatus.COMMITTED, outcome=("Cabc", 7, 1))
    assert done.outcome.content_id == "Cabc"
    assert done.outcome.version_id == 7
    assert done.archived_at is not None
    with pytest.raises(InvalidTransitionError):
        store.transition(ref, EnvelopeStatus.PROCESSING)
    with pytest.raises(InvalidTransitionError):
        store.transition(ref, EnvelopeStatus.DEAD_LETTERED)


def test_invalid_transition_and_unknown_key(session_factory) -> None:
    store = EnvelopeStore(session_factory)
    ref = EnvelopeRef("src1", "k1")
    store.register(_env())
    with pytest.raises(InvalidTransitionError):
        store.transition(ref, EnvelopeStatus.COMMITTED)
    with pytest.raises(InvalidTransitionError):
        store.transition(ref, EnvelopeStatus.PROCESSING, expected={EnvelopeStatus.RETRY_SCHEDULED})
    with pytest.raises(EnvelopeNotFoundError):
        store.transition(EnvelopeRef("src1", "nope"), EnvelopeStatus.PROCESSING)
    assert store.get(EnvelopeRef("src1", "nope")) is None


def test_reopen_only_from_dead_letter(session_factory) -> None:
    """Re-soumission: dead-letter -> pending, compteur de tentatives remis à zéro."""
    store = EnvelopeStore(session_factory)
    ref = EnvelopeRef("src1", "k1")
    store.register(_env())
    with pytest.raises(InvalidTransitionError):
        store.reopen(ref)
    store.transition(ref, EnvelopeStatus.PROCESSING, increment_attempts=True)
    store.transition(ref, EnvelopeStatus.DEAD_LETTERED, error="boom")
    reopened = store.reopen(ref)
    assert reopened.status is EnvelopeStatus.PENDING
    assert reopened.outcome.attempts == 0
    assert reopened.archived_at is None
    assert reopened.outcome.error == "boom"


def test_list_by_status_filters_source(session_factory) -> None:
    store = EnvelopeStore(session_factory)
    for key, source in (("a", "src1"), ("b", "src2"), ("c", "src1")):
        store.register(_env(key, source))
        store.transition(EnvelopeRef(source, key), EnvelopeStatus.DEAD_LETTERED, error="x")
    store.register(_env("d", "src1"))
    dead = store.list_by_status(EnvelopeStatus.DEAD_LETTERED)
    assert {r.envelope.idempotency_key for r in dead} == {"a", "b", "c"}
    only_src1 = store.list_by_status(EnvelopeStatus.DEAD_LETTERED, source="src1")
    assert {r.envelope.idempotency_key for r in only_src1} == {"a", "c"}
    assert len(store.list_by_status(EnvelopeStatus.DEAD_LETTERED, limit=1)) == 1


def test_record_to_dict_shape(session_factory) -> None:
    store = EnvelopeStore(session_factory)
    record, _ = store.register(_env())
    data = record.to_dict()
    assert data["status"] == "pending"
    assert data["operation"] == "create"
    assert data["outcome"] == {"content_id": None, "version_id": None, "version": None}


def test_reclaim_only_takes_stale_processing(session_factory) -> None:
    """Reprise d'une tentative abandonnée: `processing` plus ancien que le seuil uniquement."""
    store = EnvelopeStore(session_factory)
    ref = EnvelopeRef("src1", "k1")
    store.register(_env())
    assert store.reclaim(ref, datetime.now(UTC)) is None  # encore pending
    store.transition(ref, EnvelopeStatus.PROCESSING, increment_attempts=True)
    assert store.reclaim(ref, datetime.now(UTC) - timedelta(minutes=5)) is None
    record = store.reclaim(ref, datetime.now(UTC))
    assert record is not None
    assert record.status is EnvelopeStatus.RETRY_SCHEDULED
    assert record.outcome.error == "processing lease expired"
    assert record.outcome.attempts == 1
    assert record.next_attempt_at is not None
    assert store.reclaim(ref, datetime.now(UTC)) is None


def test_list_stale_orders_oldest_first(session_factory) -> None:
    store = EnvelopeStore(session_factory)
    for key in ("a", "b", "c"):
        store.register(_env(key))
    cutoff = datetime.now(UTC)
    store.register(_env("late"))
    stale = store.list_stale(EnvelopeStatus.PENDING, cutoff)
    assert [r.envelope.idempotency_key for r in stale] == ["a", "b", "c"]
    every = store.list_stale(EnvelopeStatus.PENDING)
    assert [r.envelope.idempotency_key for r in every] == ["a", "b", "c", "late"]
    assert store.list_stale(EnvelopeStatus.PROCESSING) == []
