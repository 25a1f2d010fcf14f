"""Tests pour le Retry / Dead-letter Manager (backoff, épuisement, annulation)."""

from __future__ import annotations

import time
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from contentpipe.core.constants import RESUME_TASK_NAME
from contentpipe.domain.audit import AuditOperation
from contentpipe.domain.envelope import (
    ChangeEnvelope,
    EnvelopePayload,
    EnvelopeRef,
    EnvelopeStatus,
    OperationKind,
    ProcessResult,
)
from contentpipe.domain.errors import InvalidTransitionError
from contentpipe.infra.repo.audit_repo import AuditLog
from contentpipe.infra.repo.db import session_scope
from contentpipe.infra.repo.envelope_repo import EnvelopeStore
from contentpipe.services.retry_manager import (
    BackoffPolicy,
    CeleryRetryScheduler,
    RetryManager,
    ThreadRetryScheduler,
    resume_message,
)
from tests.fakes import RecordingScheduler

REF = EnvelopeRef("src1", "k1")


@pytest.fixture
def manager(session_factory, audit_session_factory) -> RetryManager:
    envelopes = EnvelopeStore(session_factory)
    envelopes.register(
        ChangeEnvelope(
            idempotency_key="k1",
            source="src1",
            operation=OperationKind.CREATE,
            payload=EnvelopePayload(text="x"),
        )
    )
    return RetryManager(
        envelopes,
        AuditLog(audit_session_factory),
        RecordingScheduler(),
        policy=BackoffPolicy(max_attempts=3, base_delay=1.0, max_delay=3.0),
    )


def test_backoff_doubles_and_caps() -> None:
    policy = BackoffPolicy(base_delay=1.0, max_delay=10.0, jitter=False)
    assert [policy.delay(a) for a in (1, 2, 3, 4, 5)] == [1.0, 2.0, 4.0, 8.0, 10.0]


def test_backoff_jitter_stays_within_half_to_full() -> None:
    policy = BackoffPolicy(base_delay=2.0, max_delay=100.0)
    for _ in range(200):
        assert 2.0 <= policy.delay(2) <= 4.0


def test_exhaustion_counts_total_attempts() -> None:
    policy = BackoffPolicy(max_attempts=3)
    assert not policy.exhausted(2)
    assert policy.exhausted(3)


def test_transient_result_schedules_retry_after_commit(manager) -> None:
    manager.start_attempt(REF)
    record = manager.on_result(REF, ProcessResult.retryable(["translation: timeout"]))
    assert record.status is EnvelopeStatus.RETRY_SCHEDULED
    assert record.outcome.error == "translation: timeout"
    assert record.next_attempt_at is not None
    ((ref, delay),) = manager.scheduler.scheduled
    assert ref == REF
    assert 0.5 <= delay <= 1.0


def test_transient_until_exhausted_then_dead_letter(manager) -> None:
    """Trois tentatives au total, puis dead-letter; plus aucun retry ensuite."""
    for _ in range(3):
        assert manager.start_attempt(REF) is not None
        record = manager.on_result(REF, ProcessResult.retryable(["down"]))
    assert record.status is EnvelopeStatus.DEAD_LETTERED
    assert record.outcome.attempts == 3
    assert "retries exhausted after 3 attempts" in record.outcome.error
    assert len(manager.scheduler.scheduled) == 2
    assert manager.start_attempt(REF) is None
    (audit,) = manager.audit.list_records(operation=AuditOperation.DEAD_LETTER)
    assert audit.resource_id == "src1:k1"
    assert audit.detail["reason"] == "exhausted"


def test_permanent_result_dead_letters_immediately(manager) -> None:
    manager.start_attempt(REF)
    record = manager.on_result(REF, ProcessResult.failed(["validation: bad"]))
    assert record.status is EnvelopeStatus.DEAD_LETTERED
    assert record.outcome.attempts == 1
    assert manager.scheduler.scheduled == []


def test_committed_result_stores_outcome(manager) -> None:
    manager.start_attempt(REF)
    record = manager.on_result(REF, ProcessResult.committed("Cabc", 4, 2))
    assert record.status is EnvelopeStatus.COMMITTED
    assert (record.outcome.content_id, record.outcome.version) == ("Cabc", 2)


def test_cancel_from_retry_scheduled(manager) -> None:
    manager.start_attempt(REF)
    manager.on_result(REF, ProcessResult.retryable(["down"]))
    record = manager.cancel("src1", "k1", "bad data upstream")
    assert record.status is EnvelopeStatus.DEAD_LETTERED
    assert record.outcome.error == "cancelled: bad data upstream"
    assert manager.start_attempt(REF) is None


def test_cancel_refused_while_processing_or_terminal(manager) -> None:
    manager.start_attempt(REF)
    with pytest.raises(InvalidTransitionError):
        manager.cancel("src1", "k1", "nope")
    manager.on_result(REF, ProcessResult.committed("Cabc", 1, 1))
    with pytest.raises(InvalidTransitionError):
        manager.cancel("src1", "k1", "nope")


def test_reclaimed_attempt_with_spent_budget_dead_letters(manager) -> None:
    """Dernière tentative abandonnée (worker tombé): dead-letter, pas de quatrième tentative."""
    for _ in range(2):
        manager.start_attempt(REF)
        manager.on_result(REF, ProcessResult.retryable(["down"]))
    manager.start_attempt(REF)
    assert manager.envelopes.reclaim(REF, datetime.now(UTC)) is not None
    assert manager.start_attempt(REF) is None
    record = manager.envelopes.require(REF)
    assert record.status is EnvelopeStatus.DEAD_LETTERED
    assert record.outcome.attempts == 3
    assert record.outcome.error.startswith("retries exhausted after 3 attempts")
    (audit,) = manager.audit.list_records(operation=AuditOperation.DEAD_LETTER)
    assert audit.detail["reason"] == "exhausted"


def test_dead_letter_audit_failure_keeps_transition(manager, monkeypatch) -> None:
    """Audit indisponible: la dead-letter reste acquise et l'erreur remonte au worker."""

    def audit_down(record):
        raise OperationalError("INSERT INTO audit_records", {}, Exception("database is locked"))

    monkeypatch.setattr(manager.audit, "record", audit_down)
    manager.start_attempt(REF)
    with pytest.raises(OperationalError):
        manager.on_result(REF, ProcessResult.failed(["validation: bad"]))
    assert manager.envelopes.require(REF).status is EnvelopeStatus.DEAD_LETTERED


def test_ensure_dead_letter_audit_restores_missing_record(manager) -> None:
    record = manager.envelopes.transition(
        REF, EnvelopeStatus.DEAD_LETTERED, error="cancelled: upstream purge"
    )
    assert manager.ensure_dead_letter_audit(record) is True
    assert manager.ensure_dead_letter_audit(record) is False
    (audit,) = manager.audit.list_records(operation=AuditOperation.DEAD_LETTER)
    assert audit.detail["reason"] == "cancelled"
    assert audit.detail["error"] == "cancelled: upstream purge"
    assert audit.correlation_id == "src1:k1"


def test_ensure_dead_letter_audit_ignores_live_envelope(manager) -> None:
    assert manager.ensure_dead_letter_audit(manager.envelopes.require(REF)) is False
    assert manager.audit.list_records(operation=AuditOperation.DEAD_LETTER) == []


def test_recover_reschedules_what_timers_held(manager) -> None:
    """Reprise au démarrage: retry replanifié à son échéance, tentative abandonnée reprise."""
    manager.envelopes.register(
        ChangeEnvelope(
            idempotency_key="k2",
            source="src1",
            operation=OperationKind.CREATE,
            payload=EnvelopePayload(text="y"),
        )
    )
    later = EnvelopeRef("src1", "k2")
    manager.start_attempt(later)
    manager.envelopes.transition(
        later,
        EnvelopeStatus.RETRY_SCHEDULED,
        error="down",
        next_attempt_at=datetime.now(UTC) + timedelta(seconds=60),
    )
    manager.start_attempt(REF)  # reste `processing`

    counts = manager.recover(lease=0.0)
    assert counts == {"reclaimed": 1, "rescheduled": 1, "pending": 0}
    delays = dict(manager.scheduler.scheduled)
    assert delays[REF] == 0.0
    assert 50.0 < delays[later] <= 60.0
    assert manager.envelopes.require(REF).status is EnvelopeStatus.RETRY_SCHEDULED


def test_recover_leaves_fresh_attempts_alone(manager) -> None:
    manager.start_attempt(REF)
    assert manager.recover(lease=300.0) == {"reclaimed": 0, "rescheduled": 0, "pending": 0}
    assert manager.scheduler.scheduled == []
    assert manager.envelopes.require(REF).status is EnvelopeStatus.PROCESSING


def test_thread_scheduler_enqueues_resume_message() -> None:
    seen: list = []
    scheduler = ThreadRetryScheduler(lambda source, msg: seen.append((source, msg)))
    scheduler.schedule(REF, 0.01)
    deadline = time.monotonic() + 2.0
    while not seen and time.monotonic() < deadline:
        time.sleep(0.01)
    assert seen == [("src1", resume_message(REF))]
    assert scheduler.pending() == 0


def test_thread_scheduler_close_cancels_pending() -> None:
    seen: list = []
    scheduler = ThreadRetryScheduler(lambda source, msg: seen.append(msg))
    scheduler.schedule(REF, 5.0)
    assert scheduler.pending() == 1
    scheduler.close()
    assert scheduler.pending() == 0
    assert seen == []


def test_celery_scheduler_sends_to_source_queue_after_commit(session_factory) -> None:
    app = MagicMock()
    scheduler = CeleryRetryScheduler(app)
    with session_scope(session_factory) as session:
        scheduler.schedule_after_commit(session, REF, 2.5)
        app.send_task.assert_not_called()
    app.send_task.assert_called_once_with(
        RESUME_TASK_NAME,
        args=("src1", "k1"),
        kwargs={},
        queue="ingest.src1",
        countdown=2.5,
    )


def test_celery_scheduler_skips_on_rollback(session_factory) -> None:
    app = MagicMock()
    scheduler = CeleryRetryScheduler(app)
    with pytest.raises(RuntimeError):
        with session_scope(session_factory) as session:
            scheduler.schedule_after_commit(session, REF, 1.0)
            raise RuntimeError("boom")
    app.send_task.assert_not_called()
