"""Tests pour le WorkerPool (un drain par source, ack après résultat)."""

from __future__ import annotations

from unittest.mock import MagicMock, call

from sqlalchemy.exc import OperationalError

from contentpipe.core.container import Container
from contentpipe.domain.audit import AuditOperation
from contentpipe.domain.envelope import EnvelopeRef, EnvelopeStatus
from contentpipe.infra.queue.source_queues import InMemorySourceQueues, RedisSourceQueues
from contentpipe.services.pipeline import WorkerPool
from tests.fakes import FailingService, RecordingScheduler, create_message


def test_process_one_acks_after_handling(make_container) -> None:
    c = make_container()
    c.queues.put("src1", create_message("k1"))
    assert c.workers.process_one("src1", timeout=0.01) is True
    assert c.queues.inflight("src1") == []
    assert c.envelopes.require(EnvelopeRef("src1", "k1")).status is EnvelopeStatus.COMMITTED
    assert c.workers.process_one("src1", timeout=0.01) is False


def test_rejected_message_is_acked(make_container) -> None:
    """Un message invalide est rejeté puis acquitté: il ne bloque pas la file."""
    c = make_container()
    c.queues.put("src1", {"op": "explode"})
    c.queues.put("src1", create_message("k2"))
    c.workers.process_one("src1", timeout=0.01)
    c.workers.process_one("src1", timeout=0.01)
    assert c.queues.depth("src1") == 0
    assert c.envelopes.require(EnvelopeRef("src1", "k2")).status is EnvelopeStatus.COMMITTED


def test_handling_error_nacks_message() -> None:
    queues = InMemorySourceQueues()
    pipeline = MagicMock()
    pipeline.handle.side_effect = RuntimeError("database down")
    pool = WorkerPool(queues, pipeline, ["src1"], poll_timeout=0.01)
    queues.put("src1", {"n": 1})
    assert pool.process_one("src1") is True
    assert queues.depth("src1") == 1
    assert queues.inflight("src1") == []


def test_resume_and_replay_messages_are_dispatched(make_container) -> None:
    c = make_container(services=[FailingService("translation")])
    c.pipeline.ingest(create_message("k1"))
    ref = EnvelopeRef("src1", "k1")
    c.queues.put("src1", {"kind": "resume", "source": "src1", "idempotency_key": "k1"})
    c.workers.process_one("src1", timeout=0.01)
    assert c.envelopes.require(ref).outcome.attempts == 2
    # Replay d'une enveloppe non dead-letter: ignoré et acquitté
    c.queues.put("src1", {"kind": "replay", "source": "src1", "idempotency_key": "k1"})
    c.workers.process_one("src1", timeout=0.01)
    assert c.queues.depth("src1") == 0


def test_each_source_has_its_own_thread(make_container) -> None:
    c = make_container()
    c.start()
    assert c.workers.running
    assert sorted(t.name for t in c.workers._threads) == ["worker-src1", "worker-src2"]
    c.workers.stop()
    assert not c.workers.running


def test_redelivery_after_lost_outcome_is_not_stuck(make_container, monkeypatch) -> None:
    """Base indisponible à l'enregistrement du résultat: le message revient et aboutit."""
    c = make_container(PROCESSING_LEASE_S=0.0)
    real_on_result = c.retries.on_result
    calls: list = []

    def on_result_once_down(ref, result):
        calls.append(ref)
        if len(calls) == 1:
            raise OperationalError("UPDATE envelopes", {}, Exception("database is locked"))
        return real_on_result(ref, result)

    monkeypatch.setattr(c.retries, "on_result", on_result_once_down)
    c.queues.put("src1", create_message("k1"))
    ref = EnvelopeRef("src1", "k1")

    c.workers.process_one("src1", timeout=0.01)
    assert c.envelopes.require(ref).status is EnvelopeStatus.PROCESSING
    assert c.queues.depth("src1") == 1

    c.workers.process_one("src1", timeout=0.01)
    record = c.envelopes.require(ref)
    assert record.status is EnvelopeStatus.COMMITTED
    assert record.outcome.attempts == 2
    assert c.queues.depth("src1") == 0
    assert c.queues.inflight("src1") == []
    assert len(c.content.list_versions(record.outcome.content_id)) == 1
    creates = c.audit.list_records(operation=AuditOperation.CREATE)
    assert [r.resource_id for r in creates] == [record.outcome.content_id]


def test_start_requeues_redis_inflight_messages(settings) -> None:
    """Backend Redis: les messages restés en vol d'un worker arrêté repartent en file."""
    queues = MagicMock(spec=RedisSourceQueues)
    queues.recover_inflight.return_value = 1
    c = Container(settings, services=[], queues=queues, scheduler=RecordingScheduler())
    try:
        c.start(workers=False)
        assert queues.recover_inflight.call_args_list == [call("src1"), call("src2")]
        assert c.recover()["inflight_requeued"] == 2
    finally:
        c.close()


def test_start_recovers_stale_envelopes(make_container) -> None:
    """Au démarrage: tentative abandonnée et enveloppe `pending` orpheline replanifiées."""
    c = make_container(PROCESSING_LEASE_S=0.0)
    c.pipeline.router.dispatcher = None
    c.pipeline.ingest(create_message("orphan"))
    c.pipeline.ingest(create_message("crashed"))
    crashed = EnvelopeRef("src1", "crashed")
    c.envelopes.transition(crashed, EnvelopeStatus.PROCESSING, increment_attempts=True)

    c.start(workers=False)
    scheduled = {ref.idempotency_key: delay for ref, delay in c.scheduler.scheduled}
    assert scheduled == {"orphan": 0.0, "crashed": 0.0}
    assert c.envelopes.require(crashed).status is EnvelopeStatus.RETRY_SCHEDULED

    for key in ("orphan", "crashed"):
        assert c.pipeline.resume("src1", key).status is EnvelopeStatus.COMMITTED
    assert c.envelopes.require(crashed).outcome.attempts == 2
