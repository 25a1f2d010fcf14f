"""Tests pour les files par source (in-memory et Redis simulé)."""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest

from contentpipe.infra.queue.source_queues import (
    Delivery,
    InMemorySourceQueues,
    RedisSourceQueues,
)


def test_in_memory_fifo_per_source() -> None:
    q = InMemorySourceQueues()
    q.put("src1", {"n": 1})
    q.put("src2", {"n": 99})
    q.put("src1", {"n": 2})
    assert q.depth("src1") == 2
    assert q.get("src1", timeout=0.01).message == {"n": 1}
    assert q.get("src1", timeout=0.01).message == {"n": 2}
    assert q.get("src1", timeout=0.01) is None
    assert q.get("src2", timeout=0.01).message == {"n": 99}


def test_in_memory_inflight_until_ack() -> None:
    q = InMemorySourceQueues()
    q.put("src1", {"n": 1})
    delivery = q.get("src1", timeout=0.01)
    assert q.inflight("src1") == [{"n": 1}]
    q.ack(delivery)
    assert q.inflight("src1") == []


def test_in_memory_nack_puts_message_back_at_head() -> None:
    """Un message non acquitté repasse devant les suivants (ordre intra-source)."""
    q = InMemorySourceQueues()
    q.put("src1", {"n": 1})
    q.put("src1", {"n": 2})
    first = q.get("src1", timeout=0.01)
    q.nack(first)
    assert q.inflight("src1") == []
    assert q.get("src1", timeout=0.01).message == {"n": 1}


def test_redis_backend_uses_reliable_move() -> None:
    client = MagicMock()
    client.blmove.return_value = json.dumps({"n": 1})
    client.llen.return_value = 0
    q = RedisSourceQueues(client=client)
    q.put("src1", {"n": 1})
    client.rpush.assert_called_once_with("ingest:queue:src1", json.dumps({"n": 1}))
    delivery = q.get("src1", timeout=2)
    client.blmove.assert_called_once_with(
        "ingest:queue:src1", "ingest:inflight:src1", 2, "LEFT", "RIGHT"
    )
    assert delivery.message == {"n": 1}
    q.ack(delivery)
    client.lrem.assert_called_once_with("ingest:inflight:src1", 1, delivery.raw)


def test_redis_get_timeout_returns_none() -> None:
    client = MagicMock()
    client.blmove.return_value = None
    assert RedisSourceQueues(client=client).get("src1", timeout=1) is None


def test_redis_nack_is_atomic_pipeline() -> None:
    client = MagicMock()
    pipe = client.pipeline.return_value
    q = RedisSourceQueues(client=client)
    q.nack(Delivery(source="src1", message={"n": 1}, raw='{"n": 1}'))
    pipe.lrem.assert_called_once_with("ingest:inflight:src1", 1, '{"n": 1}')
    pipe.lpush.assert_called_once_with("ingest:queue:src1", '{"n": 1}')
    pipe.execute.assert_called_once()


def test_redis_recover_inflight_moves_everything_back() -> None:
    client = MagicMock()
    client.lmove.side_effect = ["a", "b", None]
    assert RedisSourceQueues(client=client).recover_inflight("src1") == 2


def test_redis_backend_requires_url() -> None:
    with pytest.raises(ValueError):
        RedisSourceQueues()
