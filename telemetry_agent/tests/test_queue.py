"""Tests for telemetry_agent.queue -- DurableQueue."""

from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from telemetry_agent.queue import (
    DurableQueue,
    QueueEncodeError,
    QueueError,
    QueueWriteError,
)
from telemetry_agent.schemas import DeliveryState


class TestEnqueue:
    def test_enqueue_persists_pending(self, queue, make_sample) -> None:
        assert queue.enqueue(make_sample("A")) is True
        entry = queue.get("A")
        assert entry is not None
        assert entry.delivery_state == DeliveryState.PENDING
        assert entry.sample.payload == {"rpm": 800}

    def test_enqueue_is_idempotent(self, queue, make_sample) -> None:
        queue.enqueue(make_sample("A", payload={"v": 1}))
        before = queue.get("A")

        assert queue.enqueue(make_sample("A", payload={"v": 2})) is False

        after = queue.get("A")
        assert queue.count() == 1
        assert after == before
        assert after.sample.payload == {"v": 1}

    def test_reenqueue_does_not_reset_sent_state(self, queue, make_sample) -> None:
        queue.enqueue(make_sample("A"))
        queue.mark_sent({"A"})
        queue.enqueue(make_sample("A"))
        assert queue.get("A").delivery_state == DeliveryState.SENT
        assert queue.count(DeliveryState.PENDING) == 0

    def test_enqueue_many_counts_new_rows(self, queue, make_sample) -> None:
        queue.enqueue(make_sample("A"))
        written = queue.enqueue_many([make_sample("A"), make_sample("B"), make_sample("C")])
        assert written == 2
        assert queue.count() == 3

    def test_survives_reopen(self, queue_path, make_sample) -> None:
        q1 = DurableQueue(queue_path)
        q1.enqueue(make_sample("A"))
        q1.enqueue(make_sample("B"))
        q1.mark_sent({"A"})
        q1.close()

        q2 = DurableQueue(queue_path)
        try:
            assert q2.counts() == {"pending": 1, "sent": 1, "dead_letter": 0}
            assert [e.sample_id for e in q2.select_batch(10)] == ["B"]
        finally:
            q2.close()

    def test_write_failure_raises(self, queue, make_sample, monkeypatch) -> None:
        def _boom():
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(queue._engine, "begin", _boom)
        with pytest.raises(QueueWriteError):
            queue.enqueue(make_sample("A"))

    def test_closed_queue_rejects_calls(self, queue_path, make_sample) -> None:
        q = DurableQueue(queue_path)
        q.close()
        with pytest.raises(QueueError):
            q.enqueue(make_sample("A"))
        q.close()  # second close is a no-op


class TestSelectBatch:
    def test_enqueue_order_not_timestamp_order(self, queue, make_sample) -> None:
        queue.enqueue(make_sample("late", offset=100))
        queue.enqueue(make_sample("early", offset=0))
        queue.enqueue(make_sample("middle", offset=50))
        ids = [e.sample_id for e in queue.select_batch(10)]
        assert ids == ["late", "early", "middle"]

    def test_respects_max_count(self, queue, make_sample) -> None:
        for i in range(5):
            queue.enqueue(make_sample(f"S{i}"))
        assert [e.sample_id for e in queue.select_batch(2)] == ["S0", "S1"]
        assert queue.select_batch(0) == []

    def test_is_a_pure_read(self, queue, make_sample) -> None:
        queue.enqueue(make_sample("A"))
        queue.select_batch(10)
        queue.select_batch(10)
        assert queue.count(DeliveryState.PENDING) == 1

    def test_only_pending_entries(self, queue, make_sample) -> None:
        for sid in ("A", "B", "C"):
            queue.enqueue(make_sample(sid))
        queue.mark_sent({"A"})
        queue.mark_dead_letter({"B": "malformed"})
        assert [e.sample_id for e in queue.select_batch(10)] == ["C"]


class TestTransitions:
    def test_mark_sent_ignores_unknown_ids(self, queue, make_sample) -> None:
        queue.enqueue(make_sample("A"))
        assert queue.mark_sent({"A", "ghost"}) == 1
        assert queue.get("A").delivery_state == DeliveryState.SENT

    def test_mark_sent_is_once_only(self, queue, make_sample) -> None:
        queue.enqueue(make_sample("A"))
        assert queue.mark_sent(["A"]) == 1
        assert queue.mark_sent(["A"]) == 0

    def test_sent_never_becomes_dead_letter(self, queue, make_sample) -> None:
        queue.enqueue(make_sample("A"))
        queue.mark_sent({"A"})
        assert queue.mark_dead_letter({"A": "late rejection"}) == 0
        assert queue.get("A").delivery_state == DeliveryState.SENT

    def test_dead_letter_keeps_reason_and_payload(self, queue, make_sample) -> None:
        queue.enqueue(make_sample("A", payload={"raw": "x"}))
        queue.mark_dead_letter({"A": "payload too large"})
        entry = queue.get("A")
        assert entry.delivery_state == DeliveryState.DEAD_LETTER
        assert entry.reject_reason == "payload too large"
        assert entry.sample.payload == {"raw": "x"}

    def test_large_id_sets_are_chunked(self, queue, make_sample) -> None:
        queue.enqueue_many(make_sample(f"S{i}") for i in range(1200))
        assert queue.mark_sent(f"S{i}" for i in range(1200)) == 1200

    def test_payload_stored_in_wire_form(self, queue, make_sample) -> None:
        sample = make_sample(
            "A",
            payload={
                "at": datetime(2026, 1, 1, tzinfo=timezone.utc),
                "trace": uuid.UUID("12345678-1234-5678-1234-567812345678"),
                "volts": Decimal("14.2"),
            },
        )
        assert queue.enqueue(sample) is True

        stored = queue.get("A").sample.payload
        assert stored == sample.to_wire()["payload"]
        assert stored["at"] == "2026-01-01T00:00:00Z"

    def test_unencodable_payload_raises_typed_error(self, queue, make_sample) -> None:
        with pytest.raises(QueueEncodeError):
            queue.enqueue(make_sample("A", payload={"handle": object()}))
        assert queue.count() == 0


class TestEviction:
    def test_evict_oldest_by_state(self, queue, make_sample) -> None:
        for sid in ("A", "B", "C", "D"):
            queue.enqueue(make_sample(sid))
        queue.mark_sent({"B", "D"})

        assert queue.evict_oldest(DeliveryState.SENT, 1) == 1
        assert queue.get("B") is None
        assert queue.get("D") is not None
        assert queue.evict_oldest(DeliveryState.PENDING, 10) == 2
        assert queue.count() == 1

    def test_oldest_covering(self, queue, make_sample) -> None:
        queue.enqueue(make_sample("A", payload="x" * 8))   # 10 bytes encoded
        queue.enqueue(make_sample("B", payload="y" * 8))
        queue.enqueue(make_sample("C", payload="z" * 8))
        assert queue.oldest_covering(DeliveryState.PENDING, 1) == 1
        assert queue.oldest_covering(DeliveryState.PENDING, 11) == 2
        assert queue.oldest_covering(DeliveryState.PENDING, 1000) == 3
        assert queue.oldest_covering(DeliveryState.SENT, 5) == 0

    def test_eviction_counted_in_same_transaction(self, queue, make_sample) -> None:
        for sid in ("A", "B", "C"):
            queue.enqueue(make_sample(sid))

        assert queue.evict_oldest(DeliveryState.PENDING, 2, count_as="pending_evicted") == 2
        assert queue.counters() == {"pending_evicted": 2}
        # Nothing removed, nothing counted.
        assert queue.evict_oldest(DeliveryState.SENT, 5, count_as="pending_evicted") == 0
        assert queue.counters() == {"pending_evicted": 2}

    def test_failed_eviction_removes_and_counts_nothing(
        self, queue, make_sample, monkeypatch
    ) -> None:
        for sid in ("A", "B"):
            queue.enqueue(make_sample(sid))

        def _boom():
            raise OperationalError("DELETE", {}, Exception("disk I/O error"))

        monkeypatch.setattr(queue._engine, "begin", _boom)
        with pytest.raises(QueueWriteError):
            queue.evict_oldest(DeliveryState.PENDING, 1, count_as="pending_evicted")
        monkeypatch.undo()

        assert queue.count() == 2
        assert queue.counters() == {}


class TestObservability:
    def test_counts_and_footprint(self, queue, make_sample) -> None:
        queue.enqueue(make_sample("A", payload="abcd"))  # '"abcd"' -> 6 bytes
        queue.enqueue(make_sample("B", payload="abcd"))
        queue.mark_sent({"A"})
        assert queue.counts() == {"pending": 1, "sent": 1, "dead_letter": 0}
        assert queue.footprint_bytes() == 12
        assert queue.footprint_bytes(DeliveryState.SENT) == 6

    def test_counters_accumulate(self, queue) -> None:
        queue.increment_counter("pending_evicted", 3)
        queue.increment_counter("pending_evicted", 2)
        assert queue.counters() == {"pending_evicted": 5}

    def test_status_round_trip(self, queue) -> None:
        queue.write_status({"backoff": {"state": "healthy"}, "updated_at": "now"})
        queue.write_status({"backoff": {"state": "degraded(1)"}})
        status = queue.read_status()
        assert status["backoff"] == {"state": "degraded(1)"}
        assert status["updated_at"] == "now"


def test_concurrent_enqueue_and_mark_sent(queue, make_sample) -> None:
    """Producer and flusher threads interleave without losing entries."""
    for i in range(200):
        queue.enqueue(make_sample(f"old-{i}"))

    def _produce() -> None:
        for i in range(200):
            queue.enqueue(make_sample(f"new-{i}"))

    def _flush() -> None:
        for _ in range(20):
            batch = queue.select_batch(20)
            queue.mark_sent(e.sample_id for e in batch)

    threads = [threading.Thread(target=_produce), threading.Thread(target=_flush)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    counts = queue.counts()
    assert counts["pending"] + counts["sent"] == 400
    assert counts["sent"] >= 200
