"""Durable, ordered sample queue backed by an embedded SQLite file.

Every mutating call runs in its own transaction under a process-wide
lock, so a reader never observes a half-applied transition.  The file
is opened with ``journal_mode=WAL`` and ``synchronous=FULL``: once
``enqueue`` returns, the sample survives a crash or power loss.

The queue is not a singleton.  Create one per process and hand it to
the producer and the flush engine explicitly.
"""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import structlog
from pydantic import TypeAdapter
from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    event,
    func,
    select,
    update,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine, Row
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from telemetry_agent.schemas import DeliveryState, QueueEntry, Sample

logger = structlog.get_logger(__name__)

# SQLite caps bound parameters per statement; stay well below it.
_ID_CHUNK = 500

_PAYLOAD_ADAPTER = TypeAdapter(Any)

metadata = MetaData()

queue_entries = Table(
    "queue_entries",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("sample_id", String(64), nullable=False, unique=True),
    Column("timestamp", String(40), nullable=False),
    Column("device_id", String(128), nullable=False),
    Column("payload", Text, nullable=False),
    Column("payload_bytes", Integer, nullable=False, default=0),
    Column(
        "delivery_state",
        String(16),
        nullable=False,
        default=DeliveryState.PENDING.value,
        index=True,
    ),
    Column("enqueued_at", String(40), nullable=False),
    Column("reject_reason", Text, nullable=True),
    sqlite_autoincrement=True,
)

agent_counters = Table(
    "agent_counters",
    metadata,
    Column("name", String(64), primary_key=True),
    Column("value", Integer, nullable=False, default=0),
)

agent_status = Table(
    "agent_status",
    metadata,
    Column("key", String(64), primary_key=True),
    Column("value", Text, nullable=False),
)


class QueueError(Exception):
    """Base class for durable queue failures."""


class QueueWriteError(QueueError):
    """A mutation could not be made durable.  Nothing was accepted."""


class QueueEncodeError(QueueError):
    """A payload has no JSON form.  Retrying the same sample cannot succeed."""


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _encode_payload(payload: Any) -> bytes:
    # Same serialiser as Sample.to_wire(), so the stored form is the sent form.
    try:
        return _PAYLOAD_ADAPTER.dump_json(payload)
    except ValueError as exc:  # PydanticSerializationError
        raise QueueEncodeError(f"payload is not JSON-serialisable: {exc}") from exc


def _create_engine(path: str) -> Engine:
    if path == ":memory:":
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(
            f"sqlite:///{path}",
            connect_args={"check_same_thread": False},
        )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn, _record) -> None:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=FULL")
        cursor.close()

    return engine


class DurableQueue:
    """Ordered, persistent store of samples with a delivery state per entry."""

    def __init__(self, path: str) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._closed = False
        self._engine = _create_engine(path)
        try:
            metadata.create_all(self._engine)
        except SQLAlchemyError as exc:
            raise QueueError(f"cannot open queue at {path!r}: {exc}") from exc
        logger.info("queue_opened", path=path, **self.counts())

    @property
    def path(self) -> str:
        return self._path

    # -- lifecycle ----------------------------------------------------------

    def close(self) -> None:
        """Dispose the engine once any in-flight mutation has finished."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._engine.dispose()
        logger.info("queue_closed", path=self._path)

    # -- mutations ----------------------------------------------------------

    def enqueue(self, sample: Sample) -> bool:
        """Durably record *sample* as ``pending``.

        Returns ``True`` if a new entry was written and ``False`` if the
        ``sample_id`` was already known, in which case the existing entry
        is left untouched.  Raises ``QueueEncodeError`` if the payload has
        no JSON form and ``QueueWriteError`` if the write could not be
        committed.
        """
        return self.enqueue_many([sample]) == 1

    def enqueue_many(self, samples: Iterable[Sample]) -> int:
        """Enqueue several samples in one transaction; returns rows written."""
        rows = []
        now = _utcnow_iso()
        for sample in samples:
            encoded = _encode_payload(sample.payload)
            rows.append(
                {
                    "sample_id": sample.sample_id,
                    "timestamp": sample.timestamp.isoformat(),
                    "device_id": sample.device_id,
                    "payload": encoded.decode("utf-8"),
                    "payload_bytes": len(encoded),
                    "delivery_state": DeliveryState.PENDING.value,
                    "enqueued_at": now,
                }
            )
        if not rows:
            return 0

        written = 0
        with self._lock:
            self._check_open()
            try:
                with self._engine.begin() as conn:
                    # One statement per row keeps rowcount meaningful for
                    # ON CONFLICT DO NOTHING.
                    for row in rows:
                        stmt = (
                            sqlite_insert(queue_entries)
                            .values(**row)
                            .on_conflict_do_nothing(index_elements=["sample_id"])
                        )
                        written += conn.execute(stmt).rowcount
            except SQLAlchemyError as exc:
                logger.error("enqueue_failed", count=len(rows), error=str(exc))
                raise QueueWriteError(f"enqueue failed: {exc}") from exc
        return written

    def mark_sent(self, sample_ids: Iterable[str]) -> int:
        """Transition the given ``pending`` ids to ``sent``.

        Unknown ids and ids in another state are ignored.  Returns the
        number of entries transitioned.
        """
        ids = list(dict.fromkeys(sample_ids))
        if not ids:
            return 0
        changed = 0
        with self._lock:
            self._check_open()
            try:
                with self._engine.begin() as conn:
                    for start in range(0, len(ids), _ID_CHUNK):
                        chunk = ids[start:start + _ID_CHUNK]
                        stmt = (
                            update(queue_entries)
                            .where(queue_entries.c.sample_id.in_(chunk))
                            .where(
                                queue_entries.c.delivery_state
                                == DeliveryState.PENDING.value
                            )
                            .values(delivery_state=DeliveryState.SENT.value)
                        )
                        changed += conn.execute(stmt).rowcount
            except SQLAlchemyError as exc:
                raise QueueWriteError(f"mark_sent failed: {exc}") from exc
        return changed

    def mark_dead_letter(self, rejections: Mapping[str, str]) -> int:
        """Move ``pending`` ids to ``dead_letter``, recording each reason."""
        if not rejections:
            return 0
        changed = 0
        with self._lock:
            self._check_open()
            try:
                with self._engine.begin() as conn:
                    for sample_id, reason in rejections.items():
                        stmt = (
                            update(queue_entries)
                            .where(queue_entries.c.sample_id == sample_id)
                            .where(
                                queue_entries.c.delivery_state
                                == DeliveryState.PENDING.value
                            )
                            .values(
                                delivery_state=DeliveryState.DEAD_LETTER.value,
                                reject_reason=reason[:1000],
                            )
                        )
                        changed += conn.execute(stmt).rowcount
            except SQLAlchemyError as exc:
                raise QueueWriteError(f"mark_dead_letter failed: {exc}") from exc
        return changed

    def evict_oldest(
        self,
        delivery_state: DeliveryState,
        n: int,
        *,
        count_as: Optional[str] = None,
    ) -> int:
        """Remove up to *n* oldest entries in *delivery_state*.

        With *count_as*, the named durable counter is increased by the
        number removed in the same transaction as the delete.
        """
        if n <= 0:
            return 0
        oldest = (
            select(queue_entries.c.seq)
            .where(queue_entries.c.delivery_state == DeliveryState(delivery_state).value)
            .order_by(queue_entries.c.seq)
            .limit(n)
        )
        with self._lock:
            self._check_open()
            try:
                with self._engine.begin() as conn:
                    removed = conn.execute(
                        delete(queue_entries).where(queue_entries.c.seq.in_(oldest))
                    ).rowcount
                    if count_as is not None and removed:
                        conn.execute(_counter_upsert(count_as, removed))
            except SQLAlchemyError as exc:
                raise QueueWriteError(f"evict_oldest failed: {exc}") from exc
        return removed

    # -- reads --------------------------------------------------------------

    def select_batch(self, max_count: int) -> List[QueueEntry]:
        """Return up to *max_count* ``pending`` entries in enqueue order."""
        if max_count <= 0:
            return []
        stmt = (
            select(queue_entries)
            .where(queue_entries.c.delivery_state == DeliveryState.PENDING.value)
            .order_by(queue_entries.c.seq)
            .limit(max_count)
        )
        with self._lock:
            self._check_open()
            with self._engine.connect() as conn:
                rows = conn.execute(stmt).fetchall()
        return [_row_to_entry(row) for row in rows]

    def get(self, sample_id: str) -> Optional[QueueEntry]:
        stmt = select(queue_entries).where(queue_entries.c.sample_id == sample_id)
        with self._lock:
            self._check_open()
            with self._engine.connect() as conn:
                row = conn.execute(stmt).first()
        return _row_to_entry(row) if row is not None else None

    def count(self, delivery_state: Optional[DeliveryState] = None) -> int:
        """Number of entries, optionally restricted to one state."""
        stmt = select(func.count()).select_from(queue_entries)
        if delivery_state is not None:
            stmt = stmt.where(
                queue_entries.c.delivery_state == DeliveryState(delivery_state).value
            )
        with self._lock:
            self._check_open()
            with self._engine.connect() as conn:
                return int(conn.execute(stmt).scalar_one())

    def counts(self) -> Dict[str, int]:
        """Entry count for every delivery state."""
        stmt = select(queue_entries.c.delivery_state, func.count()).group_by(
            queue_entries.c.delivery_state
        )
        result = {state.value: 0 for state in DeliveryState}
        with self._lock:
            self._check_open()
            with self._engine.connect() as conn:
                for state, n in conn.execute(stmt):
                    result[state] = int(n)
        return result

    def footprint_bytes(self, delivery_state: Optional[DeliveryState] = None) -> int:
        """Sum of stored payload sizes, optionally for one state."""
        stmt = select(func.coalesce(func.sum(queue_entries.c.payload_bytes), 0))
        if delivery_state is not None:
            stmt = stmt.where(
                queue_entries.c.delivery_state == DeliveryState(delivery_state).value
            )
        with self._lock:
            self._check_open()
            with self._engine.connect() as conn:
                return int(conn.execute(stmt).scalar_one())

    def oldest_covering(self, delivery_state: DeliveryState, nbytes: int) -> int:
        """Smallest count of oldest entries in a state whose payloads sum to *nbytes*.

        Returns the number of entries in the state if they cannot cover it.
        """
        if nbytes <= 0:
            return 0
        stmt = (
            select(queue_entries.c.payload_bytes)
            .where(queue_entries.c.delivery_state == DeliveryState(delivery_state).value)
            .order_by(queue_entries.c.seq)
        )
        covered = 0
        n = 0
        with self._lock:
            self._check_open()
            with self._engine.connect() as conn:
                for (size,) in conn.execute(stmt):
                    covered += size
                    n += 1
                    if covered >= nbytes:
                        break
        return n

    # -- durable observability ---------------------------------------------

    def increment_counter(self, name: str, by: int = 1) -> None:
        stmt = _counter_upsert(name, by)
        with self._lock:
            self._check_open()
            try:
                with self._engine.begin() as conn:
                    conn.execute(stmt)
            except SQLAlchemyError as exc:
                raise QueueWriteError(f"increment_counter failed: {exc}") from exc

    def counters(self) -> Dict[str, int]:
        with self._lock:
            self._check_open()
            with self._engine.connect() as conn:
                rows = conn.execute(select(agent_counters)).fetchall()
        return {row.name: int(row.value) for row in rows}

    def write_status(self, status: Mapping[str, Any]) -> None:
        """Publish the running agent's status so other processes can read it."""
        with self._lock:
            self._check_open()
            try:
                with self._engine.begin() as conn:
                    for key, value in status.items():
                        stmt = sqlite_insert(agent_status).values(
                            key=key, value=json.dumps(value, default=str)
                        )
                        stmt = stmt.on_conflict_do_update(
                            index_elements=["key"],
                            set_={"value": stmt.excluded["value"]},
                        )
                        conn.execute(stmt)
            except SQLAlchemyError as exc:
                raise QueueWriteError(f"write_status failed: {exc}") from exc

    def read_status(self) -> Dict[str, Any]:
        with self._lock:
            self._check_open()
            with self._engine.connect() as conn:
                rows = conn.execute(select(agent_status)).fetchall()
        return {row.key: json.loads(row.value) for row in rows}

    # -- internal -----------------------------------------------------------

    def _check_open(self) -> None:
        if self._closed:
            raise QueueError("queue is closed")


def _counter_upsert(name: str, by: int):
    stmt = sqlite_insert(agent_counters).values(name=name, value=by)
    return stmt.on_conflict_do_update(
        index_elements=["name"],
        set_={"value": agent_counters.c.value + by},
    )


def _row_to_entry(row: Row) -> QueueEntry:
    sample = Sample(
        sample_id=row.sample_id,
        device_id=row.device_id,
        timestamp=datetime.fromisoformat(row.timestamp),
        payload=json.loads(row.payload),
    )
    return QueueEntry(
        seq=row.seq,
        sample=sample,
        delivery_state=DeliveryState(row.delivery_state),
        enqueued_at=datetime.fromisoformat(row.enqueued_at),
        payload_bytes=row.payload_bytes,
        reject_reason=row.reject_reason,
    )
