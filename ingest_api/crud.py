"""CRUD operations for the ingest API."""

from typing import Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from ingest_api import models_db
from ingest_api.schemas import IncomingSample

# Rows per INSERT; keeps bound parameters under SQLite's limit.
_INSERT_CHUNK = 1000


def apply_samples(db: Session, samples: Iterable[IncomingSample]) -> List[str]:
    """Insert *samples*, ignoring any ``(device_id, sample_id)`` already stored.

    Returns every sample id in the input: newly inserted and previously
    stored ids are both "applied" from the caller's point of view.
    """
    rows = {}
    for sample in samples:
        # Duplicates inside one batch collapse to the first occurrence.
        rows.setdefault(
            (sample.device_id, sample.sample_id),
            {
                "device_id": sample.device_id,
                "sample_id": sample.sample_id,
                "ts": sample.timestamp,
                "payload": sample.payload,
            },
        )
    if not rows:
        return []

    dialect = db.get_bind().dialect.name
    insert = pg_insert if dialect == "postgresql" else sqlite_insert
    values = list(rows.values())
    for start in range(0, len(values), _INSERT_CHUNK):
        stmt = (
            insert(models_db.StoredSample.__table__)
            .values(values[start:start + _INSERT_CHUNK])
            .on_conflict_do_nothing(index_elements=["device_id", "sample_id"])
        )
        db.execute(stmt)
    db.commit()
    return [sample_id for _, sample_id in rows]


def count_samples(db: Session, device_id: Optional[str] = None) -> int:
    """Number of stored samples, optionally for one device."""
    stmt = select(func.count()).select_from(models_db.StoredSample)
    if device_id is not None:
        stmt = stmt.where(models_db.StoredSample.device_id == device_id)
    return int(db.execute(stmt).scalar_one())
