"""Database models for the ingest API."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB

from ingest_api.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StoredSample(Base):
    """One applied telemetry sample.

    ``(device_id, sample_id)`` is the idempotency key; the unique
    constraint is what makes re-delivery harmless.
    """

    __tablename__ = "telemetry_samples"

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(String(128), nullable=False, index=True)
    sample_id = Column(String(64), nullable=False)
    ts = Column(DateTime(timezone=True), nullable=False, index=True)
    payload = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    received_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("device_id", "sample_id", name="uq_telemetry_sample_key"),
    )
