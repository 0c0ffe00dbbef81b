"""Sample and queue-entry Pydantic v2 models.

A ``Sample`` is the immutable unit of telemetry.  Its ``payload`` is an
opaque JSON value: the agent never inspects or validates its shape.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DeliveryState(str, Enum):
    """Delivery state of a queue entry.

    ``sent`` and ``dead_letter`` are terminal.
    """

    PENDING = "pending"
    SENT = "sent"
    DEAD_LETTER = "dead_letter"


def _new_sample_id() -> str:
    return str(uuid.uuid4())


class Sample(BaseModel):
    """One time-stamped telemetry reading."""

    model_config = ConfigDict(frozen=True)

    sample_id: str = Field(
        default_factory=_new_sample_id,
        min_length=1,
        description="Globally unique idempotency key (UUID4 by default)",
    )
    device_id: str = Field(
        ...,
        min_length=1,
        description="Stable identity of the producing unit",
        examples=["V-SIM-001"],
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Instant the sample represents (not enqueue time)",
    )
    payload: Any = Field(default=None, description="Opaque JSON value")

    @field_validator("timestamp")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        """Treat naive datetimes as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def to_wire(self) -> Dict[str, Any]:
        """Return the ``(timestamp, device_id, sample_id, payload)`` tuple as JSON."""
        return self.model_dump(mode="json")


class QueueEntry(BaseModel):
    """A ``Sample`` wrapped with its local delivery metadata."""

    model_config = ConfigDict(frozen=True)

    seq: int = Field(..., description="Monotonic enqueue order")
    sample: Sample
    delivery_state: DeliveryState
    enqueued_at: datetime
    payload_bytes: int = 0
    reject_reason: Optional[str] = None

    @property
    def sample_id(self) -> str:
        return self.sample.sample_id


# ---------------------------------------------------------------------------
# Sink wire contract
# ---------------------------------------------------------------------------


class RejectedSample(BaseModel):
    """Per-item permanent rejection reported by the sink."""

    sample_id: str
    reason: str = ""


class BatchResponse(BaseModel):
    """Body returned by the sink for a batch apply."""

    applied: List[str] = Field(default_factory=list)
    rejected: List[RejectedSample] = Field(default_factory=list)

    model_config = {"extra": "ignore"}
