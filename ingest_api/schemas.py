"""Pydantic request/response models for the batch endpoint."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class IncomingSample(BaseModel):
    """A sample as it must look to be stored.

    Validated item by item so one malformed sample never fails its batch.
    """

    sample_id: str = Field(..., min_length=1, max_length=64)
    device_id: str = Field(..., min_length=1, max_length=128)
    timestamp: datetime
    payload: Any = None


class BatchRequest(BaseModel):
    """Raw items; each is validated individually against ``IncomingSample``."""

    samples: List[Any] = Field(default_factory=list)


class RejectedItem(BaseModel):
    sample_id: str
    reason: str


class BatchResponse(BaseModel):
    applied: List[str] = Field(default_factory=list)
    rejected: List[RejectedItem] = Field(default_factory=list)
    unidentified: int = Field(
        default=0,
        description="Items rejected without a usable sample_id",
    )


class CountResponse(BaseModel):
    device_id: Optional[str] = None
    count: int


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
