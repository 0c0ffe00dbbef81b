"""Abstract base class for remote sinks."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional, Sequence

from telemetry_agent.schemas import Sample


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of one batch apply.

    ``applied_ids``
        Ids the sink has durably applied (or already held).
    ``rejected``
        Ids the sink will never accept, mapped to a reason.
    ``error``
        Set when the whole batch failed transiently (network, timeout,
        overload).  Nothing is known to be applied in that case.
    """

    applied_ids: FrozenSet[str] = frozenset()
    rejected: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def is_transient_failure(self) -> bool:
        return self.error is not None

    @classmethod
    def transient(cls, error: str) -> "ApplyResult":
        return cls(error=error)


class RemoteSink(ABC):
    """Unified interface to the remote time-series store.

    Implementations must apply every sample idempotently keyed by
    ``(device_id, sample_id)``: re-applying a known id is a no-op that
    still reports the id as applied.
    """

    async def start(self) -> None:
        """Acquire network resources."""

    async def close(self) -> None:
        """Release network resources."""

    @abstractmethod
    async def apply(self, batch: Sequence[Sample]) -> ApplyResult:
        """Apply *batch* and report per-id outcome.

        Transient failures are reported through ``ApplyResult.error``;
        implementations should not raise for them.
        """
