"""In-process sink with idempotent apply.

Used by the test-suite and by ``--dry-run`` so the agent can run end to
end without a network.  ``reachable`` simulates an outage and
``reject`` decides which samples are permanently refused.
"""

from __future__ import annotations

from typing import Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from telemetry_agent.schemas import Sample
from telemetry_agent.sink.base import ApplyResult, RemoteSink

logger = structlog.get_logger(__name__)

RejectFn = Callable[[Sample], Optional[str]]


class InMemorySink(RemoteSink):
    """Dictionary-backed sink keyed by ``(device_id, sample_id)``."""

    def __init__(self, reject: Optional[RejectFn] = None) -> None:
        self.reachable = True
        self._reject = reject
        self._records: Dict[Tuple[str, str], Sample] = {}
        self.calls: List[List[str]] = []

    async def apply(self, batch: Sequence[Sample]) -> ApplyResult:
        self.calls.append([s.sample_id for s in batch])
        if not self.reachable:
            return ApplyResult.transient("sink unreachable")

        applied = set()
        rejected: Dict[str, str] = {}
        for sample in batch:
            reason = self._reject(sample) if self._reject else None
            if reason:
                rejected[sample.sample_id] = reason
                continue
            # First write wins; later duplicates are no-ops.
            self._records.setdefault((sample.device_id, sample.sample_id), sample)
            applied.add(sample.sample_id)

        logger.debug(
            "memory_sink_applied",
            applied=len(applied),
            rejected=len(rejected),
            stored=len(self._records),
        )
        return ApplyResult(applied_ids=frozenset(applied), rejected=rejected)

    @property
    def stored(self) -> Dict[Tuple[str, str], Sample]:
        return dict(self._records)

    def __len__(self) -> int:
        return len(self._records)
