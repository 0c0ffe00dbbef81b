"""Keeps the durable queue inside its configured footprint.

Eviction order is strict: oldest ``sent`` first, then oldest
``dead_letter``, and only when neither is left, oldest ``pending``.
The last step is real data loss; it is logged at error level and
counted durably in the queue's ``pending_evicted`` counter.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from telemetry_agent.config import AgentSettings
from telemetry_agent.queue import DurableQueue
from telemetry_agent.schemas import DeliveryState

logger = structlog.get_logger(__name__)

PENDING_EVICTED_COUNTER = "pending_evicted"

_EVICTION_ORDER = (
    DeliveryState.SENT,
    DeliveryState.DEAD_LETTER,
    DeliveryState.PENDING,
)


@dataclass(frozen=True)
class FootprintBound:
    """Maximum queue size by entry count and/or summed payload bytes."""

    max_entries: Optional[int] = None
    max_bytes: Optional[int] = None

    @classmethod
    def from_settings(cls, settings: AgentSettings) -> "FootprintBound":
        return cls(
            max_entries=settings.effective_max_entries,
            max_bytes=settings.max_queue_bytes,
        )


@dataclass(frozen=True)
class EvictionReport:
    sent: int = 0
    dead_letter: int = 0
    pending: int = 0

    @property
    def total(self) -> int:
        return self.sent + self.dead_letter + self.pending


class RetentionGovernor:
    """Enforces a ``FootprintBound`` on a ``DurableQueue``."""

    def __init__(self, queue: DurableQueue, bound: FootprintBound) -> None:
        self._queue = queue
        self._bound = bound

    @property
    def bound(self) -> FootprintBound:
        return self._bound

    def is_over_bound(self) -> bool:
        return self._excess_entries() > 0 or self._excess_bytes() > 0

    def enforce(self) -> EvictionReport:
        """Evict until the queue is within bound; return what was removed."""
        evicted = {state: 0 for state in _EVICTION_ORDER}

        for state in _EVICTION_ORDER:
            evicted[state] += self._evict_for_entries(state)
            evicted[state] += self._evict_for_bytes(state)
            if not self.is_over_bound():
                break

        report = EvictionReport(
            sent=evicted[DeliveryState.SENT],
            dead_letter=evicted[DeliveryState.DEAD_LETTER],
            pending=evicted[DeliveryState.PENDING],
        )
        if report.sent or report.dead_letter:
            logger.info(
                "retention_reclaimed",
                sent=report.sent,
                dead_letter=report.dead_letter,
            )
        return report

    # -- internal -----------------------------------------------------------

    def _excess_entries(self) -> int:
        if self._bound.max_entries is None:
            return 0
        return max(0, self._queue.count() - self._bound.max_entries)

    def _excess_bytes(self) -> int:
        if self._bound.max_bytes is None:
            return 0
        return max(0, self._queue.footprint_bytes() - self._bound.max_bytes)

    def _evict_for_entries(self, state: DeliveryState) -> int:
        excess = self._excess_entries()
        if excess == 0:
            return 0
        return self._evict(state, excess)

    def _evict_for_bytes(self, state: DeliveryState) -> int:
        excess = self._excess_bytes()
        if excess == 0:
            return 0
        return self._evict(state, self._queue.oldest_covering(state, excess))

    def _evict(self, state: DeliveryState, n: int) -> int:
        if state != DeliveryState.PENDING:
            return self._queue.evict_oldest(state, n)
        # Removal and loss count commit in one transaction.
        removed = self._queue.evict_oldest(state, n, count_as=PENDING_EVICTED_COUNTER)
        if removed:
            logger.error(
                "pending_evicted",
                evicted=removed,
                remaining_pending=self._queue.count(DeliveryState.PENDING),
                max_entries=self._bound.max_entries,
                max_bytes=self._bound.max_bytes,
            )
        return removed
