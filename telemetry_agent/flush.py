"""Batch flush engine: moves pending samples from the queue to the sink.

One cycle:

1. Select up to ``batch_size`` pending entries in enqueue order.
2. Empty batch -- skip; the sink is not contacted.
3. Submit the batch as one apply, bounded by ``timeout``.
4. Full success -- mark every id sent, reset backoff.
5. Partial success -- mark applied ids sent, dead-letter the ids the
   sink rejected permanently, leave the rest pending; reset backoff.
6. Transient failure (error, timeout, exception, or no verdict for any
   id in the batch) -- no state change, escalate backoff.

Only ``delivery_state`` ever changes; payloads are never touched.  A
cycle never raises (except on cancellation) so the scheduler keeps
running through any single failure.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

from telemetry_agent.backoff import BackoffController
from telemetry_agent.queue import DurableQueue, QueueError
from telemetry_agent.retention import EvictionReport, RetentionGovernor
from telemetry_agent.sink.base import ApplyResult, RemoteSink

logger = structlog.get_logger(__name__)

DEAD_LETTERED_COUNTER = "dead_lettered"

SKIPPED = "skipped"
SUCCESS = "success"
PARTIAL = "partial"
FAILURE = "failure"


@dataclass(frozen=True)
class CycleReport:
    """What one flush cycle did."""

    outcome: str
    batch_size: int = 0
    applied: int = 0
    dead_lettered: int = 0
    error: Optional[str] = None
    evicted: Optional[EvictionReport] = None


@dataclass
class FlushStats:
    """Cumulative in-process counters, published for the operator CLI."""

    cycles: int = 0
    skipped: int = 0
    successes: int = 0
    partials: int = 0
    failures: int = 0
    applied: int = 0
    dead_lettered: int = 0
    last_error: Optional[str] = None
    last_cycle_at: Optional[str] = None

    def record(self, report: CycleReport) -> None:
        self.cycles += 1
        self.last_cycle_at = datetime.now(timezone.utc).isoformat()
        if report.outcome == SKIPPED:
            self.skipped += 1
        elif report.outcome == SUCCESS:
            self.successes += 1
        elif report.outcome == PARTIAL:
            self.partials += 1
        else:
            self.failures += 1
            self.last_error = report.error
        self.applied += report.applied
        self.dead_lettered += report.dead_lettered


class FlushEngine:
    """Drains the durable queue into a remote sink in bounded batches."""

    def __init__(
        self,
        queue: DurableQueue,
        sink: RemoteSink,
        backoff: BackoffController,
        *,
        batch_size: int,
        timeout: float,
        governor: Optional[RetentionGovernor] = None,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._queue = queue
        self._sink = sink
        self._backoff = backoff
        self._governor = governor
        self._batch_size = batch_size
        self._timeout = timeout
        self.stats = FlushStats()

    @property
    def backoff(self) -> BackoffController:
        return self._backoff

    async def run_cycle(self) -> CycleReport:
        """Run one flush cycle and return its report."""
        report = await self._run_cycle()
        self.stats.record(report)
        return report

    async def _run_cycle(self) -> CycleReport:
        try:
            entries = await asyncio.to_thread(self._queue.select_batch, self._batch_size)
        except QueueError as exc:
            logger.error("batch_select_failed", error=str(exc))
            self._backoff.record_failure()
            return CycleReport(outcome=FAILURE, error=f"queue read failed: {exc}")

        if not entries:
            return CycleReport(outcome=SKIPPED)

        batch = [entry.sample for entry in entries]
        result = await self._apply(batch)

        if result.is_transient_failure:
            interval = self._backoff.record_failure()
            logger.warning(
                "flush_failed",
                batch_size=len(batch),
                error=result.error,
                backoff=self._backoff.state,
                retry_in=interval,
            )
            return CycleReport(outcome=FAILURE, batch_size=len(batch), error=result.error)

        # The sink may report ids from an earlier, lost exchange; only this
        # batch's ids drive transitions and the outcome.
        batch_ids = {sample.sample_id for sample in batch}
        acked = result.applied_ids & batch_ids
        rejected = {
            sid: reason
            for sid, reason in result.rejected.items()
            if sid in batch_ids and sid not in acked
        }
        if not acked and not rejected:
            error = "sink gave no verdict for any sample in the batch"
            interval = self._backoff.record_failure()
            logger.warning(
                "flush_failed",
                batch_size=len(batch),
                error=error,
                backoff=self._backoff.state,
                retry_in=interval,
            )
            return CycleReport(outcome=FAILURE, batch_size=len(batch), error=error)

        try:
            applied = await asyncio.to_thread(self._queue.mark_sent, acked)
            dead = 0
            if rejected:
                dead = await asyncio.to_thread(self._queue.mark_dead_letter, rejected)
                if dead:
                    await asyncio.to_thread(
                        self._queue.increment_counter, DEAD_LETTERED_COUNTER, dead
                    )
        except QueueError as exc:
            # The sink applied the batch; entries stay pending and are
            # re-sent, which idempotent apply absorbs.
            logger.error("flush_reconcile_failed", error=str(exc))
            self._backoff.record_failure()
            return CycleReport(
                outcome=FAILURE,
                batch_size=len(batch),
                error=f"queue write failed: {exc}",
            )

        self._backoff.record_success()
        outcome = SUCCESS if len(acked) == len(batch) else PARTIAL
        if rejected:
            logger.warning(
                "samples_dead_lettered",
                count=dead,
                reasons=sorted(set(rejected.values()))[:5],
            )
        logger.info(
            "batch_flushed",
            outcome=outcome,
            batch_size=len(batch),
            applied=applied,
            dead_lettered=dead,
            left_pending=len(batch) - len(acked) - len(rejected),
        )

        evicted = await self._enforce_retention()
        return CycleReport(
            outcome=outcome,
            batch_size=len(batch),
            applied=applied,
            dead_lettered=dead,
            evicted=evicted,
        )

    async def _apply(self, batch) -> ApplyResult:
        try:
            return await asyncio.wait_for(self._sink.apply(batch), timeout=self._timeout)
        except asyncio.TimeoutError:
            return ApplyResult.transient(f"apply timed out after {self._timeout}s")
        except Exception as exc:
            logger.exception("sink_apply_crashed")
            return ApplyResult.transient(f"{type(exc).__name__}: {exc}")

    async def _enforce_retention(self) -> Optional[EvictionReport]:
        if self._governor is None:
            return None
        try:
            return await asyncio.to_thread(self._governor.enforce)
        except QueueError as exc:
            logger.error("retention_failed", error=str(exc))
            return None

    def status(self) -> Dict[str, Any]:
        """Serialisable flush/backoff status for the operator surface."""
        stats = asdict(self.stats)
        return {
            "backoff": self._backoff.status().to_dict(),
            "flush": stats,
        }
