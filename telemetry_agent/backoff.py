"""Flush cadence controller.

State machine: ``Healthy -> Degraded(1) -> Degraded(2) -> ...``.  Each
consecutive failure scales the retry interval by ``multiplier`` until
``maximum`` is reached; any success (full or partial) returns to
``Healthy``.  The controller only decides *when* the next flush runs.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


@dataclass(frozen=True)
class BackoffStatus:
    state: str
    consecutive_failures: int
    interval_seconds: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "consecutive_failures": self.consecutive_failures,
            "interval_seconds": self.interval_seconds,
        }


class BackoffController:
    """Exponential, capped backoff between flush attempts.

    Parameters
    ----------
    base_interval:
        Seconds between cycles while healthy.
    minimum:
        Delay after the first consecutive failure.
    maximum:
        Upper bound on any delay.
    multiplier:
        Growth factor per additional consecutive failure (>= 1).
    """

    HEALTHY = "healthy"
    DEGRADED = "degraded"

    def __init__(
        self,
        base_interval: float,
        minimum: float,
        maximum: float,
        multiplier: float = 2.0,
    ) -> None:
        if minimum <= 0 or maximum < minimum:
            raise ValueError("backoff requires 0 < minimum <= maximum")
        if multiplier < 1.0:
            raise ValueError("backoff multiplier must be >= 1")
        self._base = base_interval
        self._min = minimum
        self._max = maximum
        self._multiplier = multiplier
        self._failures = 0

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def is_healthy(self) -> bool:
        return self._failures == 0

    @property
    def state(self) -> str:
        if self._failures == 0:
            return self.HEALTHY
        return f"{self.DEGRADED}({self._failures})"

    def record_failure(self) -> float:
        """Escalate one step and return the new interval."""
        self._failures += 1
        return self.next_interval()

    def record_success(self) -> float:
        """Return to ``Healthy`` and return the base interval."""
        self._failures = 0
        return self.next_interval()

    def next_interval(self) -> float:
        """Seconds to wait before the next flush attempt."""
        if self._failures == 0:
            return self._base
        # Cap the exponent so huge failure streaks cannot overflow.
        exponent = min(self._failures - 1, 64)
        delay = self._min * (self._multiplier ** exponent)
        return min(max(delay, self._base), self._max)

    def status(self) -> BackoffStatus:
        return BackoffStatus(
            state=self.state,
            consecutive_failures=self._failures,
            interval_seconds=self.next_interval(),
        )
