"""Agent configuration via environment variables.

Uses pydantic-settings so every field can be overridden with an
env var.  The in-process simulation source is the zero-hardware default.

Note: ``env_prefix`` is empty, so field names map directly to env vars
(e.g. ``LOG_LEVEL``, ``BATCH_SIZE``).  The agent reads ``.env`` from the
working directory.
"""

from __future__ import annotations

from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class AgentSettings(BaseSettings):
    """Telemetry agent runtime settings."""

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}

    # -- device -------------------------------------------------------------
    device_id: str = Field(
        default="V-SIM-001",
        min_length=1,
        description="Stable identity of this device",
    )

    # -- queue --------------------------------------------------------------
    queue_path: str = Field(
        default="./telemetry_queue.sqlite",
        description="SQLite file backing the durable queue (':memory:' for tests)",
    )

    # -- sink ---------------------------------------------------------------
    sink_base_url: str = Field(
        default="http://127.0.0.1:8000",
        description="Base URL of the ingest service",
    )
    sink_auth_token: Optional[str] = Field(
        default=None,
        description="Optional bearer token sent with every batch",
    )
    sink_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Upper bound on one batch apply; expiry counts as a transient failure",
    )

    # -- flush --------------------------------------------------------------
    flush_interval_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Seconds between flush cycles while the sink is healthy",
    )
    batch_size: int = Field(
        default=500,
        gt=0,
        description="Maximum samples per batch",
    )

    # -- backoff ------------------------------------------------------------
    backoff_min_seconds: float = Field(default=5.0, gt=0)
    backoff_max_seconds: float = Field(default=600.0, gt=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)

    # -- retention ----------------------------------------------------------
    max_queue_entries: Optional[int] = Field(
        default=None,
        gt=0,
        description="Absolute cap on queued entries",
    )
    max_queue_bytes: Optional[int] = Field(
        default=256 * 1024 * 1024,
        gt=0,
        description="Cap on the summed payload size of queued entries",
    )
    retention_window_hours: Optional[float] = Field(
        default=None,
        gt=0,
        description="Keep at most this many hours of expected volume",
    )
    expected_samples_per_minute: Optional[float] = Field(
        default=None,
        gt=0,
        description="Expected acquisition rate; used with retention_window_hours",
    )
    governor_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Retention pass cadence independent of flush outcome",
    )

    # -- acquisition --------------------------------------------------------
    sample_interval_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Seconds between simulated acquisitions",
    )
    sim_scenario: str = Field(
        default="cruise",
        description="Simulation scenario name (from simulation_scenarios.json)",
    )

    # -- behaviour ----------------------------------------------------------
    dry_run: bool = Field(
        default=False,
        description="Deliver to an in-process sink; never contact the network",
    )
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="console",
        description="Log output format: 'console' or 'json'",
    )

    @model_validator(mode="after")
    def _check_backoff(self) -> "AgentSettings":
        if self.backoff_max_seconds < self.backoff_min_seconds:
            raise ValueError("backoff_max_seconds must be >= backoff_min_seconds")
        if self.backoff_max_seconds < self.flush_interval_seconds:
            raise ValueError("backoff_max_seconds must be >= flush_interval_seconds")
        return self

    # -- derived ------------------------------------------------------------
    @property
    def effective_max_entries(self) -> Optional[int]:
        """Entry cap combining the absolute and the time-window bounds."""
        caps = []
        if self.max_queue_entries is not None:
            caps.append(self.max_queue_entries)
        if (
            self.retention_window_hours is not None
            and self.expected_samples_per_minute is not None
        ):
            window = self.retention_window_hours * 60 * self.expected_samples_per_minute
            caps.append(max(1, int(window)))
        return min(caps) if caps else None
