"""Tests for telemetry_agent.config -- AgentSettings."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from telemetry_agent.config import AgentSettings


def test_env_overrides_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BATCH_SIZE", "42")
    monkeypatch.setenv("DRY_RUN", "true")
    settings = AgentSettings()
    assert settings.batch_size == 42
    assert settings.dry_run is True


def test_backoff_max_below_min_rejected() -> None:
    with pytest.raises(ValidationError):
        AgentSettings(backoff_min_seconds=10, backoff_max_seconds=5)


def test_backoff_max_below_flush_interval_rejected() -> None:
    with pytest.raises(ValidationError):
        AgentSettings(flush_interval_seconds=60, backoff_min_seconds=1, backoff_max_seconds=30)


@pytest.mark.parametrize("field", ["batch_size", "flush_interval_seconds", "sink_timeout_seconds"])
def test_non_positive_values_rejected(field: str) -> None:
    with pytest.raises(ValidationError):
        AgentSettings(**{field: 0})


def test_effective_max_entries_from_time_window() -> None:
    settings = AgentSettings(retention_window_hours=2, expected_samples_per_minute=10)
    assert settings.effective_max_entries == 1200

    capped = AgentSettings(
        max_queue_entries=500, retention_window_hours=2, expected_samples_per_minute=10
    )
    assert capped.effective_max_entries == 500

    assert AgentSettings().effective_max_entries is None
