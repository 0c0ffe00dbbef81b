"""Shared pytest fixtures for telemetry agent tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Generator

import pytest

from telemetry_agent.queue import DurableQueue
from telemetry_agent.schemas import Sample

_EPOCH = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _reset_scenario_cache() -> Generator[None, None, None]:
    """Clear the simulation scenario cache between tests."""
    from telemetry_agent.source import simulation

    simulation._scenarios_cache = None
    yield
    simulation._scenarios_cache = None


@pytest.fixture()
def queue_path(tmp_path: Path) -> str:
    return str(tmp_path / "queue.sqlite")


@pytest.fixture()
def queue(queue_path: str) -> Generator[DurableQueue, None, None]:
    q = DurableQueue(queue_path)
    yield q
    q.close()


@pytest.fixture()
def make_sample() -> Callable[..., Sample]:
    """Factory for samples with deterministic ids and timestamps."""

    def _make(sample_id: str, *, device_id: str = "V-TEST-001", offset: int = 0, payload=None) -> Sample:
        return Sample(
            sample_id=sample_id,
            device_id=device_id,
            timestamp=_EPOCH + timedelta(seconds=offset),
            payload=payload if payload is not None else {"rpm": 800 + offset},
        )

    return _make
