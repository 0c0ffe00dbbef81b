"""Fixture-based simulation source (no hardware required).

Loads scenarios from ``fixtures/simulation_scenarios.json`` and applies
Gaussian noise to each signal so consecutive samples vary realistically.
"""

from __future__ import annotations

import json
import random
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from telemetry_agent.schemas import Sample
from telemetry_agent.source.base import SampleSource

_FIXTURES_DIR = Path(__file__).resolve().parent.parent / "fixtures"


class SimulationSource(SampleSource):
    """Emits synthetic vehicle readings from JSON fixture scenarios."""

    def __init__(self, device_id: str, scenario: str = "cruise") -> None:
        self._device_id = device_id
        self._scenario_name = scenario
        self._scenario: Dict[str, Any] = {}
        self._connected = False

    # -- lifecycle ----------------------------------------------------------

    async def connect(self) -> None:
        scenarios = _load_scenarios()
        if self._scenario_name not in scenarios:
            available = ", ".join(sorted(scenarios))
            raise ValueError(
                f"Unknown simulation scenario '{self._scenario_name}'. "
                f"Available: {available}"
            )
        self._scenario = scenarios[self._scenario_name]
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False

    def is_connected(self) -> bool:
        return self._connected

    # -- data reads ---------------------------------------------------------

    async def read(self) -> Sample:
        if not self._connected:
            raise RuntimeError("SimulationSource is not connected")
        signals = {
            name: {
                "value": _apply_noise(signal_def["base"], signal_def.get("noise", 0.0)),
                "unit": signal_def["unit"],
            }
            for name, signal_def in self._scenario.get("signals", {}).items()
        }
        return Sample(
            device_id=self._device_id,
            timestamp=datetime.now(timezone.utc),
            payload={"scenario": self._scenario_name, "signals": signals},
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_scenarios_cache: Optional[Dict[str, Any]] = None


def _load_scenarios() -> Dict[str, Any]:
    global _scenarios_cache
    if _scenarios_cache is None:
        path = _FIXTURES_DIR / "simulation_scenarios.json"
        with open(path, encoding="utf-8") as fh:
            _scenarios_cache = json.load(fh)
    return _scenarios_cache


def _apply_noise(base: float, noise: float) -> float:
    """Apply Gaussian noise (std-dev = noise) to a base value.

    Result is clamped to >= 0 since the simulated signals are non-negative.
    """
    if noise <= 0:
        return base
    return round(max(0.0, base + random.gauss(0, noise)), 2)
