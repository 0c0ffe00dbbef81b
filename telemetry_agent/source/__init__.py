"""Acquisition source abstraction layer.

Provides ``SampleSource`` ABC with one concrete implementation:

* ``SimulationSource`` -- fixture-based, no hardware required.

Real acquisition (OBD adapters, CAN, GPIO) lives outside this package
and only needs to call ``DurableQueue.enqueue``.
"""

from telemetry_agent.source.base import SampleSource

__all__ = ["SampleSource"]
