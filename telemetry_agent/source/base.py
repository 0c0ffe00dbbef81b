"""Abstract base class for sample sources."""

from __future__ import annotations

from abc import ABC, abstractmethod

from telemetry_agent.schemas import Sample


class SampleSource(ABC):
    """Produces telemetry samples for one device."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the underlying acquisition channel."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the channel."""

    @abstractmethod
    def is_connected(self) -> bool:
        """Return ``True`` if the channel is open."""

    @abstractmethod
    async def read(self) -> Sample:
        """Acquire one sample, stamped with the time it represents."""
