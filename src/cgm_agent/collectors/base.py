"""Source contracts for the two input streams.

Vendor clients (a CGM cloud API, a notes app export...) live outside this
package; they only need to implement one of the protocols below.  The
scheduler polls them and hands whatever they return to the coordinator.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from cgm_agent.models import Marker, Measurement


class MeasurementSource(ABC):
    """Contract for anything that yields sensor readings.

    Implementations may return readings that were already delivered;
    duplicates (same ``source`` and ``timestamp``) are dropped on save.
    """

    name: str = "default"

    @abstractmethod
    async def fetch_since(self, since: datetime | None) -> list[Measurement]:
        """Return readings newer than *since* (``None`` means everything available).

        Parameters
        ----------
        since:
            Timestamp of the newest stored reading, naive UTC.
        """

    async def close(self) -> None:
        """Release any resources held by the source."""


class MarkerSource(ABC):
    """Contract for anything that yields user markers.

    ``fetch`` returns the source's current view; markers whose id is
    already stored are ignored by the coordinator.
    """

    name: str = "default"

    @abstractmethod
    async def fetch(self) -> list[Marker]:
        """Return the markers currently known to the source."""

    async def close(self) -> None:
        """Release any resources held by the source."""
