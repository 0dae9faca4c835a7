"""
Driver GPS sampler
==================

While a driver has an assigned ride, a fix is sampled every 30 s.  The last
three fixes are kept; a new fix is published onto the request only when it is
more than 3 m from the mean of that buffer (or the buffer is empty).  This
drops GPS jitter while parked and keeps writes low.

The publish sink is injected, normally ``RequestService.update_driver_location``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Awaitable, Callable, Optional

from ridecells.config import settings
from ridecells.domain.distance import haversine_m
from ridecells.workers.periodic import PeriodicTask

logger = logging.getLogger(__name__)

PublishLocation = Callable[[str, str, float, float], Awaitable[None]]


class LocationSource(ABC):
    """Abstract source of the device's current position."""

    @abstractmethod
    async def current_position(self) -> tuple[float, float]:
        """Return ``(lat, lng)``; may raise when no fix is available."""


class DriverLocationTracker:
    def __init__(
        self,
        location_source: LocationSource,
        publish: PublishLocation,
        *,
        sampling_interval_seconds: float = settings.gps_sampling_interval_seconds,
        buffer_size: int = settings.gps_buffer_size,
        movement_threshold_meters: float = settings.movement_threshold_meters,
    ):
        self._source = location_source
        self._publish = publish
        self.movement_threshold_meters = movement_threshold_meters
        self._buffer: deque[tuple[float, float]] = deque(maxlen=buffer_size)
        self._active: Optional[tuple[str, str]] = None
        self._sampler = PeriodicTask(
            "driver location sampler", sampling_interval_seconds, self._tick
        )

    @property
    def is_tracking(self) -> bool:
        return self._active is not None and self._sampler.running

    @property
    def active_request(self) -> Optional[tuple[str, str]]:
        """``(cell_id, request_id)`` being tracked, if any."""
        return self._active

    @property
    def buffer(self) -> list[tuple[float, float]]:
        return list(self._buffer)

    def start_tracking(self, cell_id: str, request_id: str) -> None:
        """Begin sampling for one ride; any previous tracking is stopped."""
        self.stop_tracking()
        self._active = (cell_id, request_id)
        self._sampler.start()
        logger.info("Tracking driver location for request %s", request_id)

    def stop_tracking(self) -> None:
        if self._active is not None:
            logger.info("Stopped tracking request %s", self._active[1])
        self._sampler.stop()
        self._active = None
        self._buffer.clear()

    def should_publish(self, lat: float, lng: float) -> bool:
        """True when the buffer is empty or the fix left the buffer's mean."""
        if not self._buffer:
            return True
        mean_lat = sum(p[0] for p in self._buffer) / len(self._buffer)
        mean_lng = sum(p[1] for p in self._buffer) / len(self._buffer)
        return haversine_m(mean_lat, mean_lng, lat, lng) > self.movement_threshold_meters

    async def sample_location(self) -> bool:
        """
        Take one fix and publish it when it moved.  Returns True if published.
        """
        target = self._active
        if target is None:
            return False

        try:
            lat, lng = await self._source.current_position()
        except Exception as exc:
            logger.warning("No location fix: %s", exc)
            return False

        # Tracking may have been stopped or retargeted while waiting for the fix.
        if self._active != target:
            return False

        publish = self.should_publish(lat, lng)
        self._buffer.append((lat, lng))
        if not publish:
            logger.debug(
                "Driver within %.1f m of recent fixes", self.movement_threshold_meters
            )
            return False

        cell_id, request_id = target
        await self._publish(cell_id, request_id, lat, lng)
        return True

    async def _tick(self) -> None:
        await self.sample_location()
