"""
Location Reporter

Stateless pass-through for driver position ticks: validate, stamp with
the server clock, publish. Nothing is stored here; the live tracker
subscriber keeps the latest sample for display.
"""

import logging
import math
from dataclasses import dataclass
from numbers import Real
from typing import Optional

from delivery_dispatch.domain import ErrorCode, LocationSample, utcnow
from delivery_dispatch.services.events.bus import EventBus
from delivery_dispatch.services.events.types import DriverLocationUpdated

logger = logging.getLogger(__name__)


@dataclass
class LocationResult:
    """Outcome of a location report."""
    success: bool
    event: Optional[DriverLocationUpdated] = None
    error: Optional[ErrorCode] = None
    message: Optional[str] = None


def _is_number(value) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool) and math.isfinite(value)


def validate_sample(sample: LocationSample) -> Optional[str]:
    """Return why ``sample`` is implausible, or None."""
    for name in ("lat", "lng", "heading", "speed"):
        if not _is_number(getattr(sample, name)):
            return f"{name} must be a finite number"
    if not -90 <= sample.lat <= 90:
        return "latitude must be within [-90, 90]"
    if not -180 <= sample.lng <= 180:
        return "longitude must be within [-180, 180]"
    return None


class LocationReporter:
    """Validates and republishes driver location samples."""

    def __init__(self, bus: EventBus):
        self.bus = bus

    def report_location(self, driver_id: Optional[str], sample: LocationSample) -> LocationResult:
        if not driver_id:
            return LocationResult(
                success=False,
                error=ErrorCode.VALIDATION_ERROR,
                message="driverId is required",
            )

        problem = validate_sample(sample)
        if problem is not None:
            logger.debug(f"Rejected location from driver {driver_id}: {problem}")
            return LocationResult(success=False, error=ErrorCode.VALIDATION_ERROR, message=problem)

        event = DriverLocationUpdated(driver_id=driver_id, location=sample, timestamp=utcnow())
        self.bus.publish(event)
        return LocationResult(success=True, event=event)
