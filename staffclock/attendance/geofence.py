"""Office geofence evaluation and the geolocation provider boundary."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

from staffclock.config import GeofencePolicy
from staffclock.types import GeoStatus

LOGGER = logging.getLogger("staffclock.attendance.geofence")

EARTH_RADIUS_M = 6_371_000.0


class GeolocationError(Exception):
    """Position could not be obtained (timeout, permission denied, no fix)."""


@dataclass(frozen=True)
class Position:
    lat: float
    lng: float
    accuracy_m: Optional[float] = None


class GeolocationProvider(Protocol):
    def get_current_position(self) -> Position: ...


class StaticGeolocationProvider:
    """Always reports the configured position, or raises when constructed without one."""

    def __init__(self, position: Optional[Position] = None) -> None:
        self.position = position

    def get_current_position(self) -> Position:
        if self.position is None:
            raise GeolocationError("Location permission denied")
        return self.position


@dataclass
class GeoCapture:
    status: GeoStatus
    lat: Optional[float] = None
    lng: Optional[float] = None
    accuracy_m: Optional[float] = None
    distance_m: Optional[float] = None


def haversine_m(from_lat: float, from_lng: float, to_lat: float, to_lng: float) -> float:
    d_lat = math.radians(to_lat - from_lat)
    d_lng = math.radians(to_lng - from_lng)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.sin(d_lng / 2) ** 2 * math.cos(math.radians(from_lat)) * math.cos(math.radians(to_lat))
    )
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def evaluate_geofence(lat: float, lng: float, policy: GeofencePolicy) -> Tuple[GeoStatus, int]:
    distance = int(round(haversine_m(lat, lng, policy.lat, policy.lng)))
    status = GeoStatus.IN_RANGE if distance <= policy.radius_m else GeoStatus.OUT_OF_RANGE
    return status, distance


def capture_geolocation(
    provider: Optional[GeolocationProvider],
    policy: Optional[GeofencePolicy] = None,
) -> GeoCapture:
    """Read a position and classify it; any provider failure yields LOCATION_UNAVAILABLE."""
    policy = policy or GeofencePolicy()
    if provider is None:
        return GeoCapture(status=GeoStatus.LOCATION_UNAVAILABLE)
    try:
        position = provider.get_current_position()
    except Exception as exc:
        LOGGER.warning("Geolocation unavailable: %s", exc)
        return GeoCapture(status=GeoStatus.LOCATION_UNAVAILABLE)
    if position is None:
        return GeoCapture(status=GeoStatus.LOCATION_UNAVAILABLE)
    status, distance = evaluate_geofence(position.lat, position.lng, policy)
    LOGGER.debug("Geofence %s distance=%sm radius=%sm", status.value, distance, policy.radius_m)
    return GeoCapture(
        status=status,
        lat=position.lat,
        lng=position.lng,
        accuracy_m=position.accuracy_m,
        distance_m=distance,
    )
