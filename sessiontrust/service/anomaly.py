"""Login risk scoring from device novelty and geographic history.

The detector is a pure function of its inputs. Rules, first match wins:

1. A new device yields a medium ``new_device`` verdict without looking at location.
2. Without a prior location/time, or coordinates on either side, there is nothing to compare.
3. More than ``min_distance_km`` covered faster than ``max_speed_kmh`` allows is
   ``impossible_travel`` (critical).
4. A change between two known countries is ``new_country`` (high).
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sessiontrust.storage.models import Location

EARTH_RADIUS_KM = 6371.0
MAX_TRAVEL_SPEED_KMH = 800.0
MIN_TRAVEL_DISTANCE_KM = 100.0


class AnomalyKind(str, Enum):
    NEW_DEVICE = "new_device"
    NEW_COUNTRY = "new_country"
    IMPOSSIBLE_TRAVEL = "impossible_travel"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class AnomalyVerdict:
    kind: AnomalyKind
    severity: Severity
    description: str
    details: Dict[str, Any] = field(default_factory=dict)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres."""
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(delta_lat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(delta_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def format_duration(elapsed: timedelta) -> str:
    total_minutes = max(int(elapsed.total_seconds() // 60), 0)
    hours, minutes = divmod(total_minutes, 60)
    if hours > 0:
        return f"{hours} hours {minutes} minutes"
    return f"{minutes} minutes"


def format_distance(km: float) -> str:
    if km > 1000:
        return f"{km:.0f} km"
    return f"{km:.1f} km"


class AnomalyDetector:
    def __init__(
        self,
        *,
        max_speed_kmh: float = MAX_TRAVEL_SPEED_KMH,
        min_distance_km: float = MIN_TRAVEL_DISTANCE_KM,
    ) -> None:
        self.max_speed_kmh = max_speed_kmh
        self.min_distance_km = min_distance_km

    def detect(
        self,
        current: Optional[Location],
        previous: Optional[Location],
        previous_login_at: Optional[datetime],
        is_new_device: bool,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[AnomalyVerdict]:
        if is_new_device:
            return AnomalyVerdict(
                kind=AnomalyKind.NEW_DEVICE,
                severity=Severity.MEDIUM,
                description="Login from new unrecognized device",
            )

        if previous is None or previous_login_at is None or current is None:
            return None
        if not (previous.has_coordinates and current.has_coordinates):
            return None

        distance = haversine_km(
            previous.latitude, previous.longitude, current.latitude, current.longitude
        )
        elapsed = (now or datetime.now(timezone.utc)) - previous_login_at
        # A previous login stamped in the future counts as no time elapsed
        elapsed = max(elapsed, timedelta(0))
        hours = elapsed.total_seconds() / 3600
        details = {
            "distance_km": distance,
            "time_hours": hours,
            "previous_location": previous.label(),
            "current_location": current.label(),
        }

        min_hours_needed = distance / self.max_speed_kmh
        if distance > self.min_distance_km and hours < min_hours_needed:
            return AnomalyVerdict(
                kind=AnomalyKind.IMPOSSIBLE_TRAVEL,
                severity=Severity.CRITICAL,
                description=(
                    f"Impossible travel detected: Login from {previous.label()} "
                    f"then {current.label()} within {format_duration(elapsed)} "
                    f"- physically impossible to travel {format_distance(distance)}"
                ),
                details=details,
            )

        if previous.country and current.country and previous.country != current.country:
            return AnomalyVerdict(
                kind=AnomalyKind.NEW_COUNTRY,
                severity=Severity.HIGH,
                description=(
                    f"Login from new country detected: {current.country} "
                    f"(previous: {previous.country})"
                ),
                details=details,
            )
        return None


__all__ = [
    "AnomalyDetector",
    "AnomalyKind",
    "AnomalyVerdict",
    "Severity",
    "format_distance",
    "format_duration",
    "haversine_km",
]
