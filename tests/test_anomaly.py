"""Tests for the login anomaly detector."""

from datetime import datetime, timedelta, timezone

import pytest

from sessiontrust.service.anomaly import (
    AnomalyDetector,
    AnomalyKind,
    Severity,
    format_distance,
    format_duration,
    haversine_km,
)
from sessiontrust.storage.models import Location

T0 = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)

NEW_YORK = Location(country="US", city="New York", latitude=40.7128, longitude=-74.0060)
LONDON = Location(country="GB", city="London", latitude=51.5074, longitude=-0.1278)
BOSTON = Location(country="US", city="Boston", latitude=42.3601, longitude=-71.0589)
TORONTO = Location(country="CA", city="Toronto", latitude=43.6532, longitude=-79.3832)


@pytest.fixture
def detector():
    return AnomalyDetector()


class TestHaversine:
    def test_zero_distance(self):
        assert haversine_km(0, 0, 0, 0) == 0

    def test_new_york_to_london(self):
        distance = haversine_km(40.7128, -74.0060, 51.5074, -0.1278)
        assert abs(distance - 5570) <= 50

    def test_symmetric(self):
        forward = haversine_km(40.7128, -74.0060, 51.5074, -0.1278)
        backward = haversine_km(51.5074, -0.1278, 40.7128, -74.0060)
        assert forward == pytest.approx(backward)

    def test_antipodes_half_circumference(self):
        assert haversine_km(0, 0, 0, 180) == pytest.approx(3.141592653589793 * 6371, rel=1e-9)


class TestNewDevice:
    def test_new_device_short_circuits(self, detector):
        verdict = detector.detect(LONDON, NEW_YORK, T0, True, now=T0 + timedelta(hours=1))
        assert verdict.kind is AnomalyKind.NEW_DEVICE
        assert verdict.severity is Severity.MEDIUM

    @pytest.mark.parametrize("current,previous,prev_at", [
        (None, None, None),
        (LONDON, None, None),
        (Location(), Location(), T0),
    ])
    def test_new_device_regardless_of_location(self, detector, current, previous, prev_at):
        verdict = detector.detect(current, previous, prev_at, True, now=T0)
        assert verdict.kind is AnomalyKind.NEW_DEVICE
        assert verdict.description == "Login from new unrecognized device"


class TestImpossibleTravel:
    def test_one_hour_across_atlantic(self, detector):
        verdict = detector.detect(LONDON, NEW_YORK, T0, False, now=T0 + timedelta(hours=1))

        assert verdict.kind is AnomalyKind.IMPOSSIBLE_TRAVEL
        assert verdict.severity is Severity.CRITICAL
        assert verdict.details["distance_km"] == pytest.approx(5570, abs=50)
        assert verdict.details["time_hours"] == pytest.approx(1.0)
        assert verdict.details["previous_location"] == "New York, US"
        assert verdict.details["current_location"] == "London, GB"

    def test_description_names_places_time_and_distance(self, detector):
        verdict = detector.detect(LONDON, NEW_YORK, T0, False, now=T0 + timedelta(hours=1, minutes=5))
        assert verdict.description.startswith(
            "Impossible travel detected: Login from New York, US then London, GB within 1 hours 5 minutes"
        )
        assert verdict.description.endswith(
            f"physically impossible to travel {format_distance(verdict.details['distance_km'])}"
        )

    def test_eight_hours_is_feasible_but_new_country(self, detector):
        verdict = detector.detect(LONDON, NEW_YORK, T0, False, now=T0 + timedelta(hours=8))
        assert verdict.kind is AnomalyKind.NEW_COUNTRY
        assert verdict.severity is Severity.HIGH
        assert verdict.description == "Login from new country detected: GB (previous: US)"

    def test_same_country_feasible_trip_is_clean(self, detector):
        assert detector.detect(BOSTON, NEW_YORK, T0, False, now=T0 + timedelta(hours=2)) is None

    def test_same_country_too_fast(self, detector):
        # ~306 km in 5 minutes
        verdict = detector.detect(BOSTON, NEW_YORK, T0, False, now=T0 + timedelta(minutes=5))
        assert verdict.kind is AnomalyKind.IMPOSSIBLE_TRAVEL

    def test_short_hops_never_impossible(self, detector):
        nearby = Location(country="US", city="Newark", latitude=40.7357, longitude=-74.1724)
        assert detector.detect(nearby, NEW_YORK, T0, False, now=T0 + timedelta(seconds=1)) is None

    def test_previous_login_in_future_counts_as_zero_elapsed(self, detector):
        verdict = detector.detect(LONDON, NEW_YORK, T0 + timedelta(hours=1), False, now=T0)
        assert verdict.kind is AnomalyKind.IMPOSSIBLE_TRAVEL
        assert verdict.details["time_hours"] == 0

    def test_thresholds_are_configurable(self):
        slow = AnomalyDetector(max_speed_kmh=100, min_distance_km=50)
        verdict = slow.detect(BOSTON, NEW_YORK, T0, False, now=T0 + timedelta(hours=2))
        assert verdict.kind is AnomalyKind.IMPOSSIBLE_TRAVEL


class TestNoHistory:
    def test_no_previous_location(self, detector):
        assert detector.detect(LONDON, None, T0, False, now=T0) is None

    def test_no_previous_time(self, detector):
        assert detector.detect(LONDON, NEW_YORK, None, False, now=T0) is None

    def test_no_current_location(self, detector):
        assert detector.detect(None, NEW_YORK, T0, False, now=T0) is None

    def test_missing_coordinates(self, detector):
        country_only = Location(country="GB", city="London")
        assert detector.detect(country_only, NEW_YORK, T0, False, now=T0 + timedelta(hours=1)) is None

    def test_unknown_country_is_not_new_country(self, detector):
        no_country = Location(latitude=TORONTO.latitude, longitude=TORONTO.longitude)
        assert detector.detect(no_country, NEW_YORK, T0, False, now=T0 + timedelta(hours=10)) is None

    def test_neighbouring_country(self, detector):
        verdict = detector.detect(TORONTO, NEW_YORK, T0, False, now=T0 + timedelta(hours=3))
        assert verdict.kind is AnomalyKind.NEW_COUNTRY


class TestFormatting:
    def test_duration(self):
        assert format_duration(timedelta(minutes=42)) == "42 minutes"
        assert format_duration(timedelta(hours=2, minutes=3)) == "2 hours 3 minutes"
        assert format_duration(timedelta(seconds=-5)) == "0 minutes"

    def test_distance(self):
        assert format_distance(5570.4) == "5570 km"
        assert format_distance(306.27) == "306.3 km"
