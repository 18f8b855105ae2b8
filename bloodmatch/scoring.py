"""
Donor/request match scoring on a 0-100 scale.

Terms: compatibility (40, +5 exact group), distance tier (0-30),
availability (15), health (0-10), reliability (0-5), critical bonus (5).
An ineligible donor scores 0 no matter how the other terms come out.
"""

from datetime import datetime, timedelta

from bloodmatch.compatibility import is_eligible
from bloodmatch.distance import haversine_km
from bloodmatch.models import BloodRequest, Donor, GeoPoint, Urgency

MAX_SCORE = 100
LOCATION_FRESHNESS = timedelta(hours=24)

# (max distance km, points), checked in order
DISTANCE_TIERS: tuple[tuple[float, int], ...] = (
    (5, 30),
    (10, 25),
    (20, 20),
    (50, 10),
)

# (min donations, points), checked in order
RELIABILITY_TIERS: tuple[tuple[int, int], ...] = (
    (5, 5),
    (3, 3),
    (1, 2),
)


def donor_location(
    donor: Donor, now: datetime, freshness: timedelta = LOCATION_FRESHNESS
) -> GeoPoint | None:
    """Current location if it was reported recently, else the registered one."""
    if (
        donor.current_location is not None
        and donor.current_location_updated_at is not None
        and now - donor.current_location_updated_at <= freshness
    ):
        return donor.current_location
    return donor.location


def distance_points(distance_km: float) -> int:
    for limit, points in DISTANCE_TIERS:
        if distance_km <= limit:
            return points
    return 0


def health_points(donor: Donor) -> int:
    flags = int(donor.health.chronic_diseases) + int(donor.health.on_medication)
    return {0: 10, 1: 5}.get(flags, 0)


def reliability_points(total_donations: int) -> int:
    for minimum, points in RELIABILITY_TIERS:
        if total_donations >= minimum:
            return points
    return 0


def score_donor(
    donor: Donor,
    request: BloodRequest,
    now: datetime,
    *,
    distance_km: float | None = None,
    freshness: timedelta = LOCATION_FRESHNESS,
) -> int:
    if not is_eligible(donor, request.blood_group, now):
        return 0

    if distance_km is None:
        location = donor_location(donor, now, freshness)
        if location is None:
            return 0
        distance_km = haversine_km(location, request.location)

    score = 40
    if donor.blood_group == request.blood_group:
        score += 5
    score += distance_points(distance_km)
    if donor.is_available:
        score += 15
    score += health_points(donor)
    score += reliability_points(donor.total_donations)
    if request.urgency == Urgency.CRITICAL:
        score += 5

    return min(score, MAX_SCORE)
