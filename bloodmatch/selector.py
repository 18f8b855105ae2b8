import logging
from collections.abc import Collection
from dataclasses import dataclass
from datetime import datetime, timedelta

from bloodmatch.compatibility import compatible_donor_groups
from bloodmatch.config import Settings, settings as default_settings
from bloodmatch.database import DonorStore
from bloodmatch.distance import haversine_km
from bloodmatch.models import BloodRequest, Donor
from bloodmatch.scoring import donor_location, score_donor
from bloodmatch.urgency import policy_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    donor: Donor
    score: int
    distance_km: float  # unrounded


class CandidateSelector:
    def __init__(
        self, donors: DonorStore, settings: Settings | None = None
    ) -> None:
        self.donors = donors
        self.settings = settings or default_settings

    def radius_for(self, request: BloodRequest, *, expanded: bool = False) -> float:
        policy = policy_for(request.urgency)
        return policy.expanded_radius_km if expanded else policy.radius_km

    def select(
        self,
        request: BloodRequest,
        now: datetime,
        *,
        exclude: Collection[str] = (),
        radius_km: float | None = None,
    ) -> list[Candidate]:
        """
        Ranked candidates for `request`, best first. An empty list means no
        one suitable is nearby; that is a normal outcome.
        """
        if radius_km is None:
            radius_km = self.radius_for(request)
        freshness = timedelta(hours=self.settings.location_freshness_hours)

        candidates: list[Candidate] = []
        for donor in self.donors.find_compatible(
            compatible_donor_groups(request.blood_group), available=True
        ):
            if donor.id in exclude:
                continue
            location = donor_location(donor, now, freshness)
            if location is None:
                continue
            distance = haversine_km(location, request.location)
            if distance > radius_km:
                continue
            score = score_donor(
                donor, request, now, distance_km=distance, freshness=freshness
            )
            if score <= self.settings.min_candidate_score:
                continue
            candidates.append(Candidate(donor=donor, score=score, distance_km=distance))

        # ties go to the nearer donor
        candidates.sort(key=lambda c: (-c.score, c.distance_km))
        logger.debug(
            "request %s: %d candidates within %.1f km",
            request.id,
            len(candidates),
            radius_km,
        )
        return candidates
