import logging
from collections.abc import Sequence
from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from bloodmatch import notifier as events
from bloodmatch.database import RequestStore
from bloodmatch.distance import display_km
from bloodmatch.errors import InvalidTransitionError, NotFoundError, StoreError
from bloodmatch.ledger import refresh_status
from bloodmatch.models import BloodRequest, Match, NowFn, RequestStatus, utcnow
from bloodmatch.notifier import Notifier
from bloodmatch.selector import Candidate, CandidateSelector
from bloodmatch.urgency import policy_for

logger = logging.getLogger(__name__)

# candidates this close to the top one are notified even past the target count
SIMILAR_SCORE_POINTS = 5
SIMILAR_DISTANCE_KM = 2.0


class DispatchResult(BaseModel):
    request_id: str
    status: RequestStatus | None = None
    notified_donor_ids: list[str] = Field(default_factory=list)
    no_candidates: bool = False
    abandoned: bool = False


def notify_target(request: BloodRequest, candidate_count: int) -> int:
    policy = policy_for(request.urgency)
    return min(request.units_required + policy.notify_buffer, candidate_count)


def choose_candidates(
    request: BloodRequest, ranked: Sequence[Candidate]
) -> list[Candidate]:
    """
    Top `units_required + buffer` candidates, plus every candidate that is
    within a few points and kilometers of the best one. Rank order is kept.
    """
    if not ranked:
        return []
    target = notify_target(request, len(ranked))
    top = ranked[0]
    chosen = []
    for rank, candidate in enumerate(ranked):
        similar = (
            top.score - candidate.score <= SIMILAR_SCORE_POINTS
            and abs(candidate.distance_km - top.distance_km) <= SIMILAR_DISTANCE_KM
        )
        if rank < target or similar:
            chosen.append(candidate)
    return chosen


def build_matches(
    request: BloodRequest,
    chosen: Sequence[Candidate],
    now: datetime,
    *,
    cascade: bool = False,
) -> list[Match]:
    expires_at = now + timedelta(hours=policy_for(request.urgency).expiry_hours)
    first = request.next_priority()
    return [
        Match(
            donor_id=c.donor.id,
            score=c.score,
            distance_km=display_km(c.distance_km),
            priority=first + offset,
            expires_at=expires_at,
            cascade=cascade,
            notified_at=now,
        )
        for offset, c in enumerate(chosen)
    ]


def match_payload(request: BloodRequest, match: Match) -> dict:
    return {
        "request_id": request.id,
        "blood_group": str(request.blood_group),
        "urgency": str(request.urgency),
        "distance_km": match.distance_km,
        "score": match.score,
        "location": request.hospital or request.location.address,
        "expires_at": match.expires_at.isoformat(),
        "cascade": match.cascade,
    }


class MatchDispatcher:
    def __init__(
        self,
        requests: RequestStore,
        selector: CandidateSelector,
        notifier: Notifier,
        *,
        now_fn: NowFn = utcnow,
    ) -> None:
        self.requests = requests
        self.selector = selector
        self.notifier = notifier
        self.now_fn = now_fn

    async def dispatch(self, request_id: str) -> DispatchResult:
        """
        Select and notify donors for a request. Donors already in the match
        list are skipped, so calling this again only appends new donors.
        """
        try:
            async with self.requests.lock(request_id):
                request = self.requests.get(request_id)
                if request is None:
                    raise NotFoundError(f"request {request_id} not found")
                if request.is_terminal:
                    raise InvalidTransitionError(
                        f"cannot match for a {request.status} request"
                    )

                now = self.now_fn()
                ranked = self.selector.select(
                    request, now, exclude=request.matched_donor_ids()
                )
                matches = build_matches(request, choose_candidates(request, ranked), now)
                request.matches.extend(matches)
                request.updated_at = now
                refresh_status(request)
                self.requests.save(request)
        except StoreError:
            logger.exception("dispatch for request %s abandoned", request_id)
            return DispatchResult(request_id=request_id, abandoned=True)

        # notifications go out after the state is persisted
        if matches:
            await self.announce(request, matches)
            logger.info(
                "request %s: notified %d donors", request.id, len(matches)
            )
        else:
            logger.info("request %s: no donors found", request.id)
            await self.notifier.notify(
                request.requester_id,
                events.NO_DONORS_FOUND,
                {
                    "request_id": request.id,
                    "message": "No matching donors found nearby yet.",
                },
            )

        return DispatchResult(
            request_id=request.id,
            status=request.status,
            notified_donor_ids=[m.donor_id for m in matches],
            no_candidates=not matches,
        )

    async def announce(
        self, request: BloodRequest, matches: Sequence[Match]
    ) -> list[bool]:
        return await self.notifier.notify_many(
            (
                m.donor_id,
                events.CASCADE_MATCH if m.cascade else events.NEW_MATCH,
                match_payload(request, m),
            )
            for m in matches
        )
