"""
Expiry of unanswered matches and backfill of the slots they leave.

A pass runs per request, either from the periodic sweep or right after a
donor rejects. Replacements are searched at 1.5x the urgency radius and
never include a donor already in the request's match list.
"""

import asyncio
import logging

from pydantic import BaseModel, Field

from bloodmatch import notifier as events
from bloodmatch.database import RequestStore
from bloodmatch.dispatcher import MatchDispatcher, build_matches
from bloodmatch.errors import NotFoundError, StoreError
from bloodmatch.ledger import refresh_status
from bloodmatch.models import (
    DonationStatus,
    Match,
    MatchResponse,
    NowFn,
    RequestStatus,
    utcnow,
)
from bloodmatch.notifier import Notifier
from bloodmatch.selector import CandidateSelector

logger = logging.getLogger(__name__)


class CascadeResult(BaseModel):
    request_id: str
    applied: bool = False
    expired_donor_ids: list[str] = Field(default_factory=list)
    notified_donor_ids: list[str] = Field(default_factory=list)
    remaining_need: int = 0
    search_failed: bool = False
    abandoned: bool = False
    request_status: RequestStatus | None = None


class CascadeScheduler:
    def __init__(
        self,
        requests: RequestStore,
        selector: CandidateSelector,
        dispatcher: MatchDispatcher,
        notifier: Notifier,
        *,
        now_fn: NowFn = utcnow,
    ) -> None:
        self.requests = requests
        self.selector = selector
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.now_fn = now_fn
        self._sweep_lock = asyncio.Lock()

    async def run(self, request_id: str, *, vacated: int = 0) -> CascadeResult:
        """
        One cascade pass. `vacated` counts slots freed outside this pass
        (a reject) on top of the matches this pass expires.
        """
        try:
            async with self.requests.lock(request_id):
                request = self.requests.get(request_id)
                if request is None:
                    raise NotFoundError(f"request {request_id} not found")
                if request.is_terminal:
                    return CascadeResult(
                        request_id=request.id, request_status=request.status
                    )

                now = self.now_fn()
                expired: list[Match] = []
                for match in request.matches:
                    if match.response == MatchResponse.PENDING and match.expires_at <= now:
                        match.response = MatchResponse.EXPIRED
                        match.donation_status = DonationStatus.CANCELLED
                        expired.append(match)

                freed = len(expired) + vacated
                if freed == 0:
                    return CascadeResult(
                        request_id=request.id, request_status=request.status
                    )

                need = request.units_required - request.units_accepted
                added: list[Match] = []
                if need > 0:
                    ranked = self.selector.select(
                        request,
                        now,
                        exclude=request.matched_donor_ids(),
                        radius_km=self.selector.radius_for(request, expanded=True),
                    )
                    added = build_matches(
                        request, ranked[: min(need, freed)], now, cascade=True
                    )
                    request.matches.extend(added)

                if expired or added:
                    request.updated_at = now
                    refresh_status(request)
                    self.requests.save(request)
        except StoreError:
            logger.exception("cascade for request %s abandoned", request_id)
            return CascadeResult(request_id=request_id, abandoned=True)

        result = CascadeResult(
            request_id=request.id,
            applied=True,
            expired_donor_ids=[m.donor_id for m in expired],
            notified_donor_ids=[m.donor_id for m in added],
            remaining_need=max(need, 0),
            search_failed=need > 0 and not added,
            request_status=request.status,
        )
        logger.info(
            "cascade on request %s: %d expired, %d replacements, need %d",
            request.id,
            len(expired),
            len(added),
            result.remaining_need,
        )

        if added:
            await self.dispatcher.announce(request, added)
        elif result.search_failed:
            await self.notifier.notify(
                request.requester_id,
                events.CASCADE_FAILED,
                {
                    "request_id": request.id,
                    "remaining_need": need,
                    "message": (
                        "No more donors found nearby. "
                        "Consider raising the urgency of this request."
                    ),
                },
            )
        return result

    async def sweep(self) -> list[CascadeResult]:
        """Cascade pass over every open request. Overlapping sweeps are skipped."""
        if self._sweep_lock.locked():
            logger.warning("cascade sweep already running, skipped")
            return []
        async with self._sweep_lock:
            results = []
            for request in self.requests.open_requests():
                try:
                    results.append(await self.run(request.id))
                except NotFoundError:
                    continue
            return results
