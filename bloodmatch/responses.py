"""
Donor accept/reject and requester start/complete transitions.

State is mutated and saved under the request's lock; notifications go out
after the lock is released so a delivery problem can never undo or hold up
a transition.
"""

import logging
import secrets
from typing import TYPE_CHECKING

from pydantic import BaseModel

from bloodmatch import notifier as events
from bloodmatch.database import DonorStore, RequestStore
from bloodmatch.errors import ConflictError, InvalidTransitionError, NotFoundError
from bloodmatch.ledger import refresh_status
from bloodmatch.models import (
    BloodRequest,
    DonationStatus,
    Match,
    MatchResponse,
    NowFn,
    RequestStatus,
    utcnow,
)
from bloodmatch.notifier import Notifier

if TYPE_CHECKING:
    from bloodmatch.cascade import CascadeScheduler

logger = logging.getLogger(__name__)


class TransitionResult(BaseModel):
    request_id: str
    donor_id: str
    action: str
    applied: bool = True
    response: MatchResponse | None = None
    donation_status: DonationStatus | None = None
    request_status: RequestStatus | None = None
    detail: str | None = None


def generate_confirmation_code(length: int = 6) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length))


def _closed(request: BloodRequest, donor_id: str, action: str) -> TransitionResult:
    logger.info(
        "%s on %s request %s ignored", action, request.status, request.id
    )
    return TransitionResult(
        request_id=request.id,
        donor_id=donor_id,
        action=action,
        applied=False,
        request_status=request.status,
        detail=f"request is {request.status}",
    )


def _result(request: BloodRequest, match: Match, action: str) -> TransitionResult:
    return TransitionResult(
        request_id=request.id,
        donor_id=match.donor_id,
        action=action,
        response=match.response,
        donation_status=match.donation_status,
        request_status=request.status,
    )


class ResponseHandler:
    def __init__(
        self,
        requests: RequestStore,
        donors: DonorStore,
        notifier: Notifier,
        *,
        cascade: "CascadeScheduler | None" = None,
        now_fn: NowFn = utcnow,
        otp_length: int = 6,
    ) -> None:
        self.requests = requests
        self.donors = donors
        self.notifier = notifier
        self.cascade = cascade
        self.now_fn = now_fn
        self.otp_length = otp_length

    def _load(self, request_id: str) -> BloodRequest:
        request = self.requests.get(request_id)
        if request is None:
            raise NotFoundError(f"request {request_id} not found")
        return request

    @staticmethod
    def _match(request: BloodRequest, donor_id: str) -> Match:
        match = request.match_for(donor_id)
        if match is None:
            raise NotFoundError(
                f"donor {donor_id} is not matched to request {request.id}"
            )
        return match

    async def accept(self, request_id: str, donor_id: str) -> TransitionResult:
        async with self.requests.lock(request_id):
            request = self._load(request_id)
            if request.is_closed:
                return _closed(request, donor_id, "accept")
            match = self._match(request, donor_id)

            if match.response == MatchResponse.SUPERSEDED:
                raise ConflictError(
                    "request already has all the donors it needs",
                    request_id=request.id,
                    donor_id=donor_id,
                )
            if match.response != MatchResponse.PENDING:
                logger.warning(
                    "donor %s accept on request %s rejected: already %s",
                    donor_id,
                    request.id,
                    match.response,
                )
                raise InvalidTransitionError(f"match is already {match.response}")

            now = self.now_fn()
            full = (
                request.count(MatchResponse.ACCEPTED) >= request.units_required
                or request.units_accepted + match.units_committed
                > request.units_required
            )
            if full:
                match.response = MatchResponse.SUPERSEDED
                match.donation_status = DonationStatus.CANCELLED
                match.responded_at = now
                request.updated_at = now
                refresh_status(request)
                self.requests.save(request)
                logger.info(
                    "donor %s superseded on full request %s", donor_id, request.id
                )
                raise ConflictError(
                    "request already has all the donors it needs",
                    request_id=request.id,
                    donor_id=donor_id,
                )

            match.response = MatchResponse.ACCEPTED
            match.responded_at = now
            match.accepted_at = now
            match.confirmation_code = generate_confirmation_code(self.otp_length)
            request.units_accepted += match.units_committed

            if request.units_accepted >= request.units_required:
                for other in request.matches:
                    if other is not match and other.response == MatchResponse.PENDING:
                        other.response = MatchResponse.SUPERSEDED
                        other.donation_status = DonationStatus.CANCELLED
                        other.responded_at = now

            request.updated_at = now
            refresh_status(request)
            self.requests.save(request)

        logger.info("donor %s accepted request %s", donor_id, request.id)
        await self.notifier.notify(
            request.requester_id,
            events.REQUEST_ACCEPTED,
            {
                "request_id": request.id,
                "donor_id": donor_id,
                "confirmation_code": match.confirmation_code,
                "units_accepted": request.units_accepted,
                "units_required": request.units_required,
                "status": str(request.status),
            },
        )
        return _result(request, match, "accept")

    async def reject(self, request_id: str, donor_id: str) -> TransitionResult:
        async with self.requests.lock(request_id):
            request = self._load(request_id)
            if request.is_closed:
                return _closed(request, donor_id, "reject")
            match = self._match(request, donor_id)
            if match.response != MatchResponse.PENDING:
                logger.warning(
                    "donor %s reject on request %s rejected: already %s",
                    donor_id,
                    request.id,
                    match.response,
                )
                raise InvalidTransitionError(f"match is already {match.response}")

            now = self.now_fn()
            match.response = MatchResponse.REJECTED
            match.donation_status = DonationStatus.CANCELLED
            match.confirmation_code = None
            match.responded_at = now
            request.updated_at = now
            refresh_status(request)
            self.requests.save(request)

        logger.info("donor %s rejected request %s", donor_id, request.id)
        await self.notifier.notify(
            request.requester_id,
            events.REQUEST_REJECTED,
            {"request_id": request.id, "donor_id": donor_id},
        )
        if self.cascade is not None:
            await self.cascade.run(request.id, vacated=1)
        return _result(request, match, "reject")

    async def start_donation(
        self, request_id: str, donor_id: str, code: str
    ) -> TransitionResult:
        async with self.requests.lock(request_id):
            request = self._load(request_id)
            if request.is_closed:
                return _closed(request, donor_id, "start")
            match = self._match(request, donor_id)

            if match.response != MatchResponse.ACCEPTED:
                problem = "donor has not accepted"
            elif match.donation_status != DonationStatus.SCHEDULED:
                problem = f"donation is {match.donation_status}"
            elif not match.confirmation_code:
                problem = "no confirmation code issued"
            elif not secrets.compare_digest(match.confirmation_code, str(code)):
                problem = "invalid confirmation code"
            else:
                problem = None
            if problem is not None:
                logger.warning(
                    "start for donor %s on request %s refused: %s",
                    donor_id,
                    request.id,
                    problem,
                )
                raise InvalidTransitionError(problem)

            now = self.now_fn()
            match.donation_status = DonationStatus.STARTED
            match.started_at = now
            request.updated_at = now
            self.requests.save(request)

        logger.info("donation by %s for request %s started", donor_id, request.id)
        return _result(request, match, "start")

    async def complete_donation(
        self, request_id: str, donor_id: str, units_donated: int = 1
    ) -> TransitionResult:
        async with self.requests.lock(request_id):
            request = self._load(request_id)
            if request.is_closed:
                return _closed(request, donor_id, "complete")
            match = self._match(request, donor_id)
            if match.donation_status != DonationStatus.STARTED:
                logger.warning(
                    "complete for donor %s on request %s refused: donation is %s",
                    donor_id,
                    request.id,
                    match.donation_status,
                )
                raise InvalidTransitionError("donation not started")

            now = self.now_fn()
            units = max(1, int(units_donated))
            match.donation_status = DonationStatus.COMPLETED
            match.completed_at = now
            match.units_donated = units
            match.confirmation_code = None
            request.units_completed += units
            request.updated_at = now
            refresh_status(request)
            self.requests.save(request)

            if self.donors.record_donation(donor_id, request.id, now) is None:
                logger.error(
                    "donor %s missing while recording donation for request %s",
                    donor_id,
                    request.id,
                )

        logger.info(
            "donation by %s for request %s completed (%d units)",
            donor_id,
            request.id,
            units,
        )
        await self.notifier.notify(
            donor_id,
            events.DONATION_COMPLETED,
            {"request_id": request.id, "units_donated": units},
        )
        return _result(request, match, "complete")
