import logging
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from bloodmatch.cascade import CascadeResult, CascadeScheduler
from bloodmatch.compatibility import cooldown_elapsed
from bloodmatch.config import Settings, settings as default_settings
from bloodmatch.database import DonorStore, RequestStore
from bloodmatch.dispatcher import DispatchResult, MatchDispatcher
from bloodmatch.errors import InputValidationError, InvalidTransitionError, NotFoundError
from bloodmatch.models import (
    BloodGroup,
    BloodRequest,
    DonationRecord,
    Donor,
    GeoPoint,
    MatchResponse,
    NowFn,
    RequestStatus,
    Urgency,
    new_blood_request,
    utcnow,
)
from bloodmatch.notifier import Notifier
from bloodmatch.responses import ResponseHandler, TransitionResult
from bloodmatch.selector import CandidateSelector

logger = logging.getLogger(__name__)


class MatchingService:
    """
    Entry point for everything outside the core: HTTP handlers, the periodic
    sweep trigger and the cooldown re-enable job all go through here.
    """

    def __init__(
        self,
        *,
        donors: DonorStore | None = None,
        requests: RequestStore | None = None,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
        now_fn: NowFn = utcnow,
    ) -> None:
        self.donors = donors if donors is not None else DonorStore()
        self.requests = requests if requests is not None else RequestStore()
        self.notifier = notifier if notifier is not None else Notifier()
        self.settings = settings or default_settings
        self.now_fn = now_fn

        self.selector = CandidateSelector(self.donors, self.settings)
        self.dispatcher = MatchDispatcher(
            self.requests, self.selector, self.notifier, now_fn=self._now
        )
        self.cascade = CascadeScheduler(
            self.requests,
            self.selector,
            self.dispatcher,
            self.notifier,
            now_fn=self._now,
        )
        self.responses = ResponseHandler(
            self.requests,
            self.donors,
            self.notifier,
            cascade=self.cascade,
            now_fn=self._now,
            otp_length=self.settings.otp_length,
        )

    def _now(self) -> datetime:
        # late-bound so tests and the app can swap now_fn after construction
        return self.now_fn()

    # requests

    async def create_request(
        self,
        *,
        requester_id: str,
        blood_group: BloodGroup | str,
        location: GeoPoint | dict | list[float],
        address: str | None = None,
        urgency: Urgency | str | None = None,
        units_required: int = 1,
        required_by: datetime | None = None,
        hospital: str | None = None,
        notes: str | None = None,
    ) -> tuple[BloodRequest, DispatchResult]:
        try:
            if not requester_id:
                raise ValueError("requester_id is required")
            if isinstance(location, (list, tuple)):
                point = GeoPoint.from_coordinates(location, address)
            elif isinstance(location, dict):
                point = GeoPoint.model_validate(location)
            else:
                point = location
            if int(units_required) < 1:
                raise ValueError("units_required must be at least 1")
            request = new_blood_request(
                requester_id=requester_id,
                blood_group=BloodGroup(blood_group),
                urgency=Urgency(urgency) if urgency else Urgency.MODERATE,
                units_required=int(units_required),
                location=point,
                now=self._now(),
                required_by=required_by,
                hospital=hospital,
                notes=notes,
            )
        except (ValidationError, ValueError, TypeError) as exc:
            raise InputValidationError(str(exc)) from exc

        self.requests.save(request)
        logger.info(
            "request %s created: %s x%d %s",
            request.id,
            request.blood_group,
            request.units_required,
            request.urgency,
        )
        result = await self.dispatcher.dispatch(request.id)
        return self.get_request(request.id), result

    def get_request(self, request_id: str) -> BloodRequest:
        request = self.requests.get(request_id)
        if request is None:
            raise NotFoundError(f"request {request_id} not found")
        return request

    async def rematch(self, request_id: str) -> DispatchResult:
        return await self.dispatcher.dispatch(request_id)

    async def cancel_request(self, request_id: str) -> BloodRequest:
        return await self._close(request_id, RequestStatus.CANCELLED)

    async def expire_request(self, request_id: str) -> BloodRequest:
        return await self._close(request_id, RequestStatus.EXPIRED)

    async def _close(self, request_id: str, status: RequestStatus) -> BloodRequest:
        async with self.requests.lock(request_id):
            request = self.get_request(request_id)
            if request.is_closed:
                return request
            if request.status == RequestStatus.COMPLETED:
                raise InvalidTransitionError("request is already completed")
            request.status = status
            request.updated_at = self._now()
            self.requests.save(request)
        logger.info("request %s %s", request.id, status)
        return request

    def request_status(self, request_id: str) -> dict[str, Any]:
        request = self.get_request(request_id)
        stats = {
            "total_matches": len(request.matches),
            "pending": request.count(MatchResponse.PENDING),
            "accepted": request.count(MatchResponse.ACCEPTED),
            "rejected": request.count(MatchResponse.REJECTED),
            "expired": request.count(MatchResponse.EXPIRED),
            "superseded": request.count(MatchResponse.SUPERSEDED),
            "units_required": request.units_required,
            "units_accepted": request.units_accepted,
            "units_completed": request.units_completed,
            "fulfillment_percentage": round(
                request.units_completed / request.units_required * 100, 2
            ),
        }
        return {"request": request, "stats": stats}

    # donor and requester actions

    async def accept(self, request_id: str, donor_id: str) -> TransitionResult:
        return await self.responses.accept(request_id, donor_id)

    async def reject(self, request_id: str, donor_id: str) -> TransitionResult:
        return await self.responses.reject(request_id, donor_id)

    async def start_donation(
        self, request_id: str, donor_id: str, code: str
    ) -> TransitionResult:
        return await self.responses.start_donation(request_id, donor_id, code)

    async def complete_donation(
        self, request_id: str, donor_id: str, units_donated: int = 1
    ) -> TransitionResult:
        return await self.responses.complete_donation(
            request_id, donor_id, units_donated
        )

    # cascade

    async def run_cascade(self, request_id: str) -> CascadeResult:
        return await self.cascade.run(request_id)

    async def sweep(self) -> list[CascadeResult]:
        return await self.cascade.sweep()

    # donors

    def register_donor(self, donor: Donor) -> Donor:
        return self.donors.put(donor)

    def get_donor(self, donor_id: str) -> Donor:
        donor = self.donors.get(donor_id)
        if donor is None:
            raise NotFoundError(f"donor {donor_id} not found")
        return donor

    def set_availability(self, donor_id: str, available: bool) -> Donor:
        self.get_donor(donor_id)
        donor = self.donors.set_availability(donor_id, available)
        logger.info(
            "donor %s availability %s", donor_id, "enabled" if available else "disabled"
        )
        return donor

    def update_location(
        self, donor_id: str, coordinates: list[float], address: str | None = None
    ) -> Donor:
        try:
            point = GeoPoint.from_coordinates(coordinates, address)
        except (ValidationError, ValueError, TypeError) as exc:
            raise InputValidationError(
                "invalid coordinates, expected [longitude, latitude]"
            ) from exc
        self.get_donor(donor_id)
        return self.donors.update_current_location(donor_id, point, self._now())

    def donor_requests(self, donor_id: str) -> list[dict[str, Any]]:
        """The donor's side of every request they were notified about."""
        self.get_donor(donor_id)
        views = []
        for request in sorted(
            self.requests.for_donor(donor_id),
            key=lambda r: r.created_at,
            reverse=True,
        ):
            match = request.match_for(donor_id)
            views.append(
                {
                    "request_id": request.id,
                    "blood_group": str(request.blood_group),
                    "urgency": str(request.urgency),
                    "units_required": request.units_required,
                    "required_by": request.required_by,
                    "status": str(request.status),
                    "hospital": request.hospital,
                    "response": str(match.response),
                    "donation_status": str(match.donation_status),
                    "score": match.score,
                    "distance_km": match.distance_km,
                    "expires_at": match.expires_at,
                    "responded_at": match.responded_at,
                }
            )
        return views

    def donation_history(self, donor_id: str) -> list[DonationRecord]:
        return list(self.get_donor(donor_id).donation_history)

    def reenable_cooled_down_donors(self) -> list[str]:
        """Turn availability back on for donors whose cooldown has passed."""
        now = self._now()
        reenabled = []
        for donor in self.donors.all():
            if donor.is_available or donor.last_donation_date is None:
                continue
            if cooldown_elapsed(donor, now):
                self.donors.set_availability(donor.id, True)
                reenabled.append(donor.id)
        if reenabled:
            logger.info("re-enabled %d donors after cooldown", len(reenabled))
        return reenabled
