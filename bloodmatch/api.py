from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import APIRouter, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from bloodmatch.config import Settings, configure_logging, settings as default_settings
from bloodmatch.errors import (
    ConflictError,
    InputValidationError,
    InvalidTransitionError,
    NotFoundError,
)
from bloodmatch.models import utcnow
from bloodmatch.scheduler import schedule_jobs
from bloodmatch.service import MatchingService

router = APIRouter()


class CreateRequestBody(BaseModel):
    requester_id: str
    blood_group: str
    urgency: str | None = None
    units_required: int = 1
    coordinates: list[float]  # [longitude, latitude]
    address: str | None = None
    hospital: str | None = None
    required_by: datetime | None = None
    notes: str | None = None


class DonorActionBody(BaseModel):
    donor_id: str


class StartDonationBody(BaseModel):
    donor_id: str
    otp: str


class CompleteDonationBody(BaseModel):
    donor_id: str
    units_donated: int = Field(default=1)


class AvailabilityBody(BaseModel):
    is_available: bool


class LocationBody(BaseModel):
    coordinates: list[float]
    address: str | None = None


def _service(request: Request) -> MatchingService:
    return request.app.state.service


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, InputValidationError):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


HANDLED = (NotFoundError, ConflictError, InputValidationError, InvalidTransitionError)


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/requests", status_code=201)
async def create_request(body: CreateRequestBody, request: Request) -> dict:
    service = _service(request)
    try:
        blood_request, result = await service.create_request(
            requester_id=body.requester_id,
            blood_group=body.blood_group,
            urgency=body.urgency,
            units_required=body.units_required,
            location=body.coordinates,
            address=body.address,
            required_by=body.required_by,
            hospital=body.hospital,
            notes=body.notes,
        )
    except HANDLED as exc:
        raise _http_error(exc) from exc

    return {
        "request": blood_request.model_dump(mode="json"),
        "match_count": len(result.notified_donor_ids),
        "message": "No matching donors found nearby yet."
        if result.no_candidates
        else f"Notified {len(result.notified_donor_ids)} donors",
    }


@router.get("/requests/{request_id}")
async def get_request_status(request_id: str, request: Request) -> dict:
    try:
        status = _service(request).request_status(request_id)
    except HANDLED as exc:
        raise _http_error(exc) from exc
    return {
        "request": status["request"].model_dump(mode="json"),
        "stats": status["stats"],
    }


@router.post("/requests/{request_id}/match")
async def match_donors(request_id: str, request: Request) -> dict:
    try:
        result = await _service(request).rematch(request_id)
    except HANDLED as exc:
        raise _http_error(exc) from exc
    return result.model_dump(mode="json")


@router.post("/requests/{request_id}/cancel")
async def cancel_request(request_id: str, request: Request) -> dict:
    try:
        blood_request = await _service(request).cancel_request(request_id)
    except HANDLED as exc:
        raise _http_error(exc) from exc
    return {"request_id": blood_request.id, "status": blood_request.status}


@router.post("/requests/{request_id}/accept")
async def accept_request(
    request_id: str, body: DonorActionBody, request: Request
) -> dict:
    try:
        result = await _service(request).accept(request_id, body.donor_id)
    except HANDLED as exc:
        raise _http_error(exc) from exc
    return result.model_dump(mode="json")


@router.post("/requests/{request_id}/reject")
async def reject_request(
    request_id: str, body: DonorActionBody, request: Request
) -> dict:
    try:
        result = await _service(request).reject(request_id, body.donor_id)
    except HANDLED as exc:
        raise _http_error(exc) from exc
    return result.model_dump(mode="json")


@router.post("/requests/{request_id}/start")
async def start_donation(
    request_id: str, body: StartDonationBody, request: Request
) -> dict:
    try:
        result = await _service(request).start_donation(
            request_id, body.donor_id, body.otp
        )
    except HANDLED as exc:
        raise _http_error(exc) from exc
    return result.model_dump(mode="json")


@router.post("/requests/{request_id}/complete")
async def complete_donation(
    request_id: str, body: CompleteDonationBody, request: Request
) -> dict:
    try:
        result = await _service(request).complete_donation(
            request_id, body.donor_id, body.units_donated
        )
    except HANDLED as exc:
        raise _http_error(exc) from exc
    return result.model_dump(mode="json")


@router.post("/cascade/sweep")
async def cascade_sweep(request: Request) -> dict:
    results = await _service(request).sweep()
    return {"results": [r.model_dump(mode="json") for r in results]}


@router.get("/donors/{donor_id}/requests")
async def donor_requests(donor_id: str, request: Request) -> dict:
    try:
        views = _service(request).donor_requests(donor_id)
    except HANDLED as exc:
        raise _http_error(exc) from exc
    return {"requests": views}


@router.get("/donors/{donor_id}/history")
async def donation_history(donor_id: str, request: Request) -> dict:
    service = _service(request)
    try:
        donor = service.get_donor(donor_id)
    except HANDLED as exc:
        raise _http_error(exc) from exc
    return {
        "total_donations": donor.total_donations,
        "last_donation_date": donor.last_donation_date,
        "donations": [
            d.model_dump(mode="json") for d in service.donation_history(donor_id)
        ],
    }


@router.put("/donors/{donor_id}/availability")
async def update_availability(
    donor_id: str, body: AvailabilityBody, request: Request
) -> dict:
    try:
        donor = _service(request).set_availability(donor_id, body.is_available)
    except HANDLED as exc:
        raise _http_error(exc) from exc
    return {
        "message": f"Availability {'enabled' if body.is_available else 'disabled'}",
        "donor_id": donor.id,
        "is_available": donor.is_available,
    }


@router.put("/donors/{donor_id}/location")
async def update_location(
    donor_id: str, body: LocationBody, request: Request
) -> dict:
    try:
        donor = _service(request).update_location(
            donor_id, body.coordinates, body.address
        )
    except HANDLED as exc:
        raise _http_error(exc) from exc
    return {
        "donor_id": donor.id,
        "current_location": donor.current_location.model_dump(mode="json"),
    }


def create_app(
    service: MatchingService | None = None, settings: Settings | None = None
) -> FastAPI:
    settings = settings or default_settings
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler = None
        if settings.scheduler_enabled:
            scheduler = schedule_jobs(app.state.service, settings)
            scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.shutdown(wait=False)

    app = FastAPI(lifespan=lifespan)
    app.state.now_fn = utcnow
    app.state.service = service or MatchingService(
        settings=settings, now_fn=lambda: app.state.now_fn()
    )

    app.include_router(router)
    return app
