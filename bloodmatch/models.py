"""
Domain models for donors, blood requests and per-donor matches.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from bloodmatch.urgency import policy_for


class BloodGroup(StrEnum):
    A_POS = "A+"
    A_NEG = "A-"
    B_POS = "B+"
    B_NEG = "B-"
    AB_POS = "AB+"
    AB_NEG = "AB-"
    O_POS = "O+"
    O_NEG = "O-"


class Gender(StrEnum):
    MALE = "Male"
    FEMALE = "Female"
    OTHER = "Other"


class Urgency(StrEnum):
    CRITICAL = "Critical"
    URGENT = "Urgent"
    MODERATE = "Moderate"


class MatchResponse(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    SUPERSEDED = "superseded"


class DonationStatus(StrEnum):
    SCHEDULED = "scheduled"
    STARTED = "started"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RequestStatus(StrEnum):
    PENDING = "pending"
    MATCHED = "matched"
    PARTIALLY_MATCHED = "partially_matched"
    FULLY_MATCHED = "fully_matched"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


CLOSED_STATUSES = frozenset({RequestStatus.CANCELLED, RequestStatus.EXPIRED})
TERMINAL_STATUSES = CLOSED_STATUSES | {RequestStatus.COMPLETED}


def _new_id() -> str:
    return uuid4().hex


class GeoPoint(BaseModel):
    longitude: float
    latitude: float
    address: str | None = None

    @field_validator("longitude")
    @classmethod
    def _check_longitude(cls, v: float) -> float:
        if not -180.0 <= v <= 180.0:
            raise ValueError("longitude must be within [-180, 180]")
        return v

    @field_validator("latitude")
    @classmethod
    def _check_latitude(cls, v: float) -> float:
        if not -90.0 <= v <= 90.0:
            raise ValueError("latitude must be within [-90, 90]")
        return v

    @classmethod
    def from_coordinates(
        cls, coordinates: list[float] | tuple[float, float], address: str | None = None
    ) -> "GeoPoint":
        """Build from a [longitude, latitude] pair."""
        if len(coordinates) != 2:
            raise ValueError("coordinates must be [longitude, latitude]")
        return cls(longitude=coordinates[0], latitude=coordinates[1], address=address)


class HealthInfo(BaseModel):
    chronic_diseases: bool = False
    on_medication: bool = False
    medical_notes: str | None = None


class DonationRecord(BaseModel):
    request_id: str
    donated_on: datetime


class Donor(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    blood_group: BloodGroup
    gender: Gender
    location: GeoPoint | None = None  # registration location
    current_location: GeoPoint | None = None
    current_location_updated_at: datetime | None = None
    is_available: bool = False
    last_donation_date: datetime | None = None
    total_donations: int = 0
    donation_history: list[DonationRecord] = Field(default_factory=list)
    health: HealthInfo = Field(default_factory=HealthInfo)


class Match(BaseModel):
    donor_id: str
    score: int
    distance_km: float
    priority: int  # order notified, 1-based
    response: MatchResponse = MatchResponse.PENDING
    donation_status: DonationStatus = DonationStatus.SCHEDULED
    units_committed: int = 1
    units_donated: int | None = None
    confirmation_code: str | None = None
    expires_at: datetime
    cascade: bool = False  # notified by a backfill pass
    notified_at: datetime
    responded_at: datetime | None = None
    accepted_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class BloodRequest(BaseModel):
    id: str = Field(default_factory=_new_id)
    requester_id: str
    blood_group: BloodGroup
    urgency: Urgency = Urgency.MODERATE
    units_required: int = Field(default=1, ge=1)
    units_accepted: int = 0
    units_completed: int = 0
    location: GeoPoint
    hospital: str | None = None
    notes: str | None = None
    required_by: datetime
    status: RequestStatus = RequestStatus.PENDING
    matches: list[Match] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    version: int = 0

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def match_for(self, donor_id: str) -> Match | None:
        # match lists stay small (tens of entries), a scan is fine
        return next((m for m in self.matches if m.donor_id == donor_id), None)

    def matched_donor_ids(self) -> set[str]:
        return {m.donor_id for m in self.matches}

    def count(self, response: MatchResponse) -> int:
        return sum(1 for m in self.matches if m.response == response)

    def next_priority(self) -> int:
        return max((m.priority for m in self.matches), default=0) + 1


def new_blood_request(
    *,
    requester_id: str,
    blood_group: BloodGroup,
    urgency: Urgency,
    units_required: int,
    location: GeoPoint,
    now: datetime,
    required_by: datetime | None = None,
    hospital: str | None = None,
    notes: str | None = None,
) -> BloodRequest:
    """
    Create a request. `required_by` defaults from the urgency window and is
    computed here once; it is never re-derived if urgency changes later.
    """
    if required_by is None:
        required_by = now + timedelta(hours=policy_for(urgency).required_within_hours)
    return BloodRequest(
        requester_id=requester_id,
        blood_group=blood_group,
        urgency=urgency,
        units_required=units_required,
        location=location,
        hospital=hospital,
        notes=notes,
        required_by=required_by,
        created_at=now,
        updated_at=now,
    )


NowFn = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)
