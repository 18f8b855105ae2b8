import math
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from bloodmatch.config import Settings
from bloodmatch.models import BloodGroup, Donor, Gender, GeoPoint, HealthInfo
from bloodmatch.service import MatchingService

HOSPITAL = GeoPoint(longitude=77.5946, latitude=12.9716, address="City Hospital")
KM_PER_DEGREE = 6371 * math.pi / 180


def north_of(origin: GeoPoint, km: float) -> GeoPoint:
    """A point `km` due north of `origin` (exact along a meridian)."""
    return GeoPoint(
        longitude=origin.longitude, latitude=origin.latitude + km / KM_PER_DEGREE
    )


class Clock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock(datetime(2025, 7, 2, 8, 0, 0, tzinfo=UTC))


@pytest.fixture
def service(clock: Clock) -> MatchingService:
    return MatchingService(
        settings=Settings(_env_file=None, scheduler_enabled=False), now_fn=clock
    )


@pytest.fixture
def make_donor(service: MatchingService):
    counter = iter(range(1, 1000))

    def _make(
        *,
        km: float = 1.0,
        blood_group: BloodGroup = BloodGroup.O_POS,
        gender: Gender = Gender.MALE,
        available: bool = True,
        last_donation_date: datetime | None = None,
        total_donations: int = 0,
        health: HealthInfo | None = None,
        donor_id: str | None = None,
    ) -> Donor:
        n = next(counter)
        donor = Donor(
            id=donor_id or f"donor-{n}",
            name=f"Donor {n}",
            blood_group=blood_group,
            gender=gender,
            location=north_of(HOSPITAL, km),
            is_available=available,
            last_donation_date=last_donation_date,
            total_donations=total_donations,
            health=health or HealthInfo(),
        )
        return service.register_donor(donor)

    return _make


@pytest.fixture
def connect(service: MatchingService):
    """Register an AsyncMock channel for each user id and return the mocks."""

    def _connect(*user_ids: str) -> dict[str, AsyncMock]:
        channels = {}
        for user_id in user_ids:
            channel = AsyncMock(return_value=None)
            service.notifier.register(user_id, channel)
            channels[user_id] = channel
        return channels

    return _connect


def events_for(channel: AsyncMock) -> list[str]:
    return [args[0] for (args, _kw) in channel.await_args_list]
