import asyncio
from collections.abc import Iterable, Iterator, MutableMapping
from datetime import datetime
from typing import Generic, TypeVar

from bloodmatch.errors import StaleWriteError
from bloodmatch.models import (
    BloodGroup,
    BloodRequest,
    DonationRecord,
    Donor,
    GeoPoint,
)

K = TypeVar("K")
V = TypeVar("V")


class InMemoryKeyValueDatabase(Generic[K, V]):
    """
    Simple in-memory key/value database.
    """

    def __init__(self) -> None:
        self._store: MutableMapping[K, V] = {}

    def put(self, key: K, value: V) -> None:
        self._store[key] = value

    def get(self, key: K) -> V | None:
        return self._store.get(key)

    def all(self) -> list[V]:
        return list(self._store.values())

    def __iter__(self) -> Iterator[V]:
        return iter(self._store.values())

    def compare_and_put(self, key: K, value: V, expected_version: int) -> bool:
        """
        Store `value` only if the stored value's version still equals
        `expected_version` (or nothing is stored and it is 0).
        Returns True if the write went through.
        """
        current = self._store.get(key)
        current_version = getattr(current, "version", 0) if current is not None else 0
        if current_version != expected_version:
            return False
        self._store[key] = value
        return True


class DonorStore:
    def __init__(
        self, db: InMemoryKeyValueDatabase[str, Donor] | None = None
    ) -> None:
        self._db: InMemoryKeyValueDatabase[str, Donor] = (
            db if db is not None else InMemoryKeyValueDatabase()
        )

    def put(self, donor: Donor) -> Donor:
        self._db.put(donor.id, donor)
        return donor

    def get(self, donor_id: str) -> Donor | None:
        return self._db.get(donor_id)

    def all(self) -> list[Donor]:
        return self._db.all()

    def find_compatible(
        self, groups: Iterable[BloodGroup], *, available: bool = True
    ) -> list[Donor]:
        wanted = set(groups)
        return [
            d
            for d in self._db
            if d.blood_group in wanted and d.is_available == available
        ]

    def set_availability(self, donor_id: str, available: bool) -> Donor | None:
        donor = self._db.get(donor_id)
        if donor is None:
            return None
        donor.is_available = available
        return donor

    def update_current_location(
        self, donor_id: str, location: GeoPoint, at: datetime
    ) -> Donor | None:
        donor = self._db.get(donor_id)
        if donor is None:
            return None
        donor.current_location = location
        donor.current_location_updated_at = at
        return donor

    def record_donation(
        self, donor_id: str, request_id: str, at: datetime
    ) -> Donor | None:
        """
        Count++, last donation date, availability off and history append,
        applied together.
        """
        donor = self._db.get(donor_id)
        if donor is None:
            return None
        donor.total_donations += 1
        donor.last_donation_date = at
        donor.is_available = False
        donor.donation_history.append(
            DonationRecord(request_id=request_id, donated_on=at)
        )
        return donor


class RequestStore:
    """
    Requests are handed out as copies. A write only lands if nobody else
    saved the same request in between (version check), and callers that
    read-modify-write hold the per-request lock.
    """

    def __init__(
        self, db: InMemoryKeyValueDatabase[str, BloodRequest] | None = None
    ) -> None:
        self._db: InMemoryKeyValueDatabase[str, BloodRequest] = (
            db if db is not None else InMemoryKeyValueDatabase()
        )
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, request_id: str) -> asyncio.Lock:
        lock = self._locks.get(request_id)
        if lock is None:
            if self._db.get(request_id) is None:
                # unknown id, nothing to guard and nothing to remember
                return asyncio.Lock()
            lock = self._locks[request_id] = asyncio.Lock()
        return lock

    def get(self, request_id: str) -> BloodRequest | None:
        request = self._db.get(request_id)
        return request.model_copy(deep=True) if request is not None else None

    def all(self) -> list[BloodRequest]:
        return [r.model_copy(deep=True) for r in self._db]

    def open_requests(self) -> list[BloodRequest]:
        return [r.model_copy(deep=True) for r in self._db if not r.is_terminal]

    def for_donor(self, donor_id: str) -> list[BloodRequest]:
        return [
            r.model_copy(deep=True)
            for r in self._db
            if r.match_for(donor_id) is not None
        ]

    def save(self, request: BloodRequest) -> BloodRequest:
        expected = request.version
        stored = request.model_copy(deep=True, update={"version": expected + 1})
        if not self._db.compare_and_put(request.id, stored, expected):
            raise StaleWriteError(
                f"request {request.id} changed since version {expected}"
            )
        request.version = expected + 1
        return request
