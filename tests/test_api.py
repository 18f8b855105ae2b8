from datetime import UTC, datetime

import pytest
import pytest_asyncio
from freezegun import freeze_time
from httpx import ASGITransport, AsyncClient

from bloodmatch.api import create_app
from bloodmatch.config import Settings
from bloodmatch.models import BloodGroup, Donor, Gender
from bloodmatch.service import MatchingService
from conftest import HOSPITAL, north_of


def _p(msg: str) -> None:
    # pytest captures stdout unless you run with -s
    print(msg, flush=True)


@pytest_asyncio.fixture
async def client():
    settings = Settings(_env_file=None, scheduler_enabled=False)
    app = create_app(settings=settings)
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as async_client:
        yield async_client


@pytest_asyncio.fixture
async def setup_test_data(client: AsyncClient):
    app = client._transport.app
    service: MatchingService = app.state.service

    for donor_id, km in (("alice-id", 1), ("wei-id", 2)):
        service.register_donor(
            Donor(
                id=donor_id,
                name=donor_id.split("-")[0].title(),
                blood_group=BloodGroup.O_NEG,
                gender=Gender.FEMALE,
                location=north_of(HOSPITAL, km),
                is_available=True,
            )
        )


async def _post_request(client: AsyncClient, **overrides) -> dict:
    body = {
        "requester_id": "requester-1",
        "blood_group": "A+",
        "urgency": "Critical",
        "units_required": 1,
        "coordinates": [HOSPITAL.longitude, HOSPITAL.latitude],
        "hospital": "City Hospital",
    }
    body.update(overrides)
    resp = await client.post("/requests", json=body)
    _p(f"POST /requests -> status={resp.status_code}, body={resp.json()}")
    return resp


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient) -> None:
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_create_request_matches_donors(
    client: AsyncClient, setup_test_data
) -> None:
    with freeze_time("2025-07-02 00:00:00", real_asyncio=True):
        resp = await _post_request(client)

        assert resp.status_code == 201
        data = resp.json()
        assert data["match_count"] == 2
        assert data["request"]["status"] == "matched"
        # critical: 6 hour response window
        assert data["request"]["matches"][0]["expires_at"].startswith(
            "2025-07-02T06:00:00"
        )


@pytest.mark.asyncio
async def test_create_request_rejects_bad_coordinates(client: AsyncClient) -> None:
    resp = await _post_request(client, coordinates=[500, 10])
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_unknown_request_is_404(client: AsyncClient) -> None:
    resp = await client.get("/requests/nope")
    assert resp.status_code == 404
    assert "not found" in resp.json()["detail"].lower()

    resp = await client.post("/requests/nope/accept", json={"donor_id": "alice-id"})
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_accept_start_complete_over_http(
    client: AsyncClient, setup_test_data
) -> None:
    app = client._transport.app
    service: MatchingService = app.state.service

    request_id = (await _post_request(client)).json()["request"]["id"]

    resp = await client.post(
        f"/requests/{request_id}/accept", json={"donor_id": "alice-id"}
    )
    _p(f"accept alice -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 200
    assert resp.json()["response"] == "accepted"
    assert "confirmation_code" not in resp.json()

    resp = await client.post(
        f"/requests/{request_id}/accept", json={"donor_id": "wei-id"}
    )
    _p(f"accept wei -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 409

    resp = await client.post(
        f"/requests/{request_id}/start",
        json={"donor_id": "alice-id", "otp": "not-it"},
    )
    assert resp.status_code == 400

    code = service.get_request(request_id).match_for("alice-id").confirmation_code
    resp = await client.post(
        f"/requests/{request_id}/start", json={"donor_id": "alice-id", "otp": code}
    )
    assert resp.status_code == 200
    assert resp.json()["donation_status"] == "started"

    resp = await client.post(
        f"/requests/{request_id}/complete", json={"donor_id": "alice-id"}
    )
    assert resp.status_code == 200
    assert resp.json()["request_status"] == "completed"

    resp = await client.get(f"/requests/{request_id}")
    stats = resp.json()["stats"]
    assert stats["fulfillment_percentage"] == 100.0
    assert stats["superseded"] == 1

    resp = await client.get("/donors/alice-id/history")
    history = resp.json()
    assert history["total_donations"] == 1
    assert [d["request_id"] for d in history["donations"]] == [request_id]


@pytest.mark.asyncio
async def test_cancelled_request_turns_actions_into_noops(
    client: AsyncClient, setup_test_data
) -> None:
    request_id = (await _post_request(client)).json()["request"]["id"]

    resp = await client.post(f"/requests/{request_id}/cancel")
    assert resp.json()["status"] == "cancelled"

    resp = await client.post(
        f"/requests/{request_id}/accept", json={"donor_id": "alice-id"}
    )
    assert resp.status_code == 200
    assert resp.json()["applied"] is False

    resp = await client.post(f"/requests/{request_id}/match")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_sweep_endpoint_uses_app_clock(
    client: AsyncClient, setup_test_data
) -> None:
    app = client._transport.app
    app.state.now_fn = lambda: datetime(2025, 7, 2, 0, 0, 0, tzinfo=UTC)
    request_id = (await _post_request(client)).json()["request"]["id"]

    app.state.now_fn = lambda: datetime(2025, 7, 2, 7, 0, 0, tzinfo=UTC)
    resp = await client.post("/cascade/sweep")
    results = resp.json()["results"]
    _p(f"sweep -> {results}")

    assert [r["request_id"] for r in results] == [request_id]
    assert sorted(results[0]["expired_donor_ids"]) == ["alice-id", "wei-id"]
    assert results[0]["search_failed"] is True


@pytest.mark.asyncio
async def test_donor_profile_endpoints(client: AsyncClient, setup_test_data) -> None:
    resp = await client.put(
        "/donors/wei-id/availability", json={"is_available": False}
    )
    assert resp.json() == {
        "message": "Availability disabled",
        "donor_id": "wei-id",
        "is_available": False,
    }

    resp = await client.put(
        "/donors/alice-id/location",
        json={"coordinates": [HOSPITAL.longitude, HOSPITAL.latitude]},
    )
    assert resp.status_code == 200
    assert resp.json()["current_location"]["latitude"] == HOSPITAL.latitude

    resp = await client.put("/donors/alice-id/location", json={"coordinates": [1]})
    assert resp.status_code == 422

    request_id = (await _post_request(client)).json()["request"]["id"]
    resp = await client.get("/donors/alice-id/requests")
    assert [r["request_id"] for r in resp.json()["requests"]] == [request_id]
    resp = await client.get("/donors/wei-id/requests")
    assert resp.json()["requests"] == []
