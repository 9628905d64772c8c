import datetime
import logging

import httpx
import pytest

from database import get_session, make_session_factory
from main import app
from tests.conftest import COLLEAGUE, HUDDLE_ROOM, MISSING_ROOM, ORGANIZER, OUTSIDER, STANDUP_ROOM

pytestmark = pytest.mark.anyio

TOMORROW = datetime.date.today() + datetime.timedelta(days=1)


def at(hour: int, minute: int = 0) -> str:
    return datetime.datetime.combine(TOMORROW, datetime.time(hour, minute)).isoformat()


def as_user(user_id: int) -> dict:
    return {"X-User-Id": str(user_id)}


@pytest.fixture
async def client(engine, org):
    factory = make_session_factory(engine)

    async def override_session():
        async with factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


async def book(client, room_id=STANDUP_ROOM, user_id=ORGANIZER, **overrides):
    payload = {"title": "Standup", "start_time": at(9), "end_time": at(9, 30)}
    payload.update(overrides)
    return await client.post(f"/rooms/{room_id}/reservations", json=payload, headers=as_user(user_id))


async def test_standup_then_overlap(client):
    response = await book(client)
    assert response.status_code == 201
    body = response.json()
    assert body["warning"] is None
    assert body["reservation"]["organizer_id"] == ORGANIZER
    assert body["reservation"]["start_time"] == at(9)
    assert body["reservation"]["end_time"] == at(9, 30)

    response = await book(client, start_time=at(9, 20), end_time=at(9, 50))
    assert response.status_code == 409
    assert response.json() == {"detail": "The room is already booked for this time slot"}


async def test_capacity_warning_is_not_an_error(client):
    response = await book(client, room_id=HUDDLE_ROOM, invitees=[2, 3, 5])
    assert response.status_code == 201
    assert "(4)" in response.json()["warning"]
    assert "(3)" in response.json()["warning"]


@pytest.mark.parametrize(
    "overrides, status",
    [
        ({"end_time": at(8)}, 400),
        ({"start_time": "soon"}, 400),
        ({"start_time": at(6), "end_time": at(7)}, 400),
        ({"invitees": [999]}, 404),
        ({"title": None}, 422),
    ],
)
async def test_create_errors(client, overrides, status):
    response = await book(client, **overrides)
    assert response.status_code == status


async def test_room_access(client):
    assert (await book(client, room_id=MISSING_ROOM)).status_code == 404
    assert (await book(client, user_id=OUTSIDER)).status_code == 403


async def test_missing_user_header(client):
    response = await client.get(f"/rooms/{STANDUP_ROOM}/reservations")
    assert response.status_code == 422


async def test_update_and_delete_flow(client):
    reservation_id = (await book(client)).json()["reservation"]["id"]

    response = await client.patch(
        f"/reservations/{reservation_id}", json={"title": "Hijack"}, headers=as_user(COLLEAGUE)
    )
    assert response.status_code == 403

    response = await client.patch(
        f"/reservations/{reservation_id}", json={"title": None}, headers=as_user(ORGANIZER)
    )
    assert response.status_code == 422

    response = await client.patch(
        f"/reservations/{reservation_id}",
        json={"title": "Daily standup", "end_time": at(10)},
        headers=as_user(ORGANIZER),
    )
    assert response.status_code == 200
    assert response.json()["reservation"]["title"] == "Daily standup"
    assert response.json()["reservation"]["end_time"] == at(10)

    response = await client.get(f"/reservations/{reservation_id}", headers=as_user(COLLEAGUE))
    assert response.status_code == 200
    assert response.json()["title"] == "Daily standup"

    response = await client.delete(f"/reservations/{reservation_id}", headers=as_user(COLLEAGUE))
    assert response.status_code == 403
    response = await client.delete(f"/reservations/{reservation_id}", headers=as_user(ORGANIZER))
    assert response.status_code == 204

    response = await client.get(f"/reservations/{reservation_id}", headers=as_user(ORGANIZER))
    assert response.status_code == 404


async def test_list_and_availability(client):
    await book(client, start_time=at(14), end_time=at(15))
    await book(client, start_time=at(10), end_time=at(11))

    response = await client.get(f"/rooms/{STANDUP_ROOM}/reservations", headers=as_user(COLLEAGUE))
    assert response.status_code == 200
    assert [r["start_time"] for r in response.json()] == [at(10), at(14)]

    response = await client.get(
        f"/rooms/{STANDUP_ROOM}/reservations/availability",
        params={"start_date": at(8), "end_date": at(18)},
        headers=as_user(ORGANIZER),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["room"]["capacity"] == 5
    assert len(body["reservations"]) == 2
    slots = body["available_slots"]
    assert [(s["start"], s["end"]) for s in slots[:2]] == [(at(0), at(10)), (at(11), at(14))]
    assert slots[2]["start"] == at(15)
    assert slots[2]["end"].startswith(TOMORROW.isoformat() + "T23:59:59.999")


async def test_requests_are_logged_with_status_and_duration(client, caplog):
    with caplog.at_level(logging.INFO, logger="main"):
        assert (await book(client)).status_code == 201
        assert (await book(client)).status_code == 409

    requests = [r for r in caplog.records if r.name == "main" and "/reservations" in r.getMessage()]
    assert len(requests) == 2
    ok, conflict = requests
    assert ok.levelno == logging.INFO
    assert ok.getMessage().startswith(f"POST /rooms/{STANDUP_ROOM}/reservations 201 ")
    assert ok.getMessage().endswith("ms")
    assert conflict.levelno == logging.ERROR
    assert f"/rooms/{STANDUP_ROOM}/reservations 409 " in conflict.getMessage()
