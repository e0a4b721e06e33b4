from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from lab_scheduler.clock import get_clock
from lab_scheduler.database import engine, metadata
from lab_scheduler.main import app

HOUR = timedelta(hours=1)
PASSWORD = "secret-pass"


@pytest.fixture
def client(clock):
    metadata.drop_all(bind=engine)
    metadata.create_all(bind=engine)
    app.dependency_overrides[get_clock] = lambda: clock
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def login(client, username, password=PASSWORD):
    response = client.post("/token", data={"username": username, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def signup(client, username):
    response = client.post(
        "/register",
        json={
            "username": username,
            "full_name": username.title(),
            "email": f"{username}@campus.edu",
            "password": PASSWORD,
        },
    )
    assert response.status_code == 201, response.text
    return login(client, username)


def add_computer(client, admin, name, **fields):
    response = client.post("/api/computers", json={"name": name, **fields}, headers=admin)
    assert response.status_code == 201, response.text
    return response.json()["computer"]["id"]


def book(client, headers, computer_id, start, end, **extra):
    return client.post(
        "/api/reservations",
        json={"computer_id": computer_id, "start_time": start.isoformat(), "end_time": end.isoformat(), **extra},
        headers=headers,
    )


@pytest.fixture
def admin(client):
    return login(client, "admin", "admin-pass")


def test_requires_authentication(client):
    assert client.get("/api/computers").status_code == 401
    assert client.get("/api/queue").status_code == 401
    assert client.get("/api/reservations").status_code == 401


def test_registration_checks_email_domain(client):
    response = client.post(
        "/register",
        json={"username": "eve", "full_name": "Eve", "email": "eve@elsewhere.org", "password": PASSWORD},
    )
    assert response.status_code == 400


def test_sign_in_is_throttled(client):
    signup(client, "alice")
    login(client, "alice")
    login(client, "alice")

    response = client.post("/token", data={"username": "alice", "password": PASSWORD})

    assert response.status_code == 429
    assert int(response.headers["Retry-After"]) > 0


def test_only_admins_manage_computers(client, admin):
    alice = signup(client, "alice")

    assert client.post("/api/computers", json={"name": "PC-01"}, headers=alice).status_code == 403

    pc = add_computer(client, admin, "PC-01")
    response = client.put(f"/api/computers/{pc}", json={"status": "maintenance"}, headers=admin)
    assert response.status_code == 200
    assert response.json()["computer"]["status"] == "maintenance"


def test_booking_scenario(client, admin, clock):
    alice = signup(client, "alice")
    pc = add_computer(client, admin, "PC-01")
    now = clock()

    response = book(client, alice, pc, now + HOUR, now + 2 * HOUR, notes="GPU job")
    assert response.status_code == 201
    reservation = response.json()["reservation"]
    assert reservation["status"] == "pending"
    assert reservation["notes"] == "GPU job"

    clock.advance(hours=1)
    listed = client.get("/api/reservations", headers=alice).json()["reservations"]
    assert [r["status"] for r in listed] == ["active"]

    computers = client.get("/api/computers", headers=alice).json()["computers"]
    assert computers[0]["is_occupied"] is True
    assert computers[0]["current_reservation"]["id"] == reservation["id"]

    clock.advance(hours=1)
    listed = client.get("/api/reservations", headers=alice).json()["reservations"]
    assert [r["status"] for r in listed] == ["completed"]


def test_booking_errors(client, admin, clock):
    alice = signup(client, "alice")
    bob = signup(client, "bob")
    pc = add_computer(client, admin, "PC-01")
    broken = add_computer(client, admin, "PC-02", status="maintenance")
    now = clock()

    assert book(client, alice, pc, now, now + HOUR).status_code == 201

    conflict = book(client, bob, pc, now + timedelta(minutes=30), now + timedelta(minutes=90))
    assert conflict.status_code == 409
    assert conflict.json()["error"] == "ConflictingReservation"
    assert conflict.json()["conflicting_reservation"]["start_time"] == now.isoformat()

    same_time = book(client, bob, pc, now + HOUR, now + HOUR)
    assert same_time.status_code == 400
    assert same_time.json()["error"] == "InvalidRange"

    past = book(client, bob, pc, now - timedelta(seconds=1), now + HOUR)
    assert past.json()["error"] == "PastBooking"

    missing = book(client, bob, 999, now + 2 * HOUR, now + 3 * HOUR)
    assert missing.status_code == 404
    assert missing.json()["error"] == "ResourceNotFound"

    maintenance = book(client, bob, broken, now + 2 * HOUR, now + 3 * HOUR)
    assert maintenance.status_code == 400
    assert maintenance.json()["error"] == "ResourceUnavailable"

    twice = book(client, alice, broken, now + 2 * HOUR, now + 3 * HOUR)
    assert twice.json()["error"] == "ResourceUnavailable"
    again = book(client, alice, pc, now + 2 * HOUR, now + 3 * HOUR)
    assert again.status_code == 400
    assert again.json()["error"] == "UserAlreadyBooked"


def test_missing_fields_are_a_bad_request(client):
    alice = signup(client, "alice")

    response = client.post("/api/reservations", json={"computer_id": 1}, headers=alice)

    assert response.status_code == 400
    assert response.json()["error"] == "MissingFields"
    assert "start_time" in response.json()["fields"]


def test_queue_scenario(client):
    carol, dave, erin = (signup(client, name) for name in ("carol", "dave", "erin"))

    positions = [client.post("/api/queue", headers=h).json()["position"] for h in (carol, dave, erin)]
    assert positions == [1, 2, 3]

    duplicate = client.post("/api/queue", headers=carol)
    assert duplicate.status_code == 400
    assert duplicate.json()["error"] == "AlreadyQueued"

    assert client.delete("/api/queue", headers=dave).status_code == 200
    assert client.delete("/api/queue", headers=dave).json()["error"] == "NotQueued"

    view = client.get("/api/queue", headers=erin).json()
    assert [e["position"] for e in view["entries"]] == [1, 2]
    assert view["caller_position"]["position"] == 2
    assert view["caller_position"]["total_in_queue"] == 2
    assert client.get("/api/queue", headers=dave).json()["caller_position"] is None


def test_queue_preferred_computer_must_exist(client):
    carol = signup(client, "carol")

    response = client.post("/api/queue", json={"computer_id": 42}, headers=carol)

    assert response.status_code == 400
    assert response.json()["error"] == "ResourceNotFound"


def test_release_and_cancel(client, admin, clock):
    alice = signup(client, "alice")
    mallory = signup(client, "mallory")
    waiting = [signup(client, name) for name in ("carol", "dave", "erin", "frank")]
    pc = add_computer(client, admin, "PC-01")
    for headers in waiting:
        client.post("/api/queue", headers=headers)
    reservation_id = book(client, alice, pc, clock(), clock() + HOUR).json()["reservation"]["id"]

    forbidden = client.patch(f"/api/reservations/{reservation_id}/release", headers=mallory)
    assert forbidden.status_code == 403

    released = client.patch(f"/api/reservations/{reservation_id}/release", headers=alice)
    assert released.status_code == 200
    assert released.json()["reservation"]["status"] == "completed"
    assert released.json()["notified_users"] == 3

    inbox = client.get("/api/notifications", headers=waiting[0]).json()["notifications"]
    assert len(inbox) == 1 and inbox[0]["type"] == "success"
    assert client.get("/api/notifications", headers=waiting[3]).json()["notifications"] == []

    read = client.patch(f"/api/notifications/{inbox[0]['id']}/read", headers=waiting[0])
    assert read.json()["notification"]["read"] is True
    assert client.patch(f"/api/notifications/{inbox[0]['id']}/read", headers=alice).status_code == 404

    again = client.patch(f"/api/reservations/{reservation_id}/release", headers=alice)
    assert again.status_code == 400
    assert again.json()["error"] == "InvalidState"

    cancelled = client.delete(f"/api/reservations/{reservation_id}/release", headers=alice)
    assert cancelled.status_code == 400
    assert cancelled.json()["error"] == "AlreadyFinalized"

    assert client.delete("/api/reservations/999/release", headers=alice).status_code == 404


def test_admin_sees_everyone_with_all(client, admin, clock):
    alice = signup(client, "alice")
    bob = signup(client, "bob")
    first = add_computer(client, admin, "PC-01")
    second = add_computer(client, admin, "PC-02")
    book(client, alice, first, clock(), clock() + HOUR)
    book(client, bob, second, clock() + HOUR, clock() + 2 * HOUR)

    assert len(client.get("/api/reservations?all=true", headers=alice).json()["reservations"]) == 1
    assert len(client.get("/api/reservations?all=true", headers=admin).json()["reservations"]) == 2
    upcoming = client.get("/api/reservations?all=true&upcoming=true&status=pending", headers=admin)
    assert [r["computer_id"] for r in upcoming.json()["reservations"]] == [second]


def test_websocket_requires_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws"):
            pass


def test_websocket_greets_authenticated_user(client):
    token = signup(client, "alice")["Authorization"].split()[1]

    with client.websocket_connect(f"/ws?token={token}") as websocket:
        message = websocket.receive_json()

    assert message["type"] == "auth_success"
    assert message["data"]["username"] == "alice"


def test_release_notification_goes_only_to_notified_sockets(client, admin, clock):
    alice = signup(client, "alice")
    carol = signup(client, "carol")
    mallory = signup(client, "mallory")
    pc = add_computer(client, admin, "PC-01")
    client.post("/api/queue", headers=carol)
    reservation_id = book(client, alice, pc, clock(), clock() + HOUR).json()["reservation"]["id"]

    carol_token = carol["Authorization"].split()[1]
    mallory_token = mallory["Authorization"].split()[1]
    with client.websocket_connect(f"/ws?token={carol_token}") as carol_ws, \
            client.websocket_connect(f"/ws?token={mallory_token}") as mallory_ws:
        assert carol_ws.receive_json()["type"] == "auth_success"
        assert mallory_ws.receive_json()["type"] == "auth_success"

        assert client.patch(f"/api/reservations/{reservation_id}/release", headers=alice).status_code == 200
        carol_events = [carol_ws.receive_json() for _ in range(3)]
        mallory_events = [mallory_ws.receive_json() for _ in range(2)]

        client.post("/api/queue", headers=mallory)
        after_release = mallory_ws.receive_json()

    assert [e["type"] for e in carol_events] == ["computer_status", "slot_available", "notification"]
    inbox = client.get("/api/notifications", headers=carol).json()["notifications"]
    assert carol_events[2]["data"] == {"notification_id": inbox[0]["id"]}

    assert [e["type"] for e in mallory_events] == ["computer_status", "slot_available"]
    assert after_release["type"] == "queue_update"
