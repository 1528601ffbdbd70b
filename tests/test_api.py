import pytest
from fastapi.testclient import TestClient

from conftest import auth
from main import create_app


def book(client, token, class_id="class:sourdough", names=("Ada",), **extra):
    body = {"classId": class_id, "studentCount": len(names), "studentNames": list(names), **extra}
    return client.post("/booking", json=body, headers=auth(token))


@pytest.fixture
def tokens(seed):
    return {
        "guest": seed.user("guest", name="Gary Guest"),
        "host": seed.user("host", name="Hannah Host"),
        "admin": seed.user("admin", admin=True),
    }


def test_health(client):
    res = client.get("/health")

    assert res.status_code == 200
    assert res.json()["status"] == "healthy"


def test_available_spots_is_public(client, seed):
    seed.klass(max_students=3)

    res = client.get("/class/class:sourdough/available-spots")

    assert res.status_code == 200
    assert res.json() == {"maxStudents": 3, "confirmedBookings": 0, "availableSpots": 3}
    assert client.get("/class/class:nope/available-spots").status_code == 404


def test_scenario_auto_approve_end_to_end(client, seed, tokens, mailbox):
    seed.klass(max_students=1, price=50.0, auto=True)

    res = book(client, tokens["guest"], subtotal=50, herdFee=2.5, totalAmount=52.5, autoApprove=True)

    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["message"] == "Booking confirmed and payment processed"
    assert body["booking"]["status"] == "confirmed"
    assert body["booking"]["paymentStatus"] == "completed"
    assert body["booking"]["totalAmount"] == 52.5
    assert client.get("/class/class:sourdough/available-spots").json()["availableSpots"] == 0
    assert sorted(m["to"] for m in mailbox.sent) == ["guest@example.com", "host@example.com"]


def test_scenario_manual_then_deny(client, seed, tokens, mailbox):
    seed.klass(max_students=1, auto=False)

    created = book(client, tokens["guest"]).json()
    assert created["booking"]["status"] == "pending"
    assert created["message"] == "Booking request submitted. The host will review your request."
    assert [m["to"] for m in mailbox.sent] == ["host@example.com"]

    res = client.post(
        f"/booking/{created['booking']['id']}/respond",
        json={"action": "deny", "message": "full"},
        headers=auth(tokens["host"]),
    )

    assert res.status_code == 200
    denied = res.json()["booking"]
    assert denied["status"] == "denied"
    assert denied["hostMessage"] == "full"
    assert denied["paymentStatus"] == "pending"
    assert client.get("/class/class:sourdough/available-spots").json()["availableSpots"] == 1
    assert mailbox.sent[-1]["to"] == "guest@example.com"


def test_scenario_host_payment_not_ready(client, seed, store):
    guest = seed.user("guest")
    seed.user("host", name="Hannah Host", stripe=False)
    seed.klass()

    res = book(client, guest)

    assert res.status_code == 400
    assert res.json()["hostName"] == "Hannah Host"
    assert "Hannah Host" in res.json()["message"]
    assert store.get_by_prefix("booking:") == []


def test_booking_unknown_class_is_404(client, tokens):
    res = book(client, tokens["guest"], class_id="class:ghost")

    assert res.status_code == 404


def test_booking_requires_token_and_verified_email(client, seed, tokens):
    seed.klass()
    unverified = seed.user("newbie", verified=False)

    body = {"classId": "class:sourdough", "studentCount": 1, "studentNames": ["Ada"]}
    assert client.post("/booking", json=body).status_code == 401
    assert book(client, "not-a-token").status_code == 401
    assert book(client, unverified).status_code == 403


def test_only_host_may_respond(client, seed, tokens):
    seed.klass(auto=False)
    booking_id = book(client, tokens["guest"]).json()["booking"]["id"]

    for who in ("guest", "admin"):
        res = client.post(f"/booking/{booking_id}/respond", json={"action": "approve"}, headers=auth(tokens[who]))
        assert res.status_code == 403


def test_responding_twice_conflicts(client, seed, tokens):
    seed.klass(auto=False)
    booking_id = book(client, tokens["guest"]).json()["booking"]["id"]
    client.post(f"/booking/{booking_id}/respond", json={"action": "approve"}, headers=auth(tokens["host"]))

    res = client.post(f"/booking/{booking_id}/respond", json={"action": "deny"}, headers=auth(tokens["host"]))

    assert res.status_code == 409


def test_invalid_action_is_rejected(client, seed, tokens):
    seed.klass(auto=False)
    booking_id = book(client, tokens["guest"]).json()["booking"]["id"]

    res = client.post(f"/booking/{booking_id}/respond", json={"action": "cancel"}, headers=auth(tokens["host"]))

    assert res.status_code == 422


def test_user_bookings_are_private(client, seed, tokens):
    seed.klass(max_students=2)
    book(client, tokens["guest"])

    mine = client.get("/bookings/guest", headers=auth(tokens["guest"]))
    hosted = client.get("/bookings/host", headers=auth(tokens["host"]))
    other = client.get("/bookings/host", headers=auth(tokens["guest"]))

    assert len(mine.json()) == 1
    assert len(hosted.json()) == 1
    assert other.status_code == 403


def test_class_create_list_delete_round_trip(client, tokens):
    created = client.post(
        "/class",
        json={"title": "Soap Making", "maxStudents": 4, "pricePerPerson": 20, "category": "crafts"},
        headers=auth(tokens["host"]),
    ).json()

    assert created["id"].startswith("class:")
    assert created["instructorId"] == "host"
    assert created["instructorName"] == "Hannah Host"
    assert created["category"] == "crafts"
    assert [c["id"] for c in client.get("/classes").json()] == [created["id"]]

    res = client.delete(f"/class/{created['id']}", headers=auth(tokens["host"]))

    assert res.status_code == 200
    assert res.json()["deletedClassId"] == created["id"]
    assert client.get("/classes").json() == []


def test_class_owner_cannot_be_spoofed(client, tokens):
    created = client.post(
        "/class",
        json={"id": "class:mine", "title": "Soap", "maxStudents": 4, "pricePerPerson": 20, "instructorId": "guest"},
        headers=auth(tokens["host"]),
    ).json()
    assert created["instructorId"] == "host"

    res = client.post(
        "/class",
        json={"id": "class:mine", "title": "Hijack", "maxStudents": 4, "pricePerPerson": 1},
        headers=auth(tokens["guest"]),
    )
    assert res.status_code == 403


def test_paid_booking_blocks_host_delete_but_not_admin(client, seed, tokens):
    seed.klass(max_students=2)
    book(client, tokens["guest"])

    blocked = client.delete("/class/class:sourdough", headers=auth(tokens["host"]))
    assert blocked.status_code == 400
    assert blocked.json()["activeBookings"] == 1
    assert [c["id"] for c in client.get("/classes").json()] == ["class:sourdough"]

    assert client.delete("/class/class:sourdough", headers=auth(tokens["guest"])).status_code == 403
    assert client.delete("/class/class:sourdough", headers=auth(tokens["admin"])).status_code == 200
    assert client.get("/classes").json() == []


def test_class_bookings_visible_to_host_and_admin_only(client, seed, tokens):
    seed.klass(max_students=2)
    book(client, tokens["guest"])

    assert len(client.get("/class/class:sourdough/bookings", headers=auth(tokens["host"])).json()) == 1
    assert len(client.get("/class/class:sourdough/bookings", headers=auth(tokens["admin"])).json()) == 1
    assert client.get("/class/class:sourdough/bookings", headers=auth(tokens["guest"])).status_code == 403


def test_payment_failure_returns_failed_booking(settings, seed, mailbox):
    from conftest import DecliningProcessor

    app = create_app(settings, processor=DecliningProcessor(), sender=mailbox)
    guest = seed.user("guest")
    seed.user("host")
    seed.klass(max_students=2)

    with TestClient(app) as client:
        res = book(client, guest)
        spots = client.get("/class/class:sourdough/available-spots").json()

    assert res.status_code == 402
    assert "card declined" in res.json()["message"]
    assert res.json()["booking"]["status"] == "failed"
    assert res.json()["booking"]["paymentStatus"] == "failed"
    assert spots["availableSpots"] == 2
    assert mailbox.sent == []


def test_broken_email_never_fails_a_booking(settings, seed, processor):
    class Exploding:
        def send(self, *args):
            raise RuntimeError("mail provider down")

    app = create_app(settings, processor=processor, sender=Exploding())
    guest = seed.user("guest")
    seed.user("host")
    seed.klass()

    with TestClient(app) as client:
        res = book(client, guest)

    assert res.status_code == 200
    assert res.json()["booking"]["paymentStatus"] == "completed"


def test_user_profile_lifecycle(client, seed):
    token = seed.user("newcomer", with_profile=False)

    assert client.get("/user/newcomer").status_code == 404
    created = client.post("/user", json={"email": "newcomer@example.com", "name": "New"}, headers=auth(token))
    assert created.status_code == 200
    assert created.json()["stripeConnected"] is False

    updated = client.put(
        "/user/newcomer",
        json={"stripeConnected": True, "stripeAccountId": "acct_new", "isAdmin": True},
        headers=auth(token),
    ).json()

    assert updated["stripeConnected"] is True
    assert updated["stripeAccountId"] == "acct_new"
    assert updated["isAdmin"] is False


def test_profile_cannot_be_edited_by_someone_else(client, tokens):
    res = client.put("/user/host", json={"name": "Mallory"}, headers=auth(tokens["guest"]))

    assert res.status_code == 403


def test_free_class_booking_succeeds(client, seed, tokens):
    seed.klass(price=0.0)

    res = book(client, tokens["guest"])

    assert res.status_code == 200
    assert res.json()["booking"]["paymentStatus"] == "completed"
    assert res.json()["booking"]["totalAmount"] == 0.0


def test_retry_of_a_failed_payment_gets_the_same_status(settings, seed, mailbox):
    from conftest import DecliningProcessor

    app = create_app(settings, processor=DecliningProcessor(), sender=mailbox)
    guest = seed.user("guest")
    seed.user("host")
    seed.klass(max_students=2)

    with TestClient(app) as client:
        first = book(client, guest, requestId="req-1")
        retry = book(client, guest, requestId="req-1")

    assert first.status_code == retry.status_code == 402
    assert retry.json()["booking"]["id"] == first.json()["booking"]["id"]
    assert retry.json()["booking"]["status"] == "failed"
