"""HTTP tests through the ASGI app with the database and mailer swapped
for the per-test fixtures."""
import httpx
import pytest

from eventhub import server
from eventhub.infra import timings
from eventhub.ticketart import generate_verification_payload


@pytest.fixture
async def client(opener, mailer):
    server.app.dependency_overrides[server.get_db_opener] = lambda: opener
    server.app.dependency_overrides[server.get_mailer] = lambda: mailer
    transport = httpx.ASGITransport(app=server.app)
    async with httpx.AsyncClient(
        transport=transport, base_url="http://test"
    ) as c:
        yield c
    server.app.dependency_overrides.clear()


def as_user(user, role="USER"):
    return {"X-User-Id": str(user.id), "X-User-Role": role}


async def _buy(client, world, qty=2, **extra):
    r = await client.post(
        "/api/transactions",
        json={
            "event_id": world.event.id,
            "tickets": [{"ticket_id": world.regular.id, "quantity": qty}],
            **extra,
        },
        headers=as_user(world.buyer),
    )
    return r


async def test_purchase_to_ticket_flow(client, world, mailer):
    r = await _buy(client, world, coupon_code="PCT10", points_used=200_000)
    assert r.status_code == 201, r.text
    tx = r.json()
    assert tx["status"] == "WAITING_FOR_PAYMENT"
    assert (tx["total_amount"], tx["discount_amount"], tx["points_used"],
            tx["final_amount"]) == (100_000, 10_000, 50_000, 40_000)
    assert tx["coupon_code"] == "PCT10"

    r = await client.post(
        f"/api/transactions/{tx['id']}/payment-proof",
        json={"payment_proof": "uploads/receipt.png"},
        headers=as_user(world.buyer),
    )
    assert r.status_code == 200
    assert r.json()["status"] == "WAITING_FOR_ADMIN_CONFIRMATION"

    r = await client.get(
        "/api/organizer/transactions",
        params={"status": "WAITING_FOR_ADMIN_CONFIRMATION"},
        headers=as_user(world.organizer, "ORGANIZER"),
    )
    assert [t["id"] for t in r.json()["items"]] == [tx["id"]]

    r = await client.patch(
        f"/api/transactions/{tx['id']}/confirm",
        json={"status": "DONE"},
        headers=as_user(world.organizer, "ORGANIZER"),
    )
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "DONE"
    assert body["attendees"] == [
        {"ticket_type": "Regular", "quantity": 2, "total_paid": 100_000}
    ]

    # background delivery ran before the response completed
    assert len(mailer.sent) == 2
    r = await client.get("/api/notifications", headers=as_user(world.buyer))
    [note] = r.json()["items"]
    assert note["type"] == "TRANSACTION_ACCEPTED"

    r = await client.patch(
        f"/api/notifications/{note['id']}/read", headers=as_user(world.buyer)
    )
    assert r.json() == {"ok": True}

    token = generate_verification_payload(tx["id"], "budi@example.com")
    r = await client.post(
        "/api/tickets/verify", json={"token": token},
        headers=as_user(world.organizer, "ORGANIZER"),
    )
    assert r.status_code == 200
    assert r.json()["valid"] is True
    assert r.json()["quantity"] == 2


async def test_error_mapping(client, world):
    r = await client.get("/api/transactions/9999",
                         headers=as_user(world.buyer))
    assert r.status_code == 404
    assert r.json()["code"] == "NOT_FOUND"

    r = await _buy(client, world, qty=11)
    assert r.status_code == 409
    assert r.json()["code"] == "INSUFFICIENT_INVENTORY"

    r = await _buy(client, world, qty=0)
    assert r.status_code == 400
    assert r.json()["code"] == "VALIDATION_ERROR"

    r = await _buy(client, world, coupon_code="ROCK")
    assert r.status_code == 400
    assert r.json()["code"] == "COUPON_EVENT_MISMATCH"

    r = await _buy(client, world, coupon_code="NOPE")
    assert r.status_code == 404
    assert r.json()["code"] == "COUPON_NOT_FOUND"

    r = await _buy(client, world)
    tx_id = r.json()["id"]
    r = await client.get(f"/api/transactions/{tx_id}",
                         headers=as_user(world.stranger))
    assert r.status_code == 403
    assert r.json()["code"] == "FORBIDDEN"

    r = await client.patch(
        f"/api/transactions/{tx_id}/confirm", json={"status": "DONE"},
        headers=as_user(world.organizer, "ORGANIZER"),
    )
    assert r.status_code == 409
    assert r.json()["code"] == "INVALID_STATE"


async def test_actor_headers_required(client, world):
    r = await client.get("/api/transactions")
    assert r.status_code == 401
    r = await client.get("/api/transactions",
                         headers={"X-User-Id": "abc"})
    assert r.status_code == 401
    r = await client.get("/api/transactions",
                         headers={"X-User-Id": "1", "X-User-Role": "ROOT"})
    assert r.status_code == 401


async def test_cancel_and_points(client, world, mailer):
    r = await _buy(client, world, points_used=1_000)
    tx_id = r.json()["id"]

    r = await client.get("/api/me/points", headers=as_user(world.buyer))
    assert r.json()["balance"] == 49_000

    r = await client.post(f"/api/transactions/{tx_id}/cancel",
                          headers=as_user(world.buyer))
    assert r.status_code == 200
    assert r.json()["status"] == "CANCELED"

    r = await client.get("/api/me/points", headers=as_user(world.buyer))
    body = r.json()
    assert body["balance"] == 50_000
    assert [h["points"] for h in body["history"]] == [1_000, -1_000]
    assert [m["subject"] for m in mailer.sent] == [
        "Transaction Canceled - Jazz Night"
    ]

    r = await client.get("/api/transactions", headers=as_user(world.buyer))
    assert [t["status"] for t in r.json()["items"]] == ["CANCELED"]


async def test_events_and_coupons(client, world):
    r = await client.post(
        "/api/events",
        json={
            "name": "Indie Showcase",
            "start_date": "2030-05-01T19:00:00+07:00",
            "location": "Bandung",
            "tickets": [{"name": "GA", "price": 40_000,
                         "available_seats": 50}],
        },
        headers=as_user(world.organizer, "ORGANIZER"),
    )
    assert r.status_code == 201, r.text
    event = r.json()
    assert event["tickets"][0]["available_seats"] == 50

    r = await client.get(f"/api/events/{event['id']}")
    assert r.json()["name"] == "Indie Showcase"

    r = await client.get(f"/api/events/{world.event.id}")
    assert [p["code"] for p in r.json()["promotions"]] == ["EARLY"]

    r = await client.post(
        "/api/events",
        json={"name": "Nope", "start_date": 0,
              "tickets": [{"name": "GA", "price": 1,
                           "available_seats": 1}]},
        headers=as_user(world.buyer),
    )
    assert r.status_code == 403

    r = await client.get("/api/me/coupons", headers=as_user(world.buyer))
    assert {c["code"] for c in r.json()["items"]} == {
        "PCT10", "FIXED30K", "ROCK",
    }


async def test_admin_timings(client, world):
    timings.reset()
    await _buy(client, world)
    r = await client.get("/api/admin/timings",
                         headers=as_user(world.admin, "ADMIN"))
    assert r.status_code == 200
    assert "transactions.create" in r.json()["timings"]

    r = await client.get("/api/admin/timings",
                         headers=as_user(world.buyer))
    assert r.status_code == 403


async def test_referral_routes(client, world, mailer):
    r = await client.get("/api/me/referrals", headers=as_user(world.buyer))
    code = r.json()["referral_code"]
    assert code == world.buyer.referral_code
    assert r.json()["total_referrals"] == 0

    r = await client.post(
        "/api/referrals/redeem", json={"referral_code": code},
        headers=as_user(world.stranger),
    )
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["referrer"] == {
        "id": world.buyer.id, "name": "Budi Santoso", "points_earned": 10_000,
    }
    assert body["new_user_coupon"]["discount"] == 10

    r = await client.post(
        "/api/referrals/redeem", json={"referral_code": code},
        headers=as_user(world.stranger),
    )
    assert r.status_code == 409
    assert r.json()["code"] == "INVALID_STATE"

    r = await client.post(
        "/api/referrals/redeem", json={"referral_code": 12},
        headers=as_user(world.stranger),
    )
    assert r.status_code == 400

    r = await client.get("/api/me/referrals", headers=as_user(world.buyer))
    stats = r.json()
    assert (stats["total_referrals"], stats["total_points_earned"]) == (
        1, 10_000
    )
    assert stats["referral_history"][0]["email"] == "sari@example.com"

    r = await client.get("/api/me/coupons", headers=as_user(world.stranger))
    [coupon] = r.json()["items"]
    assert coupon["type"] == "REFERRAL"

    # background delivery posted the referrer's notification
    r = await client.get("/api/notifications", headers=as_user(world.buyer))
    assert [n["type"] for n in r.json()["items"]] == ["REFERRAL_REWARD"]


async def test_admin_awards_points(client, world):
    r = await client.post(
        f"/api/admin/users/{world.buyer.id}/points",
        json={"points": 1_500, "description": "Survey"},
        headers=as_user(world.admin, "ADMIN"),
    )
    assert r.status_code == 200, r.text
    assert r.json() == {"balance": 51_500}

    r = await client.post(
        f"/api/admin/users/{world.buyer.id}/points", json={"points": 5},
        headers=as_user(world.organizer, "ORGANIZER"),
    )
    assert r.status_code == 403

    r = await client.post(
        f"/api/admin/users/{world.buyer.id}/points", json={"points": -5},
        headers=as_user(world.admin, "ADMIN"),
    )
    assert r.status_code == 400
