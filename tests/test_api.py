import logging
from unittest.mock import AsyncMock, patch

from sqlmodel import select

from banquet_booking.errors import StorageError
from banquet_booking.models import Booking, SlotClaim

DAY = "2024-06-01"

BOOKING = {
    "hall": 1,
    "date": DAY,
    "time": "14:00",
    "duration": 2,
    "guests": "11-20",
    "name": "Ivan",
    "phone": "+79991112233",
    "email": "ivan@example.com",
    "comments": "Window table please",
    "menuItems": [
        {"name": "Plov", "quantity": 4, "price": 800},
        {"name": "Tea", "quantity": 4, "price": 150},
    ],
    "total": 12000,
}


async def create(client, **overrides):
    payload = dict(BOOKING, **overrides)
    return await client.post("/api/booking/create", json=payload)


async def test_health(client):
    response = await client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


async def test_availability_empty_day(client):
    response = await client.get("/api/booking/availability", params={"date": DAY, "hall": "1"})

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["busy_slots"] == []
    assert len(data["available_slots"]) == data["total_slots"] == 13


async def test_availability_requires_date_and_hall(client):
    response = await client.get("/api/booking/availability", params={"date": DAY})

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "hall is required"}


async def test_create_then_availability_and_check(client):
    response = await create(client)
    assert response.status_code == 201
    assert response.json()["success"] is True

    availability = (await client.get("/api/booking/availability", params={"date": DAY, "hall": 1})).json()
    assert availability["busy_slots"] == ["14:00", "15:00"]
    assert "14:00" not in availability["available_slots"]

    check = await client.get(
        "/api/booking/check-slot",
        params={"date": DAY, "hall": 1, "time": "13:00", "duration": 2},
    )
    assert check.status_code == 200
    assert check.json()["available"] is False
    assert check.json()["conflicting_slots"] == ["14:00"]


async def test_check_slot_past_closing(client):
    response = await client.get(
        "/api/booking/check-slot",
        params={"date": DAY, "hall": 1, "time": "22:00", "duration": 2},
    )

    assert response.status_code == 200
    assert response.json()["available"] is False
    assert response.json()["reason"] == "exceeds operating hours"


async def test_check_slot_oversized_duration(client):
    response = await client.get(
        "/api/booking/check-slot",
        params={"date": DAY, "hall": 1, "time": "10:00", "duration": 200000},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["available"] is False
    assert data["reason"] == "exceeds operating hours"
    assert data["requested_slots"] == []
    assert data["duration"] == 200000


async def test_check_slot_invalid_time(client):
    response = await client.get(
        "/api/booking/check-slot",
        params={"date": DAY, "hall": 1, "time": "08:00"},
    )

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "invalid time"}


async def test_overlapping_create_is_conflict(client, database):
    assert (await create(client)).status_code == 201

    response = await create(client, time="15:00", name="Someone else")

    assert response.status_code == 409
    assert response.json()["success"] is False
    assert "retry" in response.json()["error"]

    async with database.session_factory() as session:
        bookings = (await session.execute(select(Booking))).scalars().all()
        claims = (await session.execute(select(SlotClaim))).scalars().all()
    assert len(bookings) == 1
    assert sorted(c.hour for c in claims) == [14, 15]


async def test_create_missing_field(client):
    payload = dict(BOOKING)
    del payload["phone"]

    response = await client.post("/api/booking/create", json=payload)

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "phone is required"}


async def test_create_malformed_field_is_invalid_request(client):
    response = await create(client, hall="first")

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert "hall" in response.json()["error"]


async def test_get_booking(client):
    booking_id = (await create(client)).json()["booking_id"]

    response = await client.get(f"/api/booking/{booking_id}")

    assert response.status_code == 200
    booking = response.json()["booking"]
    assert booking["booking_id"] == booking_id
    assert booking["payment_status"] == "pending"
    assert booking["date"] == DAY
    assert [item["name"] for item in booking["menu_items"]] == ["Plov", "Tea"]
    assert booking["guests"] == "11-20"


async def test_get_unknown_booking(client):
    response = await client.get("/api/booking/BK0NOPE")

    assert response.status_code == 404
    assert response.json()["success"] is False


async def test_cancel_keeps_slots_claimed(client):
    booking_id = (await create(client)).json()["booking_id"]

    response = await client.post(f"/api/booking/{booking_id}/cancel")

    assert response.status_code == 200
    assert response.json()["payment_status"] == "canceled"
    assert response.json()["slots_released"] is False
    availability = (await client.get("/api/booking/availability", params={"date": DAY, "hall": 1})).json()
    assert availability["busy_slots"] == ["14:00", "15:00"]


async def test_create_payment_and_webhook_marks_paid(client, gateway):
    booking_id = (await create(client)).json()["booking_id"]

    response = await client.post(
        "/api/yookassa/create-payment",
        json={"booking_id": booking_id, "return_url": "https://example.com/thanks"},
    )

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "payment_id": "pay-1",
        "confirmation_url": "https://yookassa.invalid/checkout/pay-1",
    }
    call = gateway.calls[0]
    assert call["metadata"] == {"booking_id": booking_id}
    assert call["return_url"] == "https://example.com/thanks"
    gateway.pay("pay-1")

    notification = {
        "type": "notification",
        "event": "payment.succeeded",
        "object": {"id": "pay-1", "status": "succeeded", "metadata": {"booking_id": booking_id}},
    }
    assert (await client.post("/api/yookassa/webhook", json=notification)).status_code == 200
    # Repeated delivery is harmless
    assert (await client.post("/api/yookassa/webhook", json=notification)).status_code == 200

    booking = (await client.get(f"/api/booking/{booking_id}")).json()["booking"]
    assert booking["payment_status"] == "paid"
    assert booking["payment_id"] == "pay-1"


async def test_create_payment_unknown_booking(client):
    response = await client.post(
        "/api/yookassa/create-payment",
        json={"booking_id": "BK0NOPE", "return_url": "https://example.com"},
    )
    assert response.status_code == 404


async def test_create_payment_without_email(client):
    booking_id = (await create(client, email="")).json()["booking_id"]

    response = await client.post(
        "/api/yookassa/create-payment",
        json={"booking_id": booking_id, "return_url": "https://example.com"},
    )

    assert response.status_code == 400
    assert "email" in response.json()["error"]


async def test_webhook_always_acknowledges(client):
    responses = [
        await client.post("/api/yookassa/webhook", content=b"not json", headers={"Content-Type": "application/json"}),
        await client.post("/api/yookassa/webhook", json={"unexpected": True}),
        await client.post(
            "/api/yookassa/webhook",
            json={"event": "payment.succeeded", "object": {"id": "pay-x", "metadata": {"booking_id": "BK0NOPE"}}},
        ),
        await client.post("/api/yookassa/webhook", json={"event": "payment.canceled", "object": {"id": "pay-y"}}),
    ]

    for response in responses:
        assert response.status_code == 200
        assert response.json() == {"success": True}


async def test_cors_allows_configured_origin(client):
    response = await client.options(
        "/api/booking/availability",
        headers={"Origin": "http://localhost:3000", "Access-Control-Request-Method": "GET"},
    )
    assert response.headers.get("access-control-allow-origin") == "http://localhost:3000"



async def test_cancel_paid_booking_is_refused(client, gateway):
    booking_id = (await create(client)).json()["booking_id"]
    await client.post(
        "/api/yookassa/create-payment",
        json={"booking_id": booking_id, "return_url": "https://example.com"},
    )
    gateway.pay("pay-1")
    await client.post(
        "/api/yookassa/webhook",
        json={"event": "payment.succeeded", "object": {"id": "pay-1", "metadata": {"booking_id": booking_id}}},
    )

    response = await client.post(f"/api/booking/{booking_id}/cancel")

    assert response.status_code == 400
    assert "paid" in response.json()["error"]
    booking = (await client.get(f"/api/booking/{booking_id}")).json()["booking"]
    assert booking["payment_status"] == "paid"


async def test_forged_webhook_does_not_mark_paid(client):
    booking_id = (await create(client)).json()["booking_id"]

    response = await client.post(
        "/api/yookassa/webhook",
        json={
            "event": "payment.succeeded",
            "object": {"id": "anything", "status": "succeeded", "metadata": {"booking_id": booking_id}},
        },
    )

    assert response.status_code == 200
    booking = (await client.get(f"/api/booking/{booking_id}")).json()["booking"]
    assert booking["payment_status"] == "pending"


async def test_webhook_storage_failure_is_logged(client, gateway, caplog):
    booking_id = (await create(client)).json()["booking_id"]
    await client.post(
        "/api/yookassa/create-payment",
        json={"booking_id": booking_id, "return_url": "https://example.com"},
    )
    gateway.pay("pay-1")

    failing = AsyncMock(side_effect=StorageError())
    with patch("banquet_booking.services.set_payment_status", failing):
        with caplog.at_level(logging.ERROR, logger="banquet_booking.payments"):
            response = await client.post(
                "/api/yookassa/webhook",
                json={"event": "payment.succeeded", "object": {"id": "pay-1", "metadata": {"booking_id": booking_id}}},
            )

    assert response.status_code == 200
    assert response.json() == {"success": True}
    failing.assert_awaited_once()
    records = [record for record in caplog.records if record.name == "banquet_booking.payments"]
    assert records and records[-1].levelname == "ERROR"
    assert records[-1].exc_info is not None
    assert "pay-1" in records[-1].getMessage()
