import pytest
from httpx import ASGITransport, AsyncClient

from fitledger.main import app
from fitledger.utils.helpers import utc_now


@pytest.fixture
async def client():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def booking_payload(lab, enthusiast):
    return {
        "fitness_enthusiast_id": str(enthusiast["_id"]),
        "fitness_enthusiast_name": enthusiast["name"],
        "lab_partner_id": str(lab["_id"]),
        "selected_tests": [
            {"test_name": "CBC", "price": 500},
            {"test_name": "Lipid Panel", "price": 800},
        ],
        "booking_date": "2026-03-12T09:00:00",
        "time_slot": "9:00 AM - 10:00 AM",
    }


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


@pytest.mark.asyncio
async def test_booking_to_paid_invoice_over_http(client, lab, enthusiast):
    response = await client.post("/api/lab-bookings/", json=booking_payload(lab, enthusiast))
    assert response.status_code == 201
    booking = response.json()
    assert booking["total_amount"] == 1300
    booking_id = booking["_id"]

    response = await client.post(f"/api/lab-bookings/{booking_id}/transition", json={"status": "confirmed"})
    assert response.status_code == 422
    assert response.json()["code"] == "missing_delivery_estimate"
    assert response.json()["context"]["booking_id"] == booking_id

    response = await client.post(
        f"/api/lab-bookings/{booking_id}/transition",
        json={"status": "confirmed", "expected_report_delivery_time": "2 days"},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "confirmed"

    response = await client.post(f"/api/lab-bookings/{booking_id}/user-payment", json={"payment_method": "cash"})
    assert response.status_code == 200
    assert response.json()["commission_amount"] == 130
    assert response.json()["commission_status"] == "unbilled"

    response = await client.post(f"/api/lab-bookings/{booking_id}/user-payment", json={"payment_method": "cash"})
    assert response.status_code == 409
    assert response.json()["code"] == "already_recorded"

    now = utc_now()
    response = await client.post(
        f"/api/invoices/generate/{lab['_id']}",
        json={"type": "monthly", "month": now.month, "year": now.year},
    )
    assert response.status_code == 201
    invoice = response.json()
    assert invoice["total_commission"] == 130
    assert invoice["status"] == "payment_due"
    assert invoice["booking_ids"] == [booking_id]

    response = await client.get(f"/api/lab-bookings/{booking_id}")
    assert response.json()["commission_status"] == "billed"
    assert response.json()["billed_invoice_id"] == invoice["_id"]

    response = await client.patch(
        f"/api/invoices/{invoice['_id']}/mark-paid",
        json={"payment_method": "bank_transfer", "payment_reference": "UTR-991"},
    )
    assert response.status_code == 200
    assert response.json()["invoice"]["status"] == "paid"

    response = await client.get("/api/events/")
    types = [event["type"] for event in response.json()]
    assert types[0] == "booking.created"
    assert "invoice.generated" in types
    assert types[-1] == "invoice.paid"


@pytest.mark.asyncio
async def test_unknown_booking_is_404(client):
    response = await client.get("/api/lab-bookings/64b7f0c2a1b2c3d4e5f60718")
    assert response.status_code == 404
    assert response.json()["code"] == "booking_not_found"


@pytest.mark.asyncio
async def test_invalid_transition_is_409(client, lab, enthusiast):
    booking = (await client.post("/api/lab-bookings/", json=booking_payload(lab, enthusiast))).json()
    response = await client.post(f"/api/lab-bookings/{booking['_id']}/transition", json={"status": "completed"})
    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "invalid_transition"
    assert body["context"]["from_status"] == "pending"
    assert body["retryable"] is False


@pytest.mark.asyncio
async def test_empty_test_selection_fails_validation(client, lab, enthusiast):
    payload = booking_payload(lab, enthusiast)
    payload["selected_tests"] = []
    response = await client.post("/api/lab-bookings/", json=payload)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_generate_without_eligible_bookings_is_404(client, lab):
    response = await client.post(f"/api/invoices/generate/{lab['_id']}", json={"type": "monthly", "month": 1, "year": 2026})
    assert response.status_code == 404
    assert response.json()["code"] == "no_eligible_bookings"


@pytest.mark.asyncio
async def test_commission_rate_endpoints(client, lab):
    response = await client.patch(f"/api/partners/{lab['_id']}/commission-rate", json={"commission_rate": 12.5})
    assert response.status_code == 200
    assert response.json()["old_commission_rate"] == 10

    response = await client.get(f"/api/partners/{lab['_id']}/commission-rate")
    assert response.json()["commission_rate"] == 12.5

    response = await client.patch(f"/api/partners/{lab['_id']}/commission-rate", json={"commission_rate": 120})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_commission_request_workflow(client, lab):
    response = await client.post("/api/partners/commission-requests", json={
        "target_user_id": str(lab["_id"]),
        "proposed_rate": 8,
        "reason": "High volume partner",
        "requested_by": "manager-1",
    })
    assert response.status_code == 201
    request_id = response.json()["_id"]

    response = await client.get("/api/partners/commission-requests", params={"status": "pending"})
    assert [r["_id"] for r in response.json()] == [request_id]

    response = await client.patch(f"/api/partners/commission-requests/{request_id}", json={"approve": True})
    assert response.json()["status"] == "approved"
    response = await client.get(f"/api/partners/{lab['_id']}/commission-rate")
    assert response.json()["commission_rate"] == 8


@pytest.mark.asyncio
async def test_analytics_endpoints(client, make_user, enthusiast):
    trainer = await make_user("trainer")
    response = await client.post("/api/class-bookings/", json={
        "user_id": str(enthusiast["_id"]),
        "class_id": "yoga-101",
        "trainer_id": str(trainer["_id"]),
        "amount_paid": 400,
        "booking_date": "2026-02-10T07:00:00",
    })
    assert response.status_code == 201
    assert response.json()["commission_amount"] == 60

    window = {"start": "2026-01-01T00:00:00", "end": "2026-03-31T23:59:59"}
    series = (await client.get("/api/analytics/revenue-series", params=window)).json()
    assert [row["class"]["commission"] for row in series] == [0, 60, 0]

    revenue = (await client.get("/api/analytics/platform-revenue", params=window)).json()
    assert revenue["total_commission"] == 60

    board = (await client.get("/api/analytics/leaderboard", params={"partner_type": "trainer"})).json()
    assert board[0]["partner_id"] == str(trainer["_id"])

    engagement = (await client.get("/api/analytics/engagement", params=window)).json()
    assert engagement["active_enthusiasts"] == 1
