from datetime import timedelta
from decimal import Decimal

import pytest

from helpers import WEBHOOK_PATH, auth, refunded, sign, succeeded

API = "/api/v1"


@pytest.fixture
def suite(make_room):
    return make_room("S-1", price="100.00", capacity=2, room_type="SUITE")


def _book(client, user, room, check_in, check_out, **extra):
    return client.post(f"{API}/bookings", headers=auth(user), json={
        "roomId": room.id, "checkIn": check_in.isoformat(), "checkOut": check_out.isoformat(), **extra,
    })


def _webhook(client, body):
    return client.post(WEBHOOK_PATH, content=body, headers=sign(body))


def _pay_by_card(client, user, booking):
    r = client.post(f"{API}/payments/card", headers=auth(user), json={"bookingId": booking["id"], "paymentMethod": "pm_card_visa"})
    assert r.status_code == 201, r.text
    intent = r.json()["payment"]["externalRef"]
    r = _webhook(client, succeeded(intent, Decimal(booking["totalAmount"])))
    assert r.json() == {"ok": True, "outcome": "applied"}
    return intent


def test_booking_lifecycle_end_to_end(client, guest, other_guest, staff, suite, stay, gateway):
    day0, _ = stay

    # Booking A: two nights at 100.00, confirmed by card.
    r = _book(client, guest, suite, day0, day0 + timedelta(days=2))
    assert r.status_code == 201, r.text
    a = r.json()
    assert (a["status"], a["paymentStatus"], a["nights"], a["totalAmount"]) == ("PENDING", "PENDING", 2, "200.00")
    assert a["canCancel"] is True
    intent = _pay_by_card(client, guest, a)
    a = client.get(f"{API}/bookings/{a['id']}", headers=auth(guest)).json()
    assert (a["status"], a["paymentStatus"]) == ("CONFIRMED", "PAID")

    # Booking B overlaps A.
    r = _book(client, other_guest, suite, day0 + timedelta(days=1), day0 + timedelta(days=3))
    assert r.status_code == 409
    assert r.json()["error"] == "RoomUnavailable"
    assert r.json()["context"]["conflicts"] == [a["bookingRef"]]

    # Booking C starts the day A ends.
    r = _book(client, other_guest, suite, day0 + timedelta(days=2), day0 + timedelta(days=5))
    assert r.status_code == 201
    c = r.json()

    # Booking C paid by mobile money, confirmed by staff.
    r = client.post(f"{API}/payments/mobile", headers=auth(other_guest),
                    json={"bookingId": c["id"], "phoneNumber": "781234567", "operator": "WAVE"})
    assert r.status_code == 201, r.text
    assert r.json()["instructions"]["text"] == "Wave: send 300 XOF to 780000000"
    payment_id = r.json()["payment"]["id"]
    assert client.put(f"{API}/payments/mobile/{payment_id}/confirm", headers=auth(other_guest)).status_code == 403
    r = client.put(f"{API}/payments/mobile/{payment_id}/confirm", headers=auth(staff), json={"confirmationCode": "WV-42"})
    assert r.status_code == 200
    c = client.get(f"{API}/bookings/{c['id']}", headers=auth(other_guest)).json()
    assert (c["status"], c["paymentStatus"]) == ("CONFIRMED", "PAID")

    # Guest cancels A: refund goes out, settles on the gateway's refund event.
    r = client.put(f"{API}/bookings/{a['id']}/cancel", headers=auth(guest), json={"reason": "flight cancelled"})
    assert r.status_code == 200
    assert (r.json()["status"], r.json()["paymentStatus"]) == ("CANCELLED", "PAID")
    assert gateway.refunds[0]["intent"] == intent
    r = _webhook(client, refunded(intent, gateway.refunds[0]["id"], Decimal("200.00")))
    assert r.json()["outcome"] == "applied"
    a = client.get(f"{API}/bookings/{a['id']}", headers=auth(guest)).json()
    assert (a["status"], a["paymentStatus"]) == ("CANCELLED", "REFUNDED")


def test_webhook_with_bad_signature_is_401(client, guest, suite, stay):
    body = succeeded("pi_whatever", Decimal("100.00"))
    r = client.post(WEBHOOK_PATH, content=body, headers=sign(body, secret_b64="d3Jvbmctc2VjcmV0"))
    assert r.status_code == 401
    assert r.json()["error"] == "PaymentVerificationFailed"
    assert client.post(WEBHOOK_PATH, content=body).status_code == 401


def test_register_login_me(client, outbox):
    r = client.post(f"{API}/auth/register", json={"email": "New@Guest.local", "password": "longenough", "fullName": "New"})
    assert r.status_code == 201
    assert [(to, subject) for to, subject, _ in outbox] == [("new@guest.local", "Welcome to StayDesk Hotel")]
    assert client.post(f"{API}/auth/register", json={"email": "new@guest.local", "password": "longenough"}).status_code == 400

    assert client.post(f"{API}/auth/login", json={"email": "new@guest.local", "password": "wrong-pass"}).status_code == 401
    tokens = client.post(f"{API}/auth/login", json={"email": "new@guest.local", "password": "longenough"}).json()
    me = client.get(f"{API}/auth/me", headers={"Authorization": f"Bearer {tokens['access_token']}"}).json()
    assert (me["email"], me["role"]) == ("new@guest.local", "GUEST")

    r = client.post(f"{API}/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert r.status_code == 200
    # access tokens cannot be used to refresh
    assert client.post(f"{API}/auth/refresh", json={"refresh_token": tokens["access_token"]}).status_code == 401


def test_unauthenticated_requests_rejected(client):
    assert client.get(f"{API}/bookings").status_code == 401
    assert client.get(f"{API}/bookings", headers={"Authorization": "Bearer nonsense"}).status_code == 401


def test_inactive_account_is_refused(client, make_user):
    user = make_user("STAFF", email="former@hotel.local", active=False)
    r = client.get(f"{API}/bookings", headers=auth(user))
    assert r.status_code == 403
    assert r.json()["error"] == "AccountInactive"
    r = client.post(f"{API}/auth/login", json={"email": "former@hotel.local", "password": "password123"})
    assert r.status_code == 403


def test_validation_errors_render_error_body(client, guest, suite, stay):
    day0, _ = stay
    r = _book(client, guest, suite, day0, day0)
    assert r.status_code == 400
    assert r.json()["error"] == "ValidationError"
    r = client.get(f"{API}/bookings/missing", headers=auth(guest))
    assert (r.status_code, r.json()["error"]) == (404, "NotFound")


def test_room_management_is_admin_only(client, admin, staff, stay):
    payload = {"code": "d-201", "name": "Deluxe sea view", "type": "deluxe", "pricePerNight": "150000", "capacity": 3}
    assert client.post(f"{API}/rooms", headers=auth(staff), json=payload).status_code == 403
    r = client.post(f"{API}/rooms", headers=auth(admin), json=payload)
    assert r.status_code == 201
    room = r.json()
    assert (room["code"], room["type"], room["pricePerNight"]) == ("D-201", "DELUXE", "150000.00")

    check_in, check_out = stay
    r = client.get(f"{API}/rooms/available", params={"checkIn": check_in.isoformat(), "checkOut": check_out.isoformat(), "guests": 3})
    assert [(i["code"], i["estimatedTotal"]) for i in r.json()["items"]] == [("D-201", "300000.00")]

    r = client.patch(f"{API}/rooms/{room['id']}", headers=auth(admin), json={"isActive": False})
    assert r.json()["isActive"] is False
    assert client.get(f"{API}/rooms").json()["items"] == []


def test_room_availability_hides_guest_details(client, guest, suite, stay):
    check_in, check_out = stay
    _book(client, guest, suite, check_in, check_out)
    r = client.get(f"{API}/rooms/{suite.id}/availability",
                   params={"checkIn": check_in.isoformat(), "checkOut": check_out.isoformat()})
    body = r.json()
    assert body["available"] is False
    assert body["conflicts"] == [{"checkIn": check_in.isoformat(), "checkOut": check_out.isoformat()}]


def test_financial_report_scoped_by_role(client, guest, staff, admin, suite, stay):
    check_in, check_out = stay
    booking = _book(client, guest, suite, check_in, check_out).json()
    _pay_by_card(client, guest, booking)

    assert client.get(f"{API}/admin/reports/financial", headers=auth(guest)).status_code == 403

    partial = client.get(f"{API}/admin/reports/financial", headers=auth(staff)).json()
    assert partial["scope"] == "partial"
    assert partial["bookings"]["confirmed"] == 1
    assert partial["payments"]["paid"] == 1
    assert "revenue" not in partial and "occupancy" not in partial

    full = client.get(f"{API}/admin/reports/financial", headers=auth(admin)).json()
    assert full["scope"] == "any"
    assert full["revenue"]["gross"] == "200.00"
    assert full["revenue"]["byChannel"]["CARD"] == {"count": 1, "amount": "200.00"}

    r = client.get(f"{API}/admin/reports/financial", headers=auth(admin),
                   params={"fromDate": "2026-02-01", "toDate": "2026-01-01"})
    assert r.status_code == 400


def test_admin_manages_users(client, admin, guest):
    r = client.patch(f"{API}/admin/users/{guest.id}", headers=auth(admin), json={"role": "staff"})
    assert (r.status_code, r.json()["role"]) == (200, "STAFF")
    assert client.patch(f"{API}/admin/users/{admin.id}", headers=auth(admin), json={"isActive": False}).status_code == 400
    emails = {u["email"] for u in client.get(f"{API}/admin/users", headers=auth(admin)).json()["items"]}
    assert {"guest@hotel.local", "admin@hotel.local"} <= emails
    assert client.get(f"{API}/admin/users", headers=auth(guest)).status_code == 403


def test_review_queue_resolution(client, guest, admin, suite, stay):
    check_in, check_out = stay
    booking = _book(client, guest, suite, check_in, check_out).json()
    r = client.post(f"{API}/payments/card", headers=auth(guest), json={"bookingId": booking["id"]})
    intent = r.json()["payment"]["externalRef"]
    assert _webhook(client, succeeded(intent, Decimal("1.00"))).json() == {
        "ok": True, "outcome": "amount_mismatch", "error": "AmountMismatch",
    }

    items = client.get(f"{API}/admin/review-queue", headers=auth(admin)).json()["items"]
    assert [i["externalRef"] for i in items] == [intent]
    r = client.put(f"{API}/admin/review-queue/{items[0]['id']}/resolve", headers=auth(admin), json={"note": "gateway rounding"})
    assert r.json()["needsReview"] is False
    assert client.get(f"{API}/admin/review-queue", headers=auth(admin)).json()["items"] == []


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
