import json
from decimal import Decimal

import pytest
from helpers import body, patch_json, post_json

from backoffice.models import DiscountCode, GiftCard, Promotion

SLOT_COUNT = 14


def _iso(day, clock):
    return f"{day.isoformat()}T{clock}:00"


@pytest.fixture
def booked(client, salon, staff, service, customer, auth_headers, booking_day):
    """An appointment created through the API at 10:00 on booking_day."""
    response = post_json(
        client,
        "/api/appointments",
        {
            "customer_id": customer.id,
            "service_id": service.id,
            "staff_id": staff.id,
            "start_time": _iso(booking_day, "10:00"),
        },
        auth_headers,
    )
    assert response.status_code == 201
    return body(response)["data"]


@pytest.mark.api
class TestAuth:
    def test_missing_token_is_401(self, client, salon):
        """Back-office routes need a bearer token."""
        response = client.get("/api/appointments")

        assert response.status_code == 401
        assert body(response) == {"success": False, "message": "Unauthorized"}

    def test_garbage_token_is_401(self, client, salon):
        """An undecodable token is rejected."""
        response = client.get(
            "/api/appointments", headers={"Authorization": "Bearer not-a-jwt"}
        )

        assert response.status_code == 401
        assert body(response)["message"] == "Invalid token"

    def test_staff_cannot_create(self, client, salon, staff, service, customer,
                                 staff_headers, booking_day):
        """Stylists lack appointments.create."""
        response = post_json(
            client,
            "/api/appointments",
            {
                "customer_id": customer.id,
                "service_id": service.id,
                "staff_id": staff.id,
                "start_time": _iso(booking_day, "10:00"),
            },
            staff_headers,
        )

        assert response.status_code == 403
        assert body(response)["success"] is False

    def test_staff_cannot_read_settings(self, client, salon, staff_headers):
        """Booking settings are a manager concern."""
        response = client.get("/api/booking-settings", headers=staff_headers)

        assert response.status_code == 403


@pytest.mark.api
class TestSlotsEndpoint:
    def test_slots_for_open_day(self, client, salon, staff, service, auth_headers, booking_day):
        """The slot grid comes back in the envelope with the duration."""
        response = client.get(
            f"/api/appointments/slots?staff_id={staff.id}&service_id={service.id}"
            f"&date={booking_day.isoformat()}",
            headers=auth_headers,
        )

        data = body(response)
        assert response.status_code == 200
        assert data["success"] is True
        assert data["duration"] == 30
        assert len(data["data"]) == SLOT_COUNT
        assert data["data"][0]["time"] == "09:00"

    def test_missing_parameters(self, client, salon, auth_headers):
        """staff_id, service_id and date are required."""
        response = client.get("/api/appointments/slots?date=2030-01-15", headers=auth_headers)

        assert response.status_code == 400
        assert body(response)["message"] == "staff_id is required"

    def test_bad_date(self, client, salon, staff, service, auth_headers):
        """Malformed dates are a validation error."""
        response = client.get(
            f"/api/appointments/slots?staff_id={staff.id}&service_id={service.id}&date=soon",
            headers=auth_headers,
        )

        assert response.status_code == 400


@pytest.mark.api
class TestAppointmentsApi:
    def test_create_returns_serialized_appointment(self, booked, booking_day):
        """Creation returns 201 with the stored times and prices."""
        assert booked["status"] == "scheduled"
        assert booked["start_time"].startswith(_iso(booking_day, "10:00"))
        assert booked["final_price"] == 40.0

    def test_overlap_is_409(self, client, booked, staff, service, customer,
                            auth_headers, booking_day):
        """A second booking on top of the first is a conflict."""
        response = post_json(
            client,
            "/api/appointments",
            {
                "customer_id": customer.id,
                "service_id": service.id,
                "staff_id": staff.id,
                "start_time": _iso(booking_day, "10:15"),
            },
            auth_headers,
        )

        assert response.status_code == 409
        assert body(response) == {
            "success": False,
            "message": "Staff member has conflicting appointment at this time",
        }

    def test_missing_start_time(self, client, salon, staff, service, customer, auth_headers):
        """start_time is required."""
        response = post_json(
            client,
            "/api/appointments",
            {"customer_id": customer.id, "service_id": service.id, "staff_id": staff.id},
            auth_headers,
        )

        assert response.status_code == 400
        assert body(response)["message"] == "start_time is required"

    def test_get_and_list(self, client, booked, auth_headers):
        """Single fetch and the paginated listing both see the booking."""
        one = client.get(f"/api/appointments/{booked['id']}", headers=auth_headers)
        listing = client.get("/api/appointments?limit=10", headers=auth_headers)

        assert body(one)["data"]["id"] == booked["id"]
        data = body(listing)
        assert [a["id"] for a in data["data"]] == [booked["id"]]
        assert data["pagination"] == {"page": 1, "limit": 10, "total": 1, "pages": 1}

    def test_unknown_appointment_is_404(self, client, salon, auth_headers):
        """Missing ids come back as a 404 envelope."""
        response = client.get("/api/appointments/999", headers=auth_headers)

        assert response.status_code == 404
        assert body(response) == {"success": False, "message": "Appointment not found"}

    def test_patch_status(self, client, booked, auth_headers):
        """Confirming through PATCH updates the status."""
        response = patch_json(
            client, f"/api/appointments/{booked['id']}", {"status": "confirmed"}, auth_headers
        )

        assert response.status_code == 200
        assert body(response)["data"]["status"] == "confirmed"

    def test_patch_invalid_transition(self, client, booked, auth_headers):
        """Leaving a terminal state is a 400."""
        patch_json(
            client, f"/api/appointments/{booked['id']}", {"status": "cancelled"}, auth_headers
        )
        response = patch_json(
            client, f"/api/appointments/{booked['id']}", {"status": "confirmed"}, auth_headers
        )

        assert response.status_code == 400
        assert body(response)["success"] is False

    def test_staff_cannot_cancel(self, client, booked, staff_headers):
        """Cancelling through PATCH needs appointments.cancel, not just edit."""
        response = patch_json(
            client, f"/api/appointments/{booked['id']}", {"status": "cancelled"}, staff_headers
        )
        confirmed = patch_json(
            client, f"/api/appointments/{booked['id']}", {"status": "confirmed"}, staff_headers
        )

        assert response.status_code == 403
        assert body(response)["success"] is False
        assert confirmed.status_code == 200
        assert body(confirmed)["data"]["status"] == "confirmed"

    def test_dashboard(self, client, salon, auth_headers):
        """Today's dashboard always lists every status."""
        response = client.get("/api/appointments/dashboard/today", headers=auth_headers)

        data = body(response)["data"]
        assert set(data["by_status"]) == {
            "scheduled", "confirmed", "in_progress", "completed", "cancelled", "no_show"
        }

    def test_non_object_body(self, client, salon, auth_headers):
        """A JSON array is not an acceptable body."""
        response = client.post(
            "/api/appointments",
            data=json.dumps([1, 2]),
            content_type="application/json",
            headers=auth_headers,
        )

        assert response.status_code == 400


@pytest.mark.api
class TestCheckoutApi:
    def test_checkout_then_retry(self, client, booked, auth_headers):
        """The first checkout is 201; repeating it returns the same invoice with 200."""
        first = post_json(
            client, f"/api/appointments/{booked['id']}/checkout", {"tip": 5}, auth_headers
        )
        second = post_json(
            client, f"/api/appointments/{booked['id']}/checkout", {}, auth_headers
        )

        assert first.status_code == 201
        created = body(first)["data"]
        assert created["invoice_number"] == "INV-0001"
        assert created["total"] == 47.25
        assert created["status"] == "paid"
        assert second.status_code == 200
        assert body(second)["data"]["invoice_id"] == created["invoice_id"]
        assert body(second)["data"]["existing"] is True

    def test_gift_card_failure_then_pay(self, client, db, booked, tenant, auth_headers):
        """A short gift card leaves the invoice open for a cash payment."""
        db.session.add(
            GiftCard(
                tenant_id=tenant.id,
                code="SMALL",
                initial_value=Decimal("5"),
                balance=Decimal("5"),
            )
        )
        db.session.commit()

        failed = post_json(
            client,
            f"/api/appointments/{booked['id']}/checkout",
            {"payment_method": "gift_card", "gift_card_code": "SMALL"},
            auth_headers,
        )
        assert failed.status_code == 400
        assert body(failed)["message"].startswith("Insufficient gift card balance")

        retry = post_json(
            client, f"/api/appointments/{booked['id']}/checkout", {}, auth_headers
        )
        invoice_id = body(retry)["data"]["invoice_id"]
        assert body(retry)["data"]["status"] == "sent"

        paid = post_json(
            client, f"/api/invoices/{invoice_id}/pay", {"payment_method": "card"}, auth_headers
        )
        assert paid.status_code == 200
        assert body(paid)["data"]["status"] == "paid"

        fetched = client.get(f"/api/invoices/{invoice_id}", headers=auth_headers)
        assert body(fetched)["data"]["payment_method"] == "card"

    def test_cancelled_appointment_cannot_checkout(self, client, booked, auth_headers):
        """Checkout of a cancelled booking is a 400."""
        patch_json(
            client, f"/api/appointments/{booked['id']}", {"status": "cancelled"}, auth_headers
        )

        response = post_json(
            client, f"/api/appointments/{booked['id']}/checkout", {}, auth_headers
        )

        assert response.status_code == 400
        assert body(response)["message"] == "Cannot checkout a cancelled appointment"

    def test_pay_now_must_be_a_boolean(self, client, booked, auth_headers):
        """A string pay_now is rejected rather than read as true."""
        response = post_json(
            client,
            f"/api/appointments/{booked['id']}/checkout",
            {"payment_method": "cash", "pay_now": "false"},
            auth_headers,
        )
        fetched = client.get(f"/api/appointments/{booked['id']}", headers=auth_headers)

        assert response.status_code == 400
        assert body(response)["message"] == "pay_now must be true or false"
        assert body(fetched)["data"]["status"] == "scheduled"

    def test_pay_later(self, client, booked, auth_headers):
        """pay_now false issues an unpaid invoice."""
        response = post_json(
            client,
            f"/api/appointments/{booked['id']}/checkout",
            {"payment_method": "cash", "pay_now": False},
            auth_headers,
        )

        assert response.status_code == 201
        assert body(response)["data"]["status"] == "sent"
        assert body(response)["data"]["amount_paid"] == 0.0

    def test_void_then_checkout_again(self, client, booked, auth_headers):
        """Voiding the open invoice lets a new checkout issue the next number."""
        first = post_json(
            client, f"/api/appointments/{booked['id']}/checkout", {"pay_now": False}, auth_headers
        )
        invoice_id = body(first)["data"]["invoice_id"]

        voided = post_json(
            client, f"/api/invoices/{invoice_id}/void", {"reason": "Wrong tip"}, auth_headers
        )
        second = post_json(
            client, f"/api/appointments/{booked['id']}/checkout", {}, auth_headers
        )

        assert voided.status_code == 200
        assert body(voided)["message"] == "Invoice voided"
        assert body(voided)["data"]["status"] == "void"
        assert second.status_code == 201
        assert body(second)["data"]["invoice_number"] == "INV-0002"
        assert body(second)["data"]["status"] == "paid"

    def test_paid_invoice_cannot_be_voided(self, client, booked, auth_headers):
        """Voiding a paid invoice is a 400."""
        paid = post_json(
            client, f"/api/appointments/{booked['id']}/checkout", {}, auth_headers
        )

        response = post_json(
            client, f"/api/invoices/{body(paid)['data']['invoice_id']}/void", {}, auth_headers
        )

        assert response.status_code == 400
        assert body(response)["message"] == "Cannot void an invoice with payments recorded"


@pytest.mark.api
class TestSettingsAndPromotions:
    def test_read_and_update_settings(self, client, salon, auth_headers):
        """PATCH changes only the given fields."""
        response = patch_json(
            client, "/api/booking-settings", {"buffer_minutes": 10}, auth_headers
        )
        current = body(client.get("/api/booking-settings", headers=auth_headers))["data"]

        assert response.status_code == 200
        assert current["buffer_minutes"] == 10
        assert current["cancellation_hours"] == 24

    def test_invalid_settings(self, client, salon, auth_headers):
        """Negative integers are rejected."""
        response = patch_json(
            client, "/api/booking-settings", {"cancellation_hours": -1}, auth_headers
        )

        assert response.status_code == 400

    def test_validate_code(self, client, db, tenant, auth_headers):
        """The POS can preview a code against a subtotal."""
        promotion = Promotion(
            tenant_id=tenant.id, name="Ten off", type="fixed", discount_value=Decimal("10")
        )
        db.session.add(promotion)
        db.session.flush()
        db.session.add(DiscountCode(tenant_id=tenant.id, promotion_id=promotion.id, code="TEN"))
        db.session.commit()

        response = post_json(
            client, "/api/promotions/validate", {"code": "ten", "subtotal": 50}, auth_headers
        )

        data = body(response)["data"]
        assert response.status_code == 200
        assert data["discount_amount"] == 10.0
        assert data["final_price"] == 40.0

    def test_unknown_code_is_404(self, client, salon, auth_headers):
        """Unknown codes are reported, not ignored."""
        response = post_json(
            client, "/api/promotions/validate", {"code": "NOPE", "subtotal": 50}, auth_headers
        )

        assert response.status_code == 404
        assert body(response)["success"] is False


@pytest.mark.api
def test_home_route(client):
    """The root route points at the API docs."""
    response = client.get("/")

    data = body(response)
    assert response.status_code == 200
    assert data["status"] == "ok"
    assert data["docs_url"] == "/api/docs"
