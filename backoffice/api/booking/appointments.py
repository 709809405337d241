# Staff-side booking: availability, create/edit appointments, checkout
import math

from flask import Blueprint, current_app, g, request

from backoffice.auth import require_capability
from backoffice.errors import PermissionDeniedError
from backoffice.services.appointment_lifecycle import (
    book_appointment,
    get_appointment,
    list_appointments,
    serialize_appointment,
    today_dashboard,
    update_appointment,
)
from backoffice.services.availability import calculate_slots
from backoffice.services.booking_policy import load_policy
from backoffice.services.checkout import checkout_appointment
from backoffice.utils.http import (
    bool_arg,
    current_zone,
    date_arg,
    datetime_arg,
    int_arg,
    json_body,
    ok,
)

appointments_bp = Blueprint("appointments", __name__, url_prefix="/api/appointments")


@appointments_bp.route("/slots", methods=["GET"])
@require_capability("appointments", "view")
def get_slots():
    """
    Available time slots for a staff member, service and date
    ---
    tags:
      - Appointments
    parameters:
      - name: staff_id
        in: query
        type: integer
        required: true
      - name: service_id
        in: query
        type: integer
        required: true
      - name: date
        in: query
        type: string
        format: date
        required: true
    responses:
      200:
        description: Slot list in the tenant's local time; empty with a message when the day is closed
      400:
        description: Missing or malformed parameters
    """
    staff_id = int_arg(request.args, "staff_id", required=True)
    service_id = int_arg(request.args, "service_id", required=True)
    on_date = date_arg(request.args)
    policy = load_policy(g.auth.tenant_id)

    result = calculate_slots(g.auth.tenant_id, staff_id, service_id, on_date, policy)
    body = {
        "data": [slot.to_dict(policy.zone) for slot in result.slots],
        "duration": result.duration,
    }
    if result.message:
        body["message"] = result.message
    return ok(**body)


@appointments_bp.route("", methods=["GET"])
@require_capability("appointments", "view")
def get_appointments():
    """
    GET /api/appointments
    Purpose: Paginated appointment listing for the caller's tenant.
    Filters: staff_id, customer_id, branch_id, status, from, to (ISO datetimes),
    page (default 1), limit (default 50, max 200).
    """
    tz = current_zone()
    filters = {
        "staff_id": int_arg(request.args, "staff_id"),
        "customer_id": int_arg(request.args, "customer_id"),
        "branch_id": int_arg(request.args, "branch_id"),
        "status": request.args.get("status"),
        "start": datetime_arg(request.args, "from", tz),
        "end": datetime_arg(request.args, "to", tz),
    }
    page = int_arg(request.args, "page", default=1)
    limit = int_arg(request.args, "limit", default=50)
    rows, total = list_appointments(g.auth.tenant_id, filters, page, limit)
    limit = min(max(1, limit), 200)
    return ok(
        data=[serialize_appointment(a, tz) for a in rows],
        pagination={
            "page": max(1, page),
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    )


@appointments_bp.route("/dashboard/today", methods=["GET"])
@require_capability("appointments", "view")
def get_today():
    """Today's counts by status for the front desk."""
    return ok(today_dashboard(g.auth.tenant_id, current_zone()))


@appointments_bp.route("/<int:appointment_id>", methods=["GET"])
@require_capability("appointments", "view")
def get_one(appointment_id):
    appointment = get_appointment(g.auth.tenant_id, appointment_id)
    return ok(serialize_appointment(appointment, current_zone()))


@appointments_bp.route("", methods=["POST"])
@require_capability("appointments", "create")
def create_appointment():
    """
    Book an appointment
    ---
    tags:
      - Appointments
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          required: [customer_id, service_id, staff_id, start_time]
          properties:
            customer_id:
              type: integer
            service_id:
              type: integer
            staff_id:
              type: integer
            start_time:
              type: string
              format: date-time
            end_time:
              type: string
              format: date-time
            promo_code:
              type: string
            notes:
              type: string
    responses:
      201:
        description: Appointment created
      409:
        description: Staff member has a conflicting appointment
    """
    data = json_body()
    tz = current_zone()
    appointment = book_appointment(
        g.auth.tenant_id,
        data.get("customer_id"),
        data.get("service_id"),
        data.get("staff_id"),
        datetime_arg(data, "start_time", tz, required=True),
        datetime_arg(data, "end_time", tz),
        branch_id=int_arg(data, "branch_id"),
        notes=data.get("notes"),
        promo_code=data.get("promo_code"),
        source=data.get("source") or "staff",
        status=data.get("status") or "scheduled",
        created_by=g.auth.user_id,
        tz=tz,
    )
    return ok(serialize_appointment(appointment, tz), 201)


@appointments_bp.route("/<int:appointment_id>", methods=["PATCH"])
@require_capability("appointments", "edit")
def edit_appointment(appointment_id):
    """
    PATCH /api/appointments/<appointment_id>
    Purpose: Change status, move the appointment or edit notes.
    Behavior:
    - Moving re-checks the staff calendar and returns 409 on overlap.
    - Completed, cancelled and no-show appointments only accept
      payment_status and customer_showed.
    - Cancelling needs appointments.cancel on top of appointments.edit.
    """
    data = json_body()
    if data.get("status") == "cancelled" and not g.auth.can("appointments", "cancel"):
        raise PermissionDeniedError("You do not have permission to cancel appointments")
    tz = current_zone()
    changes = {
        key: data[key]
        for key in ("status", "notes", "payment_status", "customer_showed",
                    "cancellation_reason", "staff_id")
        if key in data
    }
    if "start_time" in data:
        changes["start_time"] = datetime_arg(data, "start_time", tz)
    if "end_time" in data:
        changes["end_time"] = datetime_arg(data, "end_time", tz)

    appointment = update_appointment(
        g.auth.tenant_id, appointment_id, changes, actor_id=g.auth.user_id, tz=tz
    )
    return ok(serialize_appointment(appointment, tz))


@appointments_bp.route("/<int:appointment_id>/checkout", methods=["POST"])
@require_capability("pos", "checkout")
def checkout(appointment_id):
    """
    Complete an appointment and issue its invoice
    ---
    tags:
      - Checkout
    parameters:
      - name: body
        in: body
        schema:
          type: object
          properties:
            payment_method:
              type: string
              enum: [cash, card, gift_card]
            gift_card_code:
              type: string
            discount_amount:
              type: number
            discount_type:
              type: string
              enum: [fixed, percentage]
            tax_rate:
              type: number
            tip:
              type: number
            pay_now:
              type: boolean
    responses:
      201:
        description: Invoice created
      200:
        description: Appointment was already checked out; the existing invoice is returned
    """
    data = json_body()
    tax_rate = data.get("tax_rate")
    if tax_rate is None:
        tax_rate = current_app.config.get("DEFAULT_TAX_RATE", "5")
    result = checkout_appointment(
        g.auth.tenant_id,
        appointment_id,
        payment_method=data.get("payment_method") or "cash",
        gift_card_code=data.get("gift_card_code"),
        discount_amount=data.get("discount_amount") or 0,
        discount_type=data.get("discount_type") or "fixed",
        tax_rate=tax_rate,
        tip=data.get("tip") or 0,
        pay_now=bool_arg(data, "pay_now", default=True),
        actor_id=g.auth.user_id,
    )
    return ok(result.to_dict(), 200 if result.existing else 201)
