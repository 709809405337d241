# Customer-facing booking pages, resolved by business slug (no login)
from flask import Blueprint, current_app, request

from backoffice.errors import ConflictError, ValidationError
from backoffice.services.availability import calculate_slots
from backoffice.services.booking_tokens import (
    cancel_with_token,
    describe_booking,
    reschedule_with_token,
)
from backoffice.services.pricing import preview_code
from backoffice.services.public_booking import (
    TAKEN_MESSAGE,
    business_profile,
    create_online_booking,
    resolve_tenant,
)
from backoffice.utils.http import date_arg, datetime_arg, int_arg, json_body, ok

public_booking_bp = Blueprint("public_booking", __name__, url_prefix="/api/public")


@public_booking_bp.route("/<slug>", methods=["GET"])
def get_business(slug):
    """
    Business info, booking settings, services and staff for the booking page
    ---
    tags:
      - Public Booking
    parameters:
      - name: slug
        in: path
        type: string
        required: true
    responses:
      200:
        description: Booking page data
      404:
        description: Online booking not available
    """
    tenant, _ = resolve_tenant(slug)
    return ok(business_profile(tenant))


@public_booking_bp.route("/<slug>/slots", methods=["GET"])
def get_slots(slug):
    tenant, policy = resolve_tenant(slug)
    staff_id = int_arg(request.args, "staff_id", required=True)
    service_id = int_arg(request.args, "service_id", required=True)
    on_date = date_arg(request.args)

    result = calculate_slots(tenant.id, staff_id, service_id, on_date, policy)
    body = {
        "data": [slot.to_dict(policy.zone) for slot in result.slots],
        "duration": result.duration,
    }
    if result.message:
        body["message"] = result.message
    return ok(**body)


@public_booking_bp.route("/<slug>/book", methods=["POST"])
def book(slug):
    """
    Book an appointment from the public booking page
    ---
    tags:
      - Public Booking
    parameters:
      - name: slug
        in: path
        type: string
        required: true
      - name: body
        in: body
        required: true
        schema:
          type: object
          required: [service_id, staff_id, start_time, customer_name]
          properties:
            service_id:
              type: integer
            staff_id:
              type: integer
            start_time:
              type: string
              format: date-time
            customer_name:
              type: string
            email:
              type: string
            phone:
              type: string
            promo_code:
              type: string
            notes:
              type: string
    responses:
      201:
        description: Booking created with its manage link
      409:
        description: The slot was taken in the meantime
    """
    tenant, policy = resolve_tenant(slug)
    data = json_body()
    if not data.get("customer_name"):
        raise ValidationError("customer_name is required")
    if not data.get("email") and not data.get("phone"):
        raise ValidationError("Email or phone is required")

    try:
        booking = create_online_booking(
            tenant,
            policy,
            int_arg(data, "service_id", required=True),
            int_arg(data, "staff_id", required=True),
            datetime_arg(data, "start_time", policy.zone, required=True),
            data["customer_name"],
            email=data.get("email"),
            phone=data.get("phone"),
            end=datetime_arg(data, "end_time", policy.zone),
            notes=data.get("notes"),
            promo_code=data.get("promo_code"),
            token_ttl_days=int(current_app.config.get("BOOKING_TOKEN_TTL_DAYS", 30)),
        )
    except ConflictError:
        raise ConflictError(TAKEN_MESSAGE)
    return ok(booking, 201)


@public_booking_bp.route("/<slug>/validate-code", methods=["POST"])
def validate_code(slug):
    tenant, policy = resolve_tenant(slug)
    data = json_body()
    if not data.get("code"):
        raise ValidationError("code is required")
    if data.get("subtotal") is None:
        raise ValidationError("subtotal is required")
    preview = preview_code(
        tenant.id,
        data["code"],
        data["subtotal"],
        service_id=int_arg(data, "service_id"),
        tz=policy.zone,
    )
    return ok(preview)


@public_booking_bp.route("/<slug>/manage/<token>", methods=["GET"])
def manage(slug, token):
    """
    GET /api/public/<slug>/manage/<token>
    Purpose: Appointment details behind a booking link, with whether the
    customer may still cancel or reschedule it.
    """
    tenant, _ = resolve_tenant(slug)
    return ok(describe_booking(tenant, token))


@public_booking_bp.route("/<slug>/manage/<token>/cancel", methods=["POST"])
def cancel(slug, token):
    tenant, _ = resolve_tenant(slug)
    data = json_body()
    appointment = cancel_with_token(tenant.id, token, reason=data.get("reason"))
    return ok(
        {"appointment_id": appointment.id, "status": appointment.status},
        message="Appointment cancelled",
    )


@public_booking_bp.route("/<slug>/manage/<token>/reschedule", methods=["POST"])
def reschedule(slug, token):
    tenant, policy = resolve_tenant(slug)
    data = json_body()
    try:
        appointment = reschedule_with_token(
            tenant.id,
            token,
            datetime_arg(data, "start_time", policy.zone, required=True),
            datetime_arg(data, "end_time", policy.zone),
        )
    except ConflictError:
        raise ConflictError(TAKEN_MESSAGE)
    return ok(
        {
            "appointment_id": appointment.id,
            "status": appointment.status,
            "start_time": appointment.start_time.isoformat(),
            "end_time": appointment.end_time.isoformat(),
        },
        message="Appointment rescheduled",
    )
