"""
Self-service booking links.

A token is 32 random bytes (hex encoded) bound to one appointment. Holding it
lets an unauthenticated customer view, cancel or reschedule that appointment.
Policy is re-read on every call, never taken from the time the token was
issued.
"""

import datetime
import logging
import secrets

from sqlalchemy import select

from backoffice.errors import (
    BackofficeError,
    ExpiredError,
    InvalidStateError,
    NotFoundError,
    PolicyViolationError,
    ValidationError,
)
from backoffice.extensions import db
from backoffice.models import BookingToken
from backoffice.services import events
from backoffice.services.appointment_lifecycle import (
    Actor,
    AppointmentStatus,
    get_appointment,
    is_terminal,
    serialize_appointment,
    transition,
)
from backoffice.services.booking_policy import load_policy
from backoffice.services.conflict_checker import reserve
from backoffice.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32
MANAGE_SCOPE = "manage"


def issue_token(appointment, ttl_days=30, now=None) -> BookingToken:
    """Add a manage token for the appointment to the current transaction."""
    now = now or utcnow()
    token = BookingToken(
        tenant_id=appointment.tenant_id,
        appointment_id=appointment.id,
        token=secrets.token_hex(TOKEN_BYTES),
        action_scope=MANAGE_SCOPE,
        expires_at=now + datetime.timedelta(days=ttl_days),
    )
    db.session.add(token)
    return token


def validate_token(tenant_id, token, now=None) -> BookingToken:
    now = now or utcnow()
    if not token:
        raise NotFoundError("Booking not found")
    record = db.session.scalar(
        select(BookingToken).where(
            BookingToken.token == token,
            BookingToken.tenant_id == tenant_id,
            BookingToken.action_scope == MANAGE_SCOPE,
        )
    )
    if record is None:
        raise NotFoundError("Booking not found")
    if record.expires_at <= now:
        raise ExpiredError("This booking link has expired")
    return record


def _can_cancel(appointment, policy, now):
    return (
        not is_terminal(appointment)
        and policy.allow_cancellation
        and now + policy.cancellation_window <= appointment.start_time
    )


def _can_reschedule(appointment, policy, now):
    return (
        not is_terminal(appointment)
        and policy.allow_reschedule
        and now + policy.cancellation_window <= appointment.start_time
    )


def describe_booking(tenant, token, now=None):
    """Payload for the customer's manage-booking page."""
    now = now or utcnow()
    record = validate_token(tenant.id, token, now)
    appointment = get_appointment(tenant.id, record.appointment_id)
    policy = load_policy(tenant.id)

    data = serialize_appointment(appointment, tz=policy.zone)
    data.update(
        {
            "can_cancel": _can_cancel(appointment, policy, now),
            "can_reschedule": _can_reschedule(appointment, policy, now),
            "cancellation_hours": policy.cancellation_hours,
            "token_expires_at": record.expires_at.isoformat(),
            "business": {
                "name": tenant.name,
                "slug": tenant.slug,
                "phone": tenant.phone,
                "email": tenant.email,
                "address": tenant.address,
            },
        }
    )
    return data


def cancel_with_token(tenant_id, token, reason=None, now=None):
    now = now or utcnow()
    try:
        record = validate_token(tenant_id, token, now)
        appointment = get_appointment(tenant_id, record.appointment_id, for_update=True)
        if appointment.status == AppointmentStatus.CANCELLED.value:
            raise InvalidStateError("Appointment is already cancelled")
        if is_terminal(appointment):
            raise InvalidStateError(f"Appointment is already {appointment.status}")

        policy = load_policy(tenant_id)
        note = f"[Online Cancel] {reason or 'Cancelled by customer'}"
        transition(
            appointment,
            AppointmentStatus.CANCELLED,
            actor=Actor.CUSTOMER,
            policy=policy,
            now=now,
            reason=reason or "Cancelled by customer",
        )
        appointment.notes = f"{appointment.notes}\n{note}" if appointment.notes else note
        record.used_at = now
        db.session.commit()
    except BackofficeError:
        db.session.rollback()
        raise

    logger.info("Appointment %s cancelled through booking link", appointment.id)
    events.event_bus.emit(
        events.APPOINTMENT_CANCELLED,
        {"tenant_id": tenant_id, "appointment_id": appointment.id, "actor_id": None},
    )
    return appointment


def reschedule_with_token(tenant_id, token, start, end=None, now=None):
    now = now or utcnow()
    try:
        record = validate_token(tenant_id, token, now)
        appointment = get_appointment(tenant_id, record.appointment_id, for_update=True)
        if is_terminal(appointment):
            raise InvalidStateError(f"Appointment is already {appointment.status}")

        policy = load_policy(tenant_id)
        if not policy.allow_reschedule:
            raise PolicyViolationError("Online rescheduling is not allowed", status_code=403)
        if now + policy.cancellation_window > appointment.start_time:
            raise PolicyViolationError(
                f"Changes must be made at least {policy.cancellation_hours} "
                "hours before the appointment"
            )
        if start < now + policy.min_advance:
            raise PolicyViolationError(
                f"Bookings must be made at least {policy.min_advance_hours} hours in advance"
            )
        if start >= now + datetime.timedelta(days=policy.max_advance_days):
            raise PolicyViolationError("This date is too far in advance")

        if end is None:
            end = start + (appointment.end_time - appointment.start_time)
        if end <= start:
            raise ValidationError("End time must be after start time")

        reserve(tenant_id, appointment.staff_id, start, end, exclude_id=appointment.id)
        appointment.start_time = start
        appointment.end_time = end
        db.session.commit()
    except BackofficeError:
        db.session.rollback()
        raise

    events.event_bus.emit(
        events.APPOINTMENT_RESCHEDULED,
        {"tenant_id": tenant_id, "appointment_id": appointment.id, "actor_id": None},
    )
    return appointment
