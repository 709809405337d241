"""
Customer-facing online booking, resolved by business slug instead of a login.
"""

import datetime
import logging

from sqlalchemy import select

from backoffice.errors import (
    BackofficeError,
    NotFoundError,
    PolicyViolationError,
    ValidationError,
)
from backoffice.extensions import db
from backoffice.models import Contact, Service, Staff, Tenant
from backoffice.services.appointment_lifecycle import (
    AppointmentStatus,
    book_appointment,
    emit_created,
)
from backoffice.services.booking_policy import (
    BookingPolicy,
    get_settings,
    settings_to_dict,
)
from backoffice.services.booking_tokens import issue_token
from backoffice.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = "Online booking not available"
TAKEN_MESSAGE = "This time slot is no longer available. Please select another."


def resolve_tenant(slug):
    """Tenant and its current policy; disabled or unknown tenants look the same."""
    tenant = db.session.scalar(select(Tenant).where(Tenant.slug == slug))
    if tenant is None or tenant.status != "active":
        raise NotFoundError(UNAVAILABLE_MESSAGE)
    policy = BookingPolicy.from_settings(get_settings(tenant.id), tenant.timezone)
    if not policy.is_enabled:
        raise NotFoundError(UNAVAILABLE_MESSAGE)
    return tenant, policy


def business_profile(tenant):
    settings = settings_to_dict(get_settings(tenant.id))
    services = db.session.scalars(
        select(Service)
        .where(Service.tenant_id == tenant.id, Service.is_active.is_(True))
        .order_by(Service.name)
    )
    staff = db.session.scalars(
        select(Staff)
        .where(Staff.tenant_id == tenant.id, Staff.is_active.is_(True))
        .order_by(Staff.full_name)
    )
    return {
        "business": {
            "name": tenant.name,
            "slug": tenant.slug,
            "timezone": tenant.timezone,
            "currency": tenant.currency,
            "phone": tenant.phone,
            "email": tenant.email,
            "address": tenant.address,
        },
        "settings": settings,
        "services": [
            {
                "id": s.id,
                "name": s.name,
                "duration": s.duration_minutes if settings["show_duration"] else None,
                "price": float(s.unit_price) if settings["show_prices"] else None,
                "currency": s.currency,
            }
            for s in services
        ],
        "staff": (
            [{"id": s.id, "name": s.full_name} for s in staff]
            if settings["allow_staff_selection"]
            else []
        ),
    }


def find_or_create_contact(tenant_id, customer_name, email=None, phone=None):
    """Match an existing contact by email, then phone; otherwise create one."""
    email = (email or "").strip().lower() or None
    phone = (phone or "").strip() or None
    if not email and not phone:
        raise ValidationError("Email or phone is required")

    contact = None
    if email:
        contact = db.session.scalar(
            select(Contact).where(Contact.tenant_id == tenant_id, Contact.email == email)
        )
    if contact is None and phone:
        contact = db.session.scalar(
            select(Contact).where(Contact.tenant_id == tenant_id, Contact.phone == phone)
        )
    if contact is not None:
        return contact

    name_parts = (customer_name or "").strip().split(" ", 1)
    contact = Contact(
        tenant_id=tenant_id,
        first_name=name_parts[0],
        last_name=name_parts[1] if len(name_parts) > 1 else None,
        email=email,
        phone=phone,
        source="online_booking",
    )
    db.session.add(contact)
    db.session.flush()
    return contact


def create_online_booking(
    tenant,
    policy: BookingPolicy,
    service_id,
    staff_id,
    start: datetime.datetime,
    customer_name,
    email=None,
    phone=None,
    end=None,
    notes=None,
    promo_code=None,
    token_ttl_days=30,
    now=None,
):
    """
    Book an appointment for a walk-up online customer and issue the manage
    link. Everything (contact, appointment, token, code usage) commits
    together.
    """
    now = now or utcnow()
    if not customer_name or not str(customer_name).strip():
        raise ValidationError("customer_name is required")
    if start < now + policy.min_advance:
        raise PolicyViolationError(
            f"Bookings must be made at least {policy.min_advance_hours} hours in advance"
        )
    if start >= now + datetime.timedelta(days=policy.max_advance_days):
        raise PolicyViolationError("This date is too far in advance")

    try:
        contact = find_or_create_contact(tenant.id, customer_name, email, phone)
        appointment = book_appointment(
            tenant.id,
            contact.id,
            service_id,
            staff_id,
            start,
            end,
            notes=notes,
            promo_code=promo_code,
            source="online",
            status=(
                AppointmentStatus.CONFIRMED
                if policy.auto_confirm
                else AppointmentStatus.SCHEDULED
            ),
            tz=policy.zone,
            now=now,
            commit=False,
        )
        token = issue_token(appointment, ttl_days=token_ttl_days, now=now)
        db.session.commit()
    except BackofficeError:
        db.session.rollback()
        raise

    manage_url = f"/book/{tenant.slug}/manage/{token.token}"
    logger.info("Online booking %s created for %s", appointment.id, tenant.slug)
    emit_created(appointment, manage_url=manage_url)
    return {
        "appointment_id": appointment.id,
        "status": appointment.status,
        "start_time": appointment.start_time.isoformat(),
        "end_time": appointment.end_time.isoformat(),
        "final_price": float(appointment.final_price),
        "discount_amount": float(appointment.discount_amount or 0),
        "manage_token": token.token,
        "manage_url": manage_url,
    }
