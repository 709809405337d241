"""
Appointment lifecycle: creation, status transitions and edits.

    scheduled -> confirmed -> in_progress
    any of those -> completed | cancelled | no_show

completed, cancelled and no_show are terminal. Only payment bookkeeping may
change on a terminal appointment.
"""

import datetime
import enum
import logging
from typing import Optional

from sqlalchemy import func, select

from backoffice.errors import (
    BackofficeError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    PolicyViolationError,
    ValidationError,
)
from backoffice.extensions import db
from backoffice.models import Appointment, Contact, Service, Staff
from backoffice.services import events
from backoffice.services.conflict_checker import reserve
from backoffice.services.pricing import ZERO, record_usage, resolve_code, to_money
from backoffice.utils.timeutils import UTC, isoformat, local_day_bounds, utcnow

logger = logging.getLogger(__name__)


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class Actor(str, enum.Enum):
    STAFF = "staff"
    CUSTOMER = "customer"


TERMINAL_STATUSES = frozenset(
    {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}
)

ALLOWED_TRANSITIONS = {
    AppointmentStatus.SCHEDULED: {
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.IN_PROGRESS,
    }
    | TERMINAL_STATUSES,
    AppointmentStatus.CONFIRMED: {AppointmentStatus.IN_PROGRESS} | TERMINAL_STATUSES,
    AppointmentStatus.IN_PROGRESS: set(TERMINAL_STATUSES),
    AppointmentStatus.COMPLETED: set(),
    AppointmentStatus.CANCELLED: set(),
    AppointmentStatus.NO_SHOW: set(),
}

INITIAL_STATUSES = (AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED)
PAYMENT_STATUSES = ("pending", "partially_paid", "paid", "refunded")
SOURCES = ("staff", "walk_in", "phone", "online")


def parse_status(value) -> AppointmentStatus:
    try:
        return AppointmentStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in AppointmentStatus)
        raise ValidationError(f"Invalid status '{value}'. Expected one of: {allowed}")


def is_terminal(appointment) -> bool:
    return AppointmentStatus(appointment.status) in TERMINAL_STATUSES


def check_customer_cancellation(appointment, policy, now):
    """Cancellation rules for customer self-service, evaluated at call time."""
    if policy is None or not policy.allow_cancellation:
        raise PolicyViolationError("Online cancellation is not allowed", status_code=403)
    if now + policy.cancellation_window > appointment.start_time:
        raise PolicyViolationError(
            f"Cancellations must be made at least {policy.cancellation_hours} "
            "hours before the appointment"
        )


def transition(appointment, target, actor=Actor.STAFF, policy=None, now=None, reason=None):
    """
    Move an appointment to `target`, enforcing the state machine.

    Does not commit. Completing shortens end_time to the actual completion
    time so the rest of the booked interval frees up.
    """
    now = now or utcnow()
    target = parse_status(target) if not isinstance(target, AppointmentStatus) else target
    current = AppointmentStatus(appointment.status)

    if current in TERMINAL_STATUSES:
        raise InvalidTransitionError(
            f"Cannot change status of a {current.value} appointment"
        )
    if target == current:
        return appointment
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Cannot move appointment from {current.value} to {target.value}"
        )

    if actor == Actor.CUSTOMER:
        if target != AppointmentStatus.CANCELLED:
            raise PermissionDeniedError("Customers can only cancel appointments")
        check_customer_cancellation(appointment, policy, now)

    if target == AppointmentStatus.COMPLETED:
        if appointment.start_time < now < appointment.end_time:
            appointment.end_time = now
    elif target == AppointmentStatus.CANCELLED:
        appointment.cancelled_at = now
        appointment.cancellation_reason = reason

    appointment.status = target.value
    return appointment


def get_appointment(tenant_id, appointment_id, for_update=False) -> Appointment:
    stmt = select(Appointment).where(
        Appointment.id == appointment_id, Appointment.tenant_id == tenant_id
    )
    if for_update:
        stmt = stmt.with_for_update()
    appointment = db.session.scalar(stmt)
    if appointment is None:
        raise NotFoundError("Appointment not found")
    return appointment


def _tenant_row(model, tenant_id, row_id, label):
    row = db.session.get(model, row_id) if row_id is not None else None
    if row is None or row.tenant_id != tenant_id:
        raise NotFoundError(f"{label} not found")
    return row


def _require_int(value, field):
    if value is None or value == "":
        raise ValidationError(f"{field} is required")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer")


def emit_created(appointment, manage_url=None):
    events.event_bus.emit(
        events.APPOINTMENT_CREATED,
        {
            "tenant_id": appointment.tenant_id,
            "appointment_id": appointment.id,
            "source": appointment.source,
            "manage_url": manage_url,
        },
    )


def book_appointment(
    tenant_id,
    customer_id,
    service_id,
    staff_id,
    start: datetime.datetime,
    end: Optional[datetime.datetime] = None,
    branch_id=None,
    notes=None,
    promo_code=None,
    source="staff",
    status=AppointmentStatus.SCHEDULED,
    created_by=None,
    tz=UTC,
    now=None,
    commit=True,
) -> Appointment:
    """
    Reserve the staff calendar and insert the appointment in one transaction.

    A promo code that does not apply is ignored; the booking goes ahead at
    full price. With commit=False the caller finishes the transaction (and
    emits appointment.created) itself.
    """
    now = now or utcnow()
    customer_id = _require_int(customer_id, "customer_id")
    service_id = _require_int(service_id, "service_id")
    staff_id = _require_int(staff_id, "staff_id")
    status = parse_status(status) if not isinstance(status, AppointmentStatus) else status
    if status not in INITIAL_STATUSES:
        raise ValidationError("New appointments must be scheduled or confirmed")
    if source not in SOURCES:
        raise ValidationError(f"Invalid source '{source}'")

    try:
        service = _tenant_row(Service, tenant_id, service_id, "Service")
        staff = _tenant_row(Staff, tenant_id, staff_id, "Staff member")
        _tenant_row(Contact, tenant_id, customer_id, "Customer")
        if not service.is_active:
            raise ValidationError("Service is not available")
        if not staff.is_active:
            raise ValidationError("Staff member is not available")

        if end is None:
            end = start + datetime.timedelta(minutes=service.duration_minutes)
        if end <= start:
            raise ValidationError("End time must be after start time")

        reserve(tenant_id, staff_id, start, end)

        price = to_money(service.unit_price)
        resolution = None
        if promo_code:
            resolution = resolve_code(
                tenant_id, promo_code, price, service_id=service_id, now=now, tz=tz, lock=True
            )
        discount = resolution.discount_amount if resolution else ZERO

        appointment = Appointment(
            tenant_id=tenant_id,
            branch_id=branch_id,
            customer_id=customer_id,
            service_id=service_id,
            staff_id=staff_id,
            start_time=start,
            end_time=end,
            status=status.value,
            source=source,
            payment_status="pending",
            notes=notes,
            promotion_id=resolution.promotion.id if resolution else None,
            discount_code_id=resolution.code.id if resolution else None,
            discount_amount=discount,
            discount_type=resolution.discount_type if resolution else None,
            original_price=price,
            final_price=max(ZERO, price - discount),
            created_by=created_by,
        )
        db.session.add(appointment)
        db.session.flush()

        if resolution:
            record_usage(
                tenant_id,
                resolution,
                discount,
                customer_id=customer_id,
                appointment_id=appointment.id,
            )

        if commit:
            db.session.commit()
    except BackofficeError:
        db.session.rollback()
        raise

    if commit:
        logger.info(
            "Booked appointment %s for staff %s at %s", appointment.id, staff_id, start
        )
        emit_created(appointment)
    return appointment


def update_appointment(tenant_id, appointment_id, changes, actor_id=None, tz=UTC, now=None):
    """
    Apply a staff edit. Time or staff changes re-reserve the calendar
    (excluding this appointment); status changes go through `transition`.
    """
    now = now or utcnow()
    target = parse_status(changes["status"]) if changes.get("status") else None
    if "payment_status" in changes and changes["payment_status"] not in PAYMENT_STATUSES:
        raise ValidationError("Invalid payment_status")

    try:
        appointment = get_appointment(tenant_id, appointment_id, for_update=True)
        previous_status = appointment.status

        new_start = appointment.start_time
        new_end = appointment.end_time
        new_staff = appointment.staff_id
        if changes.get("start_time") is not None:
            new_start = changes["start_time"]
            if changes.get("end_time") is None:
                new_end = new_start + (appointment.end_time - appointment.start_time)
        if changes.get("end_time") is not None:
            new_end = changes["end_time"]
        if changes.get("staff_id") is not None:
            new_staff = _require_int(changes["staff_id"], "staff_id")
        moved = (
            new_start != appointment.start_time
            or new_end != appointment.end_time
            or new_staff != appointment.staff_id
        )

        if is_terminal(appointment):
            # Current status echoed back with a bookkeeping edit
            if target is not None and target.value == appointment.status:
                target = None
            if target is not None:
                transition(appointment, target, now=now)
            if moved or "notes" in changes:
                raise InvalidStateError(
                    f"A {appointment.status} appointment can no longer be changed"
                )

        if moved:
            if new_staff != appointment.staff_id:
                staff = _tenant_row(Staff, tenant_id, new_staff, "Staff member")
                if not staff.is_active:
                    raise ValidationError("Staff member is not available")
            reserve(tenant_id, new_staff, new_start, new_end, exclude_id=appointment.id)
            appointment.start_time = new_start
            appointment.end_time = new_end
            appointment.staff_id = new_staff

        if "notes" in changes:
            appointment.notes = changes["notes"]
        if "payment_status" in changes:
            appointment.payment_status = changes["payment_status"]
        if "customer_showed" in changes:
            appointment.customer_showed = bool(changes["customer_showed"])
        if target is not None:
            transition(
                appointment,
                target,
                actor=Actor.STAFF,
                now=now,
                reason=changes.get("cancellation_reason"),
            )

        db.session.commit()
    except BackofficeError:
        db.session.rollback()
        raise

    payload = {"tenant_id": tenant_id, "appointment_id": appointment.id, "actor_id": actor_id}
    if moved:
        events.event_bus.emit(events.APPOINTMENT_RESCHEDULED, payload)
    if appointment.status != previous_status:
        if appointment.status == AppointmentStatus.CANCELLED.value:
            events.event_bus.emit(events.APPOINTMENT_CANCELLED, payload)
        else:
            events.event_bus.emit(
                events.APPOINTMENT_STATUS_CHANGED,
                dict(payload, status=appointment.status, previous_status=previous_status),
            )
    return appointment


def _money(value):
    return float(value) if value is not None else None


def serialize_appointment(appointment, tz=UTC):
    customer = appointment.customer
    service = appointment.service
    staff = appointment.staff
    return {
        "id": appointment.id,
        "tenant_id": appointment.tenant_id,
        "branch_id": appointment.branch_id,
        "customer_id": appointment.customer_id,
        "customer_name": customer.full_name if customer else None,
        "service_id": appointment.service_id,
        "service_name": service.name if service else None,
        "staff_id": appointment.staff_id,
        "staff_name": staff.full_name if staff else None,
        "start_time": isoformat(appointment.start_time),
        "end_time": isoformat(appointment.end_time),
        "local_start": appointment.start_time.astimezone(tz).strftime("%Y-%m-%d %H:%M"),
        "status": appointment.status,
        "source": appointment.source,
        "payment_status": appointment.payment_status,
        "notes": appointment.notes,
        "promotion_id": appointment.promotion_id,
        "discount_code_id": appointment.discount_code_id,
        "discount_amount": _money(appointment.discount_amount),
        "discount_type": appointment.discount_type,
        "original_price": _money(appointment.original_price),
        "final_price": _money(appointment.final_price),
        "customer_showed": appointment.customer_showed,
        "cancelled_at": isoformat(appointment.cancelled_at),
        "cancellation_reason": appointment.cancellation_reason,
        "created_at": isoformat(appointment.created_at),
    }


def list_appointments(tenant_id, filters=None, page=1, limit=50):
    """Filtered, paginated appointment listing. Returns (rows, total)."""
    filters = filters or {}
    stmt = select(Appointment).where(Appointment.tenant_id == tenant_id)
    if filters.get("staff_id"):
        stmt = stmt.where(Appointment.staff_id == filters["staff_id"])
    if filters.get("customer_id"):
        stmt = stmt.where(Appointment.customer_id == filters["customer_id"])
    if filters.get("branch_id"):
        stmt = stmt.where(Appointment.branch_id == filters["branch_id"])
    if filters.get("status"):
        stmt = stmt.where(Appointment.status == parse_status(filters["status"]).value)
    if filters.get("start"):
        stmt = stmt.where(Appointment.start_time >= filters["start"])
    if filters.get("end"):
        stmt = stmt.where(Appointment.start_time < filters["end"])

    total = db.session.scalar(select(func.count()).select_from(stmt.subquery()))
    page = max(1, page)
    limit = min(max(1, limit), 200)
    rows = db.session.scalars(
        stmt.order_by(Appointment.start_time).offset((page - 1) * limit).limit(limit)
    )
    return list(rows), total


def today_dashboard(tenant_id, tz=UTC, now=None):
    """Counts by status and completed revenue for the tenant's local today."""
    now = now or utcnow()
    day_start, day_end = local_day_bounds(now.astimezone(tz).date(), tz)
    rows = db.session.execute(
        select(Appointment.status, func.count(Appointment.id))
        .where(
            Appointment.tenant_id == tenant_id,
            Appointment.start_time >= day_start,
            Appointment.start_time < day_end,
        )
        .group_by(Appointment.status)
    ).all()
    by_status = {status.value: 0 for status in AppointmentStatus}
    for status, count in rows:
        by_status[status] = count

    revenue = db.session.scalar(
        select(func.coalesce(func.sum(Appointment.final_price), 0)).where(
            Appointment.tenant_id == tenant_id,
            Appointment.start_time >= day_start,
            Appointment.start_time < day_end,
            Appointment.status == AppointmentStatus.COMPLETED.value,
        )
    )
    upcoming = db.session.scalar(
        select(func.count(Appointment.id)).where(
            Appointment.tenant_id == tenant_id,
            Appointment.start_time >= now,
            Appointment.start_time < day_end,
            Appointment.status.in_(
                [AppointmentStatus.SCHEDULED.value, AppointmentStatus.CONFIRMED.value]
            ),
        )
    )
    return {
        "date": now.astimezone(tz).date().isoformat(),
        "total": sum(by_status.values()),
        "by_status": by_status,
        "upcoming": upcoming,
        "completed_revenue": float(revenue or 0),
    }
