"""
Appointment reminders.

Reminder rows are created when an appointment is booked and swept by the
scheduler. A reminder is claimed by inserting into reminder_dispatch_log,
whose (appointment_id, reminder_type) key is unique, so overlapping sweeps
cannot send the same reminder twice.
"""

import datetime
import logging

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from backoffice.extensions import db
from backoffice.models import (
    Appointment,
    AppointmentReminder,
    ReminderDispatchLog,
    Tenant,
)
from backoffice.services.email_service import email_service
from backoffice.utils.timeutils import tenant_zone, utcnow

logger = logging.getLogger(__name__)

REMINDER_TIMINGS = {
    "24h": datetime.timedelta(hours=24),
    "2h": datetime.timedelta(hours=2),
    "30m": datetime.timedelta(minutes=30),
}

HUMAN_TIMINGS = {"24h": "24 hours", "2h": "2 hours", "30m": "30 minutes"}

ACTIVE_STATUSES = ("scheduled", "confirmed")


def schedule_reminders(appointment, now=None):
    """Create pending reminders for every timing still in the future."""
    now = now or utcnow()
    created = []
    for reminder_type, offset in REMINDER_TIMINGS.items():
        send_at = appointment.start_time - offset
        if send_at <= now:
            continue
        reminder = AppointmentReminder(
            tenant_id=appointment.tenant_id,
            appointment_id=appointment.id,
            reminder_type=reminder_type,
            send_at=send_at,
            status="pending",
        )
        db.session.add(reminder)
        created.append(reminder)
    db.session.commit()
    return created


def cancel_reminders(appointment_id):
    db.session.execute(
        update(AppointmentReminder)
        .where(
            AppointmentReminder.appointment_id == appointment_id,
            AppointmentReminder.status == "pending",
        )
        .values(status="cancelled")
    )
    db.session.commit()


def reschedule_reminders(appointment, now=None):
    # Reminders sent for the old time do not cover the new one
    db.session.execute(
        delete(ReminderDispatchLog).where(
            ReminderDispatchLog.appointment_id == appointment.id
        )
    )
    cancel_reminders(appointment.id)
    return schedule_reminders(appointment, now=now)


def _claim(reminder) -> bool:
    try:
        db.session.add(
            ReminderDispatchLog(
                appointment_id=reminder.appointment_id,
                reminder_type=reminder.reminder_type,
            )
        )
        db.session.flush()
        return True
    except IntegrityError:
        db.session.rollback()
        return False


def _send(reminder, appointment):
    tenant = db.session.get(Tenant, appointment.tenant_id)
    customer = appointment.customer
    if customer is None or not customer.email:
        return {"success": False, "error": "Customer has no email"}
    local_start = appointment.start_time.astimezone(tenant_zone(tenant.timezone))
    return email_service.send_appointment_reminder(
        to_email=customer.email,
        customer_name=customer.full_name,
        business_name=tenant.name,
        service_name=appointment.service.name if appointment.service else "Appointment",
        appointment_date=local_start.strftime("%A, %B %d, %Y"),
        appointment_time=local_start.strftime("%I:%M %p"),
        hours_until=HUMAN_TIMINGS.get(reminder.reminder_type, reminder.reminder_type),
    )


def dispatch_due_reminders(now=None, limit=100):
    """Send every pending reminder whose send_at has passed. Returns sent count."""
    now = now or utcnow()
    due = list(
        db.session.scalars(
            select(AppointmentReminder)
            .where(
                AppointmentReminder.status == "pending",
                AppointmentReminder.send_at <= now,
            )
            .order_by(AppointmentReminder.send_at)
            .limit(limit)
        )
    )

    sent = 0
    for reminder in due:
        appointment = db.session.get(Appointment, reminder.appointment_id)
        if appointment is None or appointment.status not in ACTIVE_STATUSES:
            reminder.status = "cancelled"
            db.session.commit()
            continue

        if not _claim(reminder):
            logger.info(
                "Reminder %s for appointment %s already dispatched",
                reminder.reminder_type,
                reminder.appointment_id,
            )
            db.session.execute(
                update(AppointmentReminder)
                .where(AppointmentReminder.id == reminder.id)
                .values(status="sent")
            )
            db.session.commit()
            continue

        result = _send(reminder, appointment)
        reminder.status = "sent" if result.get("success") else "failed"
        db.session.commit()
        if result.get("success"):
            sent += 1
        else:
            logger.warning(
                "Reminder %s for appointment %s failed: %s",
                reminder.reminder_type,
                appointment.id,
                result.get("error"),
            )
    return sent
