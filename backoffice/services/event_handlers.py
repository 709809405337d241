"""
Side effects of appointment and invoice events: reminders, customer emails and
the back-office notification feed. Each handler runs after the originating
transaction has committed, inside its own app context.
"""

import logging

from backoffice.extensions import db
from backoffice.models import Appointment, Invoice, Tenant
from backoffice.services import events
from backoffice.services.email_service import email_service
from backoffice.services.notifications import (
    notify_appointment,
    notify_appointment_cancelled,
    notify_pos,
)
from backoffice.services.reminders import (
    cancel_reminders,
    reschedule_reminders,
    schedule_reminders,
)
from backoffice.utils.timeutils import tenant_zone

logger = logging.getLogger(__name__)


def _load(payload):
    appointment = db.session.get(Appointment, payload["appointment_id"])
    if appointment is None:
        logger.warning("Appointment %s vanished before handler ran", payload["appointment_id"])
        return None, None
    return appointment, db.session.get(Tenant, appointment.tenant_id)


def _local(appointment, tenant):
    local_start = appointment.start_time.astimezone(tenant_zone(tenant.timezone))
    return local_start.strftime("%A, %B %d, %Y"), local_start.strftime("%I:%M %p")


def on_appointment_created(payload):
    appointment, tenant = _load(payload)
    if appointment is None:
        return
    schedule_reminders(appointment)

    customer = appointment.customer
    service_name = appointment.service.name if appointment.service else "Appointment"
    day, clock = _local(appointment, tenant)
    if customer is not None and customer.email:
        settings = tenant.booking_settings
        email_service.send_booking_confirmation(
            to_email=customer.email,
            customer_name=customer.full_name,
            business_name=tenant.name,
            service_name=service_name,
            appointment_date=day,
            appointment_time=clock,
            staff_name=appointment.staff.full_name if appointment.staff else None,
            manage_url=payload.get("manage_url"),
            confirmation_message=settings.confirmation_message if settings else None,
        )

    title = "New Online Booking" if payload.get("source") == "online" else "New Appointment"
    notify_appointment(
        tenant.id,
        title,
        f"{customer.full_name if customer else 'A customer'} booked {service_name} "
        f"on {day} at {clock}",
        {"appointment_id": appointment.id, "source": appointment.source},
    )


def on_appointment_cancelled(payload):
    appointment, tenant = _load(payload)
    if appointment is None:
        return
    cancel_reminders(appointment.id)

    customer = appointment.customer
    service_name = appointment.service.name if appointment.service else "Appointment"
    day, clock = _local(appointment, tenant)
    if customer is not None and customer.email:
        email_service.send_cancellation_notification(
            to_email=customer.email,
            customer_name=customer.full_name,
            business_name=tenant.name,
            service_name=service_name,
            appointment_date=day,
            appointment_time=clock,
            reason=appointment.cancellation_reason,
        )
    notify_appointment_cancelled(
        tenant.id,
        "Appointment Cancelled",
        f"{service_name} on {day} at {clock} was cancelled",
        {"appointment_id": appointment.id, "actor_id": payload.get("actor_id")},
    )


def on_appointment_rescheduled(payload):
    appointment, tenant = _load(payload)
    if appointment is None:
        return
    reschedule_reminders(appointment)
    day, clock = _local(appointment, tenant)
    notify_appointment(
        tenant.id,
        "Appointment Rescheduled",
        f"Appointment #{appointment.id} moved to {day} at {clock}",
        {"appointment_id": appointment.id},
    )


def on_status_changed(payload):
    # Reminders only go out for scheduled/confirmed appointments; the sweep
    # skips the rest, so pending rows just need closing out.
    if payload.get("status") in ("completed", "no_show"):
        cancel_reminders(payload["appointment_id"])


def on_checked_out(payload):
    invoice = db.session.get(Invoice, payload["invoice_id"])
    if invoice is None:
        return
    notify_pos(
        invoice.tenant_id,
        "Checkout Complete",
        f"Invoice {invoice.invoice_number} created for {invoice.total}",
        {"invoice_id": invoice.id, "appointment_id": payload.get("appointment_id")},
    )


def on_invoice_settled(payload):
    invoice = db.session.get(Invoice, payload["invoice_id"])
    if invoice is None:
        return
    notify_pos(
        invoice.tenant_id,
        "Payment Received",
        f"Invoice {invoice.invoice_number} paid by {invoice.payment_method}",
        {"invoice_id": invoice.id},
    )


HANDLERS = {
    events.APPOINTMENT_CREATED: on_appointment_created,
    events.APPOINTMENT_CANCELLED: on_appointment_cancelled,
    events.APPOINTMENT_RESCHEDULED: on_appointment_rescheduled,
    events.APPOINTMENT_STATUS_CHANGED: on_status_changed,
    events.APPOINTMENT_CHECKED_OUT: on_checked_out,
    events.INVOICE_SETTLED: on_invoice_settled,
}


def register_event_handlers(bus=None):
    bus = bus or events.event_bus
    for event_name, handler in HANDLERS.items():
        bus.subscribe(event_name, handler)
