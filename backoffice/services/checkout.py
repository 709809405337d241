"""
Checkout: complete an appointment, invoice it and collect payment.

Cash and card payments are recorded in the same transaction that creates the
invoice. Gift card payments run in two steps:

1. complete the appointment and commit the invoice unpaid (status "sent");
2. redeem the card and mark invoice + appointment paid in one commit.

If step 2 fails the invoice is explicitly left unpaid and the appointment's
payment_status pending. An invoice that exists but is unpaid is the state a
retry (or settle_invoice) resumes from; an invoice is never marked paid
without the money having been collected.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from backoffice.errors import (
    BackofficeError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    SettlementError,
    ValidationError,
)
from backoffice.extensions import db
from backoffice.models import Invoice, InvoiceItem, InvoiceSequence, Tenant
from backoffice.services import events
from backoffice.services.appointment_lifecycle import (
    AppointmentStatus,
    get_appointment,
    transition,
)
from backoffice.services.gift_cards import redeem_gift_card
from backoffice.services.pricing import ZERO, price_breakdown, to_money
from backoffice.utils.timeutils import isoformat, utcnow

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("cash", "card", "gift_card")
UNBILLABLE_STATUSES = (AppointmentStatus.CANCELLED.value, AppointmentStatus.NO_SHOW.value)


@dataclass
class CheckoutResult:
    appointment_id: int
    invoice: Invoice
    existing: bool = False

    def to_dict(self):
        return {
            "appointment_id": self.appointment_id,
            "invoice_id": self.invoice.id,
            "invoice_number": self.invoice.invoice_number,
            "total": float(self.invoice.total),
            "amount_paid": float(self.invoice.amount_paid),
            "status": self.invoice.status,
            "payment_method": self.invoice.payment_method,
            "existing": self.existing,
        }


def format_invoice_number(number: int) -> str:
    return f"INV-{number:04d}"


def next_invoice_number(tenant_id) -> str:
    """Take the next per-tenant invoice number inside the caller's transaction."""
    sequence = db.session.scalar(
        select(InvoiceSequence)
        .where(InvoiceSequence.tenant_id == tenant_id)
        .with_for_update()
    )
    if sequence is None:
        try:
            db.session.add(InvoiceSequence(tenant_id=tenant_id, last_number=1))
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            raise ConflictError("Invoice numbering is busy, please try again")
        return format_invoice_number(1)

    db.session.execute(
        update(InvoiceSequence)
        .where(InvoiceSequence.tenant_id == tenant_id)
        .values(last_number=InvoiceSequence.last_number + 1)
    )
    db.session.expire(sequence)
    return format_invoice_number(sequence.last_number)


def find_active_invoice(tenant_id, appointment_id):
    return db.session.scalar(
        select(Invoice)
        .where(
            Invoice.tenant_id == tenant_id,
            Invoice.appointment_id == appointment_id,
            Invoice.status != "void",
        )
        .order_by(Invoice.id)
    )


def _mark_paid(invoice, appointment, payment_method, now, amount=None):
    invoice.amount_paid = to_money(amount if amount is not None else invoice.total)
    invoice.status = "paid" if invoice.amount_paid >= invoice.total else "partially_paid"
    invoice.payment_method = payment_method
    if invoice.status == "paid":
        invoice.paid_at = now
    if appointment is not None:
        appointment.payment_status = invoice.status


def _mark_unpaid(invoice, appointment):
    invoice.status = "sent"
    invoice.amount_paid = ZERO
    invoice.paid_at = None
    if appointment is not None:
        appointment.payment_status = "pending"


def _validate_request(payment_method, gift_card_code, discount_type, pay_now):
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(
            f"payment_method must be one of: {', '.join(PAYMENT_METHODS)}"
        )
    if discount_type not in ("fixed", "percentage"):
        raise ValidationError("discount_type must be 'fixed' or 'percentage'")
    if payment_method == "gift_card" and pay_now and not gift_card_code:
        raise ValidationError("Gift card code is required")


def checkout_appointment(
    tenant_id,
    appointment_id,
    payment_method="cash",
    gift_card_code=None,
    discount_amount=0,
    discount_type="fixed",
    tax_rate=5,
    tip=0,
    pay_now=True,
    actor_id=None,
    now=None,
) -> CheckoutResult:
    now = now or utcnow()
    _validate_request(payment_method, gift_card_code, discount_type, pay_now)
    override = to_money(discount_amount, "discount_amount")
    tip = to_money(tip, "tip")
    rate = to_money(tax_rate, "tax_rate")
    if override < 0 or tip < 0 or rate < 0:
        raise ValidationError("Amounts cannot be negative")

    try:
        appointment = get_appointment(tenant_id, appointment_id, for_update=True)
        if appointment.status in UNBILLABLE_STATUSES:
            raise InvalidStateError(
                f"Cannot checkout a {appointment.status} appointment"
            )

        existing = find_active_invoice(tenant_id, appointment.id)
        if existing is not None:
            db.session.rollback()
            logger.info(
                "Checkout retry for appointment %s returned invoice %s",
                appointment_id,
                existing.invoice_number,
            )
            return CheckoutResult(appointment_id, existing, existing=True)

        if appointment.status != AppointmentStatus.COMPLETED.value:
            transition(appointment, AppointmentStatus.COMPLETED, now=now)

        service = appointment.service
        service_price = to_money(
            appointment.original_price
            if appointment.original_price is not None
            else service.unit_price
        )
        breakdown = price_breakdown(
            service_price,
            tip=tip,
            tax_rate=rate,
            discounts=[
                ("fixed", appointment.discount_amount or 0),
                (discount_type, override),
            ],
        )
        discount_type_applied = breakdown.discount_type
        if override == 0 and appointment.discount_type:
            discount_type_applied = appointment.discount_type

        tenant = db.session.get(Tenant, tenant_id)
        invoice = Invoice(
            tenant_id=tenant_id,
            invoice_number=next_invoice_number(tenant_id),
            appointment_id=appointment.id,
            customer_id=appointment.customer_id,
            subtotal=breakdown.subtotal,
            discount_amount=breakdown.discount_amount,
            discount_type=discount_type_applied,
            tax_rate=breakdown.tax_rate,
            tax_amount=breakdown.tax_amount,
            tip=breakdown.tip,
            total=breakdown.total,
            amount_paid=ZERO,
            currency=service.currency or (tenant.currency if tenant else "USD"),
            status="sent",
            created_by=actor_id,
        )
        db.session.add(invoice)
        db.session.flush()

        db.session.add(
            InvoiceItem(
                invoice_id=invoice.id,
                item_type="service",
                item_id=service.id,
                name=service.name,
                quantity=1,
                unit_price=service_price,
                total=service_price,
            )
        )
        if tip > 0:
            db.session.add(
                InvoiceItem(
                    invoice_id=invoice.id,
                    item_type="custom",
                    name="Tip",
                    quantity=1,
                    unit_price=tip,
                    total=tip,
                )
            )

        settle_now = pay_now and (payment_method != "gift_card" or invoice.total <= 0)
        if settle_now:
            _mark_paid(invoice, appointment, payment_method, now)
        else:
            _mark_unpaid(invoice, appointment)
        db.session.commit()
    except BackofficeError:
        db.session.rollback()
        raise

    if pay_now and not settle_now:
        _settle_with_gift_card(tenant_id, invoice, appointment, gift_card_code, now)

    logger.info(
        "Checked out appointment %s as %s (%s %s)",
        appointment.id,
        invoice.invoice_number,
        invoice.total,
        invoice.status,
    )
    events.event_bus.emit(
        events.APPOINTMENT_CHECKED_OUT,
        {
            "tenant_id": tenant_id,
            "appointment_id": appointment.id,
            "invoice_id": invoice.id,
            "transaction_number": invoice.invoice_number,
            "total": float(invoice.total),
            "payment_method": payment_method if pay_now else None,
            "status": invoice.status,
        },
    )
    return CheckoutResult(appointment.id, invoice)


def _settle_with_gift_card(tenant_id, invoice, appointment, code, now):
    """Redeem the invoice total from a gift card, compensating on failure."""
    invoice_id = invoice.id
    try:
        result = redeem_gift_card(
            tenant_id,
            code,
            invoice.total,
            meta={"reference_type": "invoice", "reference_id": invoice_id},
            now=now,
        )
        if not result.success:
            raise SettlementError(result.message)
        _mark_paid(invoice, appointment, "gift_card", now)
        db.session.commit()
    except SettlementError:
        # Keep whatever the card lookup recorded (e.g. expiry) and leave the
        # invoice unpaid
        _mark_unpaid(invoice, appointment)
        db.session.commit()
        logger.warning("Gift card settlement failed for invoice %s", invoice_id)
        raise
    except Exception:
        db.session.rollback()
        logger.exception("Gift card settlement crashed for invoice %s", invoice_id)
        raise


def get_invoice(tenant_id, invoice_id, for_update=False) -> Invoice:
    stmt = select(Invoice).where(Invoice.id == invoice_id, Invoice.tenant_id == tenant_id)
    if for_update:
        stmt = stmt.with_for_update()
    invoice = db.session.scalar(stmt)
    if invoice is None:
        raise NotFoundError("Invoice not found")
    return invoice


def settle_invoice(
    tenant_id,
    invoice_id,
    payment_method="cash",
    gift_card_code=None,
    amount=None,
    now=None,
) -> Invoice:
    """
    Record a payment against an unpaid invoice. Paying a paid invoice is a
    no-op, which makes resuming an interrupted checkout safe.
    """
    now = now or utcnow()
    _validate_request(payment_method, gift_card_code, "fixed", True)

    try:
        invoice = get_invoice(tenant_id, invoice_id, for_update=True)
        if invoice.status == "paid":
            db.session.rollback()
            return invoice
        if invoice.status == "void":
            raise InvalidStateError("Cannot pay a void invoice")

        outstanding = to_money(invoice.total) - to_money(invoice.amount_paid)
        payment = to_money(amount, "amount") if amount not in (None, "") else outstanding
        if payment <= 0:
            raise ValidationError("Valid amount required")
        if payment > outstanding:
            raise ValidationError(f"Payment exceeds the outstanding balance of {outstanding}")

        appointment = invoice.appointment
        if payment_method == "gift_card":
            result = redeem_gift_card(
                tenant_id,
                gift_card_code,
                payment,
                meta={"reference_type": "invoice", "reference_id": invoice.id},
                now=now,
            )
            if not result.success:
                db.session.commit()
                raise SettlementError(result.message)

        _mark_paid(
            invoice,
            appointment,
            payment_method,
            now,
            amount=to_money(invoice.amount_paid) + payment,
        )
        db.session.commit()
    except BackofficeError:
        db.session.rollback()
        raise

    events.event_bus.emit(
        events.INVOICE_SETTLED,
        {
            "tenant_id": tenant_id,
            "invoice_id": invoice.id,
            "invoice_number": invoice.invoice_number,
            "amount": float(payment),
            "status": invoice.status,
            "payment_method": payment_method,
        },
    )
    return invoice


def void_invoice(tenant_id, invoice_id, reason=None) -> Invoice:
    """
    Void an invoice nothing has been paid against, so the appointment can be
    checked out again. Voiding a void invoice is a no-op.
    """
    try:
        invoice = get_invoice(tenant_id, invoice_id, for_update=True)
        if invoice.status == "void":
            db.session.rollback()
            return invoice
        if to_money(invoice.amount_paid) > 0:
            raise InvalidStateError("Cannot void an invoice with payments recorded")

        invoice.status = "void"
        appointment = invoice.appointment
        if appointment is not None:
            appointment.payment_status = "pending"
        db.session.commit()
    except BackofficeError:
        db.session.rollback()
        raise

    logger.info("Voided invoice %s (%s)", invoice.invoice_number, reason or "no reason given")
    return invoice


def serialize_invoice(invoice):
    return {
        "id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "appointment_id": invoice.appointment_id,
        "customer_id": invoice.customer_id,
        "subtotal": float(invoice.subtotal),
        "discount_amount": float(invoice.discount_amount),
        "discount_type": invoice.discount_type,
        "tax_rate": float(invoice.tax_rate),
        "tax_amount": float(invoice.tax_amount),
        "tip": float(invoice.tip),
        "total": float(invoice.total),
        "amount_paid": float(invoice.amount_paid),
        "currency": invoice.currency,
        "status": invoice.status,
        "payment_method": invoice.payment_method,
        "paid_at": isoformat(invoice.paid_at),
        "created_at": isoformat(invoice.created_at),
        "items": [
            {
                "id": item.id,
                "item_type": item.item_type,
                "item_id": item.item_id,
                "name": item.name,
                "quantity": item.quantity,
                "unit_price": float(item.unit_price),
                "total": float(item.total),
            }
            for item in invoice.items
        ],
    }
