import datetime
from decimal import Decimal

import pytest
from helpers import at
from sqlalchemy import func, select

from backoffice.errors import InvalidStateError, SettlementError, ValidationError
from backoffice.models import (
    Appointment,
    Contact,
    GiftCard,
    GiftCardTransaction,
    Invoice,
    Service,
    Staff,
    Tenant,
)
from backoffice.services.appointment_lifecycle import book_appointment, update_appointment
from backoffice.services.checkout import (
    checkout_appointment,
    format_invoice_number,
    settle_invoice,
    void_invoice,
)
from backoffice.services.gift_cards import redeem_gift_card

DAY = datetime.date(2030, 1, 15)
NOW = at(DAY - datetime.timedelta(days=2), 8)


@pytest.fixture
def appointment(db, salon, staff, service, customer):
    return book_appointment(
        salon.id, customer.id, service.id, staff.id, at(DAY, 10), now=NOW
    )


@pytest.fixture
def gift_card(db, tenant):
    card = GiftCard(
        tenant_id=tenant.id,
        code="GIFT-100",
        initial_value=Decimal("100.00"),
        balance=Decimal("100.00"),
        status="active",
    )
    db.session.add(card)
    db.session.commit()
    return card


@pytest.mark.checkout
class TestCheckout:
    def test_cash_checkout_completes_and_pays(self, db, appointment):
        """Cash checkout completes the appointment and issues a paid invoice."""
        result = checkout_appointment(
            appointment.tenant_id, appointment.id, payment_method="cash", tax_rate=5, now=NOW
        )

        invoice = result.invoice
        assert result.existing is False
        assert invoice.invoice_number == "INV-0001"
        assert invoice.subtotal == Decimal("40.00")
        assert invoice.tax_amount == Decimal("2.00")
        assert invoice.total == Decimal("42.00")
        assert invoice.amount_paid == invoice.total
        assert invoice.status == "paid"
        refreshed = db.session.get(Appointment, appointment.id)
        assert refreshed.status == "completed"
        assert refreshed.payment_status == "paid"

    def test_checkout_is_idempotent(self, db, appointment):
        """A second checkout returns the same invoice instead of a new one."""
        first = checkout_appointment(appointment.tenant_id, appointment.id, now=NOW)
        second = checkout_appointment(appointment.tenant_id, appointment.id, now=NOW)

        assert second.existing is True
        assert second.invoice.id == first.invoice.id
        count = db.session.scalar(select(func.count(Invoice.id)))
        assert count == 1

    def test_tip_and_discount_lines(self, db, appointment):
        """The tip gets its own line and is never discounted."""
        result = checkout_appointment(
            appointment.tenant_id,
            appointment.id,
            discount_amount=50,
            discount_type="percentage",
            tax_rate=0,
            tip=10,
            now=NOW,
        )

        invoice = result.invoice
        assert invoice.discount_amount == Decimal("20.00")
        assert invoice.discount_type == "percentage"
        assert invoice.total == Decimal("30.00")
        assert [item.name for item in invoice.items] == ["Haircut", "Tip"]

    def test_booking_discount_carries_into_invoice(
        self, db, salon, staff, service, customer
    ):
        """A discount taken at booking is applied again at checkout."""
        appointment = book_appointment(
            salon.id, customer.id, service.id, staff.id, at(DAY, 14), now=NOW
        )
        appointment.discount_amount = Decimal("5.00")
        appointment.discount_type = "fixed"
        db.session.commit()

        result = checkout_appointment(salon.id, appointment.id, tax_rate=0, now=NOW)

        assert result.invoice.discount_amount == Decimal("5.00")
        assert result.invoice.total == Decimal("35.00")

    @pytest.mark.parametrize("status", ["cancelled", "no_show"])
    def test_unbillable_appointments_are_rejected(self, db, appointment, status):
        """Cancelled and no-show appointments cannot be checked out."""
        update_appointment(appointment.tenant_id, appointment.id, {"status": status}, now=NOW)

        with pytest.raises(InvalidStateError):
            checkout_appointment(appointment.tenant_id, appointment.id, now=NOW)

    def test_pay_later_leaves_invoice_open(self, db, appointment):
        """pay_now=false issues a sent, unpaid invoice."""
        result = checkout_appointment(
            appointment.tenant_id, appointment.id, pay_now=False, now=NOW
        )

        assert result.invoice.status == "sent"
        assert result.invoice.amount_paid == Decimal("0.00")
        assert db.session.get(Appointment, appointment.id).payment_status == "pending"

    def test_unknown_payment_method(self, db, appointment):
        """Only cash, card and gift_card are accepted."""
        with pytest.raises(ValidationError):
            checkout_appointment(
                appointment.tenant_id, appointment.id, payment_method="iou", now=NOW
            )


@pytest.mark.checkout
class TestInvoiceNumbering:
    def test_numbers_increase_per_tenant(self, db, salon, staff, service, customer):
        """Each tenant has its own INV-#### sequence."""
        numbers = []
        for hour in (9, 10):
            appointment = book_appointment(
                salon.id, customer.id, service.id, staff.id, at(DAY, hour), now=NOW
            )
            numbers.append(
                checkout_appointment(salon.id, appointment.id, now=NOW).invoice.invoice_number
            )

        other = Tenant(slug="other", name="Other Salon")
        db.session.add(other)
        db.session.flush()
        other_staff = Staff(tenant_id=other.id, full_name="Lee")
        other_service = Service(tenant_id=other.id, name="Trim", unit_price=Decimal("20"))
        other_customer = Contact(tenant_id=other.id, first_name="Jo")
        db.session.add_all([other_staff, other_service, other_customer])
        db.session.commit()
        foreign = book_appointment(
            other.id, other_customer.id, other_service.id, other_staff.id, at(DAY, 9), now=NOW
        )

        assert numbers == ["INV-0001", "INV-0002"]
        assert checkout_appointment(other.id, foreign.id, now=NOW).invoice.invoice_number == (
            "INV-0001"
        )

    def test_format_pads_to_four_digits(self):
        """Invoice numbers are zero padded."""
        assert format_invoice_number(7) == "INV-0007"
        assert format_invoice_number(12345) == "INV-12345"


@pytest.mark.checkout
class TestGiftCardSettlement:
    def test_gift_card_pays_invoice(self, db, appointment, gift_card):
        """A funded card settles the invoice and is debited."""
        result = checkout_appointment(
            appointment.tenant_id,
            appointment.id,
            payment_method="gift_card",
            gift_card_code="GIFT-100",
            tax_rate=5,
            now=NOW,
        )

        assert result.invoice.status == "paid"
        assert result.invoice.payment_method == "gift_card"
        card = db.session.get(GiftCard, gift_card.id)
        assert card.balance == Decimal("58.00")
        transactions = db.session.scalars(select(GiftCardTransaction)).all()
        assert [t.reference_id for t in transactions] == [result.invoice.id]

    def test_insufficient_balance_compensates(self, db, appointment, gift_card):
        """A failed redemption leaves an unpaid invoice and a pending appointment."""
        gift_card.balance = Decimal("10.00")
        db.session.commit()

        with pytest.raises(SettlementError) as exc:
            checkout_appointment(
                appointment.tenant_id,
                appointment.id,
                payment_method="gift_card",
                gift_card_code="GIFT-100",
                now=NOW,
            )

        assert "Insufficient gift card balance" in exc.value.message
        invoice = db.session.scalar(select(Invoice))
        assert invoice.status == "sent"
        assert invoice.amount_paid == Decimal("0.00")
        refreshed = db.session.get(Appointment, appointment.id)
        assert refreshed.payment_status == "pending"
        assert db.session.get(GiftCard, gift_card.id).balance == Decimal("10.00")

    def test_unknown_card_then_cash_resumes(self, db, appointment):
        """After a failed card the open invoice can be settled another way."""
        with pytest.raises(SettlementError):
            checkout_appointment(
                appointment.tenant_id,
                appointment.id,
                payment_method="gift_card",
                gift_card_code="NOPE",
                now=NOW,
            )
        invoice = db.session.scalar(select(Invoice))

        retry = checkout_appointment(appointment.tenant_id, appointment.id, now=NOW)
        assert retry.existing is True
        assert retry.invoice.status == "sent"

        paid = settle_invoice(appointment.tenant_id, invoice.id, payment_method="card", now=NOW)
        assert paid.status == "paid"
        assert db.session.get(Appointment, appointment.id).payment_status == "paid"

    def test_expired_card_is_marked_expired(self, db, tenant, gift_card):
        """Redeeming an expired card flags it and fails."""
        gift_card.expires_at = NOW - datetime.timedelta(days=1)
        db.session.commit()

        result = redeem_gift_card(tenant.id, "GIFT-100", 5, now=NOW)
        db.session.commit()

        assert result.success is False
        assert result.message == "Gift card has expired"
        assert db.session.get(GiftCard, gift_card.id).status == "expired"


@pytest.mark.checkout
class TestSettleInvoice:
    def test_partial_then_full_payment(self, db, appointment):
        """Partial payments accumulate until the invoice is paid."""
        invoice = checkout_appointment(
            appointment.tenant_id, appointment.id, pay_now=False, tax_rate=0, now=NOW
        ).invoice

        partial = settle_invoice(appointment.tenant_id, invoice.id, amount=15, now=NOW)
        assert partial.status == "partially_paid"
        assert partial.amount_paid == Decimal("15.00")

        paid = settle_invoice(appointment.tenant_id, invoice.id, now=NOW)
        assert paid.status == "paid"
        assert paid.amount_paid == Decimal("40.00")

    def test_paying_twice_is_a_no_op(self, db, appointment):
        """Settling a paid invoice returns it unchanged."""
        invoice = checkout_appointment(appointment.tenant_id, appointment.id, now=NOW).invoice

        again = settle_invoice(appointment.tenant_id, invoice.id, amount=1, now=NOW)

        assert again.status == "paid"
        assert again.amount_paid == invoice.total

    def test_overpayment_is_rejected(self, db, appointment):
        """A payment larger than the balance is invalid."""
        invoice = checkout_appointment(
            appointment.tenant_id, appointment.id, pay_now=False, now=NOW
        ).invoice

        with pytest.raises(ValidationError):
            settle_invoice(appointment.tenant_id, invoice.id, amount=1000, now=NOW)


@pytest.mark.checkout
class TestVoidInvoice:
    def test_void_allows_a_fresh_checkout(self, db, appointment):
        """Voiding an unpaid invoice lets the next checkout issue a new one."""
        first = checkout_appointment(
            appointment.tenant_id, appointment.id, pay_now=False, now=NOW
        ).invoice

        voided = void_invoice(appointment.tenant_id, first.id, reason="Wrong service")
        retry = checkout_appointment(appointment.tenant_id, appointment.id, now=NOW)

        assert voided.status == "void"
        assert retry.existing is False
        assert retry.invoice.id != first.id
        assert retry.invoice.invoice_number == "INV-0002"
        assert retry.invoice.status == "paid"

    def test_paid_invoice_cannot_be_voided(self, db, appointment):
        """Invoices with money against them stay as they are."""
        invoice = checkout_appointment(appointment.tenant_id, appointment.id, now=NOW).invoice

        with pytest.raises(InvalidStateError):
            void_invoice(appointment.tenant_id, invoice.id)

        assert db.session.get(Invoice, invoice.id).status == "paid"

    def test_void_resets_payment_status_and_blocks_payment(self, db, appointment):
        """A void invoice cannot be paid and the appointment goes back to pending."""
        invoice = checkout_appointment(
            appointment.tenant_id, appointment.id, pay_now=False, now=NOW
        ).invoice

        void_invoice(appointment.tenant_id, invoice.id)
        again = void_invoice(appointment.tenant_id, invoice.id)

        assert again.status == "void"
        assert db.session.get(Appointment, appointment.id).payment_status == "pending"
        with pytest.raises(InvalidStateError):
            settle_invoice(appointment.tenant_id, invoice.id, now=NOW)
