from datetime import timezone
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKeyConstraint,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    Time,
    TypeDecorator,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, relationship

from backoffice.utils.timeutils import utcnow

Base = declarative_base()
metadata = Base.metadata


class UTCDateTime(TypeDecorator):
    """Stores instants as naive UTC and hands them back timezone-aware."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetime passed where an aware instant is required")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


Money = Numeric(10, 2, asdecimal=True)


class SchemaMigration(Base):
    __tablename__ = "schema_migrations"

    version = mapped_column(Integer, primary_key=True, autoincrement=False)
    name = mapped_column(String(128), nullable=False)
    applied_at = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class Tenant(Base):
    __tablename__ = "tenants"

    id = mapped_column(Integer, primary_key=True)
    slug = mapped_column(String(64), nullable=False, unique=True)
    name = mapped_column(String(255), nullable=False)
    timezone = mapped_column(String(64), nullable=False, default="UTC")
    currency = mapped_column(String(3), nullable=False, default="USD")
    status = mapped_column(String(16), nullable=False, default="active")
    email = mapped_column(String(255))
    phone = mapped_column(String(32))
    address = mapped_column(String(255))
    created_at = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    booking_settings: Mapped[Optional["OnlineBookingSettings"]] = relationship(
        "OnlineBookingSettings", back_populates="tenant", uselist=False
    )


class Contact(Base):
    __tablename__ = "contacts"
    __table_args__ = (
        ForeignKeyConstraint(["tenant_id"], ["tenants.id"], name="fk_contact_tenant"),
        Index("ix_contact_tenant_email", "tenant_id", "email"),
        Index("ix_contact_tenant_phone", "tenant_id", "phone"),
    )

    id = mapped_column(Integer, primary_key=True)
    tenant_id = mapped_column(Integer, nullable=False)
    first_name = mapped_column(String(100), nullable=False)
    last_name = mapped_column(String(100))
    email = mapped_column(String(255))
    phone = mapped_column(String(32))
    source = mapped_column(String(32), default="staff")
    created_at = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)


class Staff(Base):
    __tablename__ = "staff"
    __table_args__ = (
        ForeignKeyConstraint(["tenant_id"], ["tenants.id"], name="fk_staff_tenant"),
    )

    id = mapped_column(Integer, primary_key=True)
    tenant_id = mapped_column(Integer, nullable=False)
    full_name = mapped_column(String(200), nullable=False)
    email = mapped_column(String(255))
    is_active = mapped_column(Boolean, nullable=False, default=True)

    schedule: Mapped[List["StaffSchedule"]] = relationship(
        "StaffSchedule", back_populates="staff"
    )


class Service(Base):
    __tablename__ = "services"
    __table_args__ = (
        ForeignKeyConstraint(["tenant_id"], ["tenants.id"], name="fk_service_tenant"),
    )

    id = mapped_column(Integer, primary_key=True)
    tenant_id = mapped_column(Integer, nullable=False)
    category_id = mapped_column(Integer)
    name = mapped_column(String(255), nullable=False)
    processing_time = mapped_column(Integer)
    finishing_time = mapped_column(Integer)
    unit_price = mapped_column(Money, nullable=False, default=0)
    currency = mapped_column(String(3), nullable=False, default="USD")
    is_active = mapped_column(Boolean, nullable=False, default=True)

    @property
    def duration_minutes(self) -> int:
        processing = self.processing_time if self.processing_time is not None else 30
        return processing + (self.finishing_time or 0)


class StaffSchedule(Base):
    __tablename__ = "staff_schedule"
    __table_args__ = (
        ForeignKeyConstraint(["staff_id"], ["staff.id"], name="fk_schedule_staff"),
        UniqueConstraint("tenant_id", "staff_id", "day_of_week", name="uq_schedule_day"),
    )

    id = mapped_column(Integer, primary_key=True)
    tenant_id = mapped_column(Integer, nullable=False)
    staff_id = mapped_column(Integer, nullable=False)
    # 0 = Sunday
    day_of_week = mapped_column(Integer, nullable=False)
    is_working = mapped_column(Boolean, nullable=False, default=True)
    start_time = mapped_column(Time, nullable=False)
    end_time = mapped_column(Time, nullable=False)
    break_start = mapped_column(Time)
    break_end = mapped_column(Time)

    staff: Mapped["Staff"] = relationship("Staff", back_populates="schedule")


class StaffDayOff(Base):
    __tablename__ = "staff_days_off"
    __table_args__ = (
        ForeignKeyConstraint(["staff_id"], ["staff.id"], name="fk_dayoff_staff"),
        Index("ix_dayoff_staff_date", "tenant_id", "staff_id", "date"),
    )

    id = mapped_column(Integer, primary_key=True)
    tenant_id = mapped_column(Integer, nullable=False)
    staff_id = mapped_column(Integer, nullable=False)
    date = mapped_column(Date, nullable=False)
    reason = mapped_column(String(255))


class OnlineBookingSettings(Base):
    __tablename__ = "online_booking_settings"
    __table_args__ = (
        ForeignKeyConstraint(["tenant_id"], ["tenants.id"], name="fk_obs_tenant"),
    )

    id = mapped_column(Integer, primary_key=True)
    tenant_id = mapped_column(Integer, nullable=False, unique=True)
    is_enabled = mapped_column(Boolean, nullable=False, default=True)
    allow_cancellation = mapped_column(Boolean, nullable=False, default=True)
    allow_reschedule = mapped_column(Boolean, nullable=False, default=True)
    cancellation_hours = mapped_column(Integer, nullable=False, default=24)
    max_advance_days = mapped_column(Integer, nullable=False, default=30)
    min_advance_hours = mapped_column(Integer, nullable=False, default=1)
    slot_interval = mapped_column(Integer, nullable=False, default=30)
    buffer_minutes = mapped_column(Integer, nullable=False, default=0)
    auto_confirm = mapped_column(Boolean, nullable=False, default=False)
    allow_staff_selection = mapped_column(Boolean, nullable=False, default=True)
    show_prices = mapped_column(Boolean, nullable=False, default=True)
    show_duration = mapped_column(Boolean, nullable=False, default=True)
    require_deposit = mapped_column(Boolean, nullable=False, default=False)
    deposit_amount = mapped_column(Money, nullable=False, default=0)
    deposit_type = mapped_column(String(16), nullable=False, default="fixed")
    primary_color = mapped_column(String(16), nullable=False, default="#f2421b")
    confirmation_message = mapped_column(Text)
    updated_at = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    tenant: Mapped["Tenant"] = relationship("Tenant", back_populates="booking_settings")


class Promotion(Base):
    __tablename__ = "promotions"
    __table_args__ = (
        ForeignKeyConstraint(["tenant_id"], ["tenants.id"], name="fk_promo_tenant"),
    )

    id = mapped_column(Integer, primary_key=True)
    tenant_id = mapped_column(Integer, nullable=False)
    name = mapped_column(String(255), nullable=False)
    # percentage | fixed
    type = mapped_column(String(32), nullable=False, default="percentage")
    discount_value = mapped_column(Money, nullable=False, default=0)
    min_spend = mapped_column(Money)
    # all_services | specific_services | specific_categories
    applies_to = mapped_column(String(32), nullable=False, default="all_services")
    service_ids = mapped_column(JSON)
    category_ids = mapped_column(JSON)
    start_date = mapped_column(Date)
    end_date = mapped_column(Date)
    usage_limit = mapped_column(Integer)
    used_count = mapped_column(Integer, nullable=False, default=0)
    is_active = mapped_column(Boolean, nullable=False, default=True)

    codes: Mapped[List["DiscountCode"]] = relationship(
        "DiscountCode", back_populates="promotion"
    )


class DiscountCode(Base):
    __tablename__ = "discount_codes"
    __table_args__ = (
        ForeignKeyConstraint(
            ["promotion_id"], ["promotions.id"], name="fk_code_promotion"
        ),
        UniqueConstraint("tenant_id", "code", name="uq_code_tenant"),
    )

    id = mapped_column(Integer, primary_key=True)
    tenant_id = mapped_column(Integer, nullable=False)
    promotion_id = mapped_column(Integer, nullable=False)
    code = mapped_column(String(64), nullable=False)
    max_uses = mapped_column(Integer)
    used_count = mapped_column(Integer, nullable=False, default=0)
    is_active = mapped_column(Boolean, nullable=False, default=True)

    promotion: Mapped["Promotion"] = relationship("Promotion", back_populates="codes")


class DiscountUsage(Base):
    __tablename__ = "discount_usage"

    id = mapped_column(Integer, primary_key=True)
    tenant_id = mapped_column(Integer, nullable=False)
    discount_code_id = mapped_column(Integer)
    promotion_id = mapped_column(Integer, nullable=False)
    customer_id = mapped_column(Integer)
    appointment_id = mapped_column(Integer)
    invoice_id = mapped_column(Integer)
    discount_amount = mapped_column(Money, nullable=False)
    used_at = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        ForeignKeyConstraint(["tenant_id"], ["tenants.id"], name="fk_ap_tenant"),
        ForeignKeyConstraint(["customer_id"], ["contacts.id"], name="fk_ap_customer"),
        ForeignKeyConstraint(["staff_id"], ["staff.id"], name="fk_ap_staff"),
        ForeignKeyConstraint(["service_id"], ["services.id"], name="fk_ap_service"),
        Index("ix_ap_staff_start", "tenant_id", "staff_id", "start_time"),
        Index("ix_ap_customer", "tenant_id", "customer_id", "start_time"),
    )

    id = mapped_column(Integer, primary_key=True)
    tenant_id = mapped_column(Integer, nullable=False)
    branch_id = mapped_column(Integer)
    customer_id = mapped_column(Integer, nullable=False)
    service_id = mapped_column(Integer, nullable=False)
    staff_id = mapped_column(Integer, nullable=False)
    start_time = mapped_column(UTCDateTime, nullable=False)
    end_time = mapped_column(UTCDateTime, nullable=False)
    status = mapped_column(String(16), nullable=False, default="scheduled")
    source = mapped_column(String(16), nullable=False, default="staff")
    payment_status = mapped_column(String(16), nullable=False, default="pending")
    notes = mapped_column(Text)
    promotion_id = mapped_column(Integer)
    discount_code_id = mapped_column(Integer)
    discount_amount = mapped_column(Money, nullable=False, default=0)
    discount_type = mapped_column(String(16))
    original_price = mapped_column(Money)
    final_price = mapped_column(Money)
    customer_showed = mapped_column(Boolean)
    cancelled_at = mapped_column(UTCDateTime)
    cancellation_reason = mapped_column(String(500))
    created_by = mapped_column(Integer)
    created_at = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    customer: Mapped["Contact"] = relationship("Contact")
    staff: Mapped["Staff"] = relationship("Staff")
    service: Mapped["Service"] = relationship("Service")
    invoices: Mapped[List["Invoice"]] = relationship(
        "Invoice", back_populates="appointment"
    )


class StaffCalendarLock(Base):
    __tablename__ = "staff_calendar_locks"
    __table_args__ = (
        UniqueConstraint("tenant_id", "staff_id", name="uq_calendar_lock"),
    )

    id = mapped_column(Integer, primary_key=True)
    tenant_id = mapped_column(Integer, nullable=False)
    staff_id = mapped_column(Integer, nullable=False)
    version = mapped_column(Integer, nullable=False, default=0)


class InvoiceSequence(Base):
    __tablename__ = "invoice_sequences"

    tenant_id = mapped_column(Integer, primary_key=True, autoincrement=False)
    last_number = mapped_column(Integer, nullable=False, default=0)


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        ForeignKeyConstraint(
            ["appointment_id"], ["appointments.id"], name="fk_invoice_appointment"
        ),
        UniqueConstraint("tenant_id", "invoice_number", name="uq_invoice_number"),
        Index("ix_invoice_appointment", "appointment_id"),
    )

    id = mapped_column(Integer, primary_key=True)
    tenant_id = mapped_column(Integer, nullable=False)
    invoice_number = mapped_column(String(32), nullable=False)
    appointment_id = mapped_column(Integer)
    customer_id = mapped_column(Integer)
    subtotal = mapped_column(Money, nullable=False, default=0)
    discount_amount = mapped_column(Money, nullable=False, default=0)
    discount_type = mapped_column(String(16))
    tax_rate = mapped_column(Numeric(5, 2), nullable=False, default=0)
    tax_amount = mapped_column(Money, nullable=False, default=0)
    tip = mapped_column(Money, nullable=False, default=0)
    total = mapped_column(Money, nullable=False, default=0)
    amount_paid = mapped_column(Money, nullable=False, default=0)
    currency = mapped_column(String(3), nullable=False, default="USD")
    # draft | sent | partially_paid | paid | overdue | void
    status = mapped_column(String(16), nullable=False, default="draft")
    payment_method = mapped_column(String(16))
    paid_at = mapped_column(UTCDateTime)
    created_by = mapped_column(Integer)
    created_at = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    appointment: Mapped[Optional["Appointment"]] = relationship(
        "Appointment", back_populates="invoices"
    )
    items: Mapped[List["InvoiceItem"]] = relationship(
        "InvoiceItem", back_populates="invoice", order_by="InvoiceItem.id"
    )


class InvoiceItem(Base):
    __tablename__ = "invoice_items"
    __table_args__ = (
        ForeignKeyConstraint(
            ["invoice_id"], ["invoices.id"], ondelete="CASCADE", name="fk_item_invoice"
        ),
    )

    id = mapped_column(Integer, primary_key=True)
    invoice_id = mapped_column(Integer, nullable=False)
    # service | custom
    item_type = mapped_column(String(16), nullable=False)
    item_id = mapped_column(Integer)
    name = mapped_column(String(255), nullable=False)
    quantity = mapped_column(Integer, nullable=False, default=1)
    unit_price = mapped_column(Money, nullable=False)
    total = mapped_column(Money, nullable=False)

    invoice: Mapped["Invoice"] = relationship("Invoice", back_populates="items")


class BookingToken(Base):
    __tablename__ = "booking_tokens"
    __table_args__ = (
        ForeignKeyConstraint(
            ["appointment_id"], ["appointments.id"], name="fk_token_appointment"
        ),
    )

    id = mapped_column(Integer, primary_key=True)
    tenant_id = mapped_column(Integer, nullable=False)
    appointment_id = mapped_column(Integer, nullable=False)
    token = mapped_column(String(64), nullable=False, unique=True)
    action_scope = mapped_column(String(16), nullable=False, default="manage")
    expires_at = mapped_column(UTCDateTime, nullable=False)
    used_at = mapped_column(UTCDateTime)
    created_at = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    appointment: Mapped["Appointment"] = relationship("Appointment")


class GiftCard(Base):
    __tablename__ = "gift_cards"
    __table_args__ = (UniqueConstraint("tenant_id", "code", name="uq_giftcard_code"),)

    id = mapped_column(Integer, primary_key=True)
    tenant_id = mapped_column(Integer, nullable=False)
    code = mapped_column(String(64), nullable=False)
    initial_value = mapped_column(Money, nullable=False)
    balance = mapped_column(Money, nullable=False)
    currency = mapped_column(String(3), nullable=False, default="USD")
    # active | redeemed | expired | void
    status = mapped_column(String(16), nullable=False, default="active")
    expires_at = mapped_column(UTCDateTime)


class GiftCardTransaction(Base):
    __tablename__ = "gift_card_transactions"
    __table_args__ = (
        ForeignKeyConstraint(
            ["gift_card_id"], ["gift_cards.id"], name="fk_gct_gift_card"
        ),
    )

    id = mapped_column(Integer, primary_key=True)
    tenant_id = mapped_column(Integer, nullable=False)
    gift_card_id = mapped_column(Integer, nullable=False)
    type = mapped_column(String(16), nullable=False)
    amount = mapped_column(Money, nullable=False)
    balance_after = mapped_column(Money, nullable=False)
    reference_type = mapped_column(String(32))
    reference_id = mapped_column(Integer)
    notes = mapped_column(String(255))
    created_at = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class AppointmentReminder(Base):
    __tablename__ = "appointment_reminders"
    __table_args__ = (
        Index("ix_reminder_due", "status", "send_at"),
        Index("ix_reminder_appointment", "appointment_id"),
    )

    id = mapped_column(Integer, primary_key=True)
    tenant_id = mapped_column(Integer, nullable=False)
    appointment_id = mapped_column(Integer, nullable=False)
    # 24h | 2h | 30m
    reminder_type = mapped_column(String(8), nullable=False)
    send_at = mapped_column(UTCDateTime, nullable=False)
    # pending | sent | cancelled | failed
    status = mapped_column(String(16), nullable=False, default="pending")


class ReminderDispatchLog(Base):
    __tablename__ = "reminder_dispatch_log"
    __table_args__ = (
        UniqueConstraint("appointment_id", "reminder_type", name="uq_reminder_dispatch"),
    )

    id = mapped_column(Integer, primary_key=True)
    appointment_id = mapped_column(Integer, nullable=False)
    reminder_type = mapped_column(String(8), nullable=False)
    sent_at = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (Index("ix_notification_tenant", "tenant_id", "created_at"),)

    id = mapped_column(Integer, primary_key=True)
    tenant_id = mapped_column(Integer, nullable=False)
    type = mapped_column(String(16), nullable=False, default="info")
    category = mapped_column(String(32), nullable=False)
    title = mapped_column(String(255), nullable=False)
    message = mapped_column(Text)
    data = mapped_column(JSON)
    is_read = mapped_column(Boolean, nullable=False, default=False)
    created_at = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )
