"""
Per-tenant booking policy.

Values come from the tenant's online_booking_settings row; tenants without a
row get the defaults below.
"""

from dataclasses import dataclass, fields
from datetime import timedelta

from sqlalchemy import select

from backoffice.errors import ValidationError
from backoffice.extensions import db
from backoffice.models import OnlineBookingSettings, Tenant
from backoffice.utils.timeutils import tenant_zone


@dataclass(frozen=True)
class BookingPolicy:
    is_enabled: bool = True
    allow_cancellation: bool = True
    allow_reschedule: bool = True
    auto_confirm: bool = False
    cancellation_hours: int = 24
    max_advance_days: int = 30
    min_advance_hours: int = 1
    slot_interval: int = 30
    buffer_minutes: int = 0
    timezone: str = "UTC"

    def __post_init__(self):
        if self.slot_interval <= 0:
            raise ValueError(f"slot_interval must be positive, got {self.slot_interval}")
        if self.buffer_minutes < 0:
            raise ValueError("buffer_minutes cannot be negative")

    @property
    def zone(self):
        return tenant_zone(self.timezone)

    @property
    def min_advance(self) -> timedelta:
        return timedelta(hours=self.min_advance_hours)

    @property
    def cancellation_window(self) -> timedelta:
        return timedelta(hours=self.cancellation_hours)

    @classmethod
    def from_settings(cls, settings, timezone="UTC"):
        if settings is None:
            return cls(timezone=timezone)
        values = {
            f.name: getattr(settings, f.name)
            for f in fields(cls)
            if f.name != "timezone" and getattr(settings, f.name, None) is not None
        }
        return cls(timezone=timezone, **values)


SETTINGS_FIELDS = (
    "is_enabled",
    "allow_cancellation",
    "allow_reschedule",
    "cancellation_hours",
    "max_advance_days",
    "min_advance_hours",
    "slot_interval",
    "buffer_minutes",
    "auto_confirm",
    "allow_staff_selection",
    "show_prices",
    "show_duration",
    "require_deposit",
    "deposit_amount",
    "deposit_type",
    "primary_color",
    "confirmation_message",
)


def get_settings(tenant_id):
    return db.session.scalar(
        select(OnlineBookingSettings).where(OnlineBookingSettings.tenant_id == tenant_id)
    )


def load_policy(tenant_id) -> BookingPolicy:
    """Always reads the current row; policy is never cached across requests."""
    tenant = db.session.get(Tenant, tenant_id)
    timezone = tenant.timezone if tenant else "UTC"
    return BookingPolicy.from_settings(get_settings(tenant_id), timezone)


INTEGER_FIELDS = (
    "cancellation_hours",
    "max_advance_days",
    "min_advance_hours",
    "slot_interval",
    "buffer_minutes",
)


def _column_default(name):
    default = OnlineBookingSettings.__table__.c[name].default
    return default.arg if default is not None else None


def settings_to_dict(settings):
    data = {}
    for name in SETTINGS_FIELDS:
        value = getattr(settings, name) if settings is not None else None
        if value is None:
            value = _column_default(name)
        if name == "deposit_amount" and value is not None:
            value = float(value)
        data[name] = value
    return data


def update_settings(tenant_id, payload):
    """Upsert the tenant's settings row from a partial payload."""
    for name in INTEGER_FIELDS:
        if name in payload:
            value = payload[name]
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError(f"{name} must be a non-negative integer")
    if "slot_interval" in payload and payload["slot_interval"] == 0:
        raise ValidationError("slot_interval must be greater than zero")
    if "deposit_type" in payload and payload["deposit_type"] not in ("fixed", "percentage"):
        raise ValidationError("deposit_type must be 'fixed' or 'percentage'")

    settings = get_settings(tenant_id)
    if settings is None:
        settings = OnlineBookingSettings(tenant_id=tenant_id)
        db.session.add(settings)

    for name in SETTINGS_FIELDS:
        if name in payload:
            setattr(settings, name, payload[name])

    db.session.commit()
    return settings
