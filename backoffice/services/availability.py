"""
Bookable slot calculation for one staff member, service and calendar day.

The slot list is a UX convenience computed from a read-only snapshot; the
conflict checker is what actually guards a booking.
"""

import datetime
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import select

from backoffice.extensions import db
from backoffice.models import Appointment, Service, StaffDayOff, StaffSchedule
from backoffice.services.booking_policy import BookingPolicy
from backoffice.utils.timeutils import (
    local_day_bounds,
    overlaps,
    sunday_based_weekday,
    utcnow,
)

logger = logging.getLogger(__name__)

# Appointments in these states no longer occupy the calendar
RELEASED_STATUSES = ("cancelled", "no_show")

REASON_MESSAGES = {
    "too_soon": "This date is no longer available for online booking",
    "too_far": "This date is too far in advance",
    "not_working": "Staff not working on this day",
    "day_off": "Staff is on day off",
    "service_not_found": "Service not found",
}


@dataclass(frozen=True)
class Slot:
    start: datetime.datetime
    end: datetime.datetime
    available: bool = True

    def to_dict(self, tz):
        local_start = self.start.astimezone(tz)
        local_end = self.end.astimezone(tz)
        return {
            "time": local_start.strftime("%H:%M"),
            "end_time": local_end.strftime("%H:%M"),
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "available": self.available,
        }


@dataclass
class AvailabilityResult:
    slots: List[Slot] = field(default_factory=list)
    duration: Optional[int] = None
    reason: Optional[str] = None

    @property
    def message(self):
        return REASON_MESSAGES.get(self.reason)


def occupied_intervals(tenant_id, staff_id, range_start, range_end, exclude_id=None):
    """[start, end) pairs of appointments that still hold the staff's calendar."""
    stmt = select(Appointment.start_time, Appointment.end_time).where(
        Appointment.tenant_id == tenant_id,
        Appointment.staff_id == staff_id,
        Appointment.status.not_in(RELEASED_STATUSES),
        Appointment.start_time < range_end,
        Appointment.end_time > range_start,
    )
    if exclude_id is not None:
        stmt = stmt.where(Appointment.id != exclude_id)
    return [(row.start_time, row.end_time) for row in db.session.execute(stmt)]


def _local(day, clock, tz):
    return datetime.datetime.combine(day, clock, tzinfo=tz)


def calculate_slots(
    tenant_id,
    staff_id,
    service_id,
    on_date: datetime.date,
    policy: BookingPolicy,
    now: Optional[datetime.datetime] = None,
) -> AvailabilityResult:
    now = now or utcnow()
    tz = policy.zone
    earliest = now + policy.min_advance

    service = db.session.get(Service, service_id)
    if service is None or service.tenant_id != tenant_id:
        return AvailabilityResult(reason="service_not_found")

    duration = service.duration_minutes
    result = AvailabilityResult(duration=duration)

    day_start, day_end = local_day_bounds(on_date, tz)
    if day_end <= earliest:
        result.reason = "too_soon"
        return result
    horizon = now.astimezone(tz) + datetime.timedelta(days=policy.max_advance_days)
    last_bookable_day = horizon.date()
    if on_date >= last_bookable_day:
        result.reason = "too_far"
        return result

    schedule = db.session.scalar(
        select(StaffSchedule).where(
            StaffSchedule.tenant_id == tenant_id,
            StaffSchedule.staff_id == staff_id,
            StaffSchedule.day_of_week == sunday_based_weekday(on_date),
            StaffSchedule.is_working.is_(True),
        )
    )
    if schedule is None:
        result.reason = "not_working"
        return result

    day_off = db.session.scalar(
        select(StaffDayOff.id).where(
            StaffDayOff.tenant_id == tenant_id,
            StaffDayOff.staff_id == staff_id,
            StaffDayOff.date == on_date,
        )
    )
    if day_off is not None:
        result.reason = "day_off"
        return result

    work_start = _local(on_date, schedule.start_time, tz)
    work_end = _local(on_date, schedule.end_time, tz)
    break_window = None
    if schedule.break_start and schedule.break_end:
        break_window = (
            _local(on_date, schedule.break_start, tz),
            _local(on_date, schedule.break_end, tz),
        )

    length = datetime.timedelta(minutes=duration)
    buffer = datetime.timedelta(minutes=policy.buffer_minutes)
    step = length + buffer
    interval = datetime.timedelta(minutes=policy.slot_interval)

    booked = occupied_intervals(
        tenant_id, staff_id, day_start - buffer, day_end + buffer
    )

    candidate = work_start
    while candidate + step <= work_end:
        slot_end = candidate + length
        blocked = (
            candidate < earliest
            or (break_window is not None and overlaps(candidate, slot_end, *break_window))
            # Buffer keeps idle time on both sides of every booking
            or any(
                overlaps(candidate - buffer, slot_end + buffer, start, end)
                for start, end in booked
            )
        )
        if not blocked:
            result.slots.append(
                Slot(
                    start=candidate.astimezone(datetime.timezone.utc),
                    end=slot_end.astimezone(datetime.timezone.utc),
                )
            )
        candidate += interval

    logger.debug(
        "Computed %d slots for staff %s on %s", len(result.slots), staff_id, on_date
    )
    return result
