import datetime

import pytest
from helpers import at

from backoffice.models import Appointment, Staff, StaffDayOff, StaffSchedule, Tenant
from backoffice.services.appointment_lifecycle import update_appointment
from backoffice.services.availability import calculate_slots
from backoffice.services.booking_policy import BookingPolicy
from backoffice.services.conflict_checker import reserve
from backoffice.utils.timeutils import tenant_zone

DAY = datetime.date(2030, 1, 15)  # a Tuesday
NOW = at(DAY - datetime.timedelta(days=2), 8)


def _times(result):
    return [slot.start.strftime("%H:%M") for slot in result.slots]


def _add_appointment(db, salon, staff, service, customer, start, end, status="scheduled"):
    appointment = Appointment(
        tenant_id=salon.id,
        customer_id=customer.id,
        service_id=service.id,
        staff_id=staff.id,
        start_time=start,
        end_time=end,
        status=status,
    )
    db.session.add(appointment)
    db.session.commit()
    return appointment


@pytest.mark.availability
class TestSlotGrid:
    def test_working_day_excludes_break(self, db, salon, staff, service):
        """Slots run on the interval grid inside working hours and skip the break."""
        result = calculate_slots(salon.id, staff.id, service.id, DAY, BookingPolicy(), now=NOW)

        times = _times(result)
        assert result.duration == 30
        assert times[0] == "09:00"
        assert times[-1] == "16:30"
        assert "11:30" in times
        assert "12:00" not in times
        assert "12:30" not in times
        assert "13:00" in times
        assert len(times) == 14

    def test_slots_are_available_and_end_after_duration(self, db, salon, staff, service):
        """Every returned slot is marked available and spans the service duration."""
        result = calculate_slots(salon.id, staff.id, service.id, DAY, BookingPolicy(), now=NOW)

        for slot in result.slots:
            assert slot.available is True
            assert slot.end - slot.start == datetime.timedelta(minutes=30)

    def test_every_returned_slot_can_be_reserved(self, db, salon, staff, service, customer):
        """Each slot passes the calendar reservation check when booked straight away."""
        _add_appointment(db, salon, staff, service, customer, at(DAY, 10), at(DAY, 10, 30))
        result = calculate_slots(salon.id, staff.id, service.id, DAY, BookingPolicy(), now=NOW)

        assert result.slots
        for slot in result.slots:
            reserve(salon.id, staff.id, slot.start, slot.end)
            db.session.rollback()

    def test_early_completion_frees_the_rest_of_the_slot(
        self, db, salon, staff, service, customer
    ):
        """Completing at 10:20 an appointment booked until 11:00 reopens 10:30."""
        appointment = _add_appointment(
            db, salon, staff, service, customer, at(DAY, 10), at(DAY, 11)
        )
        before = _times(
            calculate_slots(salon.id, staff.id, service.id, DAY, BookingPolicy(), now=NOW)
        )

        update_appointment(
            salon.id, appointment.id, {"status": "completed"}, now=at(DAY, 10, 20)
        )
        after = _times(
            calculate_slots(salon.id, staff.id, service.id, DAY, BookingPolicy(), now=NOW)
        )

        assert "10:30" not in before
        assert "10:00" not in after
        assert after[:3] == ["09:00", "09:30", "10:30"]

    def test_existing_appointment_blocks_overlapping_slot_only(
        self, db, salon, staff, service, customer
    ):
        """A booking removes its own slot; touching neighbours stay open."""
        _add_appointment(db, salon, staff, service, customer, at(DAY, 10), at(DAY, 10, 30))

        times = _times(
            calculate_slots(salon.id, staff.id, service.id, DAY, BookingPolicy(), now=NOW)
        )

        assert "10:00" not in times
        assert "09:30" in times
        assert "10:30" in times

    def test_cancelled_and_no_show_release_the_calendar(
        self, db, salon, staff, service, customer
    ):
        """Cancelled and no-show appointments do not block slots."""
        _add_appointment(
            db, salon, staff, service, customer, at(DAY, 10), at(DAY, 10, 30), "cancelled"
        )
        _add_appointment(
            db, salon, staff, service, customer, at(DAY, 11), at(DAY, 11, 30), "no_show"
        )

        times = _times(
            calculate_slots(salon.id, staff.id, service.id, DAY, BookingPolicy(), now=NOW)
        )

        assert "10:00" in times
        assert "11:00" in times

    def test_buffer_applies_on_both_sides(self, db, salon, staff, service, customer):
        """Buffer keeps idle minutes before and after existing bookings."""
        _add_appointment(db, salon, staff, service, customer, at(DAY, 10), at(DAY, 10, 30))

        times = _times(
            calculate_slots(
                salon.id, staff.id, service.id, DAY, BookingPolicy(buffer_minutes=15), now=NOW
            )
        )

        assert "09:00" in times
        assert "09:30" not in times
        assert "10:30" not in times
        assert "11:00" in times
        assert times[-1] == "16:00"

    def test_other_staff_bookings_do_not_block(self, db, salon, staff, service, customer):
        """Only the requested staff member's appointments count."""
        other = Staff(tenant_id=salon.id, full_name="Sam Lee")
        db.session.add(other)
        db.session.commit()
        _add_appointment(db, salon, other, service, customer, at(DAY, 10), at(DAY, 10, 30))

        times = _times(
            calculate_slots(salon.id, staff.id, service.id, DAY, BookingPolicy(), now=NOW)
        )

        assert "10:00" in times


@pytest.mark.availability
class TestClosedDays:
    def test_min_advance_hides_slots_too_close_to_now(self, db, salon, staff, service):
        """Slots earlier than now + min_advance_hours are not offered."""
        now = at(DAY, 10, 10)

        times = _times(
            calculate_slots(salon.id, staff.id, service.id, DAY, BookingPolicy(), now=now)
        )

        assert times[0] == "11:30"
        assert "11:00" not in times

    def test_day_entirely_inside_min_advance_is_too_soon(self, db, salon, staff, service):
        """A day that ends before the minimum notice returns no slots and a message."""
        result = calculate_slots(
            salon.id, staff.id, service.id, DAY, BookingPolicy(), now=at(DAY, 23, 30)
        )

        assert result.slots == []
        assert result.reason == "too_soon"
        assert result.message

    def test_beyond_max_advance_is_too_far(self, db, salon, staff, service):
        """Dates past the booking horizon return no slots."""
        now = at(DAY - datetime.timedelta(days=30), 9)

        result = calculate_slots(salon.id, staff.id, service.id, DAY, BookingPolicy(), now=now)

        assert result.slots == []
        assert result.reason == "too_far"

    def test_day_off_returns_message(self, db, salon, staff, service):
        """A recorded day off closes the whole day."""
        db.session.add(StaffDayOff(tenant_id=salon.id, staff_id=staff.id, date=DAY))
        db.session.commit()

        result = calculate_slots(salon.id, staff.id, service.id, DAY, BookingPolicy(), now=NOW)

        assert result.slots == []
        assert result.message == "Staff is on day off"

    def test_not_working_weekday(self, db, salon, staff, service):
        """A non-working schedule row means no slots."""
        row = db.session.scalar(
            db.select(StaffSchedule).where(
                StaffSchedule.staff_id == staff.id,
                StaffSchedule.day_of_week == 2,
            )
        )
        row.is_working = False
        db.session.commit()

        result = calculate_slots(salon.id, staff.id, service.id, DAY, BookingPolicy(), now=NOW)

        assert result.slots == []
        assert result.message == "Staff not working on this day"

    def test_unknown_service(self, db, salon, staff):
        """A service from nowhere yields no slots."""
        result = calculate_slots(salon.id, staff.id, 9999, DAY, BookingPolicy(), now=NOW)

        assert result.slots == []
        assert result.reason == "service_not_found"


@pytest.mark.availability
class TestTenantTimezone:
    def test_hours_are_read_in_the_tenant_zone(self, db, salon, staff, service):
        """Working hours are local wall-clock time; slots carry UTC instants."""
        tenant = db.session.get(Tenant, salon.id)
        tenant.timezone = "America/New_York"
        db.session.commit()
        policy = BookingPolicy(timezone="America/New_York")

        result = calculate_slots(salon.id, staff.id, service.id, DAY, policy, now=NOW)

        first = result.slots[0]
        assert first.to_dict(tenant_zone("America/New_York"))["time"] == "09:00"
        # EST is UTC-5 in January
        assert first.start.astimezone(tenant_zone("UTC")).hour == 14
