"""
Staff calendar reservation.

`reserve` must be called inside the transaction that inserts or moves the
appointment. It serializes writers per (tenant, staff) through a lock row and
re-runs the overlap query against committed state, so two overlapping bookings
cannot both commit.
"""

import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError

from backoffice.errors import ConflictError, ValidationError
from backoffice.extensions import db
from backoffice.models import Appointment, StaffCalendarLock
from backoffice.services.availability import RELEASED_STATUSES

logger = logging.getLogger(__name__)

CONFLICT_MESSAGE = "Staff member has conflicting appointment at this time"
BUSY_MESSAGE = "Staff calendar is being updated, please try again"

# MySQL deadlock / lock wait timeout, SQLite busy
_LOCK_ERROR_MARKERS = ("deadlock", "lock wait timeout", "database is locked", "40p01")


def _is_lock_error(exc: OperationalError) -> bool:
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code == "40P01":
        return True
    args = getattr(orig, "args", ())
    if args and args[0] in (1205, 1213):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _LOCK_ERROR_MARKERS)


def overlap_query(tenant_id, staff_id, start, end, exclude_id=None, lock=False):
    stmt = select(Appointment).where(
        Appointment.tenant_id == tenant_id,
        Appointment.staff_id == staff_id,
        Appointment.status.not_in(RELEASED_STATUSES),
        Appointment.start_time < end,
        Appointment.end_time > start,
    )
    if exclude_id is not None:
        stmt = stmt.where(Appointment.id != exclude_id)
    if lock:
        # Locking reads see the latest committed rows, not the
        # REPEATABLE READ snapshot taken before the calendar lock
        stmt = stmt.with_for_update()
    return stmt


def find_conflicts(tenant_id, staff_id, start, end, exclude_id=None, lock=False):
    """Appointments for the staff member that overlap [start, end)."""
    return list(
        db.session.scalars(
            overlap_query(tenant_id, staff_id, start, end, exclude_id, lock=lock)
        )
    )


def _lock_calendar(tenant_id, staff_id):
    lock = db.session.scalar(
        select(StaffCalendarLock)
        .where(
            StaffCalendarLock.tenant_id == tenant_id,
            StaffCalendarLock.staff_id == staff_id,
        )
        .with_for_update()
    )
    if lock is None:
        db.session.add(StaffCalendarLock(tenant_id=tenant_id, staff_id=staff_id, version=1))
        db.session.flush()
        return

    # The write takes the row lock on engines without SELECT ... FOR UPDATE
    db.session.execute(
        update(StaffCalendarLock)
        .where(StaffCalendarLock.id == lock.id)
        .values(version=StaffCalendarLock.version + 1)
    )


def reserve(tenant_id, staff_id, start, end, exclude_id=None):
    """
    Lock the staff calendar and verify [start, end) is free.

    Raises ConflictError on overlap or lock contention. The caller owns the
    transaction and must roll it back on error.
    """
    if end <= start:
        raise ValidationError("End time must be after start time")

    try:
        _lock_calendar(tenant_id, staff_id)
        conflicts = find_conflicts(tenant_id, staff_id, start, end, exclude_id, lock=True)
    except IntegrityError:
        db.session.rollback()
        logger.info("Lost calendar lock creation race for staff %s", staff_id)
        raise ConflictError(BUSY_MESSAGE)
    except OperationalError as exc:
        if not _is_lock_error(exc):
            raise
        db.session.rollback()
        logger.warning("Calendar lock contention for staff %s: %s", staff_id, exc)
        raise ConflictError(BUSY_MESSAGE)

    if conflicts:
        db.session.rollback()
        logger.info(
            "Rejected booking for staff %s: overlaps appointment(s) %s",
            staff_id,
            [a.id for a in conflicts],
        )
        raise ConflictError(CONFLICT_MESSAGE)
