"""
Versioned schema migrations.

Each migration is a (version, name, callable) entry; the callable receives a
Connection inside a transaction. Applied versions are recorded in
schema_migrations, so running the list again is a no-op.
"""

import logging

from sqlalchemy import select

from backoffice.models import Base, SchemaMigration, Staff, StaffCalendarLock
from backoffice.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


def _initial_schema(conn):
    Base.metadata.create_all(conn)


def _backfill_calendar_locks(conn):
    # Staff created before this migration get their lock row up front.
    locked = select(StaffCalendarLock.staff_id)
    rows = conn.execute(
        select(Staff.tenant_id, Staff.id).where(Staff.id.not_in(locked))
    ).all()
    if rows:
        conn.execute(
            StaffCalendarLock.__table__.insert(),
            [{"tenant_id": t, "staff_id": s, "version": 0} for t, s in rows],
        )


MIGRATIONS = [
    (1, "initial_schema", _initial_schema),
    (2, "backfill_calendar_locks", _backfill_calendar_locks),
]


def applied_versions(conn):
    return set(conn.scalars(select(SchemaMigration.version)))


def run_migrations(engine):
    """Apply every pending migration in order. Returns the versions applied."""
    SchemaMigration.__table__.create(engine, checkfirst=True)
    applied = []
    for version, name, migrate in MIGRATIONS:
        with engine.begin() as conn:
            if version in applied_versions(conn):
                continue
            logger.info("Applying migration %s (%s)", version, name)
            migrate(conn)
            conn.execute(
                SchemaMigration.__table__.insert().values(
                    version=version, name=name, applied_at=utcnow()
                )
            )
            applied.append(version)
    return applied
