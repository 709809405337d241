"""
Pytest configuration and shared fixtures for the back office tests.
"""

import datetime
from decimal import Decimal

import pytest
from flask import Flask

from backoffice.auth import issue_token
from backoffice.extensions import db as database
from backoffice.models import (
    Base,
    Contact,
    OnlineBookingSettings,
    Service,
    Staff,
    StaffSchedule,
    Tenant,
)
from backoffice.services.email_service import email_service
from backoffice.utils.timeutils import utcnow
from main import create_app

TEST_CONFIG = {
    "TESTING": True,
    "SQLALCHEMY_DATABASE_URI": "sqlite://",
    "SECRET_KEY": "test-secret-key-for-testing-only",
    "AUTO_MIGRATE": False,
    "SCHEDULER_ENABLED": False,
    "DEFAULT_TAX_RATE": "5",
}


@pytest.fixture(scope="session")
def app():
    """Create and configure a test app instance."""
    app = create_app(TEST_CONFIG)
    yield app


@pytest.fixture
def db(app: Flask):
    """Fresh schema for every test, inside a pushed app context."""
    with app.app_context():
        Base.metadata.drop_all(bind=database.engine)
        Base.metadata.create_all(bind=database.engine)
        email_service.outbox.clear()

        yield database

        database.session.remove()
        Base.metadata.drop_all(bind=database.engine)


@pytest.fixture
def client(app, db):
    return app.test_client()



@pytest.fixture
def booking_day():
    """A day comfortably inside the default 30-day booking horizon."""
    return (utcnow() + datetime.timedelta(days=3)).date()


@pytest.fixture
def tenant(db):
    """A UTC business with online booking enabled."""
    tenant = Tenant(
        slug="glow-studio",
        name="Glow Studio",
        timezone="UTC",
        email="hello@glow.example",
        phone="555-0100",
    )
    db.session.add(tenant)
    db.session.commit()
    return tenant


@pytest.fixture
def settings(db, tenant):
    settings = OnlineBookingSettings(tenant_id=tenant.id)
    db.session.add(settings)
    db.session.commit()
    return settings


@pytest.fixture
def staff(db, tenant):
    staff = Staff(tenant_id=tenant.id, full_name="Dana Reyes", email="dana@glow.example")
    db.session.add(staff)
    db.session.commit()
    return staff


@pytest.fixture
def schedule(db, tenant, staff):
    """09:00-17:00 every day with a 12:00-13:00 break."""
    for day_of_week in range(7):
        db.session.add(
            StaffSchedule(
                tenant_id=tenant.id,
                staff_id=staff.id,
                day_of_week=day_of_week,
                is_working=True,
                start_time=datetime.time(9, 0),
                end_time=datetime.time(17, 0),
                break_start=datetime.time(12, 0),
                break_end=datetime.time(13, 0),
            )
        )
    db.session.commit()


@pytest.fixture
def service(db, tenant):
    """A 30-minute, $40.00 haircut."""
    service = Service(
        tenant_id=tenant.id,
        name="Haircut",
        processing_time=30,
        finishing_time=0,
        unit_price=Decimal("40.00"),
    )
    db.session.add(service)
    db.session.commit()
    return service


@pytest.fixture
def customer(db, tenant):
    customer = Contact(
        tenant_id=tenant.id,
        first_name="Alex",
        last_name="Kim",
        email="alex@example.com",
        phone="555-0199",
    )
    db.session.add(customer)
    db.session.commit()
    return customer


@pytest.fixture
def salon(tenant, settings, staff, schedule, service, customer):
    """Everything needed to book: tenant, settings, staff with hours, service, customer."""
    return tenant


@pytest.fixture
def auth_headers(app, tenant):
    """Bearer headers for the business owner."""
    token = issue_token(user_id=1, tenant_id=tenant.id, role="owner")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def staff_headers(app, tenant, staff):
    """Bearer headers for a stylist (no create or settings rights)."""
    token = issue_token(user_id=2, tenant_id=tenant.id, role="staff", staff_id=staff.id)
    return {"Authorization": f"Bearer {token}"}
