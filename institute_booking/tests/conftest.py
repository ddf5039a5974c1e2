import fnmatch
import uuid
from types import SimpleNamespace

import pytest
from dateutil.parser import isoparse

from institute_booking.app.clock import to_db
from institute_booking.app.dependencies import make_engine, make_session_factory
from institute_booking.app.models import (Appointment, AppointmentItem, AvailabilityRule, Base, Client,
                                          InstituteAvailabilityRule, Service, ServiceStaffLink, StaffMember)


class Store:
    """Seeding and lookups, each in its own short transaction."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def add(self, *objects):
        with self.session_factory() as db:
            db.add_all(objects)
            db.commit()
        return objects[0] if len(objects) == 1 else objects

    def get(self, model, object_id):
        with self.session_factory() as db:
            return db.get(model, object_id)

    def all(self, model, **filters):
        with self.session_factory() as db:
            return db.query(model).filter_by(**filters).all()

    def count(self, model, **filters):
        with self.session_factory() as db:
            return db.query(model).filter_by(**filters).count()

    def weekly_rule(self, staff_id, start_time, end_time, weekday=1, **kwargs):
        return self.add(AvailabilityRule(staff_member_id=staff_id, weekday=weekday, start_time=start_time,
                                         end_time=end_time, is_active=True, **kwargs))

    def institute_rule(self, start_time, end_time, weekday=1, **kwargs):
        return self.add(InstituteAvailabilityRule(weekday=weekday, start_time=start_time, end_time=end_time,
                                                  is_active=True, **kwargs))

    def link(self, service_id, staff_id, price_cents_override=None, discount_percent_override=None):
        return self.add(ServiceStaffLink(service_id=service_id, staff_member_id=staff_id,
                                         price_cents_override=price_cents_override,
                                         discount_percent_override=discount_percent_override))

    def appointment(self, staff_id, start_at, end_at, status="CONFIRMED", service_id=None):
        """Insert an appointment directly, bypassing the booking transaction."""
        client = Client(first_name="Walk", last_name="In", email=f"{uuid.uuid4().hex[:8]}@example.com")
        start, end = isoparse(start_at), isoparse(end_at)
        appointment = Appointment(
            client=client,
            staff_member_id=staff_id,
            starts_at=to_db(start),
            ends_at=to_db(end),
            status=status,
        )
        if service_id:
            appointment.items.append(AppointmentItem(
                service_id=service_id, order=0, duration_min=int((end - start).total_seconds() // 60), price_cents=0
            ))
        return self.add(appointment)


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'institute.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return Store(session_factory)


@pytest.fixture
def salon(store):
    """
    Institute open Monday 09:30-19:00.

    Alice works the full Monday and does both services at list price.
    Bruno is active but has no hours and no services until a test gives him some.
    """
    store.institute_rule("09:30", "19:00")
    alice = store.add(StaffMember(id="staff-a", first_name="Alice", last_name="Martin", is_active=True))
    bruno = store.add(StaffMember(id="staff-b", first_name="Bruno", last_name="Peeters", is_active=True))
    haircut = store.add(Service(id="svc-haircut", name="Haircut", duration_min=60, price_cents=6500, is_active=True))
    manicure = store.add(Service(id="svc-manicure", name="Manicure", duration_min=30, price_cents=3000,
                                 is_active=True))
    store.weekly_rule(alice.id, "09:30", "19:00")
    store.link(haircut.id, alice.id)
    store.link(manicure.id, alice.id)
    return SimpleNamespace(alice=alice, bruno=bruno, haircut=haircut, manicure=manicure)


class FakeRedis:
    """In-memory stand-in for the handful of redis-py calls the cache uses."""

    def __init__(self):
        self.data = {}

    def get(self, key):
        return self.data.get(key)

    def setex(self, key, ttl, value):
        self.data[key] = value

    def scan_iter(self, match="*"):
        return [key for key in list(self.data) if fnmatch.fnmatch(key, match)]

    def delete(self, *keys):
        for key in keys:
            self.data.pop(key, None)
        return len(keys)


@pytest.fixture
def fake_redis():
    return FakeRedis()
