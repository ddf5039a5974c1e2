import threading
from datetime import date, timedelta

import pytest
from dateutil.parser import isoparse

from institute_booking.app.booking import BookingRequest, ClientInfo, book_appointment, cancel_appointment
from institute_booking.app.clock import to_db, utcnow
from institute_booking.app.models import Appointment, NotificationLog
from institute_booking.app.notifications import (NotificationKind, _sweeps_in_flight, release, reserve,
                                                 run_reminders_once, send_once)

MONDAY = date(2027, 6, 14)


def local(hour, minute=0):
    return f"{MONDAY.isoformat()}T{hour:02d}:{minute:02d}:00+02:00"


class RecordingSender:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def __call__(self, recipient, message):
        self.calls.append((recipient, message))
        if self.error:
            raise self.error


@pytest.fixture
def booked(salon, session_factory):
    return book_appointment(session_factory, BookingRequest(
        start_at=local(10),
        service_ids=[salon.haircut.id, salon.manicure.id],
        client=ClientInfo(first_name="Jane", last_name="Doe", email="Jane.Doe@example.com", phone="+32470000000")
    ))


def test_confirmation_is_sent_once(booked, store, session_factory):
    sender = RecordingSender()

    assert send_once(session_factory, booked.appointment_id, NotificationKind.CONFIRMATION_EMAIL, sender) == "sent"
    assert send_once(session_factory, booked.appointment_id, NotificationKind.CONFIRMATION_EMAIL, sender) == "skipped"

    assert len(sender.calls) == 1
    recipient, message = sender.calls[0]
    assert recipient == "jane.doe@example.com"
    assert message["service_summary"] == "Haircut + Manicure"
    assert message["practitioner_name"] == "Alice Martin"
    assert message["starts_at"] == local(10)
    assert store.get(Appointment, booked.appointment_id).confirmation_email_sent_at is not None
    assert store.count(NotificationLog, appointment_id=booked.appointment_id, status="SENT") == 1


def test_concurrent_reservations_let_one_sender_through(booked, session_factory):
    barrier = threading.Barrier(2)
    claimed = []

    def attempt():
        with session_factory() as db:
            barrier.wait()
            claimed.append(reserve(db, booked.appointment_id, NotificationKind.CONFIRMATION_EMAIL, utcnow()))

    threads = [threading.Thread(target=attempt) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert sorted(claimed) == [False, True]


def test_failed_send_releases_the_reservation(booked, store, session_factory):
    failing = RecordingSender(error=RuntimeError("smtp down"))

    assert send_once(session_factory, booked.appointment_id, NotificationKind.CONFIRMATION_EMAIL, failing) == "failed"

    assert store.get(Appointment, booked.appointment_id).confirmation_email_sent_at is None
    failures = store.all(NotificationLog, appointment_id=booked.appointment_id, status="FAILED")
    assert len(failures) == 1
    assert failures[0].error_message == "smtp down"
    assert failures[0].channel == "EMAIL"

    working = RecordingSender()
    assert send_once(session_factory, booked.appointment_id, NotificationKind.CONFIRMATION_EMAIL, working) == "sent"
    assert len(working.calls) == 1


def test_release_only_clears_our_own_reservation(booked, store, session_factory):
    ours = isoparse("2027-06-10T08:00:00+00:00")
    theirs = isoparse("2027-06-10T08:00:05+00:00")

    with session_factory() as db:
        assert reserve(db, booked.appointment_id, NotificationKind.CONFIRMATION_EMAIL, ours)
        assert not reserve(db, booked.appointment_id, NotificationKind.CONFIRMATION_EMAIL, theirs)
        assert not release(db, booked.appointment_id, NotificationKind.CONFIRMATION_EMAIL, theirs)

    assert store.get(Appointment, booked.appointment_id).confirmation_email_sent_at == to_db(ours)

    with session_factory() as db:
        assert release(db, booked.appointment_id, NotificationKind.CONFIRMATION_EMAIL, ours)

    assert store.get(Appointment, booked.appointment_id).confirmation_email_sent_at is None


def test_kind_for_another_status_is_skipped(booked, session_factory):
    sender = RecordingSender()
    assert send_once(session_factory, booked.appointment_id, NotificationKind.REJECTED_EMAIL, sender) == "skipped"
    assert send_once(session_factory, "missing", NotificationKind.CONFIRMATION_EMAIL, sender) == "skipped"
    assert sender.calls == []


def test_sms_kinds_need_schema_version_two(booked, session_factory):
    sender = RecordingSender()

    assert send_once(session_factory, booked.appointment_id, NotificationKind.CONFIRMATION_SMS, sender,
                     schema_version=1) == "skipped"
    assert sender.calls == []

    assert send_once(session_factory, booked.appointment_id, NotificationKind.CONFIRMATION_SMS, sender,
                     schema_version=2) == "sent"
    assert sender.calls[0][0] == "+32470000000"


def test_sms_without_phone_is_skipped(salon, session_factory):
    result = book_appointment(session_factory, BookingRequest(
        start_at=local(14),
        service_ids=[salon.haircut.id],
        client=ClientInfo(first_name="Mia", last_name="Claes", email="mia@example.com")
    ))
    sender = RecordingSender()
    assert send_once(session_factory, result.appointment_id, NotificationKind.CONFIRMATION_SMS, sender,
                     schema_version=2) == "skipped"
    assert sender.calls == []


def test_reminder_sweep_sends_inside_the_window_only_once(booked, session_factory):
    sender = RecordingSender()
    now = booked.start - timedelta(hours=24) + timedelta(minutes=5)

    counts = run_reminders_once(session_factory, NotificationKind.REMINDER_24H_EMAIL, sender, now=now)
    assert counts == {"candidates": 1, "sent": 1, "skipped": 0, "failed": 0}

    counts = run_reminders_once(session_factory, NotificationKind.REMINDER_24H_EMAIL, sender, now=now)
    assert counts["candidates"] == 0
    assert len(sender.calls) == 1


def test_reminder_sweep_ignores_appointments_outside_the_window(booked, session_factory):
    sender = RecordingSender()
    now = booked.start - timedelta(hours=24) - timedelta(minutes=30)

    assert run_reminders_once(session_factory, NotificationKind.REMINDER_24H_EMAIL, sender, now=now)["candidates"] == 0
    assert run_reminders_once(session_factory, NotificationKind.REMINDER_2H_SMS, sender,
                              now=booked.start - timedelta(hours=2), schema_version=2)["sent"] == 1


def test_reminder_sweep_skips_cancelled_appointments(booked, session_factory):
    cancel_appointment(session_factory, booked.appointment_id)
    now = booked.start - timedelta(hours=24)

    counts = run_reminders_once(session_factory, NotificationKind.REMINDER_24H_EMAIL, RecordingSender(), now=now)
    assert counts["candidates"] == 0


def test_overlapping_sweep_returns_immediately(booked, session_factory):
    in_flight = _sweeps_in_flight[NotificationKind.REMINDER_24H_EMAIL]
    sender = RecordingSender()

    in_flight.acquire()
    try:
        assert run_reminders_once(session_factory, NotificationKind.REMINDER_24H_EMAIL, sender,
                                  now=booked.start - timedelta(hours=24)) is None
    finally:
        in_flight.release()

    assert sender.calls == []


def test_sweep_requires_a_reminder_kind(session_factory):
    with pytest.raises(ValueError):
        run_reminders_once(session_factory, NotificationKind.CONFIRMATION_EMAIL, RecordingSender())
