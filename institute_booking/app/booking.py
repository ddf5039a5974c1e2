# booking.py
"""
Booking Transaction

One booking attempt runs through
Validating -> ResolvingCandidates -> CheckingAvailability -> ResolvingClient -> Persisting -> Committed
inside a single serializable transaction, or ends in Aborted(reason) with nothing written.

Status and schedule changes of existing appointments all go through ``transition`` and
``reschedule`` so their side effects (timestamps, cleared reminder reservations) cannot be skipped.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional

from prometheus_client import Counter, Histogram
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import config
from .availability import civil_day_of, load_day_context
from .clock import parse_instant, to_db, utcnow
from .eligibility import (evaluate_candidates, link_price_cents, max_free_minutes, practitioners_linked_to_all,
                          select_practitioner)
from .errors import (BookingError, IdentityConflict, InternalFailure, InvalidInput, InvalidTransition,
                     NoEligiblePractitioner, NotFound, SlotConflict)
from .models import Appointment, AppointmentItem, AppointmentStatus, Client, Service, ServiceStaffLink, StaffMember

BOOKING_OUTCOMES = Counter("booking_outcomes_total", "Booking attempts per outcome", ["outcome"])
BOOKING_LATENCY = Histogram("booking_transaction_seconds", "Wall-clock time of booking transactions")

# Serialization failure, deadlock
CONFLICT_SQLSTATES = {"40001", "40P01"}
# query_canceled, raised by statement_timeout
TIMEOUT_SQLSTATES = {"57014"}

ALLOWED_TRANSITIONS = {
    AppointmentStatus.CONFIRMED: {AppointmentStatus.PENDING},
    AppointmentStatus.REJECTED: {AppointmentStatus.PENDING},
    AppointmentStatus.CANCELLED: {AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED},
    AppointmentStatus.COMPLETED: {AppointmentStatus.CONFIRMED},
    AppointmentStatus.NO_SHOW: {AppointmentStatus.CONFIRMED},
}

REMINDER_RESERVATION_COLUMNS = ("reminder_24h_email_sent_at", "reminder_24h_sms_sent_at", "reminder_2h_sms_sent_at")


class BookingState(str, Enum):
    VALIDATING = "Validating"
    RESOLVING_CANDIDATES = "ResolvingCandidates"
    CHECKING_AVAILABILITY = "CheckingAvailability"
    RESOLVING_CLIENT = "ResolvingClient"
    PERSISTING = "Persisting"
    COMMITTED = "Committed"
    ABORTED = "Aborted"


@dataclass
class ClientInfo:
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class BookingRequest:
    start_at: object  # ISO-8601 string with offset, or an aware datetime
    service_ids: List[str]
    client: ClientInfo
    practitioner_id: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class BookingResult:
    appointment_id: str
    start: datetime
    end: datetime
    practitioner_id: str
    practitioner_name: str
    service_summary: str
    status: str
    total_price_cents: int
    items: List[dict] = field(default_factory=list)


def normalize_email(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip().lower()
    return value or None


def normalize_phone(value: Optional[str]) -> Optional[str]:
    value = "".join((value or "").split())
    return value or None


def unique_in_order(values):
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


def build_service_summary(names: List[str]) -> str:
    names = [name for name in names if name]
    if not names:
        return "Service"
    return " + ".join(names)


def classify_store_error(exc: Exception) -> BookingError:
    """Translate a store exception into the booking error taxonomy."""
    if isinstance(exc, BookingError):
        return exc

    if isinstance(exc, IntegrityError):
        # Unique client email/phone created by a concurrent booking
        return SlotConflict("Booking conflicted with a concurrent request")

    if isinstance(exc, DBAPIError):
        orig = getattr(exc, "orig", None)
        sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
        message = str(exc).lower()
        if sqlstate in CONFLICT_SQLSTATES or "could not serialize access" in message \
                or "deadlock detected" in message or "database is locked" in message:
            return SlotConflict("Selected slot is no longer available")
        if sqlstate in TIMEOUT_SQLSTATES or "statement timeout" in message:
            return InternalFailure("The booking store did not respond in time")

    return InternalFailure("Internal server error")


def statement_timeout_ms(timeout_seconds) -> int:
    # PostgreSQL reads 0 as "no timeout"
    return max(1, int(timeout_seconds * 1000))


def run_serializable(session_factory, work: Callable[[Session], object], label: str, timeout_seconds=None):
    """
    Run ``work(db)`` in one serializable transaction and commit it.

    Any exception rolls the whole transaction back. Store errors are classified into
    the booking taxonomy; conflicts are surfaced, never retried here.
    """
    if timeout_seconds is None:
        timeout_seconds = config.BOOKING_TIMEOUT_SECONDS

    started = time.monotonic()
    db = session_factory()
    try:
        if db.get_bind().dialect.name == 'postgresql':
            db.connection(execution_options={"isolation_level": "SERIALIZABLE"})
            db.execute(text(f"SET LOCAL statement_timeout = {statement_timeout_ms(timeout_seconds)}"))

        result = work(db)

        if time.monotonic() - started > timeout_seconds:
            raise InternalFailure("The booking store did not respond in time")

        db.commit()
        return result
    except BookingError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        error = classify_store_error(e)
        if isinstance(error, InternalFailure):
            logging.error(f"[{label}] store failure: {str(e)}")
        else:
            logging.info(f"[{label}] aborted by the store: {str(e)}")
        raise error from e
    except Exception as e:
        db.rollback()
        logging.exception(f"[{label}] unexpected failure: {str(e)}")
        raise InternalFailure("Internal server error") from e
    finally:
        db.close()


class BookingTransaction:
    """One booking attempt. ``run`` executes every state against the given session."""

    def __init__(self, request: BookingRequest, booking_mode: Optional[str] = None, now: Optional[datetime] = None):
        self.request = request
        self.booking_mode = (booking_mode or config.BOOKING_MODE).upper()
        self.now = now or utcnow()
        self.state = BookingState.VALIDATING
        self.start = None
        self.service_ids = []
        self.email = None
        self.phone = None

    def _enter(self, state: BookingState):
        self.state = state
        logging.debug(f"[booking] start={self.start} state={state.value}")

    def validate_request(self):
        """Checks that need no store access."""
        self._enter(BookingState.VALIDATING)
        self.start = parse_instant(self.request.start_at)

        self.service_ids = unique_in_order(s for s in (self.request.service_ids or []) if s)
        if not self.service_ids:
            raise InvalidInput("At least one service is required")

        client = self.request.client
        if client is None or not (client.first_name or "").strip() or not (client.last_name or "").strip():
            raise InvalidInput("Client first and last name are required")

        self.email = normalize_email(client.email)
        self.phone = normalize_phone(client.phone)
        if not self.email and not self.phone:
            raise InvalidInput("email or phone is required")

    def run(self, db: Session) -> BookingResult:
        if self.start is None:
            self.validate_request()

        services = self._load_services(db)
        pinned = self._load_pinned_practitioner(db)

        self._enter(BookingState.RESOLVING_CANDIDATES)
        prices_by_staff = self._resolve_candidates(db, services, pinned)

        self._enter(BookingState.CHECKING_AVAILABILITY)
        required_minutes = sum(service.duration_min for service in services)
        context = load_day_context(db, civil_day_of(self.start), prices_by_staff.keys())
        candidates = evaluate_candidates(self.start, required_minutes, prices_by_staff, context)
        winner = select_practitioner(candidates, pinned.id if pinned else None)
        if winner is None:
            raise SlotConflict("Selected slot is no longer available")

        self._enter(BookingState.RESOLVING_CLIENT)
        client = self._resolve_client(db)

        self._enter(BookingState.PERSISTING)
        links = {
            link.service_id: link
            for link in db.query(ServiceStaffLink).filter(
                ServiceStaffLink.staff_member_id == winner.practitioner_id,
                ServiceStaffLink.service_id.in_(self.service_ids)
            )
        }
        end = self.start + timedelta(minutes=required_minutes)
        status = AppointmentStatus.PENDING if self.booking_mode == 'MANUAL' else AppointmentStatus.CONFIRMED

        appointment = Appointment(
            client_id=client.id,
            staff_member_id=winner.practitioner_id,
            starts_at=to_db(self.start),
            ends_at=to_db(end),
            status=status.value,
            notes=(self.request.notes or "").strip() or None,
            confirmed_at=to_db(self.now) if status == AppointmentStatus.CONFIRMED else None,
        )
        for order, service in enumerate(services):
            appointment.items.append(AppointmentItem(
                service_id=service.id,
                order=order,
                duration_min=service.duration_min,
                price_cents=link_price_cents(service, links[service.id])
            ))
        appointment.total_price_cents = sum(item.price_cents for item in appointment.items)
        db.add(appointment)
        db.flush()

        practitioner = db.get(StaffMember, winner.practitioner_id)
        return BookingResult(
            appointment_id=appointment.id,
            start=self.start,
            end=end,
            practitioner_id=winner.practitioner_id,
            practitioner_name=practitioner.display_name,
            service_summary=build_service_summary([service.name for service in services]),
            status=status.value,
            total_price_cents=appointment.total_price_cents,
            items=[
                {"service_id": item.service_id, "order": item.order, "duration_min": item.duration_min,
                 "price_cents": item.price_cents}
                for item in appointment.items
            ]
        )

    def _load_services(self, db: Session) -> List[Service]:
        found = {
            service.id: service
            for service in db.query(Service).filter(Service.id.in_(self.service_ids), Service.is_active.is_(True))
        }
        missing = [service_id for service_id in self.service_ids if service_id not in found]
        if missing:
            raise InvalidInput(f"Unknown or inactive service: {', '.join(missing)}")
        return [found[service_id] for service_id in self.service_ids]

    def _load_pinned_practitioner(self, db: Session) -> Optional[StaffMember]:
        if not self.request.practitioner_id:
            return None
        practitioner = db.get(StaffMember, self.request.practitioner_id)
        if practitioner is None or not practitioner.is_active:
            raise InvalidInput("Unknown or inactive practitioner")
        return practitioner

    def _resolve_candidates(self, db: Session, services: List[Service], pinned: Optional[StaffMember]):
        query = db.query(ServiceStaffLink).join(StaffMember).filter(
            ServiceStaffLink.service_id.in_(self.service_ids),
            StaffMember.is_active.is_(True)
        )
        if pinned:
            query = query.filter(ServiceStaffLink.staff_member_id == pinned.id)
        links = query.all()

        staff_ids = practitioners_linked_to_all(self.service_ids, links)
        if not staff_ids:
            if pinned:
                raise NoEligiblePractitioner("Selected practitioner cannot perform every requested service")
            raise NoEligiblePractitioner("No active practitioner can perform every requested service")

        services_by_id = {service.id: service for service in services}
        prices_by_staff = {staff_id: 0 for staff_id in staff_ids}
        for link in links:
            if link.staff_member_id in prices_by_staff:
                prices_by_staff[link.staff_member_id] += link_price_cents(services_by_id[link.service_id], link)
        return prices_by_staff

    def _resolve_client(self, db: Session) -> Client:
        by_email = db.query(Client).filter(Client.email == self.email).first() if self.email else None
        by_phone = db.query(Client).filter(Client.phone == self.phone).first() if self.phone else None

        if by_email and by_phone and by_email.id != by_phone.id:
            raise IdentityConflict("Client identity conflict between email and phone")

        info = self.request.client
        client = by_email or by_phone
        if client is None:
            client = Client(
                first_name=info.first_name.strip(),
                last_name=info.last_name.strip(),
                email=self.email,
                phone=self.phone
            )
            db.add(client)
        else:
            client.first_name = info.first_name.strip()
            client.last_name = info.last_name.strip()
            client.email = self.email or client.email
            client.phone = self.phone or client.phone
        db.flush()
        return client


def book_appointment(session_factory, request: BookingRequest, booking_mode=None, now=None, timeout_seconds=None,
                     redis_client=None) -> BookingResult:
    """The only write path into the engine. Raises a ``BookingError`` subclass on every abort."""
    transaction = BookingTransaction(request, booking_mode=booking_mode, now=now)
    started = time.monotonic()
    try:
        transaction.validate_request()
        result = run_serializable(session_factory, transaction.run, "booking", timeout_seconds)
    except BookingError as e:
        failed_state = transaction.state
        transaction.state = BookingState.ABORTED
        BOOKING_OUTCOMES.labels(outcome=e.reason).inc()
        logging.info(f"[booking] aborted in {failed_state.value}: {e.reason} ({e.message})")
        raise
    finally:
        BOOKING_LATENCY.observe(time.monotonic() - started)

    transaction.state = BookingState.COMMITTED
    BOOKING_OUTCOMES.labels(outcome="committed").inc()
    logging.info(
        f"[booking] committed appointment={result.appointment_id} practitioner={result.practitioner_id} "
        f"start={result.start.isoformat()} end={result.end.isoformat()}"
    )

    _invalidate_days(redis_client, result.start)
    return result


def _invalidate_days(redis_client, *instants):
    if redis_client is None:
        return
    from .slots import invalidate_free_starts
    for day in sorted({civil_day_of(instant) for instant in instants}):
        invalidate_free_starts(redis_client, day)


def transition(appointment: Appointment, new_status, now: Optional[datetime] = None, reason: Optional[str] = None):
    """Move ``appointment`` to ``new_status``, applying the side effects that go with it."""
    new_status = AppointmentStatus(new_status)
    current = AppointmentStatus(appointment.status)
    if current not in ALLOWED_TRANSITIONS.get(new_status, set()):
        raise InvalidTransition(f"Cannot move appointment from {current.value} to {new_status.value}")

    stamp = to_db(now or utcnow())
    appointment.status = new_status.value

    if new_status == AppointmentStatus.CONFIRMED:
        appointment.confirmed_at = stamp
        appointment.rejected_at = None
        appointment.rejected_reason = None
    elif new_status == AppointmentStatus.REJECTED:
        appointment.rejected_at = stamp
        appointment.rejected_reason = (reason or "").strip() or None
    elif new_status == AppointmentStatus.CANCELLED:
        appointment.canceled_at = stamp

    return appointment


def reschedule(appointment: Appointment, new_start: datetime):
    """Move the appointment, keeping its duration. Reminder reservations no longer apply and are cleared."""
    if AppointmentStatus(appointment.status) not in (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED):
        raise InvalidTransition(f"Cannot reschedule a {appointment.status} appointment")

    duration = appointment.end - appointment.start
    appointment.starts_at = to_db(new_start)
    appointment.ends_at = to_db(new_start + duration)
    for column in REMINDER_RESERVATION_COLUMNS:
        setattr(appointment, column, None)
    return appointment


def _get_appointment(db: Session, appointment_id: str) -> Appointment:
    appointment = db.get(Appointment, appointment_id)
    if appointment is None:
        raise NotFound("Appointment not found")
    return appointment


def _ensure_slot_free(db: Session, appointment: Appointment, start: datetime, end: datetime):
    context = load_day_context(
        db, civil_day_of(start), [appointment.staff_member_id], exclude_appointment_id=appointment.id
    )
    required = int((end - start).total_seconds() // 60)
    free = max_free_minutes(
        context.work_for(appointment.staff_member_id), context.blocked_for(appointment.staff_member_id), start
    )
    if free < required:
        raise SlotConflict("Slot is no longer available")


def accept_appointment(session_factory, appointment_id: str, now=None, timeout_seconds=None,
                       redis_client=None) -> Appointment:
    """Admin acceptance: PENDING -> CONFIRMED, re-checking the slot inside the transaction."""
    def work(db):
        appointment = _get_appointment(db, appointment_id)
        if appointment.status != AppointmentStatus.PENDING.value:
            raise InvalidTransition("Only pending appointments can be accepted")
        _ensure_slot_free(db, appointment, appointment.start, appointment.end)
        return transition(appointment, AppointmentStatus.CONFIRMED, now)

    appointment = run_serializable(session_factory, work, "appointments.accept", timeout_seconds)
    _invalidate_days(redis_client, appointment.start)
    return appointment


def reject_appointment(session_factory, appointment_id: str, reason=None, now=None, redis_client=None) -> Appointment:
    def work(db):
        appointment = _get_appointment(db, appointment_id)
        if appointment.status != AppointmentStatus.PENDING.value:
            raise InvalidTransition("Only pending appointments can be rejected")
        return transition(appointment, AppointmentStatus.REJECTED, now, reason)

    appointment = run_serializable(session_factory, work, "appointments.reject")
    _invalidate_days(redis_client, appointment.start)
    return appointment


def cancel_appointment(session_factory, appointment_id: str, now=None, redis_client=None) -> Appointment:
    def work(db):
        return transition(_get_appointment(db, appointment_id), AppointmentStatus.CANCELLED, now)

    appointment = run_serializable(session_factory, work, "appointments.cancel")
    _invalidate_days(redis_client, appointment.start)
    return appointment


def reschedule_appointment(session_factory, appointment_id: str, new_start, timeout_seconds=None,
                           redis_client=None) -> Appointment:
    new_start = parse_instant(new_start)
    previous_start = []

    def work(db):
        appointment = _get_appointment(db, appointment_id)
        previous_start.append(appointment.start)
        duration = appointment.end - appointment.start
        _ensure_slot_free(db, appointment, new_start, new_start + duration)
        return reschedule(appointment, new_start)

    appointment = run_serializable(session_factory, work, "appointments.reschedule", timeout_seconds)
    _invalidate_days(redis_client, appointment.start, *previous_start)
    return appointment
