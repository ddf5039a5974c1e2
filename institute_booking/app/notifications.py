# notifications.py
"""
At-most-once notification delivery.

Each (appointment, kind) pair owns a nullable ``*_sent_at`` column on the appointment.
A sender first claims it with a conditional update (``WHERE column IS NULL``); only the
caller whose update touched a row may send. A failed send hands the claim back so a
later run can retry. A crash between claim and hand-back leaves the kind claimed for
good and needs an operator to clear the column.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional

from prometheus_client import Counter
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import config
from .clock import to_db, utcnow
from .models import Appointment, AppointmentStatus, NotificationLog

NOTIFICATION_OUTCOMES = Counter("notification_outcomes_total", "Notification attempts per kind and result",
                                ["kind", "result"])

SENT = "sent"
SKIPPED = "skipped"
FAILED = "failed"

REMINDER_TOLERANCE = timedelta(minutes=10)


class NotificationKind(str, Enum):
    CONFIRMATION_EMAIL = "confirmation_email"
    REJECTED_EMAIL = "rejected_email"
    REMINDER_24H_EMAIL = "reminder_24h_email"
    CONFIRMATION_SMS = "confirmation_sms"
    REMINDER_24H_SMS = "reminder_24h_sms"
    REMINDER_2H_SMS = "reminder_2h_sms"


@dataclass(frozen=True)
class KindSpec:
    column: str
    channel: str
    required_status: str
    min_schema_version: int = 1
    lead_time: Optional[timedelta] = None  # reminders only


KINDS = {
    NotificationKind.CONFIRMATION_EMAIL: KindSpec(
        "confirmation_email_sent_at", "EMAIL", AppointmentStatus.CONFIRMED.value),
    NotificationKind.REJECTED_EMAIL: KindSpec(
        "rejected_email_sent_at", "EMAIL", AppointmentStatus.REJECTED.value),
    NotificationKind.REMINDER_24H_EMAIL: KindSpec(
        "reminder_24h_email_sent_at", "EMAIL", AppointmentStatus.CONFIRMED.value, lead_time=timedelta(hours=24)),
    NotificationKind.CONFIRMATION_SMS: KindSpec(
        "confirmation_sms_sent_at", "SMS", AppointmentStatus.CONFIRMED.value, min_schema_version=2),
    NotificationKind.REMINDER_24H_SMS: KindSpec(
        "reminder_24h_sms_sent_at", "SMS", AppointmentStatus.CONFIRMED.value, min_schema_version=2,
        lead_time=timedelta(hours=24)),
    NotificationKind.REMINDER_2H_SMS: KindSpec(
        "reminder_2h_sms_sent_at", "SMS", AppointmentStatus.CONFIRMED.value, min_schema_version=2,
        lead_time=timedelta(hours=2)),
}

# One in-flight flag per reminder job
_sweeps_in_flight = {kind: threading.Lock() for kind, kind_spec in KINDS.items() if kind_spec.lead_time}


def is_kind_supported(kind: NotificationKind, schema_version: Optional[int] = None) -> bool:
    if schema_version is None:
        schema_version = config.SCHEMA_VERSION
    return schema_version >= KINDS[kind].min_schema_version


def reserve(db: Session, appointment_id: str, kind: NotificationKind, reserved_at: datetime) -> bool:
    """Claim ``kind`` for the appointment. False when someone else already holds it."""
    column = getattr(Appointment, KINDS[kind].column)
    updated = db.query(Appointment).filter(
        Appointment.id == appointment_id,
        column.is_(None)
    ).update({column: to_db(reserved_at)}, synchronize_session=False)
    db.commit()
    return updated == 1


def release(db: Session, appointment_id: str, kind: NotificationKind, reserved_at: datetime) -> bool:
    """Hand a claim back, but only if it is still ours."""
    column = getattr(Appointment, KINDS[kind].column)
    updated = db.query(Appointment).filter(
        Appointment.id == appointment_id,
        column == to_db(reserved_at)
    ).update({column: None}, synchronize_session=False)
    db.commit()
    return updated == 1


def log_notification_event(db: Session, appointment: Appointment, kind: NotificationKind, recipient: str,
                           status: str, error_message: Optional[str] = None):
    try:
        db.add(NotificationLog(
            appointment_id=appointment.id,
            client_id=appointment.client_id,
            kind=kind.value,
            channel=KINDS[kind].channel,
            recipient=recipient,
            status=status,
            error_message=error_message
        ))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logging.error(f"Could not log {kind.value} {status} for appointment {appointment.id}: {str(e)}")


def recipient_for(appointment: Appointment, channel: str) -> Optional[str]:
    client = appointment.client
    if client is None:
        return None
    if channel == "EMAIL":
        return (client.email or "").strip().lower() or None
    return (client.phone or "").strip() or None


def build_message(appointment: Appointment, kind: NotificationKind) -> dict:
    names = [item.service.name for item in appointment.items if item.service is not None]
    start_local = appointment.start.astimezone(config.INSTITUTE_TZ)
    return {
        "kind": kind.value,
        "appointment_id": appointment.id,
        "client_name": appointment.client.display_name if appointment.client else "",
        "practitioner_name": appointment.staff_member.display_name if appointment.staff_member else "",
        "service_summary": " + ".join(names) or "Service",
        "starts_at": start_local.isoformat(),
        "rejected_reason": appointment.rejected_reason,
    }


def send_once(session_factory, appointment_id: str, kind: NotificationKind, sender: Callable,
              now: Optional[datetime] = None, schema_version: Optional[int] = None) -> str:
    """
    Reserve, send, then confirm or roll back the reservation.

    ``sender(recipient, message)`` performs the external delivery and raises on failure.
    Returns "sent", "skipped" or "failed".
    """
    kind = NotificationKind(kind)
    kind_spec = KINDS[kind]

    if not is_kind_supported(kind, schema_version):
        logging.warning(f"{kind.value} skipped for {appointment_id}: not available on this schema version")
        NOTIFICATION_OUTCOMES.labels(kind=kind.value, result=SKIPPED).inc()
        return SKIPPED

    db = session_factory()
    try:
        appointment = db.get(Appointment, appointment_id)
        if appointment is None or appointment.canceled_at is not None \
                or appointment.status != kind_spec.required_status:
            NOTIFICATION_OUTCOMES.labels(kind=kind.value, result=SKIPPED).inc()
            return SKIPPED

        recipient = recipient_for(appointment, kind_spec.channel)
        if not recipient or getattr(appointment, kind_spec.column) is not None:
            NOTIFICATION_OUTCOMES.labels(kind=kind.value, result=SKIPPED).inc()
            return SKIPPED

        message = build_message(appointment, kind)
        reserved_at = now or utcnow()
        if not reserve(db, appointment.id, kind, reserved_at):
            logging.info(f"{kind.value.upper()}_SKIPPED appointmentId={appointment.id}: already reserved")
            NOTIFICATION_OUTCOMES.labels(kind=kind.value, result=SKIPPED).inc()
            return SKIPPED

        try:
            sender(recipient, message)
        except Exception as e:
            logging.error(f"{kind.value.upper()}_FAILED appointmentId={appointment.id} recipient={recipient}: {str(e)}")
            release(db, appointment.id, kind, reserved_at)
            log_notification_event(db, appointment, kind, recipient, "FAILED", str(e) or type(e).__name__)
            NOTIFICATION_OUTCOMES.labels(kind=kind.value, result=FAILED).inc()
            return FAILED

        log_notification_event(db, appointment, kind, recipient, "SENT")
        logging.info(f"{kind.value.upper()}_SENT appointmentId={appointment.id} recipient={recipient}")
        NOTIFICATION_OUTCOMES.labels(kind=kind.value, result=SENT).inc()
        return SENT
    finally:
        db.close()


def find_reminder_candidates(db: Session, kind: NotificationKind, now: datetime) -> List[str]:
    kind_spec = KINDS[kind]
    target = now + kind_spec.lead_time
    column = getattr(Appointment, kind_spec.column)
    rows = db.query(Appointment.id).filter(
        Appointment.status == AppointmentStatus.CONFIRMED.value,
        Appointment.canceled_at.is_(None),
        Appointment.starts_at >= to_db(target - REMINDER_TOLERANCE),
        Appointment.starts_at <= to_db(target + REMINDER_TOLERANCE),
        column.is_(None)
    ).order_by(Appointment.starts_at).all()
    return [row.id for row in rows]


def run_reminders_once(session_factory, kind: NotificationKind, sender: Callable, now: Optional[datetime] = None,
                       schema_version: Optional[int] = None):
    """
    One sweep of the reminder job for ``kind``.

    Returns the counts of the run, or None when a previous run of the same job is still going.
    """
    kind = NotificationKind(kind)
    if kind not in _sweeps_in_flight:
        raise ValueError(f"{kind.value} is not a reminder kind")
    if not is_kind_supported(kind, schema_version):
        logging.info(f"[jobs.{kind.value}] disabled on schema version {config.SCHEMA_VERSION}")
        return None

    in_flight = _sweeps_in_flight[kind]
    if not in_flight.acquire(blocking=False):
        logging.info(f"[jobs.{kind.value}] skipped: previous run still in progress")
        return None

    try:
        now = now or utcnow()
        db = session_factory()
        try:
            candidate_ids = find_reminder_candidates(db, kind, now)
        finally:
            db.close()

        counts = {"candidates": len(candidate_ids), SENT: 0, SKIPPED: 0, FAILED: 0}
        for appointment_id in candidate_ids:
            result = send_once(session_factory, appointment_id, kind, sender, now=now, schema_version=schema_version)
            counts[result] += 1

        logging.info(
            f"[jobs.{kind.value}] done candidates={counts['candidates']} sent={counts[SENT]} "
            f"skipped={counts[SKIPPED]} failed={counts[FAILED]}"
        )
        return counts
    finally:
        in_flight.release()


def logging_sender(recipient: str, message: dict):
    """Delivery transport for dry runs: writes the message to the log instead of sending it."""
    logging.info(f"Would deliver {message['kind']} to {recipient}: {message}")
