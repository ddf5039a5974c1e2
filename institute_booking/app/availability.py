# availability.py
"""
Availability Resolver

Turns weekly rules into concrete work intervals for one civil day, considering:
- Institute opening hours (weekly, optionally date-bounded)
- Practitioner weekly rules, scoped to the institute hours
- Time-off and existing appointments as blocking intervals
"""
import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, Optional

import pytz
from sqlalchemy.orm import Session

from . import config
from .clock import from_db, to_db
from .errors import InternalFailure
from .intervals import TimeInterval, intersect, normalize
from .models import Appointment, AvailabilityRule, InstituteAvailabilityRule, NON_BLOCKING_STATUSES, TimeOff

HHMM_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def parse_hhmm(value: str) -> time:
    match = HHMM_PATTERN.match(value or "")
    if not match:
        raise ValueError(f"Invalid time format: {value}")
    return time(int(match.group(1)), int(match.group(2)))


def civil_weekday(day: date) -> int:
    """Weekday number as stored on rules: 0 = Sunday ... 6 = Saturday."""
    return day.isoweekday() % 7


def civil_day_of(instant: datetime, tz=None) -> date:
    tz = tz or config.INSTITUTE_TZ
    return instant.astimezone(tz).date()


def civil_to_instant(day: date, value: time, tz=None) -> datetime:
    tz = tz or config.INSTITUTE_TZ
    return tz.localize(datetime.combine(day, value)).astimezone(pytz.utc)


def day_bounds(day: date, tz=None) -> TimeInterval:
    """Absolute instants of local midnight to next local midnight (23 or 25 hours on DST days)."""
    return TimeInterval(
        civil_to_instant(day, time.min, tz),
        civil_to_instant(day + timedelta(days=1), time.min, tz)
    )


def _as_date(value):
    if isinstance(value, datetime):
        return value.date()
    return value


def is_rule_applicable(rule, day: date) -> bool:
    if not rule.is_active:
        return False
    effective_from = _as_date(rule.effective_from)
    effective_to = _as_date(rule.effective_to)
    if effective_from and day < effective_from:
        return False
    if effective_to and day > effective_to:
        return False
    return True


def rule_to_interval(rule, day: date, tz=None) -> Optional[TimeInterval]:
    try:
        start = civil_to_instant(day, parse_hhmm(rule.start_time), tz)
        end = civil_to_instant(day, parse_hhmm(rule.end_time), tz)
    except ValueError as e:
        logging.error(f"Stored availability rule {rule.id} is corrupt: {str(e)}")
        raise InternalFailure(f"Availability rule {rule.id} has an invalid time")
    if end <= start:
        return None
    return TimeInterval(start, end)


def build_institute_intervals(day: date, rules: Iterable, tz=None) -> List[TimeInterval]:
    intervals = []
    for rule in rules:
        if not is_rule_applicable(rule, day):
            continue
        interval = rule_to_interval(rule, day, tz)
        if interval:
            intervals.append(interval)
    return normalize(intervals)


def build_staff_work_intervals(
        day: date,
        rules: Iterable,
        institute_intervals: List[TimeInterval],
        default_open: Optional[bool] = None,
        tz=None
) -> Dict[str, List[TimeInterval]]:
    """
    Work intervals per practitioner id for ``day``.

    A practitioner is never open while the institute is closed. When no institute
    hours apply to the day at all, ``default_open`` decides: the practitioner's own
    rules are used unmodified (True) or the practitioner is closed (False).
    """
    if default_open is None:
        default_open = config.INSTITUTE_HOURS_DEFAULT_OPEN

    work_by_staff = defaultdict(list)

    for rule in rules:
        if not is_rule_applicable(rule, day):
            continue

        interval = rule_to_interval(rule, day, tz)
        if not interval:
            continue

        if institute_intervals:
            scoped = intersect([interval], institute_intervals)
        elif default_open:
            scoped = [interval]
        else:
            scoped = []

        if not scoped:
            continue

        work_by_staff[rule.staff_member_id].extend(scoped)

    return {staff_id: normalize(intervals) for staff_id, intervals in work_by_staff.items()}


@dataclass
class DayContext:
    day: date
    bounds: TimeInterval
    work_by_staff: Dict[str, List[TimeInterval]] = field(default_factory=dict)
    blocked_by_staff: Dict[str, List[TimeInterval]] = field(default_factory=dict)

    def work_for(self, staff_id: str) -> List[TimeInterval]:
        return self.work_by_staff.get(staff_id, [])

    def blocked_for(self, staff_id: str) -> List[TimeInterval]:
        return self.blocked_by_staff.get(staff_id, [])


def load_day_context(
        db: Session,
        day: date,
        staff_ids: Iterable[str],
        exclude_appointment_id: Optional[str] = None,
        default_open: Optional[bool] = None,
        tz=None
) -> DayContext:
    """
    Load rules, time-off and blocking appointments for ``staff_ids`` on ``day``.

    Runs on whatever session it is given: inside a booking transaction the reads are
    part of the serializable snapshot, from the advisory endpoints they are plain reads.
    """
    staff_ids = list(staff_ids)
    bounds = day_bounds(day, tz)
    context = DayContext(day=day, bounds=bounds)
    if not staff_ids:
        return context

    weekday = civil_weekday(day)
    day_start = to_db(bounds.start)
    day_end = to_db(bounds.end)

    staff_rules = db.query(AvailabilityRule).filter(
        AvailabilityRule.staff_member_id.in_(staff_ids),
        AvailabilityRule.weekday == weekday,
        AvailabilityRule.is_active.is_(True)
    ).all()

    institute_rules = db.query(InstituteAvailabilityRule).filter(
        InstituteAvailabilityRule.weekday == weekday,
        InstituteAvailabilityRule.is_active.is_(True)
    ).all()

    time_offs = db.query(TimeOff).filter(
        TimeOff.staff_member_id.in_(staff_ids),
        TimeOff.starts_at < day_end,
        TimeOff.ends_at > day_start
    ).all()

    appointments_query = db.query(Appointment).filter(
        Appointment.staff_member_id.in_(staff_ids),
        Appointment.starts_at < day_end,
        Appointment.ends_at > day_start,
        Appointment.status.notin_(NON_BLOCKING_STATUSES)
    )
    if exclude_appointment_id:
        appointments_query = appointments_query.filter(Appointment.id != exclude_appointment_id)
    appointments = appointments_query.all()

    institute_intervals = build_institute_intervals(day, institute_rules, tz)
    context.work_by_staff = build_staff_work_intervals(day, staff_rules, institute_intervals, default_open, tz)

    blocked = defaultdict(list)
    for time_off in time_offs:
        blocked[time_off.staff_member_id].append(TimeInterval(from_db(time_off.starts_at), from_db(time_off.ends_at)))
    for appointment in appointments:
        blocked[appointment.staff_member_id].append(TimeInterval(appointment.start, appointment.end))
    context.blocked_by_staff = {staff_id: normalize(intervals) for staff_id, intervals in blocked.items()}

    logging.debug(
        f"Day context {day.isoformat()}: {len(staff_rules)} staff rules, {len(institute_rules)} institute rules, "
        f"{len(time_offs)} time-off, {len(appointments)} appointments"
    )
    return context
