# slots.py
"""
Advisory availability reads used to drive the booking UI.

Nothing here is transactional and results may be slightly stale: the booking
transaction re-checks everything before it writes.
"""
import json
import logging
from datetime import date, datetime, timedelta
from typing import Dict, Optional

from redis import RedisError
from sqlalchemy.orm import Session

from . import config
from .availability import civil_day_of, load_day_context
from .clock import parse_instant
from .eligibility import link_price_cents, max_free_minutes
from .errors import InvalidInput
from .intervals import minutes_between, subtract
from .models import Service, ServiceStaffLink, StaffMember

REASON_NOT_ENOUGH_TIME = "not enough time"
REASON_NOT_QUALIFIED = "practitioner not qualified"
REASON_NOBODY_AVAILABLE = "no practitioner available"


def parse_day(value) -> date:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise InvalidInput("date must be a valid YYYY-MM-DD")


def free_starts_cache_key(day: date, practitioner_id: Optional[str] = None) -> str:
    return f"free-starts:{day.isoformat()}:{practitioner_id or 'all'}"


def invalidate_free_starts(redis_client, day: date):
    try:
        keys = list(redis_client.scan_iter(match=f"free-starts:{day.isoformat()}:*"))
        if keys:
            redis_client.delete(*keys)
    except RedisError as e:
        logging.warning(f"Could not invalidate free starts for {day.isoformat()}: {str(e)}")


def _active_staff_ids(db: Session, practitioner_id: Optional[str]):
    query = db.query(StaffMember.id).filter(StaffMember.is_active.is_(True))
    if practitioner_id:
        query = query.filter(StaffMember.id == practitioner_id)
    staff_ids = [row.id for row in query.all()]
    if practitioner_id and not staff_ids:
        raise InvalidInput("Unknown or inactive practitioner")
    return staff_ids


def compute_free_starts(db: Session, day, practitioner_id: Optional[str] = None, redis_client=None,
                        step_minutes: Optional[int] = None):
    """
    Day grid of bookable start instants.

    Steps through every free interval of every candidate practitioner, deduplicating
    by start instant: ``max_free_minutes`` is the best any practitioner offers there.

    :return: {"date", "step_minutes", "starts": [{"start_at", "max_free_minutes", "practitioner_ids"}]}
    """
    day = parse_day(day)
    step = timedelta(minutes=step_minutes or config.FREE_START_STEP_MINUTES)
    cache_key = free_starts_cache_key(day, practitioner_id)

    if redis_client is not None:
        try:
            cached = redis_client.get(cache_key)
            if cached:
                logging.info(f"Retrieved from Redis: {cache_key}")
                return json.loads(cached)
        except RedisError as e:
            logging.warning(f"Free starts cache unavailable: {str(e)}")

    staff_ids = _active_staff_ids(db, practitioner_id)
    context = load_day_context(db, day, staff_ids)

    starts: Dict[datetime, dict] = {}
    for staff_id in staff_ids:
        for interval in subtract(context.work_for(staff_id), context.blocked_for(staff_id)):
            cursor = interval.start
            while cursor < interval.end:
                free_minutes = minutes_between(cursor, interval.end)
                if free_minutes > 0:
                    entry = starts.setdefault(cursor, {"max_free_minutes": 0, "practitioner_ids": set()})
                    entry["max_free_minutes"] = max(entry["max_free_minutes"], free_minutes)
                    entry["practitioner_ids"].add(staff_id)
                cursor += step

    result = {
        "date": day.isoformat(),
        "step_minutes": int(step.total_seconds() // 60),
        "starts": [
            {
                "start_at": start.astimezone(config.INSTITUTE_TZ).isoformat(),
                "max_free_minutes": starts[start]["max_free_minutes"],
                "practitioner_ids": sorted(starts[start]["practitioner_ids"]),
            }
            for start in sorted(starts)
        ]
    }

    if redis_client is not None:
        try:
            redis_client.setex(cache_key, config.CACHE_EXPIRY_SECONDS, json.dumps(result))
        except RedisError as e:
            logging.warning(f"Could not cache free starts {cache_key}: {str(e)}")

    return result


def compute_eligible_services(db: Session, start_at, practitioner_id: Optional[str] = None):
    """
    For every active service, whether it can start at ``start_at`` and who would get it.

    Mirrors the ranking of the booking transaction without its guarantees.
    """
    instant = parse_instant(start_at)
    staff_ids = _active_staff_ids(db, practitioner_id)
    context = load_day_context(db, civil_day_of(instant), staff_ids)

    max_free_by_staff = {
        staff_id: max_free_minutes(context.work_for(staff_id), context.blocked_for(staff_id), instant)
        for staff_id in staff_ids
    }

    services = db.query(Service).filter(Service.is_active.is_(True)).order_by(Service.name).all()
    links_query = db.query(ServiceStaffLink).join(StaffMember).filter(StaffMember.is_active.is_(True))
    if practitioner_id:
        links_query = links_query.filter(ServiceStaffLink.staff_member_id == practitioner_id)
    links_by_service = {}
    for link in links_query.all():
        links_by_service.setdefault(link.service_id, []).append(link)

    results = [
        _service_eligibility(service, links_by_service.get(service.id, []), max_free_by_staff, practitioner_id)
        for service in services
    ]

    if practitioner_id:
        day_max_free = max_free_by_staff.get(practitioner_id, 0)
    else:
        day_max_free = max(max_free_by_staff.values(), default=0)

    return {
        "start_at": instant.astimezone(config.INSTITUTE_TZ).isoformat(),
        "max_free_minutes": day_max_free,
        "services": results,
    }


def _service_eligibility(service, links, max_free_by_staff, practitioner_id):
    entry = {
        "service_id": service.id,
        "name": service.name,
        "duration_min": service.duration_min,
        "base_price_cents": service.price_cents,
        "effective_price_cents": service.price_cents,
        "eligible": False,
        "reason": None,
        "best_practitioner_id": None,
    }

    if practitioner_id:
        if not links:
            entry["reason"] = REASON_NOT_QUALIFIED
            return entry
        entry["effective_price_cents"] = link_price_cents(service, links[0])
        entry["best_practitioner_id"] = practitioner_id
        entry["eligible"] = max_free_by_staff.get(practitioner_id, 0) >= service.duration_min
        if not entry["eligible"]:
            entry["reason"] = REASON_NOT_ENOUGH_TIME
        return entry

    if not links:
        entry["reason"] = REASON_NOBODY_AVAILABLE
        return entry

    candidates = [
        (link_price_cents(service, link), max_free_by_staff.get(link.staff_member_id, 0), link.staff_member_id)
        for link in links
    ]
    eligible = [candidate for candidate in candidates if candidate[1] >= service.duration_min]

    if eligible:
        price, _, staff_id = min(eligible, key=lambda c: (c[0], -c[1], c[2]))
        entry.update(effective_price_cents=price, eligible=True, best_practitioner_id=staff_id)
    else:
        price, _, _ = min(candidates, key=lambda c: (c[0], c[2]))
        entry.update(effective_price_cents=price, reason=REASON_NOT_ENOUGH_TIME)
    return entry
