# eligibility.py
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .availability import DayContext
from .intervals import find_containing, minutes_between, subtract


def effective_price_cents(base_price_cents: int, price_cents_override=None, discount_percent_override=None) -> int:
    """Price actually charged for a (service, practitioner) pair."""
    if price_cents_override is not None:
        return price_cents_override

    if discount_percent_override is not None:
        discounted = Decimal(base_price_cents) * (Decimal(100) - Decimal(discount_percent_override)) / Decimal(100)
        return max(0, int(discounted.quantize(Decimal(1), rounding=ROUND_HALF_UP)))

    return base_price_cents


def link_price_cents(service, link) -> int:
    return effective_price_cents(service.price_cents, link.price_cents_override, link.discount_percent_override)


def max_free_minutes(work, blocked, instant: datetime) -> int:
    """Minutes from ``instant`` to the end of the free interval containing it, 0 if none does."""
    free = subtract(work, blocked)
    containing = find_containing(free, instant)
    if containing is None:
        return 0
    return minutes_between(instant, containing.end)


@dataclass
class Candidate:
    practitioner_id: str
    total_price_cents: int
    max_free_minutes: int
    required_minutes: int

    @property
    def eligible(self) -> bool:
        return self.max_free_minutes >= self.required_minutes

    @property
    def sort_key(self):
        return self.total_price_cents, -self.max_free_minutes, self.practitioner_id


def practitioners_linked_to_all(service_ids: Iterable[str], links: Iterable) -> List[str]:
    """Practitioner ids holding a link for every one of ``service_ids``."""
    service_ids = set(service_ids)
    linked = {}
    for link in links:
        if link.service_id in service_ids:
            linked.setdefault(link.staff_member_id, set()).add(link.service_id)
    return sorted(staff_id for staff_id, services in linked.items() if services >= service_ids)


def evaluate_candidates(
        instant: datetime,
        required_minutes: int,
        prices_by_staff: Dict[str, int],
        context: DayContext
) -> List[Candidate]:
    """
    Measure every candidate practitioner at ``instant``.

    :param prices_by_staff: total effective price of the requested services per candidate id.
        Only practitioners linked to every requested service belong here.
    """
    candidates = []
    for staff_id, total_price in prices_by_staff.items():
        free_minutes = max_free_minutes(context.work_for(staff_id), context.blocked_for(staff_id), instant)
        candidates.append(Candidate(
            practitioner_id=staff_id,
            total_price_cents=total_price,
            max_free_minutes=free_minutes,
            required_minutes=required_minutes
        ))
    return candidates


def rank_eligible(candidates: Iterable[Candidate]) -> List[Candidate]:
    # Cheapest first, then the most remaining slack, then id for reproducibility
    return sorted((candidate for candidate in candidates if candidate.eligible), key=lambda c: c.sort_key)


def select_practitioner(candidates: Iterable[Candidate], pinned_id: Optional[str] = None) -> Optional[Candidate]:
    ranked = rank_eligible(candidates)
    if pinned_id:
        return next((candidate for candidate in ranked if candidate.practitioner_id == pinned_id), None)
    return ranked[0] if ranked else None
