"""
Time billing: rate card selection and hours -> money conversion.

Pure functions. Rate cards are passed in as RateCardCandidate snapshots,
selection criteria as a RateCardCriteria value object.
"""

import datetime
import logging
from dataclasses import dataclass
from decimal import (ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal,
                     InvalidOperation)
from typing import Iterable, Optional

from django.core.exceptions import ValidationError
from django.db.models import Q

from ..exceptions import NotFoundError
from .money import TWO_PLACES, quantize_money, to_decimal

logger = logging.getLogger(__name__)

ROUND_NONE = "none"
ROUND_UP = "up"
ROUND_DOWN = "down"
ROUND_NEAREST = "nearest"

ROUNDING_METHOD_CHOICES = [
    (ROUND_NONE, "No rounding"),
    (ROUND_UP, "Round up"),
    (ROUND_DOWN, "Round down"),
    (ROUND_NEAREST, "Round to nearest"),
]

# rounding method -> Decimal rounding mode applied to the increment count
_ROUNDING_MODES = {
    ROUND_UP: ROUND_CEILING,
    ROUND_DOWN: ROUND_FLOOR,
    ROUND_NEAREST: ROUND_HALF_UP,
}

MINUTES_PER_HOUR = Decimal("60")


@dataclass(frozen=True)
class RateCardTerms:
    """Money-relevant part of a rate card."""
    hourly_rate: Decimal
    minimum_hours: Optional[Decimal] = None
    rounding_increment: Optional[int] = None   # minutes
    rounding_method: Optional[str] = None


@dataclass(frozen=True)
class RateCardCandidate:
    id: int
    client_id: int
    service_type: Optional[str]
    applies_to_all_services: bool
    effective_from: datetime.date
    effective_to: Optional[datetime.date]
    is_default: bool
    terms: RateCardTerms
    is_active: bool = True


@dataclass(frozen=True)
class RateCardCriteria:
    """Which rate card applies to (client, service type, date)."""
    client_id: int
    service_type: Optional[str]
    on_date: datetime.date

    def matches(self, card: RateCardCandidate) -> bool:
        if not card.is_active or card.client_id != self.client_id:
            return False
        # a card without a service type only matches through applies_to_all_services
        exact = card.service_type is not None and card.service_type == self.service_type
        if not (card.applies_to_all_services or exact):
            return False
        if card.effective_from > self.on_date:
            return False
        # open-ended when effective_to is empty
        return card.effective_to is None or self.on_date <= card.effective_to

    def to_q(self) -> Q:
        """Same filter expressed for the ORM (RateCard queryset)."""
        service = Q(applies_to_all_services=True)
        if self.service_type is not None:
            service |= Q(service_type=self.service_type)
        return (
            Q(client_id=self.client_id, is_active=True, effective_from__lte=self.on_date)
            & service
            & (Q(effective_to__isnull=True) | Q(effective_to__gte=self.on_date))
        )


def _preference_key(card: RateCardCandidate, criteria: RateCardCriteria):
    # default first, then exact service match, then most recent, then oldest id
    exact_service = card.service_type is not None and card.service_type == criteria.service_type
    return (
        not card.is_default,
        not exact_service,
        -card.effective_from.toordinal(),
        card.id,
    )


def select_rate_card(candidates: Iterable[RateCardCandidate],
                     criteria: RateCardCriteria) -> RateCardCandidate:
    matching = [c for c in candidates if criteria.matches(c)]
    if not matching:
        raise NotFoundError(
            f"No rate card for client {criteria.client_id}, "
            f"service {criteria.service_type!r} on {criteria.on_date}"
        )
    matching.sort(key=lambda c: _preference_key(c, criteria))
    if len(matching) > 1:
        logger.debug("Rate card %s chosen over %s", matching[0].id, [c.id for c in matching[1:]])
    return matching[0]


def validate_terms(terms: RateCardTerms):
    if terms.hourly_rate is None or to_decimal(terms.hourly_rate) < 0:
        raise ValidationError("Rate card requires a non-negative hourly rate")
    if terms.minimum_hours is not None and to_decimal(terms.minimum_hours) < 0:
        raise ValidationError("Minimum hours must be >= 0")
    if terms.rounding_increment is not None and terms.rounding_increment < 0:
        raise ValidationError("Rounding increment must be >= 0")
    if terms.rounding_method not in (None, "", ROUND_NONE, *_ROUNDING_MODES):
        raise ValidationError(f"Unknown rounding method {terms.rounding_method!r}")


def round_to_increment(hours: Decimal, increment_minutes: int, method: str) -> Decimal:
    """Round hours to a multiple of increment_minutes.
    Works in minutes so 10 or 20 minute increments stay exact."""
    if method in (None, "", ROUND_NONE) or not increment_minutes:
        return hours
    mode = _ROUNDING_MODES.get(method)
    if mode is None:
        raise ValidationError(f"Unknown rounding method {method!r}")
    increment = Decimal(increment_minutes)
    steps = (hours * MINUTES_PER_HOUR / increment).to_integral_value(rounding=mode)
    return steps * increment / MINUTES_PER_HOUR


def calculate_billable_hours(terms: RateCardTerms, actual_hours) -> Decimal:
    """
    Worked hours -> billable hours:
        1. clamp up to minimum_hours
        2. round to the configured increment
        3. round to 2 decimals
    """
    try:
        hours = to_decimal(actual_hours)
    except InvalidOperation:
        raise ValidationError(f"Invalid hours {actual_hours!r}")
    if hours < 0:
        raise ValidationError("Actual hours cannot be negative")
    validate_terms(terms)

    if terms.minimum_hours is not None and hours < to_decimal(terms.minimum_hours):
        hours = to_decimal(terms.minimum_hours)

    hours = round_to_increment(hours, terms.rounding_increment, terms.rounding_method)
    return hours.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def calculate_amount(terms: RateCardTerms, actual_hours) -> Decimal:
    billable = calculate_billable_hours(terms, actual_hours)
    return quantize_money(billable * to_decimal(terms.hourly_rate))
