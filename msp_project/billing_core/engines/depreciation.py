"""
Depreciation schedules for fixed assets.

Pure functions. The schedule is recomputed every time it is asked for:
inputs may be edited before the record is saved, so nothing is cached.
"""

import datetime
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Tuple

from django.core.exceptions import ValidationError

from .money import ZERO, quantize_money, to_decimal

STRAIGHT_LINE = "straight_line"
DECLINING_BALANCE = "declining_balance"
DOUBLE_DECLINING = "double_declining"
SUM_OF_YEARS = "sum_of_years"
UNITS_OF_PRODUCTION = "units_of_production"

DEPRECIATION_METHOD_CHOICES = [
    (STRAIGHT_LINE, "Straight line"),
    (DECLINING_BALANCE, "Declining balance"),
    (DOUBLE_DECLINING, "Double declining balance"),
    (SUM_OF_YEARS, "Sum of years' digits"),
    (UNITS_OF_PRODUCTION, "Units of production"),
]

# Methods whose last year absorbs the cent left over by rounding
_TRUE_UP_METHODS = frozenset({STRAIGHT_LINE, SUM_OF_YEARS})


@dataclass(frozen=True)
class DepreciationInputs:
    original_cost: Decimal
    salvage_value: Decimal
    useful_life_years: int
    method: str
    depreciation_rate: Optional[Decimal] = None
    # units of production: expected lifetime units and usage per year (year 1 first)
    total_expected_units: Optional[Decimal] = None
    units_per_year: Tuple[Decimal, ...] = ()

    @property
    def base(self) -> Decimal:
        return quantize_money(to_decimal(self.original_cost) - to_decimal(self.salvage_value))


@dataclass(frozen=True)
class ScheduleRow:
    year: int
    annual_depreciation: Decimal
    accumulated_depreciation: Decimal
    book_value: Decimal


@dataclass(frozen=True)
class DepreciationPosition:
    """Where an asset stands on a given date."""
    years_elapsed: int
    annual_depreciation: Decimal       # expense of the year in progress
    accumulated_depreciation: Decimal  # after the completed years
    book_value: Decimal


def validate_inputs(inputs: DepreciationInputs):
    """Missing or negative values are validation errors,
    a zero divisor is an arithmetic error."""
    if inputs.original_cost is None or inputs.salvage_value is None:
        raise ValidationError("Original cost and salvage value are required")
    if inputs.useful_life_years is None:
        raise ValidationError("Useful life is required")
    if inputs.method not in dict(DEPRECIATION_METHOD_CHOICES):
        raise ValidationError(f"Unknown depreciation method {inputs.method!r}")

    cost = to_decimal(inputs.original_cost)
    salvage = to_decimal(inputs.salvage_value)
    if cost < 0 or salvage < 0:
        raise ValidationError("Cost and salvage value must be >= 0")
    if salvage > cost:
        raise ValidationError("Salvage value cannot exceed original cost")
    if inputs.useful_life_years < 0:
        raise ValidationError("Useful life must be >= 0")
    if inputs.useful_life_years == 0:
        raise ZeroDivisionError("Useful life of 0 years cannot be depreciated")

    if inputs.method in (DECLINING_BALANCE, DOUBLE_DECLINING):
        rate = effective_rate(inputs)
        if rate <= 0 or rate > 1:
            raise ValidationError("Depreciation rate must be in (0, 1]")

    if inputs.method == UNITS_OF_PRODUCTION:
        if inputs.total_expected_units is None:
            raise ValidationError("Units of production needs total expected units")
        if to_decimal(inputs.total_expected_units) == 0:
            raise ZeroDivisionError("Total expected units cannot be 0")
        if to_decimal(inputs.total_expected_units) < 0:
            raise ValidationError("Total expected units must be > 0")
        if len(inputs.units_per_year) > inputs.useful_life_years:
            raise ValidationError("Usage recorded beyond the useful life")
        if any(to_decimal(u) < 0 for u in inputs.units_per_year):
            raise ValidationError("Units used cannot be negative")


def effective_rate(inputs: DepreciationInputs) -> Decimal:
    if inputs.depreciation_rate is not None:
        return to_decimal(inputs.depreciation_rate)
    if inputs.method == DOUBLE_DECLINING:
        return Decimal(2) / Decimal(inputs.useful_life_years)
    raise ValidationError("Declining balance needs a depreciation rate")


def _raw_annual(inputs: DepreciationInputs, year: int, book_value: Decimal) -> Decimal:
    base = inputs.base
    life = inputs.useful_life_years
    method = inputs.method

    if method == STRAIGHT_LINE:
        return base / Decimal(life)
    if method in (DECLINING_BALANCE, DOUBLE_DECLINING):
        return book_value * effective_rate(inputs)
    if method == SUM_OF_YEARS:
        digits = Decimal(life * (life + 1)) / Decimal(2)
        return Decimal(life - year + 1) / digits * base
    # units of production, years without recorded usage depreciate nothing
    used = to_decimal(inputs.units_per_year[year - 1]) if year <= len(inputs.units_per_year) else ZERO
    return used / to_decimal(inputs.total_expected_units) * base


def get_depreciation_schedule(inputs: DepreciationInputs) -> List[ScheduleRow]:
    """
    One row per year of useful life.
    Each year is clamped so accumulated depreciation never exceeds
    cost - salvage and book value never drops below salvage.
    """
    validate_inputs(inputs)

    cost = quantize_money(inputs.original_cost)
    base = inputs.base
    life = inputs.useful_life_years

    rows = []
    accumulated = ZERO
    for year in range(1, life + 1):
        book_value = cost - accumulated
        remaining = base - accumulated

        annual = quantize_money(_raw_annual(inputs, year, book_value))
        if year == life and inputs.method in _TRUE_UP_METHODS:
            annual = remaining
        # clamp: never negative, never past salvage
        annual = min(max(annual, ZERO), remaining)

        accumulated += annual
        rows.append(ScheduleRow(
            year=year,
            annual_depreciation=annual,
            accumulated_depreciation=accumulated,
            book_value=cost - accumulated,
        ))
    return rows


def completed_years(start_date: datetime.date, as_of: datetime.date) -> int:
    """Whole years between start_date and as_of (anniversary based)."""
    if as_of < start_date:
        return 0
    years = as_of.year - start_date.year
    if (as_of.month, as_of.day) < (start_date.month, start_date.day):
        years -= 1
    return years


def position_as_of(inputs: DepreciationInputs, start_date: datetime.date,
                   as_of: datetime.date) -> DepreciationPosition:
    schedule = get_depreciation_schedule(inputs)
    elapsed = min(completed_years(start_date, as_of), len(schedule))

    accumulated = schedule[elapsed - 1].accumulated_depreciation if elapsed else ZERO
    # annual figure of the year currently running, zero once fully depreciated
    annual = schedule[elapsed].annual_depreciation if elapsed < len(schedule) else ZERO
    return DepreciationPosition(
        years_elapsed=elapsed,
        annual_depreciation=annual,
        accumulated_depreciation=accumulated,
        book_value=quantize_money(inputs.original_cost) - accumulated,
    )
