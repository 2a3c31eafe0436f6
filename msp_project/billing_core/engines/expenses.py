from decimal import Decimal

from django.core.exceptions import ValidationError

from .money import ZERO, quantize_money, to_decimal

HUNDRED = Decimal("100")


def calculate_markup(amount, markup_percentage=None, markup_amount=None) -> Decimal:
    """Markup added on top of a billable expense.
    A percentage wins over a fixed amount when both are filled in."""
    amount = to_decimal(amount)
    if markup_percentage not in (None, ""):
        pct = to_decimal(markup_percentage)
        if pct < 0:
            raise ValidationError("Markup percentage must be >= 0")
        return quantize_money(amount * pct / HUNDRED)
    if markup_amount not in (None, ""):
        fixed = to_decimal(markup_amount)
        if fixed < 0:
            raise ValidationError("Markup amount must be >= 0")
        return quantize_money(fixed)
    return ZERO


def calculate_billable_amount(amount, markup_percentage=None, markup_amount=None,
                              is_billable: bool = True) -> Decimal:
    if amount is None or to_decimal(amount) < 0:
        raise ValidationError("Expense amount must be >= 0")
    if not is_billable:
        return ZERO
    return quantize_money(to_decimal(amount) + calculate_markup(amount, markup_percentage, markup_amount))

