from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

# All money is stored with 2 fraction digits
TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value) -> Decimal:
    """Convert ints, strings and Decimals to Decimal.
    Floats go through str() so 0.1 stays 0.1 instead of its binary expansion."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise InvalidOperation(f"Not a decimal value: {value!r}") from exc


def quantize_money(value) -> Decimal:
    # quantize to cents, half-up like the invoices printed for clients
    return to_decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def sum_money(values) -> Decimal:
    return quantize_money(sum((to_decimal(v) for v in values), ZERO))
