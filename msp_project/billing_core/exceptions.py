""" Domain errors raised by the billing core.
    Input problems use django.core.exceptions.ValidationError,
    division by zero in depreciation uses the builtin ZeroDivisionError. """


class BillingError(Exception):
    """Base class for billing core errors."""
    pass


class NotFoundError(BillingError):
    """Raised when no rate card or contact tier applies to the requested scope."""
    pass


class ConsistencyError(BillingError):
    """Raised when an operation would leave ledger records inconsistent
    (e.g. reconciling against a cancelled invoice)."""
    pass
