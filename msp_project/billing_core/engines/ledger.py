"""
Invoice ledger calculations.

Pure functions over immutable snapshots: how much of an invoice is paid,
what is still owed, and which status the invoice should carry.
Persisting the result is the job of services/ledger.py.
"""

import datetime
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional, Tuple

from .money import ZERO, quantize_money, to_decimal

logger = logging.getLogger(__name__)

# Invoice statuses
DRAFT = "draft"
SENT = "sent"
PARTIAL = "partial"
PAID = "paid"
OVERDUE = "overdue"
CANCELLED = "cancelled"

INVOICE_STATUS_CHOICES = [
    (DRAFT, "Draft"),
    (SENT, "Sent"),
    (PARTIAL, "Partial"),
    (PAID, "Paid"),
    (OVERDUE, "Overdue"),
    (CANCELLED, "Cancelled"),
]

# Statuses only explicit actions (send / void) may leave
MANUAL_ONLY_STATUSES = frozenset({DRAFT, CANCELLED})

# Application kinds (explicit discriminant instead of a polymorphic relation)
PAYMENT = "payment"
CREDIT = "credit"
APPLICATION_KINDS = (PAYMENT, CREDIT)


@dataclass(frozen=True)
class ApplicationSnapshot:
    """One payment or credit allocation against an invoice."""
    kind: str
    amount: Optional[Decimal]
    is_active: bool = True
    # the underlying payment was soft-deleted
    source_deleted: bool = False
    id: Optional[int] = None


@dataclass(frozen=True)
class InvoiceSnapshot:
    amount: Decimal
    status: str
    due_date: Optional[datetime.date] = None
    applications: Tuple[ApplicationSnapshot, ...] = ()
    id: Optional[int] = None


def _counted_amount(app: ApplicationSnapshot) -> Optional[Decimal]:
    """Amount an application contributes, or None if it must be skipped."""
    if app.kind not in APPLICATION_KINDS:
        logger.warning("Skipping application %s with unknown kind %r", app.id, app.kind)
        return None
    if not app.is_active or app.source_deleted:
        return None
    if app.amount is None:
        logger.warning("Skipping %s application %s without amount", app.kind, app.id)
        return None
    try:
        return to_decimal(app.amount)
    except InvalidOperation:
        logger.warning("Skipping %s application %s with malformed amount %r",
                       app.kind, app.id, app.amount)
        return None


def get_total_paid(applications: Iterable[ApplicationSnapshot]) -> Decimal:
    """Sum of active payment + credit applications.
    Inactive rows, rows backed by a soft-deleted payment and
    malformed rows are left out instead of failing the whole sum."""
    total = ZERO
    for app in applications:
        amount = _counted_amount(app)
        if amount is not None:
            total += amount
    return quantize_money(total)


def get_balance(invoice: InvoiceSnapshot) -> Decimal:
    # Overpayment shows up as a negative balance, it is never clamped
    return quantize_money(to_decimal(invoice.amount) - get_total_paid(invoice.applications))


def is_fully_paid(invoice: InvoiceSnapshot) -> bool:
    return get_balance(invoice) <= ZERO


def is_overdue(invoice: InvoiceSnapshot, today: datetime.date) -> bool:
    """Computed live from due date and balance, whatever status is stored."""
    if not invoice.due_date:
        return False
    if invoice.status in MANUAL_ONLY_STATUSES:
        return False
    return today > invoice.due_date and get_balance(invoice) > ZERO


def next_status(invoice: InvoiceSnapshot, today: datetime.date, *,
                sweep: bool = False, allow_draft: bool = False) -> str:
    """
    Decide the status an invoice should carry.

    Decision table (first match wins):
        draft / cancelled        -> unchanged (draft may settle if allow_draft)
        balance <= 0             -> paid
        0 < balance < amount     -> partial
        sent + overdue + sweep   -> overdue
        overdue + still overdue  -> overdue
        anything else            -> sent

    Applying the result again returns the same status.
    """
    status = invoice.status
    if status == CANCELLED:
        return status
    if status == DRAFT and not allow_draft:
        return status

    balance = get_balance(invoice)
    amount = quantize_money(invoice.amount)

    if balance <= ZERO:
        return PAID
    if balance < amount:
        return PARTIAL
    if status == DRAFT:
        # nothing applied yet, only send() moves a draft forward
        return DRAFT
    if status == SENT and sweep and is_overdue(invoice, today):
        return OVERDUE
    if status == OVERDUE and is_overdue(invoice, today):
        return OVERDUE
    return SENT
