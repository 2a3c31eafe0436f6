import datetime
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from django.core.exceptions import ValidationError
from django.db import transaction

from ..context import BillingContext
from ..engines import ledger
from ..engines import time_billing as tb
from ..engines.money import to_decimal
from ..exceptions import ConsistencyError
from ..models import Client, Invoice, InvoiceLine, RateCard
from .audit_helper import log_action
from .ledger import update_payment_status

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimeCharge:
    rate_card_id: int
    service_type: Optional[str]
    actual_hours: Decimal
    billable_hours: Decimal
    hourly_rate: Decimal
    amount: Decimal


def find_rate_card(client: Client, service_type: Optional[str], on_date: datetime.date) -> RateCard:
    """The rate card that prices `service_type` work for `client` on `on_date`.
    Raises NotFoundError when none applies."""
    criteria = tb.RateCardCriteria(
        client_id=client.pk, service_type=service_type, on_date=on_date
    )
    cards = {card.pk: card for card in RateCard.objects.active(client.company).filter(criteria.to_q())}
    chosen = tb.select_rate_card([card.to_candidate() for card in cards.values()], criteria)
    return cards[chosen.id]


def bill_time(client: Client, service_type: Optional[str], hours, on_date: datetime.date) -> TimeCharge:
    card = find_rate_card(client, service_type, on_date)
    terms = card.terms
    billable = tb.calculate_billable_hours(terms, hours)
    return TimeCharge(
        rate_card_id=card.pk,
        service_type=service_type,
        actual_hours=to_decimal(hours),
        billable_hours=billable,
        hourly_rate=card.hourly_rate,
        amount=tb.calculate_amount(terms, hours),
    )


def add_time_to_invoice(invoice_id, service_type, hours, on_date, ctx: BillingContext,
                        description=None) -> InvoiceLine:
    """Bill worked hours as a new line on an open invoice."""
    with transaction.atomic():
        inv = Invoice.objects.for_company(ctx.company).select_for_update().get(pk=invoice_id)
        if inv.status in (ledger.PAID, ledger.CANCELLED):
            raise ConsistencyError(f"Cannot add time to a {inv.status} invoice")

        charge = bill_time(inv.client, service_type, hours, on_date)
        line = InvoiceLine.objects.create(
            company=inv.company,
            invoice=inv,
            description=description or f"{service_type or 'Labour'}: {charge.billable_hours} h on {on_date}",
            source="time",
            quantity=charge.billable_hours,
            rate=charge.hourly_rate,
        )
        logger.debug("Time line %s: %s h worked, %s h billed at %s",
                     line.pk, charge.actual_hours, charge.billable_hours, charge.hourly_rate)
        log_action(action="add_time", instance=inv, ctx=ctx,
                   changes={"line": line.pk, "rate_card": charge.rate_card_id,
                            "hours": str(charge.billable_hours), "amount": str(line.amount)})
        # a larger amount may reopen a partially settled invoice
        update_payment_status(inv.pk, ctx)
        return line


def set_default_rate_card(rate_card_id, ctx: BillingContext) -> RateCard:
    with transaction.atomic():
        card = RateCard.objects.for_company(ctx.company).select_for_update().get(pk=rate_card_id)
        if not card.is_active:
            raise ValidationError("An inactive rate card cannot be the default")
        if card.is_default:
            return card
        card.is_default = True
        card.save()  # demotes the previous default
        log_action(action="set_default", instance=card, ctx=ctx)
        return card
