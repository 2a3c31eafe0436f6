import datetime
from decimal import Decimal

from django.utils import timezone

from ..context import BillingContext
from ..models import (Client, Company, Currency, EntityMembership, Invoice,
                      InvoiceLine, User)

TODAY = datetime.date(2025, 10, 15)


def make_company(slug="msp-a", name=None):
    usd, _ = Currency.objects.get_or_create(code="USD", defaults={"name": "US Dollar", "symbol": "$"})
    return Company.objects.create(name=name or slug.upper(), slug=slug, default_currency=usd)


def make_actor(company, username="billing"):
    user = User.objects.create_user(username=username, password="x")
    EntityMembership.objects.create(user=user, company=company, role="billing")
    return user


def make_ctx(company, actor=None, today=TODAY):
    """Context whose clock is pinned to noon on `today`."""
    now = timezone.make_aware(datetime.datetime.combine(today, datetime.time(12, 0)))
    return BillingContext(company=company, actor=actor, clock=lambda: now)


def make_client(company, name="Acme Dental"):
    return Client.objects.create(company=company, name=name)


def make_invoice(company, client, amount="100.00", date=datetime.date(2025, 9, 1),
                 due_date=datetime.date(2025, 9, 30), number=None):
    """Draft invoice with a single line worth `amount`."""
    inv = Invoice.objects.create(
        company=company, client=client, number=number, date=date, due_date=due_date,
    )
    InvoiceLine.objects.create(invoice=inv, description="Managed services",
                               quantity=1, rate=Decimal(amount))
    inv.refresh_from_db()
    return inv
