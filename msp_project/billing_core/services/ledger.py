import datetime
import logging
from decimal import Decimal, InvalidOperation
from typing import List

from django.core.exceptions import ValidationError
from django.db import transaction

from ..context import BillingContext
from ..engines import ledger
from ..engines.money import quantize_money, to_decimal
from ..exceptions import ConsistencyError
from ..models import (ClientCredit, CreditApplication, Invoice, Payment,
                      PaymentApplication)
from .audit_helper import log_action

logger = logging.getLogger(__name__)

# Lock order, shared by every service that touches money:
#   bank transaction -> payment / credit -> application -> invoices (ascending pk)
# Invoices are always locked last.

APPLICATION_MODELS = {
    ledger.PAYMENT: PaymentApplication,
    ledger.CREDIT: CreditApplication,
}

# money source of each application kind, locked ahead of the application
APPLICATION_SOURCES = {
    ledger.PAYMENT: (Payment, "payment_id"),
    ledger.CREDIT: (ClientCredit, "credit_id"),
}

# Invoices that can still receive money or be voided
OPEN_STATUSES = (ledger.DRAFT, ledger.SENT, ledger.PARTIAL, ledger.OVERDUE)


def _money(amount) -> Decimal:
    try:
        value = quantize_money(to_decimal(amount))
    except InvalidOperation:
        raise ValidationError(f"Invalid amount {amount!r}")
    if value <= 0:
        raise ValidationError("Applied amount must be > 0")
    return value


def _lock_invoice(invoice_id, ctx: BillingContext) -> Invoice:
    # row lock held until the surrounding atomic block ends
    return Invoice.objects.for_company(ctx.company).select_for_update().get(pk=invoice_id)


# ----------------------------
# Invoice status
# ----------------------------
def update_payment_status(invoice_id, ctx: BillingContext, allow_draft=False, *, sweep=False) -> Invoice:
    """
    Recompute the status of an invoice from its applications and persist it.
    Draft and cancelled invoices are left alone (a draft may settle
    when allow_draft is set). Overdue is only set when sweep is True.
    """
    with transaction.atomic():
        inv = _lock_invoice(invoice_id, ctx)
        new_status = ledger.next_status(
            inv.to_snapshot(), ctx.today(), sweep=sweep, allow_draft=allow_draft
        )
        if new_status != inv.status:
            old_status = inv.status
            inv.status = new_status
            inv.save(update_fields=["status"])
            log_action(
                action="status_change",
                instance=inv,
                ctx=ctx,
                changes={"from": old_status, "to": new_status},
            )
        return inv


# ----------------------------
# Payment / credit applications
# ----------------------------
def apply_payment(payment_id, invoice_id, amount, ctx: BillingContext, allow_draft=False) -> PaymentApplication:
    """
    Apply part (or all) of a client payment to an invoice.
    Locks the payment, then the invoice.
    """
    amount = _money(amount)
    with transaction.atomic():
        payment = Payment.objects.for_company(ctx.company).select_for_update().get(pk=payment_id)
        inv = _lock_invoice(invoice_id, ctx)

        if inv.status == ledger.CANCELLED:
            raise ConsistencyError(f"Invoice {inv} is cancelled")
        if payment.is_deleted:
            raise ConsistencyError(f"Payment {payment.pk} has been deleted")

        # Validation: prevent over-allocation of the payment
        unapplied = payment.unapplied_amount()
        if amount > unapplied:
            raise ValidationError(
                f"Applied amount {amount} exceeds unapplied payment amount {unapplied}")

        app = PaymentApplication.objects.create(
            company=inv.company,  # enforce tenancy
            payment=payment,
            invoice=inv,
            amount=amount,
        )
        log_action(action="apply_payment", instance=inv, ctx=ctx,
                   changes={"payment": payment.pk, "amount": str(amount)})
        update_payment_status(inv.pk, ctx, allow_draft=allow_draft)
        return app


def apply_credit(credit_id, invoice_id, amount, ctx: BillingContext, allow_draft=False) -> CreditApplication:
    amount = _money(amount)
    with transaction.atomic():
        credit = ClientCredit.objects.for_company(ctx.company).select_for_update().get(pk=credit_id)
        inv = _lock_invoice(invoice_id, ctx)

        if inv.status == ledger.CANCELLED:
            raise ConsistencyError(f"Invoice {inv} is cancelled")
        if not credit.is_active:
            raise ConsistencyError(f"Credit {credit.pk} is no longer active")

        unapplied = credit.unapplied_amount()
        if amount > unapplied:
            raise ValidationError(
                f"Applied amount {amount} exceeds remaining credit {unapplied}")

        app = CreditApplication.objects.create(
            company=inv.company,
            credit=credit,
            invoice=inv,
            amount=amount,
        )
        log_action(action="apply_credit", instance=inv, ctx=ctx,
                   changes={"credit": credit.pk, "amount": str(amount)})
        update_payment_status(inv.pk, ctx, allow_draft=allow_draft)
        return app


def void_application(kind, application_id, ctx: BillingContext):
    """Soft-void a payment or credit application. The row stays for history."""
    model = APPLICATION_MODELS.get(kind)
    if model is None:
        raise ValidationError(f"Unknown application kind {kind!r}")

    with transaction.atomic():
        app = model.objects.for_company(ctx.company).get(pk=application_id)
        source_model, source_field = APPLICATION_SOURCES[kind]
        source_model.objects.select_for_update().get(pk=getattr(app, source_field))
        app = model.objects.select_for_update().get(pk=app.pk)
        if not app.is_active:
            return app  # already voided
        _lock_invoice(app.invoice_id, ctx)

        app.is_active = False
        app.save(update_fields=["is_active"])
        log_action(action="void_application", instance=app, ctx=ctx,
                   changes={"kind": kind, "invoice": app.invoice_id, "amount": str(app.amount)})
        update_payment_status(app.invoice_id, ctx)
        return app


def soft_delete_payment(payment_id, ctx: BillingContext) -> Payment:
    """Mark a payment deleted. Its applications stop counting
    and every invoice it touched gets its status recomputed."""
    with transaction.atomic():
        payment = Payment.objects.for_company(ctx.company).select_for_update().get(pk=payment_id)
        if payment.is_deleted:
            return payment

        payment.deleted_at = ctx.now()
        payment.save(update_fields=["deleted_at"])

        invoice_ids = sorted(set(
            payment.applications.filter(is_active=True).values_list("invoice_id", flat=True)
        ))
        for invoice_id in invoice_ids:
            update_payment_status(invoice_id, ctx)

        log_action(action="soft_delete", instance=payment, ctx=ctx,
                   changes={"invoices": invoice_ids})
        return payment


# ----------------------------
# Explicit invoice actions
# ----------------------------
def send_invoice(invoice_id, ctx: BillingContext) -> Invoice:
    """Draft -> Sent, then re-evaluate against what was already applied."""
    with transaction.atomic():
        inv = _lock_invoice(invoice_id, ctx)
        if inv.status != ledger.DRAFT:
            raise ConsistencyError(f"Only draft invoices can be sent, {inv} is {inv.status}")

        if not inv.due_date:
            inv.due_date = inv.date + datetime.timedelta(days=inv.company.payment_terms_days)
            inv.save(update_fields=["due_date"])
        inv.transition_to(ledger.SENT)
        log_action(action="send", instance=inv, ctx=ctx)
        return update_payment_status(inv.pk, ctx)


def void_invoice(invoice_id, ctx: BillingContext) -> Invoice:
    """Cancel an invoice. Refused while money is applied to it."""
    with transaction.atomic():
        inv = _lock_invoice(invoice_id, ctx)
        if inv.status not in OPEN_STATUSES:
            raise ConsistencyError(f"Cannot void a {inv.status} invoice")
        if inv.has_active_applications():
            # void the applications first
            raise ConsistencyError(f"Invoice {inv} has active payments or credits applied")

        old_status = inv.status
        inv.transition_to(ledger.CANCELLED)
        log_action(action="void", instance=inv, ctx=ctx,
                   changes={"from": old_status, "to": ledger.CANCELLED})
        return inv


def refresh_overdue_invoices(ctx: BillingContext) -> List[int]:
    """
    Sweep: sent invoices past their due date with an open balance become overdue.
    Returns the ids of the invoices moved to overdue.
    """
    today = ctx.today()
    candidates = list(
        Invoice.objects.for_company(ctx.company)
        .filter(status=ledger.SENT, due_date__lt=today)
        .order_by("pk")
        .values_list("pk", flat=True)
    )
    moved = []
    for invoice_id in candidates:
        inv = update_payment_status(invoice_id, ctx, sweep=True)
        if inv.status == ledger.OVERDUE:
            moved.append(inv.pk)
    logger.info("Overdue sweep for company %s: %s of %s invoices now overdue",
                ctx.company_id, len(moved), len(candidates))
    return moved
