import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from django.core.exceptions import ObjectDoesNotExist, ValidationError
from django.db import transaction

from ..context import BillingContext
from ..engines import ledger
from ..exceptions import BillingError, ConsistencyError
from ..models import BankTransaction, Expense, Payment
from ..models.banking import RECONCILE_EXPENSE, RECONCILE_PAYMENT
from .audit_helper import log_action

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileTarget:
    """What a bank transaction is matched against."""
    kind: str        # "payment" or "expense"
    object_id: int


@dataclass(frozen=True)
class ReconcileOutcome:
    transaction_id: int
    target: ReconcileTarget
    ok: bool
    error: Optional[str] = None


def _lock_target(target: ReconcileTarget, ctx: BillingContext):
    if target.kind == RECONCILE_PAYMENT:
        payment = Payment.objects.for_company(ctx.company).select_for_update().get(pk=target.object_id)
        if payment.is_deleted:
            raise ConsistencyError(f"Payment {payment.pk} has been deleted")
        # money applied to a cancelled invoice cannot be matched to the bank
        if payment.applications.counted().filter(invoice__status=ledger.CANCELLED).exists():
            raise ConsistencyError(f"Payment {payment.pk} is applied to a cancelled invoice")
        return payment

    if target.kind == RECONCILE_EXPENSE:
        expense = Expense.objects.for_company(ctx.company).select_for_update().get(pk=target.object_id)
        if expense.invoice_id and expense.invoice.status == ledger.CANCELLED:
            raise ConsistencyError(f"Expense {expense.pk} was billed on a cancelled invoice")
        return expense

    raise ValidationError(f"Unknown reconciliation target {target.kind!r}")


def reconcile(transaction_id, target: ReconcileTarget, ctx: BillingContext) -> BankTransaction:
    """
    Match a bank transaction to a payment or an expense.
    Reconciling again to the same target changes nothing,
    a different target is a conflict.
    """
    with transaction.atomic():
        bt = BankTransaction.objects.for_company(ctx.company).select_for_update().get(pk=transaction_id)

        if bt.is_reconciled:
            current = bt.reconciled_target
            if bt.reconciled_kind == target.kind and current.pk == target.object_id:
                return bt
            raise ConsistencyError(
                f"Bank transaction {bt.pk} is already reconciled to "
                f"{bt.reconciled_kind} {current.pk}"
            )

        obj = _lock_target(target, ctx)
        # one bank line per payment / expense
        if obj.bank_transactions.exclude(pk=bt.pk).exists():
            raise ConsistencyError(f"{target.kind} {obj.pk} is already reconciled")
        if abs(bt.amount) != obj.amount:
            logger.warning("Reconciling bank transaction %s (%s) with %s %s of a different amount (%s)",
                           bt.pk, bt.amount, target.kind, obj.pk, obj.amount)

        obj.is_reconciled = True
        obj.save(update_fields=["is_reconciled"])

        bt.reconciled_kind = target.kind
        bt.payment = obj if target.kind == RECONCILE_PAYMENT else None
        bt.expense = obj if target.kind == RECONCILE_EXPENSE else None
        bt.is_reconciled = True
        bt.reconciled_at = ctx.now()
        bt.reconciled_by = ctx.actor
        bt.save()

        account = bt.bank_account
        account.last_reconciled_at = bt.reconciled_at
        account.save(update_fields=["last_reconciled_at"])

        log_action(action="reconcile", instance=bt, ctx=ctx,
                   changes={"kind": target.kind, "object_id": obj.pk})
        return bt


def unreconcile(transaction_id, ctx: BillingContext) -> BankTransaction:
    """Undo a reconciliation, clearing both sides of the link."""
    with transaction.atomic():
        bt = BankTransaction.objects.for_company(ctx.company).select_for_update().get(pk=transaction_id)
        if not bt.is_reconciled:
            return bt

        obj = bt.reconciled_target
        old = {"kind": bt.reconciled_kind, "object_id": obj.pk}
        obj.is_reconciled = False
        obj.save(update_fields=["is_reconciled"])

        bt.reconciled_kind = None
        bt.payment = None
        bt.expense = None
        bt.is_reconciled = False
        bt.reconciled_at = None
        bt.reconciled_by = None
        bt.save()

        log_action(action="unreconcile", instance=bt, ctx=ctx, changes=old)
        return bt


def reconcile_batch(pairs: Iterable[Tuple[int, ReconcileTarget]], ctx: BillingContext) -> List[ReconcileOutcome]:
    """
    Reconcile many statement lines. Every pair runs in its own
    transaction, a failing pair is reported and the batch carries on.
    """
    outcomes = []
    for transaction_id, target in pairs:
        try:
            reconcile(transaction_id, target, ctx)
        except (BillingError, ValidationError, ObjectDoesNotExist) as exc:
            logger.warning("Could not reconcile bank transaction %s with %s: %s",
                           transaction_id, target, exc)
            outcomes.append(ReconcileOutcome(transaction_id, target, ok=False, error=str(exc)))
        else:
            outcomes.append(ReconcileOutcome(transaction_id, target, ok=True))
    return outcomes
