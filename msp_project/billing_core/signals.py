from django.core.exceptions import ValidationError
from django.db.models.signals import post_delete, post_save, pre_delete
from django.dispatch import receiver

from .models import BankTransaction, Invoice, InvoiceLine

"""
    Recalculate invoice totals when a line is added/updated/removed.
    Use update via model methods to keep validation/consistency.
"""


@receiver((post_save, post_delete), sender=InvoiceLine)
def invoice_line_changed(sender, instance, **kwargs):
    try:
        inv = Invoice.objects.get(pk=instance.invoice_id)
    except Invoice.DoesNotExist:
        return
    old_amount = inv.amount
    inv.recalc_totals()
    # save only the changed field to reduce churn
    if inv.amount != old_amount:
        inv.save(update_fields=["amount"])


"""Block deletion of bank lines that are matched to a payment or expense."""


# pre_delete signal auto-fires just before Django deletes a model instance
@receiver(pre_delete, sender=BankTransaction)
def prevent_delete_reconciled_bank_transaction(sender, instance, **kwargs):
    if instance.is_reconciled:
        # unreconcile first
        raise ValidationError("Cannot delete a reconciled bank transaction.")
