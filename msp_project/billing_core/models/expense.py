from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import models

from ..engines.expenses import calculate_billable_amount
from ..managers import TenantManager
from .client import Client
from .entitymembership import Company
from .invoice import Invoice


# ---------- Expenses ----------
class Expense(models.Model):  # Money spent on behalf of a client, optionally re-billed with markup
    company = models.ForeignKey(Company, on_delete=models.CASCADE)
    client = models.ForeignKey(
        Client,
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="expenses",
    )
    description = models.CharField(max_length=400)
    expense_date = models.DateField()
    category = models.CharField(max_length=100, null=True, blank=True)

    amount = models.DecimalField(max_digits=18, decimal_places=2)
    is_billable = models.BooleanField(default=False)
    # Percentage wins over the fixed markup when both are set
    markup_percentage = models.DecimalField(
        max_digits=7, decimal_places=2, null=True, blank=True
    )
    markup_amount = models.DecimalField(
        max_digits=18, decimal_places=2, null=True, blank=True
    )
    # amount + markup, kept in sync on save
    total_billable_amount = models.DecimalField(
        max_digits=18, decimal_places=2, default=Decimal("0.00")
    )

    # Invoice the expense was billed on
    invoice = models.ForeignKey(
        Invoice,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="expenses",
    )
    # Set when matched against a bank transaction
    is_reconciled = models.BooleanField(default=False)

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        indexes = [
            models.Index(fields=["company", "client"]),
            models.Index(fields=["company", "expense_date"]),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount__gte=0),
                name="expense_non_negative_amount",
            ),
        ]

    def __str__(self):
        return f"{self.description} ({self.amount})"

    def clean(self):
        if self.client_id and self.client.company_id != self.company_id:
            raise ValidationError("Client must belong to the same company.")
        if self.invoice_id:
            if self.invoice.company_id != self.company_id:
                raise ValidationError("Invoice must belong to the same company.")
            if not self.is_billable:
                raise ValidationError("Only billable expenses can be put on an invoice")
        if self.is_billable and not self.client_id:
            raise ValidationError("Billable expenses need a client")

    def save(self, *args, **kwargs):
        # compute total_billable_amount always
        self.total_billable_amount = calculate_billable_amount(
            self.amount, self.markup_percentage, self.markup_amount, self.is_billable
        )
        self.full_clean()
        return super().save(*args, **kwargs)
