import datetime
from decimal import Decimal
from typing import Optional

from django.core.exceptions import ValidationError
from django.db import models
from django.utils import timezone

from ..engines import ledger
from ..engines.money import quantize_money
from ..managers import TenantManager
from .client import Client
from .entitymembership import Company

INV_STATUS_CHOICES = ledger.INVOICE_STATUS_CHOICES

LINE_SOURCE_CHOICES = [
    ("manual", "Manual"),
    ("time", "Time entry"),
    ("contract", "Contract recurring charge"),
    ("expense", "Billable expense"),
]


class Invoice(models.Model):  # Represents a client invoice

    # Invoice belongs to one company (multi-tenant)
    company = models.ForeignKey(Company, on_delete=models.CASCADE)

    client = models.ForeignKey(
        Client,
        # prevent deleting a client who has invoices
        on_delete=models.PROTECT,
        related_name="invoices",
    )
    # Set when the invoice was generated from a recurring contract
    contract = models.ForeignKey(
        "Contract",
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="invoices",
    )

    # human-readable (e.g. "INV-2025-001")
    number = models.CharField(max_length=64, null=True, blank=True)
    date = models.DateField()  # issue date
    due_date = models.DateField(null=True, blank=True)

    status = models.CharField(
        max_length=10, choices=INV_STATUS_CHOICES, default=ledger.DRAFT
    )
    """ Workflow:
        draft = not yet sent, only send()/void() move it.
        sent = issued, nothing applied yet.
        partial = part of the amount settled.
        paid = fully settled (balance <= 0).
        overdue = sent and past due (set by the refresh sweep).
        cancelled = voided, never changes again. """

    currency_code = models.CharField(max_length=10, default="USD")
    # Total of the invoice (sum of its lines when it has lines)
    amount = models.DecimalField(
        max_digits=18, decimal_places=2, default=Decimal("0.00")
    )
    description = models.TextField(null=True, blank=True)

    # Billing cycle this invoice covers (contract invoices)
    period_start = models.DateField(null=True, blank=True)
    period_end = models.DateField(null=True, blank=True)

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        indexes = [
            models.Index(fields=["company", "number"]),
            models.Index(fields=["company", "client"]),
            models.Index(fields=["company", "status", "due_date"]),
        ]
        constraints = [
            # Within one company, each invoice number must be unique
            models.UniqueConstraint(
                fields=["company", "number"],
                name="uq_invoice_company_number"
            ),
            models.CheckConstraint(
                condition=models.Q(amount__gte=0),
                name="inv_non_negative_amount",
            ),
        ]

    def __str__(self):
        # If no invoice number, fall back to database ID
        return f"Inv {self.number or self.pk}"

    # ----------------------------
    # Ledger views of the invoice
    # ----------------------------
    def to_snapshot(self) -> ledger.InvoiceSnapshot:
        """Fully hydrated, immutable copy handed to the ledger engine."""
        applications = []
        if self.pk:
            payment_apps = self.payment_applications.select_related("payment").order_by("pk")
            for app in payment_apps:
                applications.append(ledger.ApplicationSnapshot(
                    kind=ledger.PAYMENT,
                    amount=app.amount,
                    is_active=app.is_active,
                    source_deleted=app.payment.deleted_at is not None,
                    id=app.pk,
                ))
            for app in self.credit_applications.order_by("pk"):
                applications.append(ledger.ApplicationSnapshot(
                    kind=ledger.CREDIT,
                    amount=app.amount,
                    is_active=app.is_active,
                    id=app.pk,
                ))
        return ledger.InvoiceSnapshot(
            amount=self.amount,
            status=self.status,
            due_date=self.due_date,
            applications=tuple(applications),
            id=self.pk,
        )

    def get_total_paid(self) -> Decimal:
        return ledger.get_total_paid(self.to_snapshot().applications)

    def get_balance(self) -> Decimal:
        return ledger.get_balance(self.to_snapshot())

    def is_fully_paid(self) -> bool:
        return ledger.is_fully_paid(self.to_snapshot())

    def is_overdue(self, today: Optional[datetime.date] = None) -> bool:
        # always computed live, the stored status may lag behind
        return ledger.is_overdue(self.to_snapshot(), today or timezone.localdate())

    def has_active_applications(self) -> bool:
        return (
            self.payment_applications.counted().exists()
            or self.credit_applications.counted().exists()
        )

    """ Ensure invoice's stored amount is always in sync with its lines """

    def recalc_totals(self):
        # guard if no pk: there are no lines yet
        if not getattr(self, "pk", None):
            return
        self.amount = quantize_money(
            sum((line.amount for line in self.lines.all()), Decimal("0.00"))
        )

    def clean(self):
        if self.amount is not None and self.amount < 0:
            raise ValidationError("Invoice amount must be >= 0")
        if self.due_date and self.date and self.due_date < self.date:
            raise ValidationError("Due date cannot be before the invoice date")
        # Client chosen must belong to the same company
        if self.client_id and self.client.company_id != self.company_id:
            raise ValidationError("Client must belong to the same company.")

        # Cancelled and paid invoices keep their money fields
        if self.pk and self.status in (ledger.PAID, ledger.CANCELLED):
            orig = Invoice.objects.get(pk=self.pk)
            changed = [f for f in ("number", "amount", "company_id", "client_id")
                       if getattr(orig, f) != getattr(self, f)]
            if changed:
                raise ValidationError(
                    f"Cannot modify {changed} on a {self.status} invoice."
                )

    def save(self, *args, **kwargs):
        self.full_clean()  # will trigger clean()
        return super().save(*args, **kwargs)

    """ Prevent deleting invoices that already have payments applied """

    def delete(self, *args, **kwargs):
        if self.payment_applications.exists() or self.credit_applications.exists():
            # Void the invoice instead of deleting it outright
            raise ValidationError("Cannot delete an invoice with applied payments or credits.")
        return super().delete(*args, **kwargs)

    def transition_to(self, new_status):
        """Explicit (user-driven) transitions. Payment-driven
        moves go through ledger.next_status instead."""
        allowed = {
            ledger.DRAFT: [ledger.SENT, ledger.CANCELLED],
            ledger.SENT: [ledger.CANCELLED],
            ledger.PARTIAL: [ledger.CANCELLED],
            ledger.OVERDUE: [ledger.CANCELLED],
            ledger.PAID: [],
            ledger.CANCELLED: [],
        }
        if new_status not in allowed.get(self.status, []):
            raise ValidationError(f"Cannot go from {self.status} to {new_status}")
        self.status = new_status
        self.save(update_fields=["status"])


class InvoiceLine(models.Model):  # One billed service, time block or recurring charge

    company = models.ForeignKey(Company, on_delete=models.CASCADE)
    invoice = models.ForeignKey(
        Invoice, on_delete=models.CASCADE, related_name="lines")

    description = models.TextField()
    source = models.CharField(max_length=20, choices=LINE_SOURCE_CHOICES, default="manual")

    # quantity × rate = amount
    quantity = models.DecimalField(
        max_digits=14, decimal_places=4, default=Decimal("1")
    )
    rate = models.DecimalField(
        max_digits=18, decimal_places=4, default=Decimal("0.00")
    )
    amount = models.DecimalField(
        max_digits=18, decimal_places=2, default=Decimal("0.00")
    )

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        indexes = [
            models.Index(fields=["company", "invoice"]),
        ]
        # Ensure quantity & rate are never negative
        constraints = [
            models.CheckConstraint(
                condition=models.Q(quantity__gte=0) & models.Q(rate__gte=0),
                name="invl_non_negative_amounts",
            ),
        ]

    def __str__(self):
        return f"{self.invoice} - {self.description} - {self.amount}"

    def clean(self):
        if self.quantity is not None and self.quantity < 0:
            raise ValidationError("Quantity must be >= 0")
        if self.rate is not None and self.rate < 0:
            raise ValidationError("Rate must be >= 0")
        if self.invoice_id:
            if self.invoice.company_id != self.company_id:
                raise ValidationError("InvoiceLine.company must match Invoice.company")
            # Money of settled or voided invoices is frozen
            if self.invoice.status in (ledger.PAID, ledger.CANCELLED):
                raise ValidationError(f"Cannot change lines of a {self.invoice.status} invoice")

    """ Ensure no inconsistent invoice line can ever be persisted """

    def save(self, *args, **kwargs):
        # copy company from the invoice when it was not given
        if not self.company_id and self.invoice_id:
            self.company_id = self.invoice.company_id
        # compute amount always
        self.amount = quantize_money(
            (self.quantity or Decimal("0")) * (self.rate or Decimal("0"))
        )
        self.full_clean()
        return super().save(*args, **kwargs)
