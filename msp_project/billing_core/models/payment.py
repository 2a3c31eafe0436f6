from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import models

from ..engines.money import quantize_money
from ..managers import ApplicationManager, PaymentApplicationManager, TenantManager
from .client import Client
from .entitymembership import Company
from .invoice import Invoice

PAYMENT_METHODS = [
    # Keeps payment method standardized across records
    ("cash", "Cash"),
    ("cheque", "Cheque"),
    ("bank_transfer", "Bank Transfer"),
    ("card", "Card"),
    ("other", "Other"),
]


# ---------- Payments ----------


class Payment(models.Model):  # Money received from a client
    company = models.ForeignKey(Company, on_delete=models.CASCADE)
    client = models.ForeignKey(Client, on_delete=models.PROTECT, related_name="payments")

    amount = models.DecimalField(max_digits=18, decimal_places=2)
    payment_date = models.DateField()
    payment_method = models.CharField(
        max_length=20, choices=PAYMENT_METHODS, default="bank_transfer"
    )
    reference = models.CharField(max_length=200, null=True, blank=True)

    # Soft delete: applications of a deleted payment stop counting
    deleted_at = models.DateTimeField(null=True, blank=True)
    # Set when matched against a bank transaction
    is_reconciled = models.BooleanField(default=False)

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        indexes = [
            models.Index(fields=["company", "client"]),
            models.Index(fields=["company", "payment_date"]),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount__gt=0),
                name="payment_positive_amount",
            ),
        ]

    def __str__(self):
        return f"Payment {self.reference or self.pk} ({self.amount})"

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    def applied_total(self) -> Decimal:
        total = self.applications.counted().aggregate(
            total=models.Sum("amount"))["total"]
        return quantize_money(total or Decimal("0"))

    def unapplied_amount(self) -> Decimal:
        return quantize_money(self.amount - self.applied_total())

    def clean(self):
        if self.amount is not None and self.amount <= 0:
            raise ValidationError("Payment amount must be > 0")
        if self.client_id and self.client.company_id != self.company_id:
            raise ValidationError("Client must belong to the same company.")

    def save(self, *args, **kwargs):
        self.full_clean()  # run validations before saving
        return super().save(*args, **kwargs)


class ClientCredit(models.Model):  # Credit note / prepaid balance held for a client
    company = models.ForeignKey(Company, on_delete=models.CASCADE)
    client = models.ForeignKey(Client, on_delete=models.PROTECT, related_name="credits")

    amount = models.DecimalField(max_digits=18, decimal_places=2)
    reason = models.CharField(max_length=200, null=True, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        indexes = [models.Index(fields=["company", "client"])]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount__gt=0),
                name="credit_positive_amount",
            ),
        ]

    def __str__(self):
        return f"Credit {self.pk} ({self.amount})"

    def applied_total(self) -> Decimal:
        total = self.applications.counted().aggregate(
            total=models.Sum("amount"))["total"]
        return quantize_money(total or Decimal("0"))

    def unapplied_amount(self) -> Decimal:
        return quantize_money(self.amount - self.applied_total())

    def clean(self):
        if self.amount is not None and self.amount <= 0:
            raise ValidationError("Credit amount must be > 0")
        if self.client_id and self.client.company_id != self.company_id:
            raise ValidationError("Client must belong to the same company.")

    def save(self, *args, **kwargs):
        self.full_clean()
        return super().save(*args, **kwargs)


# ---------- Applications (bridge tables) ----------


class PaymentApplication(models.Model):  # Part of a payment settling one invoice
    company = models.ForeignKey(Company, on_delete=models.CASCADE)
    payment = models.ForeignKey(
        Payment, on_delete=models.PROTECT, related_name="applications")
    invoice = models.ForeignKey(
        Invoice, on_delete=models.PROTECT, related_name="payment_applications")
    # Allow partial application (e.g. $100 payment applied to a $250 invoice)
    amount = models.DecimalField(max_digits=18, decimal_places=2)
    # Voided applications are kept for history but no longer count
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    objects = PaymentApplicationManager()

    class Meta:
        indexes = [
            models.Index(fields=["company", "payment"]),
            models.Index(fields=["company", "invoice"]),
        ]
        constraints = [
            # Ensure amount is never negative
            models.CheckConstraint(
                condition=models.Q(amount__gte=0),
                name="payapp_non_negative_amount",
            ),
        ]

    def __str__(self):
        return f"Payment {self.payment_id} → {self.invoice} ({self.amount})"

    def clean(self):
        # You can’t apply negative payment
        if self.amount is not None and self.amount < 0:
            raise ValidationError("Applied amount must be non-negative")

        """ You can't accidentally link a Payment
        from Company A to an Invoice from Company B. """
        if self.payment_id and self.payment.company_id != self.company_id:
            raise ValidationError("Payment must belong to the same company.")
        if self.invoice_id and self.invoice.company_id != self.company_id:
            raise ValidationError("Invoice must belong to the same company.")
        if self.payment_id and self.invoice_id and self.payment.client_id != self.invoice.client_id:
            raise ValidationError("Payment and invoice must belong to the same client.")

    def save(self, *args, **kwargs):
        self.full_clean()  # run validations before saving
        return super().save(*args, **kwargs)


class CreditApplication(models.Model):  # Part of a client credit settling one invoice
    company = models.ForeignKey(Company, on_delete=models.CASCADE)
    credit = models.ForeignKey(
        ClientCredit, on_delete=models.PROTECT, related_name="applications")
    invoice = models.ForeignKey(
        Invoice, on_delete=models.PROTECT, related_name="credit_applications")
    amount = models.DecimalField(max_digits=18, decimal_places=2)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    objects = ApplicationManager()

    class Meta:
        indexes = [
            models.Index(fields=["company", "credit"]),
            models.Index(fields=["company", "invoice"]),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount__gte=0),
                name="creditapp_non_negative_amount",
            ),
        ]

    def __str__(self):
        return f"Credit {self.credit_id} → {self.invoice} ({self.amount})"

    def clean(self):
        if self.amount is not None and self.amount < 0:
            raise ValidationError("Applied amount must be non-negative")
        if self.credit_id and self.credit.company_id != self.company_id:
            raise ValidationError("Credit must belong to the same company.")
        if self.invoice_id and self.invoice.company_id != self.company_id:
            raise ValidationError("Invoice must belong to the same company.")
        if self.credit_id and self.invoice_id and self.credit.client_id != self.invoice.client_id:
            raise ValidationError("Credit and invoice must belong to the same client.")

    def save(self, *args, **kwargs):
        self.full_clean()
        return super().save(*args, **kwargs)
