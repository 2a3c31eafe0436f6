from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models

from ..managers import TenantManager
from .entitymembership import Company
from .payment import Payment

# What a bank transaction is reconciled against
RECONCILE_PAYMENT = "payment"
RECONCILE_EXPENSE = "expense"

RECONCILE_KIND_CHOICES = [
    (RECONCILE_PAYMENT, "Client payment"),
    (RECONCILE_EXPENSE, "Expense"),
]


# ---------- Banking ----------


class BankAccount(models.Model):  # Represents bank account company maintains
    # Belongs to a Company (multi-tenant)
    company = models.ForeignKey(Company, on_delete=models.CASCADE)
    name = models.CharField(
        max_length=200
    )  # e.g. "Operating Account"
    # Partial account number for display/security
    account_number_masked = models.CharField(
        max_length=50, null=True, blank=True)
    currency_code = models.CharField(max_length=10, default="USD")
    last_reconciled_at = models.DateTimeField(null=True, blank=True)

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        # A company cannot have two accounts with the same name
        constraints = [
            models.UniqueConstraint(
                fields=["company", "name"], name="uq_company_bankaccount_name"
            ),
        ]
        indexes = [models.Index(fields=["company", "name"])]

    def __str__(self):
        # Show name + masked number for clarity
        if self.account_number_masked:
            return f"{self.name} ({self.account_number_masked})"
        return self.name


class BankTransaction(models.Model):  # Single inflow/outflow on a bank statement
    company = models.ForeignKey(Company, on_delete=models.CASCADE)
    # prevent BankAccount deletion if transactions exist
    bank_account = models.ForeignKey(
        BankAccount, on_delete=models.PROTECT, related_name="transactions")
    transaction_date = models.DateField()  # when it cleared
    # amount: positive = inflow (deposit), negative = outflow
    amount = models.DecimalField(max_digits=18, decimal_places=2)
    currency_code = models.CharField(max_length=10, default="USD")
    reference = models.CharField(max_length=200, null=True, blank=True)
    description = models.TextField(null=True, blank=True)

    # Reconciliation link: reconciled_kind says which FK is set
    reconciled_kind = models.CharField(
        max_length=10, choices=RECONCILE_KIND_CHOICES, null=True, blank=True
    )
    payment = models.ForeignKey(
        Payment,
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="bank_transactions",
    )
    expense = models.ForeignKey(
        "Expense",
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="bank_transactions",
    )
    is_reconciled = models.BooleanField(default=False)
    reconciled_at = models.DateTimeField(null=True, blank=True)
    reconciled_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="+",
    )

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        # Optimizes queries for reconciliation
        indexes = [
            models.Index(fields=["company", "bank_account"]),
            models.Index(fields=["company", "transaction_date"]),
            models.Index(fields=["company", "is_reconciled"]),
        ]
        constraints = [
            # Within one company, each bank reference must be unique
            models.UniqueConstraint(
                fields=["company", "reference"], name="uq_bt_company_ref"
            ),
            # Exactly one target per kind, nothing when unreconciled
            models.CheckConstraint(
                condition=(
                    models.Q(
                        reconciled_kind__isnull=True,
                        payment__isnull=True,
                        expense__isnull=True,
                        is_reconciled=False,
                    )
                    | models.Q(
                        reconciled_kind=RECONCILE_PAYMENT,
                        payment__isnull=False,
                        expense__isnull=True,
                        is_reconciled=True,
                    )
                    | models.Q(
                        reconciled_kind=RECONCILE_EXPENSE,
                        expense__isnull=False,
                        payment__isnull=True,
                        is_reconciled=True,
                    )
                ),
                name="bt_reconciled_target_matches_kind",
            ),
        ]

    def __str__(self):
        return f"{self.bank_account.name} - {self.transaction_date} - {self.amount} {self.currency_code}"

    @property
    def reconciled_target(self):
        if self.reconciled_kind == RECONCILE_PAYMENT:
            return self.payment
        if self.reconciled_kind == RECONCILE_EXPENSE:
            return self.expense
        return None

    def clean(self):  # auto-runs when you call full_clean() before saving
        # Ensure bank account chosen belongs to the same company
        if self.bank_account_id and self.bank_account.company_id != self.company_id:
            raise ValidationError(
                "Bank account must belong to the same company.")

        # Prevent mixing currencies in the same account ledger
        if self.bank_account_id and self.currency_code != self.bank_account.currency_code:
            raise ValidationError(
                "Transaction currency must match bank account currency"
            )

        target = self.reconciled_target
        if target is not None and target.company_id != self.company_id:
            raise ValidationError("Reconciled target must belong to the same company.")

    def save(self, *args, **kwargs):
        self.full_clean()  # run validations before saving
        return super().save(*args, **kwargs)
