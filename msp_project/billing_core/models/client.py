from django.core.exceptions import ValidationError
from django.db import models

from ..managers import TenantManager
from .entitymembership import Company


# ---------- Client ----------
# The managed-services customer who receives invoices
class Client(models.Model):
    # Multi-tenant: every client belongs to a single MSP company
    company = models.ForeignKey(Company, on_delete=models.CASCADE)

    name = models.CharField(max_length=200)
    billing_email = models.EmailField(null=True, blank=True)
    currency_code = models.CharField(max_length=10, default="USD")
    is_active = models.BooleanField(default=True)

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        indexes = [models.Index(fields=["company", "name"])]
        # Enforce uniqueness per tenant
        constraints = [
            models.UniqueConstraint(
                fields=["company", "name"], name="uq_company_client_name"
            ),
        ]

    def __str__(self):
        return self.name


# ---------- Contact ----------
class Contact(models.Model):
    """A person at the client. Per-contact contracts bill
    each contact at the rate of its access tier."""
    company = models.ForeignKey(Company, on_delete=models.CASCADE)
    client = models.ForeignKey(Client, on_delete=models.CASCADE, related_name="contacts")

    name = models.CharField(max_length=200)
    email = models.EmailField(null=True, blank=True)

    # Tier name as configured on the contract (matched by name, not by id)
    access_tier = models.CharField(max_length=100, null=True, blank=True)

    # Contract this contact is covered by
    contract = models.ForeignKey(
        "Contract",
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="contacts",
    )

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        indexes = [
            models.Index(fields=["company", "client"]),
            models.Index(fields=["company", "contract"]),
        ]

    def __str__(self):
        return self.name

    def clean(self):
        # Contact and client must belong to the same tenant
        if self.client_id and self.client.company_id != self.company_id:
            raise ValidationError("Contact must belong to the client's company.")
        if self.contract_id and self.contract.client_id != self.client_id:
            raise ValidationError("Contact can only be covered by its own client's contract.")

    def save(self, *args, **kwargs):
        self.full_clean()  # run validations before saving
        return super().save(*args, **kwargs)


# ---------- Asset ----------
class Asset(models.Model):
    """A managed device (workstation, server, firewall, ...)."""
    company = models.ForeignKey(Company, on_delete=models.CASCADE)
    client = models.ForeignKey(Client, on_delete=models.CASCADE, related_name="assets")

    name = models.CharField(max_length=200)
    # Matched against the keys of a contract's asset billing rules
    asset_type = models.CharField(max_length=50)
    # Optional service level, used by service-scoped asset rules
    service_type = models.CharField(max_length=50, null=True, blank=True)
    is_active = models.BooleanField(default=True)

    # Contract supporting this asset and when it was attached
    contract = models.ForeignKey(
        "Contract",
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="assets",
    )
    contract_assigned_at = models.DateField(null=True, blank=True)

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        indexes = [
            models.Index(fields=["company", "client"]),
            models.Index(fields=["company", "contract"]),
            models.Index(fields=["company", "asset_type"]),
        ]

    def __str__(self):
        return f"{self.name} ({self.asset_type})"

    def clean(self):
        if self.client_id and self.client.company_id != self.company_id:
            raise ValidationError("Asset must belong to the client's company.")
        if self.contract_id and self.contract.client_id != self.client_id:
            raise ValidationError("Asset can only be covered by its own client's contract.")
        # Attachment date travels with the contract link
        if self.contract_id and not self.contract_assigned_at:
            raise ValidationError("contract_assigned_at is required when a contract is set")

    def save(self, *args, **kwargs):
        self.full_clean()  # run validations before saving
        return super().save(*args, **kwargs)
