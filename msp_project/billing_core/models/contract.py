from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models

from ..engines import contract_billing as cb
from ..managers import TenantManager
from .client import Client
from .entitymembership import Company

CONTRACT_DRAFT = "draft"
CONTRACT_ACTIVE = "active"
CONTRACT_SUSPENDED = "suspended"
CONTRACT_TERMINATED = "terminated"

CONTRACT_STATUS_CHOICES = [
    (CONTRACT_DRAFT, "Draft"),
    (CONTRACT_ACTIVE, "Active"),
    (CONTRACT_SUSPENDED, "Suspended"),
    (CONTRACT_TERMINATED, "Terminated"),
]


def default_tier_policy():
    return getattr(settings, "BILLING", {}).get("DEFAULT_TIER_POLICY", cb.TIER_GRADUATED)


# ---------- Contracts ----------
class Contract(models.Model):  # Recurring managed-services agreement with a client
    company = models.ForeignKey(Company, on_delete=models.CASCADE)
    client = models.ForeignKey(Client, on_delete=models.PROTECT, related_name="contracts")
    name = models.CharField(max_length=200)
    status = models.CharField(
        max_length=12, choices=CONTRACT_STATUS_CHOICES, default=CONTRACT_DRAFT
    )

    billing_model = models.CharField(max_length=12, choices=cb.BILLING_MODEL_CHOICES)
    """ Which of the fields below are used:
        fixed = monthly_amount
        per_asset = asset_billing_rules
        per_contact = contact_access_tiers
        tiered = volume_tiers + tier_basis + tier_policy
        hybrid = any combination of the above """

    monthly_amount = models.DecimalField(
        max_digits=18, decimal_places=2, null=True, blank=True
    )
    description = models.CharField(max_length=200, default="Monthly service")
    # {"workstation": {"rate": "10.00", "setup_fee": "25.00", "service_types": []}}
    asset_billing_rules = models.JSONField(default=dict, blank=True)
    # [{"name": "Standard", "rate": "5.00", "permissions": ["portal"]}]
    contact_access_tiers = models.JSONField(default=list, blank=True)
    # [{"from_quantity": 1, "rate": "12.00", "name": "..."}] ascending
    volume_tiers = models.JSONField(default=list, blank=True)
    tier_basis = models.CharField(
        max_length=10, choices=cb.TIER_BASIS_CHOICES, null=True, blank=True
    )
    tier_policy = models.CharField(
        max_length=10, choices=cb.TIER_POLICY_CHOICES, default=default_tier_policy
    )

    start_date = models.DateField()
    end_date = models.DateField(null=True, blank=True)

    # Attach the client's unassigned assets / contacts on activation
    auto_assign_assets = models.BooleanField(default=False)
    auto_assign_contacts = models.BooleanField(default=False)

    activated_at = models.DateTimeField(null=True, blank=True)
    # Last day of the most recently invoiced billing cycle
    last_billed_on = models.DateField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        indexes = [
            models.Index(fields=["company", "client"]),
            models.Index(fields=["company", "status"]),
        ]

    def __str__(self):
        return f"{self.name} ({self.billing_model})"

    def to_billing_config(self) -> cb.ContractBillingConfig:
        """Parse the stored JSON sections into the engine's value objects."""
        return cb.ContractBillingConfig(
            billing_model=self.billing_model,
            monthly_amount=self.monthly_amount,
            description=self.description or self.name,
            asset_rules=cb.parse_asset_rules(self.asset_billing_rules),
            access_tiers=cb.parse_access_tiers(self.contact_access_tiers),
            volume_tiers=cb.parse_volume_tiers(self.volume_tiers),
            tier_basis=self.tier_basis,
            tier_policy=self.tier_policy,
            start_date=self.start_date,
            end_date=self.end_date,
        )

    def clean(self):
        if self.client_id and self.client.company_id != self.company_id:
            raise ValidationError("Client must belong to the same company.")
        if self.end_date and self.start_date and self.end_date < self.start_date:
            raise ValidationError("Contract cannot end before it starts")
        # Billing sections must match the billing model
        cb.validate_billing_config(self.to_billing_config())

    def save(self, *args, **kwargs):
        self.full_clean()  # run validations before saving
        return super().save(*args, **kwargs)
