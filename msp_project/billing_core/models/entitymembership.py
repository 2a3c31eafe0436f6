from django.conf import settings
from django.contrib.auth.models import AbstractUser
from django.core.exceptions import ValidationError
from django.db import models
from ..managers import TenantManager


# ---------- Tenant / MSP company ----------
class Company(models.Model):

    """The MSP running the platform (tenant)"""
    name = models.CharField(max_length=200)

    slug = models.SlugField(  # A URL-friendly identifier
        max_length=80, unique=True
    )

    # Money on invoices, payments and contracts defaults to this currency
    default_currency = models.ForeignKey(
        "Currency",
        # don’t allow deleting a currency that a company depends on
        on_delete=models.PROTECT,
        related_name="companies",
    )
    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        null=True,
        blank=True,
        # if user is deleted, company record stays
        on_delete=models.SET_NULL,
    )

    # Payment terms used when generated invoices get a due date
    payment_terms_days = models.PositiveIntegerField(default=30)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name_plural = "companies"

    def __str__(self):
        return self.name


# ---------- Custom User ----------
class User(AbstractUser):
    """
    Technicians, billing staff and owners of an MSP.
    Audit trails and reconciliations record the acting user.
    """
    default_company = models.ForeignKey(
        "Company",
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="default_users",
    )
    phone = models.CharField(max_length=32, blank=True)

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        indexes = [models.Index(fields=["default_company"])]

    def __str__(self):
        # Fall back to username if no name is set
        return self.get_full_name() or self.username


# ---------- EntityMembership ----------
class EntityMembership(models.Model):  # join model between User and Company

    ROLE_CHOICES = [
        ("owner", "Owner"),
        ("admin", "Admin"),
        ("billing", "Billing"),        # invoices, payments, reconciliation
        ("technician", "Technician"),  # time entries, assets
        ("viewer", "Viewer"),          # read-only access
    ]

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="memberships",
    )
    company = models.ForeignKey(
        "Company", on_delete=models.CASCADE, related_name="memberships"
    )
    role = models.CharField(max_length=20, choices=ROLE_CHOICES, default="viewer")

    # Suspend someone’s access without deleting the record
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        # one membership per user and company
        constraints = [
            models.UniqueConstraint(
                fields=["user", "company"], name="uq_user_company_membership"
            ),
        ]
        indexes = [
            models.Index(fields=["company", "user"]),
        ]

    def __str__(self):
        return f"{self.user} @ {self.company} ({self.role})"

    def clean(self):
        # A user's default company must be one of their memberships
        # (the membership being saved counts)
        default_company_pk = getattr(self.user.default_company, "pk", None)
        if default_company_pk is None or default_company_pk == self.company_id:
            return
        others = self.user.memberships.exclude(pk=self.pk)
        if not others.filter(company_id=default_company_pk).exists():
            raise ValidationError(
                f"Default company {self.user.default_company} must be a user's membership."
            )

    def save(self, *args, **kwargs):
        self.full_clean()  # run validations before saving
        return super().save(*args, **kwargs)
