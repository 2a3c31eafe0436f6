from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import models, transaction

from ..engines import time_billing
from ..managers import TenantManager
from .client import Client
from .entitymembership import Company


# ---------- Rate cards ----------
class RateCard(models.Model):
    """Hourly pricing for a client, optionally scoped to one service type
    and a date window. Used to turn logged hours into money."""

    company = models.ForeignKey(Company, on_delete=models.CASCADE)
    client = models.ForeignKey(Client, on_delete=models.CASCADE, related_name="rate_cards")
    name = models.CharField(max_length=200, null=True, blank=True)

    # Either one service type (e.g. "helpdesk") or every service
    service_type = models.CharField(max_length=50, null=True, blank=True)
    applies_to_all_services = models.BooleanField(default=False)

    hourly_rate = models.DecimalField(max_digits=18, decimal_places=2)
    # Window the card is valid in, open-ended when effective_to is empty
    effective_from = models.DateField()
    effective_to = models.DateField(null=True, blank=True)

    # Billing rules applied to worked hours
    minimum_hours = models.DecimalField(
        max_digits=8, decimal_places=2, null=True, blank=True
    )
    rounding_increment = models.PositiveIntegerField(
        null=True, blank=True, help_text="Minutes (e.g. 15 bills in quarter hours)"
    )
    rounding_method = models.CharField(
        max_length=10,
        choices=time_billing.ROUNDING_METHOD_CHOICES,
        default=time_billing.ROUND_NONE,
    )

    is_default = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        indexes = [
            models.Index(fields=["company", "client"]),
            models.Index(fields=["client", "service_type", "effective_from"]),
        ]
        constraints = [
            # A client has at most one default card
            models.UniqueConstraint(
                fields=["client"],
                condition=models.Q(is_default=True),
                name="uq_ratecard_one_default_per_client",
            ),
            models.CheckConstraint(
                condition=models.Q(hourly_rate__gte=0),
                name="ratecard_non_negative_rate",
            ),
        ]

    def __str__(self):
        scope = "all services" if self.applies_to_all_services else self.service_type
        return f"{self.name or 'Rate card'} ({scope}) {self.hourly_rate}/h"

    @property
    def terms(self) -> time_billing.RateCardTerms:
        return time_billing.RateCardTerms(
            hourly_rate=self.hourly_rate,
            minimum_hours=self.minimum_hours,
            rounding_increment=self.rounding_increment,
            rounding_method=self.rounding_method,
        )

    def to_candidate(self) -> time_billing.RateCardCandidate:
        return time_billing.RateCardCandidate(
            id=self.pk,
            client_id=self.client_id,
            service_type=self.service_type,
            applies_to_all_services=self.applies_to_all_services,
            effective_from=self.effective_from,
            effective_to=self.effective_to,
            is_default=self.is_default,
            terms=self.terms,
            is_active=self.is_active,
        )

    def clean(self):
        if self.client_id and self.client.company_id != self.company_id:
            raise ValidationError("Client must belong to the same company.")
        if not self.applies_to_all_services and not self.service_type:
            raise ValidationError("Set a service type or mark the card as applying to all services")
        if self.effective_to and self.effective_from and self.effective_to < self.effective_from:
            raise ValidationError("effective_to cannot be before effective_from")
        if self.hourly_rate is not None:
            time_billing.validate_terms(self.terms)
        if self.minimum_hours is not None and self.minimum_hours < Decimal("0"):
            raise ValidationError("Minimum hours must be >= 0")
        if self.is_default and not self.is_active:
            raise ValidationError("The default rate card cannot be deactivated, make another card the default first")

    def save(self, *args, **kwargs):
        with transaction.atomic():
            others = RateCard.objects.filter(client_id=self.client_id).exclude(pk=self.pk)
            # a client's first card is its default
            if not others.exists():
                self.is_default = True
            # the default only moves through set_default_rate_card
            elif (self.pk and not self.is_default
                  and RateCard.objects.filter(pk=self.pk, is_default=True).exists()):
                raise ValidationError("Make another card the default instead of demoting this one")
            # demote the previous default before the constraint is checked
            if self.is_default:
                others.filter(is_default=True).update(is_default=False)
            self.full_clean()
            return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        if self.is_default and RateCard.objects.filter(client_id=self.client_id).exclude(pk=self.pk).exists():
            raise ValidationError("Make another card the default before deleting this one")
        return super().delete(*args, **kwargs)
