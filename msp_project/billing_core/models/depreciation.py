import datetime
from decimal import Decimal
from typing import Optional

from django.core.exceptions import ValidationError
from django.db import models
from django.utils import timezone

from ..engines import depreciation as dep
from ..managers import TenantManager
from .client import Asset
from .entitymembership import Company


# ---------- Asset depreciation ----------
class AssetDepreciation(models.Model):  # Depreciation plan of a long-term asset
    # Each record belongs to a company (multi-tenant)
    company = models.ForeignKey(Company, on_delete=models.CASCADE)
    # The managed device being depreciated, if it is tracked as one
    asset = models.ForeignKey(
        Asset,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="depreciations",
    )
    description = models.CharField(max_length=400)

    # Acquisition cost and what it is expected to be worth at the end
    original_cost = models.DecimalField(max_digits=18, decimal_places=2)
    salvage_value = models.DecimalField(
        max_digits=18, decimal_places=2, default=Decimal("0.00")
    )
    # Estimated lifespan in years
    useful_life_years = models.PositiveIntegerField()
    method = models.CharField(
        max_length=30,
        choices=dep.DEPRECIATION_METHOD_CHOICES,
        default=dep.STRAIGHT_LINE,
    )
    # Declining balance rate (0.25 = 25% a year), double declining defaults to 2 / life
    depreciation_rate = models.DecimalField(
        max_digits=6, decimal_places=4, null=True, blank=True
    )
    # Units of production: lifetime units, usage per year lives in DepreciationUsage
    total_expected_units = models.DecimalField(
        max_digits=18, decimal_places=2, null=True, blank=True
    )
    start_date = models.DateField()

    # Derived columns, written by services.depreciation.refresh_depreciation
    annual_depreciation = models.DecimalField(
        max_digits=18, decimal_places=2, default=Decimal("0.00")
    )
    accumulated_depreciation = models.DecimalField(
        max_digits=18, decimal_places=2, default=Decimal("0.00")
    )
    current_book_value = models.DecimalField(
        max_digits=18, decimal_places=2, default=Decimal("0.00")
    )
    last_calculated_at = models.DateTimeField(null=True, blank=True)

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        indexes = [models.Index(fields=["company", "asset"])]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(original_cost__gte=0) & models.Q(salvage_value__gte=0),
                name="dep_non_negative_amounts",
            ),
            # book value never below salvage
            models.CheckConstraint(
                condition=models.Q(salvage_value__lte=models.F("original_cost")),
                name="dep_salvage_within_cost",
            ),
        ]

    def __str__(self):
        return self.description

    def to_depreciation_inputs(self) -> dep.DepreciationInputs:
        units = ()
        if self.pk and self.method == dep.UNITS_OF_PRODUCTION:
            recorded = {u.year: u.units for u in self.usages.all()}
            if recorded:
                # years without a usage row count as 0 units
                units = tuple(recorded.get(y, Decimal("0")) for y in range(1, max(recorded) + 1))
        return dep.DepreciationInputs(
            original_cost=self.original_cost,
            salvage_value=self.salvage_value,
            useful_life_years=self.useful_life_years,
            method=self.method,
            depreciation_rate=self.depreciation_rate,
            total_expected_units=self.total_expected_units,
            units_per_year=units,
        )

    def get_depreciation_schedule(self):
        # recomputed on every call, inputs may have changed since the last save
        return dep.get_depreciation_schedule(self.to_depreciation_inputs())

    def position_as_of(self, as_of: Optional[datetime.date] = None) -> dep.DepreciationPosition:
        return dep.position_as_of(
            self.to_depreciation_inputs(), self.start_date, as_of or timezone.localdate()
        )

    def clean(self):
        # Tenancy check
        if self.asset_id and self.asset.company_id != self.company_id:
            raise ValidationError("Asset must belong to the same company.")
        if self.original_cost is None or self.useful_life_years is None:
            return  # field validation reports the missing values
        try:
            dep.validate_inputs(self.to_depreciation_inputs())
        except ZeroDivisionError as exc:
            # stored plans must be computable
            raise ValidationError(str(exc))

    def save(self, *args, **kwargs):
        self.full_clean()  # run validations before saving
        return super().save(*args, **kwargs)


class DepreciationUsage(models.Model):  # Units consumed in one year (units of production)
    depreciation = models.ForeignKey(
        AssetDepreciation, on_delete=models.CASCADE, related_name="usages")
    year = models.PositiveIntegerField()  # 1 = first year of useful life
    units = models.DecimalField(max_digits=18, decimal_places=2)

    class Meta:
        ordering = ["year"]
        constraints = [
            models.UniqueConstraint(
                fields=["depreciation", "year"], name="uq_dep_usage_year"
            ),
        ]

    def __str__(self):
        return f"Year {self.year}: {self.units}"

    def clean(self):
        if self.year is not None and self.year < 1:
            raise ValidationError("Usage years start at 1")
        if self.units is not None and self.units < 0:
            raise ValidationError("Units used cannot be negative")
        if self.depreciation_id and self.year and self.year > self.depreciation.useful_life_years:
            raise ValidationError("Usage recorded beyond the useful life")

    def save(self, *args, **kwargs):
        self.full_clean()
        return super().save(*args, **kwargs)
