from django.db import models


# ---------- Currency ----------
class Currency(models.Model):
    """
    ISO currencies. Invoices and payments keep the ISO code,
    companies point at their default currency.
    """
    code = models.CharField(max_length=3, primary_key=True)  # 'USD', 'EUR'
    name = models.CharField(max_length=64)
    symbol = models.CharField(max_length=8, blank=True, null=True)  # '$'

    def __str__(self):
        return f"{self.code} ({self.symbol or ''})"

    class Meta:
        verbose_name_plural = "currencies"
