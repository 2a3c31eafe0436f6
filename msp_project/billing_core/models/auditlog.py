from django.conf import settings  # To access global project settings
from django.core.exceptions import ValidationError
from django.db import models

from ..managers import TenantManager
from .entitymembership import Company


# ---------- Audit / Event log ----------
class AuditLog(models.Model):  # Who changed which billing record, and how
    # Associate log entry with a tenant
    company = models.ForeignKey(
        Company,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
    )
    # Which user performed the action
    # (empty when the action was automated, e.g. the overdue sweep)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        null=True, blank=True, on_delete=models.SET_NULL
    )
    # Common choices: apply_payment, void, reconcile, activate, refresh
    action = models.CharField(max_length=50)
    # What kind of object was affected (e.g. "Invoice", "Contract")
    object_type = models.CharField(max_length=100)
    object_id = models.CharField(max_length=100)
    # Before/after details of what changed, in JSON format
    changes = models.JSONField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        # Filter logs quickly
        indexes = [
            models.Index(fields=["company", "user"]),
            models.Index(fields=["company", "created_at"]),
            models.Index(fields=["object_type", "object_id"]),
        ]

    def __str__(self):
        return f"[{self.created_at:%Y-%m-%d %H:%M}] {self.user} {self.action} {self.object_type}({self.object_id})"

    def clean(self):
        # Ensure the user is a member of the company being logged
        if self.user and self.company:
            if not self.user.memberships.filter(
                company=self.company, is_active=True
            ).exists():
                raise ValidationError(
                    "AuditLog.user must be a member of AuditLog.company"
                )

    def save(self, *args, **kwargs):
        self.full_clean()  # run validations before saving
        return super().save(*args, **kwargs)
