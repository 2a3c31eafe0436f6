import logging
from typing import Optional

from ..context import BillingContext
from ..models import AuditLog, Company

logger = logging.getLogger(__name__)


def log_action(
    *,
    action: str,
    instance,
    ctx: Optional[BillingContext] = None,
    user=None,
    company: Optional[Company] = None,
    changes: dict | None = None,
):
    """
    Central audit logger.
    The context, when given, supplies the tenant and the acting user.
    Safe to call multiple times (caller ensures idempotency).
    """
    if ctx is not None:
        user = user or ctx.actor
        company = company or ctx.company

    if not company:
        company = getattr(instance, "company", None)

    logger.info("%s %s(%s) by %s", action, instance.__class__.__name__, instance.pk, user or "system")
    return AuditLog.objects.create(
        company=company,
        user=user,
        action=action,
        object_type=instance.__class__.__name__,
        object_id=str(instance.pk),
        changes=changes,
    )
