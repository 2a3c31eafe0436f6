import logging

from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task  # register this function as a Celery task
def refresh_overdue_invoices_task(company_id):
    # import models lazily to avoid circular imports at module import time
    from .context import BillingContext
    from .models import Company
    from .services.ledger import refresh_overdue_invoices

    company = Company.objects.get(pk=company_id)
    # scheduled runs have no acting user
    moved = refresh_overdue_invoices(BillingContext(company=company))
    return moved


@shared_task
def refresh_overdue_for_all_companies():
    from .models import Company

    # Fan out one sweep per tenant
    company_ids = list(Company.objects.order_by("pk").values_list("pk", flat=True))
    for company_id in company_ids:
        refresh_overdue_invoices_task.delay(company_id)
    logger.info("Queued overdue sweep for %s companies", len(company_ids))
    return len(company_ids)
