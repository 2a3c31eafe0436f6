import datetime
from typing import Optional

from django.db import transaction

from ..context import BillingContext
from ..models import AssetDepreciation
from .audit_helper import log_action


# ----------------------------
# Depreciation workflows
# ----------------------------
def refresh_depreciation(record_id, ctx: BillingContext, as_of: Optional[datetime.date] = None) -> AssetDepreciation:
    """
    Recompute and store the derived depreciation columns.
    Workflow:
        1. Lock the record.
        2. Rebuild the schedule from the current inputs.
        3. Store annual / accumulated depreciation and book value
           for the completed years as of `as_of` (default: today).
    """
    with transaction.atomic():
        # lock asset row
        record = AssetDepreciation.objects.for_company(ctx.company).select_for_update().get(pk=record_id)
        position = record.position_as_of(as_of or ctx.today())

        record.annual_depreciation = position.annual_depreciation
        record.accumulated_depreciation = position.accumulated_depreciation
        record.current_book_value = position.book_value
        record.last_calculated_at = ctx.now()
        record.save(update_fields=[
            "annual_depreciation",
            "accumulated_depreciation",
            "current_book_value",
            "last_calculated_at",
        ])

        # Record an audit log entry
        log_action(
            action="refresh",
            instance=record,
            ctx=ctx,
            changes={"Years elapsed": position.years_elapsed,
                     "Accumulated depreciation": str(record.accumulated_depreciation),
                     "Book value": str(record.current_book_value)},
        )
        return record
