import datetime
from dataclasses import dataclass, field
from typing import Callable, Optional

from django.utils import timezone


# ------------------------------------------------------------
# Explicit operation context
# Every mutating service receives the tenant, the acting user
# and a clock instead of reading them from the request
# ------------------------------------------------------------
@dataclass(frozen=True)
class BillingContext:
    company: object                     # Company the operation is scoped to
    actor: Optional[object] = None      # User recorded in audit trails (None = system)
    clock: Callable[[], datetime.datetime] = field(default=timezone.now)

    @property
    def company_id(self):
        return getattr(self.company, "pk", self.company)

    @property
    def actor_id(self):
        return getattr(self.actor, "pk", None)

    def now(self) -> datetime.datetime:
        return self.clock()

    def today(self) -> datetime.date:
        now = self.clock()
        # aware datetimes are converted to the project timezone first
        if timezone.is_aware(now):
            now = timezone.localtime(now)
        return now.date()
