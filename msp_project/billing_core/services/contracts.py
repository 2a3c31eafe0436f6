import calendar
import datetime
import logging
from typing import Optional

from django.conf import settings
from django.db import transaction
from django.db.models import Q

from ..context import BillingContext
from ..engines import contract_billing as cb
from ..engines import ledger
from ..exceptions import ConsistencyError
from ..models import Asset, Contact, Contract, Invoice, InvoiceLine
from ..models.contract import CONTRACT_ACTIVE, CONTRACT_DRAFT
from .audit_helper import log_action

logger = logging.getLogger(__name__)


def billing_period(as_of: datetime.date):
    """Calendar month containing as_of."""
    last_day = calendar.monthrange(as_of.year, as_of.month)[1]
    return as_of.replace(day=1), as_of.replace(day=last_day)


def build_client_snapshot(contract: Contract, as_of: datetime.date) -> cb.ClientSnapshot:
    """
    Assets and contacts covered by the contract on `as_of`.
    Assets attached after the last billed cycle are flagged as new
    (every asset is new when the contract was never billed).
    """
    assets = (
        contract.assets.filter(is_active=True)
        .filter(Q(contract_assigned_at__isnull=True) | Q(contract_assigned_at__lte=as_of))
        .order_by("pk")
    )
    contacts = contract.contacts.order_by("pk")

    new_ids = set()
    for asset in assets:
        if contract.last_billed_on is None:
            new_ids.add(asset.pk)
        elif asset.contract_assigned_at and asset.contract_assigned_at > contract.last_billed_on:
            new_ids.add(asset.pk)

    return cb.ClientSnapshot(
        client_id=contract.client_id,
        assets=tuple(
            cb.AssetSnapshot(id=a.pk, asset_type=a.asset_type, service_type=a.service_type)
            for a in assets
        ),
        contacts=tuple(
            cb.ContactSnapshot(id=c.pk, name=c.name, access_tier=c.access_tier)
            for c in contacts
        ),
        new_asset_ids=frozenset(new_ids),
    )


def preview_monthly_charge(contract_id, as_of: datetime.date, ctx: Optional[BillingContext] = None,
                           strict_tiers=False) -> cb.MonthlyCharge:
    """Dry run of the monthly charge. Nothing is written."""
    contracts = Contract.objects.all() if ctx is None else Contract.objects.for_company(ctx.company)
    contract = contracts.get(pk=contract_id)
    return cb.calculate_monthly_charge(
        contract.to_billing_config(),
        build_client_snapshot(contract, as_of),
        as_of,
        strict_tiers=strict_tiers,
    )


def activate_contract(contract_id, ctx: BillingContext) -> Contract:
    """
    Draft -> Active. When the auto-assign flags are set, the client's
    unassigned assets (of a type with a billing rule, or all of them when
    the contract has no rules) and contacts are attached to the contract.
    """
    with transaction.atomic():
        contract = Contract.objects.for_company(ctx.company).select_for_update().get(pk=contract_id)
        if contract.status != CONTRACT_DRAFT:
            raise ConsistencyError(f"Only draft contracts can be activated, {contract} is {contract.status}")

        contract.status = CONTRACT_ACTIVE
        contract.activated_at = ctx.now()
        contract.save(update_fields=["status", "activated_at"])

        assigned_assets, assigned_contacts = [], []
        if contract.auto_assign_assets:
            assets = Asset.objects.for_company(ctx.company).filter(
                client=contract.client, contract__isnull=True, is_active=True
            )
            rule_types = [rule.asset_type for rule in contract.to_billing_config().asset_rules]
            if rule_types:
                assets = assets.filter(asset_type__in=rule_types)
            for asset in assets.order_by("pk"):
                asset.contract = contract
                asset.contract_assigned_at = ctx.today()
                asset.save(update_fields=["contract", "contract_assigned_at"])
                assigned_assets.append(asset.pk)

        if contract.auto_assign_contacts:
            contacts = Contact.objects.for_company(ctx.company).filter(
                client=contract.client, contract__isnull=True
            )
            for contact in contacts.order_by("pk"):
                contact.contract = contract
                contact.save(update_fields=["contract"])
                assigned_contacts.append(contact.pk)

        log_action(action="activate", instance=contract, ctx=ctx,
                   changes={"assets": assigned_assets, "contacts": assigned_contacts})
        return contract


def generate_contract_invoice(contract_id, as_of: datetime.date, ctx: BillingContext,
                              strict_tiers=False) -> Optional[Invoice]:
    """
    Create the draft invoice for the billing cycle (calendar month) of as_of.
    Each cycle is invoiced once. Returns None when there is nothing to bill.
    """
    with transaction.atomic():
        contract = Contract.objects.for_company(ctx.company).select_for_update().get(pk=contract_id)
        if contract.status != CONTRACT_ACTIVE:
            raise ConsistencyError(f"Contract {contract} is {contract.status}, only active contracts are billed")

        period_start, period_end = billing_period(as_of)
        if contract.last_billed_on and contract.last_billed_on >= period_start:
            raise ConsistencyError(
                f"Contract {contract} is already billed up to {contract.last_billed_on}")

        charge = cb.calculate_monthly_charge(
            contract.to_billing_config(),
            build_client_snapshot(contract, as_of),
            as_of,
            strict_tiers=strict_tiers,
        )
        if not charge.line_items:
            logger.info("Contract %s has nothing to bill on %s", contract.pk, as_of)
            return None

        terms_days = settings.BILLING.get("CONTRACT_INVOICE_TERMS_DAYS")
        if terms_days is None:
            terms_days = contract.company.payment_terms_days
        inv = Invoice.objects.create(
            company=contract.company,
            client=contract.client,
            contract=contract,
            number=f"C{contract.pk}-{period_start:%Y%m}",
            date=as_of,
            due_date=as_of + datetime.timedelta(days=terms_days),
            status=ledger.DRAFT,
            currency_code=contract.client.currency_code,
            description=f"{contract.name} {period_start:%B %Y}",
            period_start=period_start,
            period_end=period_end,
        )
        for item in charge.line_items:
            InvoiceLine.objects.create(
                company=inv.company,
                invoice=inv,
                description=item.description,
                source="contract",
                quantity=item.quantity,
                rate=item.rate,
            )
        # lines keep the stored total in sync
        inv.refresh_from_db()

        contract.last_billed_on = period_end
        contract.save(update_fields=["last_billed_on"])

        log_action(action="generate_invoice", instance=contract, ctx=ctx,
                   changes={"invoice": inv.pk, "total": str(charge.total),
                            "unmatched_contacts": list(charge.unmatched_contacts)})
        return inv
