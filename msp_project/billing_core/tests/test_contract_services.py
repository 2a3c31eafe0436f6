import datetime
from decimal import Decimal

import pytest
from django.core.exceptions import ValidationError
from django.test import TestCase, override_settings

from ..engines import contract_billing as cb
from ..engines import ledger
from ..exceptions import ConsistencyError
from ..models import Asset, Company, Contact, Contract, Invoice
from ..services.contracts import (activate_contract, build_client_snapshot,
                                  generate_contract_invoice,
                                  preview_monthly_charge)
from .helpers import make_actor, make_client, make_company, make_ctx

OCT_1 = datetime.date(2025, 10, 1)


class ContractTestMixin:
    def setUp(self):
        self.company = make_company()
        self.actor = make_actor(self.company)
        self.ctx = make_ctx(self.company, self.actor)
        self.client_obj = make_client(self.company)

    def make_contract(self, **kwargs):
        values = dict(
            company=self.company, client=self.client_obj, name="Managed IT",
            billing_model=cb.PER_ASSET,
            asset_billing_rules={"workstation": {"rate": "10.00", "setup_fee": "20.00"}},
            start_date=datetime.date(2025, 1, 1),
        )
        values.update(kwargs)
        return Contract.objects.create(**values)

    def make_asset(self, name, asset_type="workstation", contract=None, assigned=None):
        return Asset.objects.create(
            company=self.company, client=self.client_obj, name=name, asset_type=asset_type,
            contract=contract, contract_assigned_at=assigned,
        )


class ContractModelTests(ContractTestMixin, TestCase):
    def test_billing_fields_must_match_model(self):
        with self.assertRaises(ValidationError):
            self.make_contract(billing_model=cb.FIXED)  # asset rules on a fixed contract

    def test_tier_policy_defaults_from_settings(self):
        contract = self.make_contract(
            billing_model=cb.TIERED, asset_billing_rules={},
            volume_tiers=[{"from_quantity": 1, "rate": "12"}], tier_basis=cb.BASIS_ASSETS,
        )
        self.assertEqual(contract.tier_policy, cb.TIER_GRADUATED)

    def test_asset_needs_assignment_date_with_contract(self):
        contract = self.make_contract()
        with self.assertRaises(ValidationError):
            self.make_asset("WS-1", contract=contract)


class ActivationTests(ContractTestMixin, TestCase):
    def test_activation_with_auto_assign(self):
        contract = self.make_contract(auto_assign_assets=True, auto_assign_contacts=True)
        ws = self.make_asset("WS-1")
        printer = self.make_asset("PR-1", asset_type="printer")
        contact = Contact.objects.create(company=self.company, client=self.client_obj, name="Dana")

        activate_contract(contract.pk, self.ctx)

        contract.refresh_from_db()
        ws.refresh_from_db()
        printer.refresh_from_db()
        contact.refresh_from_db()
        self.assertEqual(contract.status, "active")
        self.assertEqual(contract.activated_at, self.ctx.now())
        self.assertEqual(ws.contract, contract)
        self.assertEqual(ws.contract_assigned_at, self.ctx.today())
        # no rule for printers
        self.assertIsNone(printer.contract)
        self.assertEqual(contact.contract, contract)

    def test_all_assets_assigned_when_contract_has_no_rules(self):
        contract = self.make_contract(billing_model=cb.FIXED, asset_billing_rules={},
                                      monthly_amount=Decimal("900.00"), auto_assign_assets=True)
        self.make_asset("WS-1")
        self.make_asset("PR-1", asset_type="printer")
        activate_contract(contract.pk, self.ctx)
        self.assertEqual(contract.assets.count(), 2)

    def test_no_auto_assign_without_flags(self):
        contract = self.make_contract()
        ws = self.make_asset("WS-1")
        Contact.objects.create(company=self.company, client=self.client_obj, name="Dana")
        activate_contract(contract.pk, self.ctx)
        ws.refresh_from_db()
        self.assertIsNone(ws.contract)
        self.assertEqual(contract.contacts.count(), 0)

    def test_only_drafts_activate(self):
        contract = self.make_contract()
        activate_contract(contract.pk, self.ctx)
        with self.assertRaises(ConsistencyError):
            activate_contract(contract.pk, self.ctx)


class ContractInvoiceTests(ContractTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.contract = self.make_contract()
        for i in range(7):
            self.make_asset(f"WS-{i}", contract=self.contract, assigned=datetime.date(2025, 9, 1))
        activate_contract(self.contract.pk, self.ctx)

    def test_snapshot_flags_new_assets(self):
        snapshot = build_client_snapshot(self.contract, OCT_1)
        self.assertEqual(len(snapshot.assets), 7)
        # never billed: everything is new
        self.assertEqual(len(snapshot.new_asset_ids), 7)

        self.contract.last_billed_on = datetime.date(2025, 9, 30)
        late = self.make_asset("WS-late", contract=self.contract, assigned=datetime.date(2025, 10, 1))
        snapshot = build_client_snapshot(self.contract, OCT_1)
        self.assertEqual(snapshot.new_asset_ids, frozenset({late.pk}))

    def test_preview_writes_nothing(self):
        charge = preview_monthly_charge(self.contract.pk, OCT_1, self.ctx)
        self.assertEqual(charge.total, Decimal("210.00"))  # 7 x 10 + 7 x 20 setup
        self.assertFalse(Invoice.objects.exists())
        self.contract.refresh_from_db()
        self.assertIsNone(self.contract.last_billed_on)

    def test_generate_invoice_once_per_cycle(self):
        inv = generate_contract_invoice(self.contract.pk, OCT_1, self.ctx)

        self.assertEqual(inv.status, ledger.DRAFT)
        self.assertEqual(inv.amount, Decimal("210.00"))
        self.assertEqual(inv.lines.count(), 2)
        self.assertEqual(inv.period_start, datetime.date(2025, 10, 1))
        self.assertEqual(inv.period_end, datetime.date(2025, 10, 31))
        self.assertEqual(inv.due_date, OCT_1 + datetime.timedelta(days=30))
        self.contract.refresh_from_db()
        self.assertEqual(self.contract.last_billed_on, datetime.date(2025, 10, 31))

        with self.assertRaises(ConsistencyError):
            generate_contract_invoice(self.contract.pk, datetime.date(2025, 10, 20), self.ctx)

        # next cycle: no setup fees any more
        november = generate_contract_invoice(self.contract.pk, datetime.date(2025, 11, 1), self.ctx)
        self.assertEqual(november.amount, Decimal("70.00"))

    def test_due_date_follows_company_terms_by_default(self):
        Company.objects.filter(pk=self.company.pk).update(payment_terms_days=14)
        inv = generate_contract_invoice(self.contract.pk, OCT_1, self.ctx)
        self.assertEqual(inv.due_date, OCT_1 + datetime.timedelta(days=14))

    @override_settings(BILLING={"DEFAULT_TIER_POLICY": cb.TIER_GRADUATED, "CONTRACT_INVOICE_TERMS_DAYS": 45})
    def test_configured_contract_terms_win(self):
        Company.objects.filter(pk=self.company.pk).update(payment_terms_days=14)
        inv = generate_contract_invoice(self.contract.pk, OCT_1, self.ctx)
        self.assertEqual(inv.due_date, OCT_1 + datetime.timedelta(days=45))

    def test_inactive_contract_is_not_billed(self):
        draft = self.make_contract(name="Not yet active")
        with self.assertRaises(ConsistencyError):
            generate_contract_invoice(draft.pk, OCT_1, self.ctx)


@pytest.mark.django_db
def test_per_contact_contract_invoice_reports_unmatched_tiers():
    company = make_company()
    ctx = make_ctx(company)
    client = make_client(company)
    contract = Contract.objects.create(
        company=company, client=client, name="Helpdesk seats", billing_model=cb.PER_CONTACT,
        contact_access_tiers=[{"name": "Standard", "rate": "5.00"}],
        start_date=datetime.date(2025, 1, 1), auto_assign_contacts=True,
    )
    Contact.objects.create(company=company, client=client, name="Ann", access_tier="Standard")
    Contact.objects.create(company=company, client=client, name="Bob", access_tier="Platinum")
    activate_contract(contract.pk, ctx)

    charge = preview_monthly_charge(contract.pk, OCT_1)
    assert charge.total == Decimal("5.00")
    assert len(charge.unmatched_contacts) == 1

    inv = generate_contract_invoice(contract.pk, OCT_1, ctx)
    assert inv.amount == Decimal("5.00")
