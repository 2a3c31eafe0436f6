import datetime
from decimal import Decimal

import pytest
from django.core.exceptions import ValidationError
from django.db import connection
from django.test import TestCase
from django.test.utils import CaptureQueriesContext

from ..engines import ledger
from ..exceptions import ConsistencyError
from ..models import (AuditLog, ClientCredit, Invoice, Payment,
                      PaymentApplication)
from ..services.ledger import (apply_credit, apply_payment, refresh_overdue_invoices,
                               send_invoice, soft_delete_payment,
                               update_payment_status, void_application,
                               void_invoice)
from ..tasks import refresh_overdue_for_all_companies, refresh_overdue_invoices_task
from .helpers import (make_actor, make_client, make_company, make_ctx,
                      make_invoice)


class InvoicePaymentLifecycleTests(TestCase):
    def setUp(self):
        self.company = make_company()
        self.actor = make_actor(self.company)
        self.ctx = make_ctx(self.company, self.actor)
        self.client_obj = make_client(self.company)
        self.invoice = make_invoice(self.company, self.client_obj, amount="100.00")
        send_invoice(self.invoice.pk, self.ctx)
        self.payment = Payment.objects.create(
            company=self.company, client=self.client_obj,
            amount=Decimal("100.00"), payment_date=datetime.date(2025, 10, 1),
        )

    def status(self):
        self.invoice.refresh_from_db()
        return self.invoice.status

    def test_invoice_amount_follows_lines(self):
        self.assertEqual(self.invoice.amount, Decimal("100.00"))
        self.assertEqual(self.invoice.get_balance(), Decimal("100.00"))

    def test_partial_then_full_payment(self):
        apply_payment(self.payment.pk, self.invoice.pk, "40.00", self.ctx)
        self.assertEqual(self.status(), ledger.PARTIAL)
        self.assertEqual(self.invoice.get_balance(), Decimal("60.00"))

        apply_payment(self.payment.pk, self.invoice.pk, Decimal("60.00"), self.ctx)
        self.assertEqual(self.status(), ledger.PAID)
        self.assertTrue(self.invoice.is_fully_paid())
        self.assertEqual(self.invoice.get_total_paid(), Decimal("100.00"))

    def test_payment_and_credit_both_count(self):
        credit = ClientCredit.objects.create(company=self.company, client=self.client_obj, amount=Decimal("25.00"))
        apply_payment(self.payment.pk, self.invoice.pk, "75.00", self.ctx)
        apply_credit(credit.pk, self.invoice.pk, "25.00", self.ctx)
        self.assertEqual(self.status(), ledger.PAID)
        self.assertEqual(credit.unapplied_amount(), Decimal("0.00"))

    def test_cannot_apply_more_than_the_payment(self):
        with self.assertRaises(ValidationError):
            apply_payment(self.payment.pk, self.invoice.pk, "100.01", self.ctx)

    def test_non_positive_amount_is_rejected(self):
        for amount in ("0", "-5.00", "abc"):
            with self.subTest(amount=amount), self.assertRaises(ValidationError):
                apply_payment(self.payment.pk, self.invoice.pk, amount, self.ctx)

    def test_overpayment_is_kept_as_negative_balance(self):
        other = make_invoice(self.company, self.client_obj, amount="80.00")
        send_invoice(other.pk, self.ctx)
        apply_payment(self.payment.pk, other.pk, "90.00", self.ctx)
        other.refresh_from_db()
        self.assertEqual(other.status, ledger.PAID)
        self.assertEqual(other.get_balance(), Decimal("-10.00"))

    def test_voiding_an_application_reopens_the_invoice(self):
        app = apply_payment(self.payment.pk, self.invoice.pk, "100.00", self.ctx)
        self.assertEqual(self.status(), ledger.PAID)

        void_application(ledger.PAYMENT, app.pk, self.ctx)
        self.assertEqual(self.status(), ledger.SENT)
        app.refresh_from_db()
        self.assertFalse(app.is_active)
        # the row is kept for history
        self.assertEqual(PaymentApplication.objects.filter(invoice=self.invoice).count(), 1)

    def test_void_application_with_unknown_kind(self):
        with self.assertRaises(ValidationError):
            void_application("refund", 1, self.ctx)

    def test_soft_deleted_payment_stops_counting(self):
        apply_payment(self.payment.pk, self.invoice.pk, "100.00", self.ctx)
        soft_delete_payment(self.payment.pk, self.ctx)

        self.payment.refresh_from_db()
        self.assertIsNotNone(self.payment.deleted_at)
        self.assertEqual(self.status(), ledger.SENT)
        self.assertEqual(self.invoice.get_balance(), Decimal("100.00"))

        with self.assertRaises(ConsistencyError):
            apply_payment(self.payment.pk, self.invoice.pk, "1.00", self.ctx)

    def test_cancelled_invoice_rejects_payments(self):
        void_invoice(self.invoice.pk, self.ctx)
        self.assertEqual(self.status(), ledger.CANCELLED)
        with self.assertRaises(ConsistencyError):
            apply_payment(self.payment.pk, self.invoice.pk, "10.00", self.ctx)

    def test_void_is_refused_while_money_is_applied(self):
        apply_payment(self.payment.pk, self.invoice.pk, "10.00", self.ctx)
        with self.assertRaises(ConsistencyError):
            void_invoice(self.invoice.pk, self.ctx)
        self.assertEqual(self.status(), ledger.PARTIAL)

    def test_only_drafts_can_be_sent(self):
        with self.assertRaises(ConsistencyError):
            send_invoice(self.invoice.pk, self.ctx)

    def test_actions_are_audited(self):
        apply_payment(self.payment.pk, self.invoice.pk, "40.00", self.ctx)
        actions = list(
            AuditLog.objects.for_company(self.company)
            .filter(object_type="Invoice", object_id=str(self.invoice.pk))
            .order_by("pk")
            .values_list("action", flat=True)
        )
        self.assertEqual(actions, ["send", "apply_payment", "status_change"])
        self.assertTrue(AuditLog.objects.filter(user=self.actor).exists())

    def test_other_company_cannot_touch_the_invoice(self):
        other_ctx = make_ctx(make_company(slug="msp-b"))
        with self.assertRaises(Invoice.DoesNotExist):
            update_payment_status(self.invoice.pk, other_ctx)



def first_query_on(queries, table):
    marker = f'FROM "{table}" '
    return next(i for i, q in enumerate(queries) if marker in q["sql"])


class LockOrderTests(TestCase):
    """Payments and credits are locked before the invoices they touch."""

    def setUp(self):
        self.company = make_company()
        self.ctx = make_ctx(self.company)
        self.client_obj = make_client(self.company)
        self.invoice = make_invoice(self.company, self.client_obj)
        send_invoice(self.invoice.pk, self.ctx)
        self.payment = Payment.objects.create(
            company=self.company, client=self.client_obj,
            amount=Decimal("100.00"), payment_date=datetime.date(2025, 10, 1),
        )

    def assert_locked_before_invoice(self, queries, table):
        self.assertLess(first_query_on(queries, table), first_query_on(queries, "billing_core_invoice"))

    def test_apply_payment(self):
        with CaptureQueriesContext(connection) as captured:
            apply_payment(self.payment.pk, self.invoice.pk, "40.00", self.ctx)
        self.assert_locked_before_invoice(captured.captured_queries, "billing_core_payment")

    def test_apply_credit(self):
        credit = ClientCredit.objects.create(company=self.company, client=self.client_obj, amount=Decimal("25.00"))
        with CaptureQueriesContext(connection) as captured:
            apply_credit(credit.pk, self.invoice.pk, "25.00", self.ctx)
        self.assert_locked_before_invoice(captured.captured_queries, "billing_core_clientcredit")

    def test_soft_delete_payment(self):
        apply_payment(self.payment.pk, self.invoice.pk, "40.00", self.ctx)
        with CaptureQueriesContext(connection) as captured:
            soft_delete_payment(self.payment.pk, self.ctx)
        self.assert_locked_before_invoice(captured.captured_queries, "billing_core_payment")

    def test_void_application(self):
        app = apply_payment(self.payment.pk, self.invoice.pk, "40.00", self.ctx)
        with CaptureQueriesContext(connection) as captured:
            void_application(ledger.PAYMENT, app.pk, self.ctx)
        self.assert_locked_before_invoice(captured.captured_queries, "billing_core_payment")


class DraftInvoiceTests(TestCase):
    def setUp(self):
        self.company = make_company()
        self.ctx = make_ctx(self.company)
        self.client_obj = make_client(self.company)
        self.payment = Payment.objects.create(
            company=self.company, client=self.client_obj,
            amount=Decimal("200.00"), payment_date=datetime.date(2025, 10, 1),
        )

    def test_payment_on_draft_keeps_it_draft(self):
        inv = make_invoice(self.company, self.client_obj)
        apply_payment(self.payment.pk, inv.pk, "100.00", self.ctx)
        inv.refresh_from_db()
        self.assertEqual(inv.status, ledger.DRAFT)

        # sending re-evaluates what was already applied
        send_invoice(inv.pk, self.ctx)
        inv.refresh_from_db()
        self.assertEqual(inv.status, ledger.PAID)

    def test_allow_draft_settles_immediately(self):
        inv = make_invoice(self.company, self.client_obj)
        apply_payment(self.payment.pk, inv.pk, "100.00", self.ctx, allow_draft=True)
        inv.refresh_from_db()
        self.assertEqual(inv.status, ledger.PAID)

    def test_send_fills_in_the_due_date(self):
        inv = make_invoice(self.company, self.client_obj, due_date=None)
        send_invoice(inv.pk, self.ctx)
        inv.refresh_from_db()
        self.assertEqual(inv.due_date, inv.date + datetime.timedelta(days=30))

    def test_paid_invoice_money_is_frozen(self):
        inv = make_invoice(self.company, self.client_obj)
        apply_payment(self.payment.pk, inv.pk, "100.00", self.ctx, allow_draft=True)
        inv.refresh_from_db()
        inv.amount = Decimal("50.00")
        with self.assertRaises(ValidationError):
            inv.save()

    def test_invoice_with_applications_cannot_be_deleted(self):
        inv = make_invoice(self.company, self.client_obj)
        apply_payment(self.payment.pk, inv.pk, "10.00", self.ctx)
        with self.assertRaises(ValidationError):
            inv.delete()


class OverdueSweepTests(TestCase):
    def setUp(self):
        self.company = make_company()
        self.ctx = make_ctx(self.company)
        self.client_obj = make_client(self.company)

    def make_sent(self, due_date, amount="100.00"):
        inv = make_invoice(self.company, self.client_obj, amount=amount, due_date=due_date)
        send_invoice(inv.pk, self.ctx)
        inv.refresh_from_db()
        return inv

    def test_reading_never_flips_the_status(self):
        inv = self.make_sent(datetime.date(2025, 9, 30))
        self.assertEqual(inv.status, ledger.SENT)
        self.assertTrue(inv.is_overdue(self.ctx.today()))
        inv.refresh_from_db()
        self.assertEqual(inv.status, ledger.SENT)

    def test_sweep_moves_past_due_invoices(self):
        late = self.make_sent(datetime.date(2025, 9, 30))
        on_time = self.make_sent(datetime.date(2025, 10, 31))

        moved = refresh_overdue_invoices(self.ctx)

        self.assertEqual(moved, [late.pk])
        late.refresh_from_db()
        on_time.refresh_from_db()
        self.assertEqual(late.status, ledger.OVERDUE)
        self.assertEqual(on_time.status, ledger.SENT)

        # running it again changes nothing
        self.assertEqual(refresh_overdue_invoices(self.ctx), [])


@pytest.mark.django_db
def test_overdue_task_runs_the_sweep_per_company():
    company = make_company()
    client = make_client(company)
    # due date far in the past whatever the real clock says
    inv = make_invoice(company, client, date=datetime.date(2020, 1, 1), due_date=datetime.date(2020, 1, 31))
    send_invoice(inv.pk, make_ctx(company))

    result = refresh_overdue_invoices_task.delay(company.pk)

    assert result.get() == [inv.pk]
    inv.refresh_from_db()
    assert inv.status == ledger.OVERDUE


@pytest.mark.django_db
def test_overdue_fan_out_counts_companies():
    make_company(slug="msp-a")
    make_company(slug="msp-b")
    assert refresh_overdue_for_all_companies.delay().get() == 2
