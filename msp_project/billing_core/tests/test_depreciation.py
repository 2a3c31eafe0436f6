import datetime
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.test import SimpleTestCase, TestCase

from ..engines import depreciation as dep
from ..engines.depreciation import DepreciationInputs, get_depreciation_schedule
from ..models import AssetDepreciation, AuditLog, DepreciationUsage
from ..services.depreciation import refresh_depreciation
from .helpers import make_actor, make_company, make_ctx


def inputs(cost, salvage, life, method=dep.STRAIGHT_LINE, **kwargs):
    return DepreciationInputs(
        original_cost=Decimal(cost), salvage_value=Decimal(salvage),
        useful_life_years=life, method=method, **kwargs,
    )


def annuals(schedule):
    return [row.annual_depreciation for row in schedule]


class ScheduleTests(SimpleTestCase):
    def test_straight_line(self):
        schedule = get_depreciation_schedule(inputs("1200", "200", 5))
        self.assertEqual(len(schedule), 5)
        self.assertEqual(annuals(schedule), [Decimal("200.00")] * 5)
        third = schedule[2]
        self.assertEqual(third.accumulated_depreciation, Decimal("600.00"))
        self.assertEqual(third.book_value, Decimal("600.00"))
        self.assertEqual(schedule[-1].book_value, Decimal("200.00"))

    def test_straight_line_last_year_takes_the_remainder(self):
        schedule = get_depreciation_schedule(inputs("1000", "0", 3))
        self.assertEqual(annuals(schedule), [Decimal("333.33"), Decimal("333.33"), Decimal("333.34")])
        self.assertEqual(schedule[-1].book_value, Decimal("0.00"))

    def test_declining_balance_never_drops_below_salvage(self):
        schedule = get_depreciation_schedule(
            inputs("1000", "100", 5, dep.DECLINING_BALANCE, depreciation_rate=Decimal("0.5")))
        self.assertEqual(annuals(schedule), [
            Decimal("500.00"), Decimal("250.00"), Decimal("125.00"), Decimal("25.00"), Decimal("0.00"),
        ])
        for row in schedule:
            self.assertGreaterEqual(row.book_value, Decimal("100.00"))
            self.assertLessEqual(row.accumulated_depreciation, Decimal("900.00"))

    def test_declining_balance_needs_a_rate(self):
        with self.assertRaises(ValidationError):
            get_depreciation_schedule(inputs("1000", "0", 5, dep.DECLINING_BALANCE))
        with self.assertRaises(ValidationError):
            get_depreciation_schedule(
                inputs("1000", "0", 5, dep.DECLINING_BALANCE, depreciation_rate=Decimal("1.5")))

    def test_double_declining_uses_two_over_life(self):
        schedule = get_depreciation_schedule(inputs("1000", "0", 5, dep.DOUBLE_DECLINING))
        self.assertEqual(annuals(schedule)[:3], [Decimal("400.00"), Decimal("240.00"), Decimal("144.00")])

    def test_sum_of_years(self):
        schedule = get_depreciation_schedule(inputs("1500", "0", 5, dep.SUM_OF_YEARS))
        self.assertEqual(annuals(schedule), [
            Decimal("500.00"), Decimal("400.00"), Decimal("300.00"), Decimal("200.00"), Decimal("100.00"),
        ])

    def test_units_of_production_with_missing_year(self):
        schedule = get_depreciation_schedule(inputs(
            "10000", "0", 3, dep.UNITS_OF_PRODUCTION,
            total_expected_units=Decimal("1000"),
            units_per_year=(Decimal("300"), Decimal("0"), Decimal("200")),
        ))
        self.assertEqual(annuals(schedule), [Decimal("3000.00"), Decimal("0.00"), Decimal("2000.00")])

    def test_units_beyond_expectation_are_clamped(self):
        schedule = get_depreciation_schedule(inputs(
            "1000", "0", 2, dep.UNITS_OF_PRODUCTION,
            total_expected_units=Decimal("100"),
            units_per_year=(Decimal("80"), Decimal("80")),
        ))
        self.assertEqual(annuals(schedule), [Decimal("800.00"), Decimal("200.00")])

    def test_zero_divisors_raise_arithmetic_errors(self):
        with self.assertRaises(ZeroDivisionError):
            get_depreciation_schedule(inputs("1000", "0", 0))
        with self.assertRaises(ZeroDivisionError):
            get_depreciation_schedule(inputs("1000", "0", 5, dep.UNITS_OF_PRODUCTION,
                                             total_expected_units=Decimal("0")))
        self.assertTrue(issubclass(ZeroDivisionError, ArithmeticError))

    def test_invalid_inputs(self):
        bad = [
            inputs("1000", "1200", 5),
            inputs("-1", "0", 5),
            DepreciationInputs(original_cost=None, salvage_value=Decimal("0"),
                               useful_life_years=5, method=dep.STRAIGHT_LINE),
            inputs("1000", "0", 5, "half_life"),
            inputs("1000", "0", 5, dep.UNITS_OF_PRODUCTION),
        ]
        for value in bad:
            with self.subTest(inputs=value), self.assertRaises(ValidationError):
                get_depreciation_schedule(value)

    def test_position_as_of(self):
        start = datetime.date(2020, 1, 1)
        position = dep.position_as_of(inputs("1200", "200", 5), start, datetime.date(2023, 6, 1))
        self.assertEqual(position.years_elapsed, 3)
        self.assertEqual(position.accumulated_depreciation, Decimal("600.00"))
        self.assertEqual(position.book_value, Decimal("600.00"))
        self.assertEqual(position.annual_depreciation, Decimal("200.00"))

        done = dep.position_as_of(inputs("1200", "200", 5), start, datetime.date(2031, 1, 1))
        self.assertEqual(done.book_value, Decimal("200.00"))
        self.assertEqual(done.annual_depreciation, Decimal("0.00"))

    def test_completed_years_is_anniversary_based(self):
        start = datetime.date(2024, 3, 15)
        self.assertEqual(dep.completed_years(start, datetime.date(2025, 3, 14)), 0)
        self.assertEqual(dep.completed_years(start, datetime.date(2025, 3, 15)), 1)
        self.assertEqual(dep.completed_years(start, datetime.date(2023, 1, 1)), 0)


class AssetDepreciationModelTests(TestCase):
    def setUp(self):
        self.company = make_company()
        self.actor = make_actor(self.company)
        self.ctx = make_ctx(self.company, self.actor, today=datetime.date(2023, 6, 1))

    def make_record(self, **kwargs):
        values = dict(
            company=self.company, description="Core switch",
            original_cost=Decimal("1200.00"), salvage_value=Decimal("200.00"),
            useful_life_years=5, start_date=datetime.date(2020, 1, 1),
        )
        values.update(kwargs)
        return AssetDepreciation.objects.create(**values)

    def test_refresh_persists_derived_columns(self):
        record = self.make_record()
        refresh_depreciation(record.pk, self.ctx)

        record.refresh_from_db()
        self.assertEqual(record.annual_depreciation, Decimal("200.00"))
        self.assertEqual(record.accumulated_depreciation, Decimal("600.00"))
        self.assertEqual(record.current_book_value, Decimal("600.00"))
        self.assertEqual(record.last_calculated_at, self.ctx.now())
        self.assertTrue(AuditLog.objects.filter(action="refresh", object_id=str(record.pk)).exists())

    def test_schedule_follows_edits_without_saving(self):
        record = self.make_record()
        record.useful_life_years = 10
        self.assertEqual(len(record.get_depreciation_schedule()), 10)
        self.assertEqual(record.get_depreciation_schedule()[0].annual_depreciation, Decimal("100.00"))

    def test_units_of_production_reads_usage_rows(self):
        record = self.make_record(
            original_cost=Decimal("10000.00"), salvage_value=Decimal("0.00"), useful_life_years=3,
            method=dep.UNITS_OF_PRODUCTION, total_expected_units=Decimal("1000"),
        )
        DepreciationUsage.objects.create(depreciation=record, year=1, units=Decimal("300"))
        DepreciationUsage.objects.create(depreciation=record, year=3, units=Decimal("200"))

        schedule = record.get_depreciation_schedule()
        self.assertEqual(annuals(schedule), [Decimal("3000.00"), Decimal("0.00"), Decimal("2000.00")])

    def test_usage_beyond_useful_life_is_rejected(self):
        record = self.make_record(method=dep.UNITS_OF_PRODUCTION, total_expected_units=Decimal("100"))
        with self.assertRaises(ValidationError):
            DepreciationUsage.objects.create(depreciation=record, year=6, units=Decimal("1"))

    def test_zero_life_cannot_be_saved(self):
        with self.assertRaises(ValidationError):
            self.make_record(useful_life_years=0)

    def test_salvage_above_cost_cannot_be_saved(self):
        with self.assertRaises(ValidationError):
            self.make_record(salvage_value=Decimal("5000.00"))
