import threading
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import connection
from django.test import TestCase, TransactionTestCase, override_settings

from projects import services as ledger
from projects.models import Project


def make_project(**kwargs):
    defaults = {
        'name': 'Продуктовые наборы',
        'unit_price': Decimal('10.00'),
        'target_units': 5,
        'status': Project.Status.ACTIVE,
    }
    defaults.update(kwargs)
    return Project.objects.create(**defaults)


def make_amount_project(**kwargs):
    defaults = {
        'name': 'Ремонт школы',
        'aggregate_donations': True,
        'unit_price': None,
        'target_amount': Decimal('100.00'),
        'status': Project.Status.ACTIVE,
    }
    defaults.update(kwargs)
    return Project.objects.create(**defaults)


class ProjectModelTests(TestCase):
    def test_slug_auto_generation_and_uniqueness(self):
        p1 = make_project(name='Вода для Херсона')
        p2 = make_project(name='Вода для Херсона')
        self.assertNotEqual(p1.slug, '')
        self.assertNotEqual(p1.slug, p2.slug)

    def test_unit_project_requires_price(self):
        p = Project(name='Без цены', target_units=3)
        with self.assertRaises(ValidationError):
            p.clean()

    def test_long_term_project_has_no_target(self):
        p = make_project(is_long_term=True, target_units=None)
        p.clean()
        self.assertFalse(p.has_target)
        self.assertIsNone(p.remaining)

    def test_remaining_counts_reserved(self):
        p = make_project(current_units=1, reserved_units=2)
        self.assertEqual(p.remaining_units, 2)


@override_settings(DONATIONS_MAX_UNITS_PER_ORDER=10, DONATIONS_MAX_AMOUNT_PER_ORDER=10000)
class CapacityLedgerTests(TestCase):
    def test_reserve_within_capacity(self):
        p = make_project()
        r = ledger.try_reserve(p.pk, quantity=3)
        self.assertTrue(r.ok)
        self.assertEqual(r.granted, 3)
        self.assertEqual(r.remaining, 2)
        self.assertEqual(r.amount, Decimal('30.00'))
        p.refresh_from_db()
        self.assertEqual(p.reserved_units, 3)
        self.assertEqual(p.current_units, 0)

    def test_second_checkout_gets_remaining_as_max(self):
        # target=5: 3 проходит, 4 получает quantity_exceeded с максимумом 2
        p = make_project()
        first = ledger.try_reserve(p.pk, quantity=3)
        second = ledger.try_reserve(p.pk, quantity=4)
        self.assertTrue(first.ok)
        self.assertEqual(second.error, ledger.QUANTITY_EXCEEDED)
        self.assertEqual(second.max_allowed, 2)
        p.refresh_from_db()
        self.assertEqual(p.reserved_units, 3)

    def test_second_checkout_other_order(self):
        p = make_project()
        first = ledger.try_reserve(p.pk, quantity=4)
        second = ledger.try_reserve(p.pk, quantity=3)
        self.assertTrue(first.ok)
        self.assertEqual(second.error, ledger.QUANTITY_EXCEEDED)
        self.assertEqual(second.max_allowed, 1)

    def test_granted_never_exceeds_target(self):
        p = make_project(target_units=7)
        granted = 0
        for q in (3, 2, 4, 1, 2, 5):
            r = ledger.try_reserve(p.pk, quantity=q)
            if r.ok:
                granted += r.granted
        self.assertLessEqual(granted, 7)
        p.refresh_from_db()
        self.assertEqual(p.reserved_units, granted)

    def test_amount_project_caps_at_remaining(self):
        p = make_amount_project(current_amount=Decimal('70.00'))
        r = ledger.try_reserve(p.pk, amount=Decimal('50'))
        self.assertEqual(r.error, ledger.AMOUNT_LIMIT_EXCEEDED)
        self.assertEqual(r.max_allowed, Decimal('30.00'))
        p.refresh_from_db()
        self.assertEqual(p.reserved_amount, Decimal('0.00'))

    def test_per_order_unit_ceiling_on_long_term_project(self):
        p = make_project(is_long_term=True, target_units=None)
        r = ledger.try_reserve(p.pk, quantity=11)
        self.assertEqual(r.error, ledger.QUANTITY_EXCEEDED)
        self.assertEqual(r.max_allowed, 10)
        self.assertTrue(ledger.try_reserve(p.pk, quantity=10).ok)

    def test_per_order_amount_ceiling(self):
        p = make_amount_project(is_long_term=True, target_amount=None)
        r = ledger.try_reserve(p.pk, amount=Decimal('10000.01'))
        self.assertEqual(r.error, ledger.AMOUNT_LIMIT_EXCEEDED)
        self.assertEqual(r.max_allowed, Decimal('10000'))

    def test_order_ceiling_counts_other_lines(self):
        p = make_project(is_long_term=True, target_units=None, unit_price=Decimal('100.00'))
        r = ledger.try_reserve(p.pk, quantity=2, extra_amount=Decimal('9850'))
        self.assertEqual(r.error, ledger.AMOUNT_LIMIT_EXCEEDED)
        self.assertEqual(r.max_allowed, 1)

    def test_missing_and_inactive_projects(self):
        self.assertEqual(ledger.try_reserve(999999, quantity=1).error, ledger.PROJECT_NOT_FOUND)
        p = make_project(status=Project.Status.PAUSED)
        self.assertEqual(ledger.try_reserve(p.pk, quantity=1).error, ledger.PROJECT_NOT_ACTIVE)

    def test_amount_required_for_amount_project(self):
        p = make_amount_project()
        with self.assertRaises(ValueError):
            ledger.try_reserve(p.pk)

    def test_reserve_commit_refund_round_trip(self):
        p = make_project()
        before = ledger.remaining_capacity(p.pk)

        r = ledger.try_reserve(p.pk, quantity=3)
        ledger.commit_reservation(p.pk, r.quantity, r.amount)
        p.refresh_from_db()
        self.assertEqual((p.reserved_units, p.current_units), (0, 3))
        self.assertEqual(p.current_amount, Decimal('30.00'))

        ledger.release_committed(p.pk, r.quantity, r.amount)
        self.assertEqual(ledger.remaining_capacity(p.pk), before)

    def test_release_reservation_frees_capacity(self):
        p = make_project()
        r = ledger.try_reserve(p.pk, quantity=5)
        self.assertEqual(ledger.remaining_capacity(p.pk), 0)
        ledger.release_reservation(p.pk, r.quantity, r.amount)
        self.assertEqual(ledger.remaining_capacity(p.pk), 5)

    def test_counters_do_not_go_negative(self):
        p = make_project()
        ledger.release_committed(p.pk, 2, Decimal('20.00'))
        p.refresh_from_db()
        self.assertEqual(p.current_units, 0)
        self.assertEqual(p.current_amount, Decimal('0.00'))


@override_settings(DONATIONS_MAX_UNITS_PER_ORDER=10, DONATIONS_MAX_AMOUNT_PER_ORDER=10000)
class ConcurrentReservationTests(TransactionTestCase):
    """Резервы из параллельных запросов: каждый поток со своим соединением."""

    def reserve_concurrently(self, project, quantities):
        barrier = threading.Barrier(len(quantities))
        results, errors = [], []

        def worker(quantity):
            try:
                barrier.wait()
                results.append(ledger.try_reserve(project.pk, quantity=quantity))
            except Exception as e:
                errors.append(e)
            finally:
                connection.close()

        threads = [threading.Thread(target=worker, args=(q,)) for q in quantities]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results, errors

    def test_last_units_go_to_one_checkout(self):
        # target=5, одновременно 3 и 4: один проходит, второй получает остаток как максимум
        p = make_project(target_units=5)
        results, errors = self.reserve_concurrently(p, [3, 4])

        self.assertEqual(errors, [])
        granted = [r for r in results if r.ok]
        refused = [r for r in results if not r.ok]
        self.assertEqual(len(granted), 1)
        self.assertEqual(len(refused), 1)
        self.assertEqual(refused[0].error, ledger.QUANTITY_EXCEEDED)
        self.assertEqual(refused[0].max_allowed, 5 - granted[0].granted)

        p.refresh_from_db()
        self.assertEqual(p.reserved_units, granted[0].granted)

    def test_granted_total_never_exceeds_target(self):
        p = make_project(target_units=7)
        results, errors = self.reserve_concurrently(p, [3, 2, 4, 1, 2, 5, 3, 1])

        self.assertEqual(errors, [])
        granted = sum(r.granted for r in results if r.ok)
        self.assertLessEqual(granted, 7)
        self.assertTrue(all(r.error == ledger.QUANTITY_EXCEEDED for r in results if not r.ok))
        p.refresh_from_db()
        self.assertEqual(p.reserved_units, granted)
