import json
from decimal import Decimal
from unittest import mock

from django.contrib.admin import site
from django.contrib.auth import get_user_model
from django.core import mail
from django.db import connection
from django.forms import inlineformset_factory
from django.test import RequestFactory, TestCase, TransactionTestCase, override_settings
from django.urls import reverse

from payments.providers.base import ProviderError, RefundOutcome
from payments.services import record_transaction
from projects.models import Project
from donations import refunds, status
from donations.admin import DeliveryProofForm, DonationAdmin, StatusHistoryAdmin
from donations.exceptions import (
    BatchTransitionError, DeliveryProofRequiredError, IllegalTransitionError, TransitionNotPermittedError,
)
from donations.models import DeliveryProof, Donation, StatusHistory
from donations.proofs import ModelProofStore
from donations.services import OrderLine, create_order, lookup_donations
from donations.signals import payment_confirmed

S = Donation.Status
Actor = StatusHistory.Actor
EMAIL = 'donor@example.com'


def make_project(**kwargs):
    defaults = {
        'name': 'Аптечки',
        'unit_price': Decimal('10.00'),
        'target_units': 20,
        'status': Project.Status.ACTIVE,
    }
    defaults.update(kwargs)
    return Project.objects.create(**defaults)


def make_order(*lines, email=EMAIL, **kwargs):
    result = create_order(list(lines), donor_email=email, donor_name='Ольга', **kwargs)
    assert result.success, result.error
    return result.order


def pay(order):
    for d in order.donations:
        status.transition(d, S.PAID, Actor.SYSTEM, actor_identity='test')
    return order


def advance(donation, *targets):
    for target in targets:
        if target == S.COMPLETED:
            ModelProofStore().attach(donation, f'{donation.donation_public_id}/photo.jpg',
                                     content_type='image/jpeg')
        status.transition(donation, target, Actor.STAFF, actor_identity='staff')
    return donation


class StatusMachineTests(TestCase):
    def setUp(self):
        self.project = make_project()

    def test_full_path_is_walk_along_declared_edges(self):
        order = pay(make_order(OrderLine(self.project.pk, 2)))
        d = order.donations[0]
        advance(d, S.CONFIRMED, S.DELIVERING, S.COMPLETED)

        d.refresh_from_db()
        self.assertEqual(d.donation_status, S.COMPLETED)
        history = list(d.history.values_list('from_status', 'to_status'))
        self.assertEqual(len(history), 4)
        for source, target in history:
            self.assertTrue(status.is_allowed(source, target))

    def test_illegal_transition_has_no_side_effects(self):
        order = make_order(OrderLine(self.project.pk, 1))
        d = order.donations[0]
        with self.assertRaises(IllegalTransitionError):
            status.transition(d, S.CONFIRMED, Actor.STAFF)
        d.refresh_from_db()
        self.assertEqual(d.donation_status, S.PENDING)
        self.assertFalse(d.history.exists())

    def test_staff_cannot_mark_paid(self):
        d = make_order(OrderLine(self.project.pk, 1)).donations[0]
        with self.assertRaises(TransitionNotPermittedError):
            status.transition(d, S.PAID, Actor.STAFF)

    def test_completed_is_final(self):
        d = pay(make_order(OrderLine(self.project.pk, 1))).donations[0]
        advance(d, S.CONFIRMED, S.DELIVERING, S.COMPLETED)
        with self.assertRaises(IllegalTransitionError):
            status.transition(d, S.REFUNDING, Actor.DONOR)

    def test_completion_requires_delivery_proof(self):
        d = pay(make_order(OrderLine(self.project.pk, 1))).donations[0]
        advance(d, S.CONFIRMED, S.DELIVERING)
        with self.assertRaises(DeliveryProofRequiredError):
            status.transition(d, S.COMPLETED, Actor.STAFF)
        d.refresh_from_db()
        self.assertEqual(d.donation_status, S.DELIVERING)

    def test_proof_path_must_belong_to_donation(self):
        d = make_order(OrderLine(self.project.pk, 1)).donations[0]
        with self.assertRaises(ValueError):
            ModelProofStore().attach(d, 'other-donation/photo.jpg')

    def test_paid_moves_reservation_to_current(self):
        order = make_order(OrderLine(self.project.pk, 3))
        self.project.refresh_from_db()
        self.assertEqual((self.project.reserved_units, self.project.current_units), (3, 0))
        pay(order)
        self.project.refresh_from_db()
        self.assertEqual((self.project.reserved_units, self.project.current_units), (0, 3))
        self.assertEqual(self.project.current_amount, Decimal('30.00'))

    def test_failed_releases_reservation(self):
        d = make_order(OrderLine(self.project.pk, 3)).donations[0]
        status.transition(d, S.FAILED, Actor.SYSTEM)
        self.project.refresh_from_db()
        self.assertEqual(self.project.reserved_units, 0)
        self.assertEqual(self.project.remaining_units, 20)

    def test_next_statuses_for_staff(self):
        self.assertEqual(status.next_statuses_for(S.PAID, Actor.STAFF), [S.CONFIRMED])
        self.assertEqual(status.next_statuses_for(S.COMPLETED, Actor.STAFF), [])


class BatchTransitionTests(TestCase):
    def setUp(self):
        self.project = make_project()

    def test_batch_confirm(self):
        a = pay(make_order(OrderLine(self.project.pk, 1))).donations[0]
        b = pay(make_order(OrderLine(self.project.pk, 2))).donations[0]
        updated = status.transition_batch([a.pk, b.pk], S.CONFIRMED, Actor.STAFF, actor_identity='staff')
        self.assertEqual(len(updated), 2)
        self.assertEqual(Donation.objects.filter(donation_status=S.CONFIRMED).count(), 2)

    def test_mixed_statuses_change_nothing(self):
        a = pay(make_order(OrderLine(self.project.pk, 1))).donations[0]
        b = make_order(OrderLine(self.project.pk, 1)).donations[0]
        with self.assertRaises(BatchTransitionError):
            status.transition_batch([a.pk, b.pk], S.CONFIRMED, Actor.STAFF)
        a.refresh_from_db()
        self.assertEqual(a.donation_status, S.PAID)
        self.assertFalse(a.history.filter(to_status=S.CONFIRMED).exists())

    def test_delivering_not_batch_editable(self):
        a = advance(pay(make_order(OrderLine(self.project.pk, 1))).donations[0], S.CONFIRMED, S.DELIVERING)
        b = advance(pay(make_order(OrderLine(self.project.pk, 1))).donations[0], S.CONFIRMED, S.DELIVERING)
        with self.assertRaises(BatchTransitionError):
            status.transition_batch([a.pk, b.pk], S.COMPLETED, Actor.STAFF)
        self.assertFalse(status.can_batch_edit(S.DELIVERING))
        self.assertTrue(status.can_batch_edit(S.PAID))


class OrderAggregatorTests(TestCase):
    def setUp(self):
        self.kits = make_project(name='Наборы', target_units=5)
        self.school = make_project(name='Школа', aggregate_donations=True, unit_price=None,
                                   target_units=None, target_amount=Decimal('500.00'))
        self.tips = make_project(name='Работа фонда', aggregate_donations=True, unit_price=None,
                                 target_units=None, is_long_term=True)

    def test_lines_share_reference_in_insertion_order(self):
        with self.settings(DONATIONS_TIP_PROJECT_ID=self.tips.pk):
            order = make_order(OrderLine(self.school.pk, amount=Decimal('40')),
                               OrderLine(self.kits.pk, 2),
                               tip_amount=Decimal('5'))
        self.assertEqual([d.project_id for d in order.donations], [self.school.pk, self.kits.pk, self.tips.pk])
        self.assertEqual({d.order_reference for d in order.donations}, {order.reference})
        self.assertTrue(order.donations[-1].is_tip)
        self.assertEqual(order.total_amount, Decimal('65.00'))
        self.assertTrue(order.reference.startswith(f'DONATE-{self.school.pk}-'))
        loaded = [d.pk for d in Donation.objects.for_order(order.reference)]
        self.assertEqual(loaded, [d.pk for d in order.donations])

    def test_failed_line_rolls_back_whole_order(self):
        result = create_order([OrderLine(self.school.pk, amount=Decimal('40')), OrderLine(self.kits.pk, 6)],
                              donor_email=EMAIL)
        self.assertFalse(result.success)
        self.assertEqual(result.error, 'quantity_exceeded')
        self.assertEqual(result.project_id, self.kits.pk)
        self.assertEqual(result.max_allowed, 5)
        self.assertFalse(Donation.objects.exists())
        self.school.refresh_from_db()
        self.assertEqual(self.school.reserved_amount, Decimal('0.00'))

    def test_line_shape_must_match_project_mode(self):
        no_amount = create_order([OrderLine(self.school.pk, 1)], donor_email=EMAIL)
        self.assertEqual(no_amount.error, 'invalid_request')
        self.assertEqual(no_amount.project_id, self.school.pk)

        with_amount = create_order([OrderLine(self.kits.pk, 1, amount=Decimal('15'))], donor_email=EMAIL)
        self.assertEqual(with_amount.error, 'invalid_request')
        self.assertFalse(Donation.objects.exists())
        self.kits.refresh_from_db()
        self.assertEqual(self.kits.reserved_units, 0)

    @override_settings(DONATIONS_MAX_AMOUNT_PER_ORDER=100)
    def test_tip_counts_toward_order_ceiling(self):
        with self.settings(DONATIONS_TIP_PROJECT_ID=self.tips.pk):
            result = create_order([OrderLine(self.school.pk, amount=Decimal('90'))],
                                  donor_email=EMAIL, tip_amount=Decimal('20'))
        self.assertEqual(result.error, 'amount_limit_exceeded')
        self.assertEqual(result.max_allowed, Decimal('80'))

    @override_settings(DONATIONS_TIP_PROJECT_ID=None)
    def test_tip_without_tip_project(self):
        with self.assertRaises(ValueError):
            create_order([OrderLine(self.kits.pk, 1)], donor_email=EMAIL, tip_amount=Decimal('3'))


class LookupTests(TestCase):
    def setUp(self):
        self.order = make_order(OrderLine(make_project().pk, 1), OrderLine(make_project().pk, 2))

    def test_lookup_by_order_reference(self):
        found = lookup_donations('Donor@Example.com', self.order.reference)
        self.assertEqual(len(found), 2)

    def test_lookup_by_public_id(self):
        public_id = self.order.donations[1].donation_public_id
        found = lookup_donations(EMAIL, public_id)
        self.assertEqual([d.donation_public_id for d in found], [public_id])

    def test_lookup_requires_matching_email(self):
        self.assertEqual(lookup_donations('other@example.com', self.order.reference), [])
        self.assertEqual(lookup_donations('not-an-email', self.order.reference), [])
        self.assertEqual(lookup_donations(EMAIL, 'DONATE-0-0-XXXXXX'), [])


class RefundTests(TestCase):
    def setUp(self):
        self.project = make_project()
        self.provider = mock.Mock()
        self.provider.name = 'yookassa'
        self.provider.refund.return_value = RefundOutcome('rf-1', 'succeeded', target_status=S.REFUNDED)
        patcher = mock.patch('donations.refunds.get_provider', return_value=self.provider)
        patcher.start()
        self.addCleanup(patcher.stop)

    def paid_order(self, *quantities):
        order = pay(make_order(*[OrderLine(self.project.pk, q) for q in quantities]))
        record_transaction('yookassa', 'payment', order_reference=order.reference, payment_id='pay-1',
                           status='succeeded', amount=order.total_amount, currency='USD')
        return order

    def test_refund_amount_excludes_completed_line(self):
        order = self.paid_order(1, 2, 3)
        done = order.donations[0]
        advance(done, S.CONFIRMED, S.DELIVERING, S.COMPLETED)
        advance(order.donations[1], S.CONFIRMED)

        eligible = refunds.eligible_for_refund(order.reference)
        self.assertEqual([d.pk for d in eligible], [d.pk for d in order.donations[1:]])
        self.assertEqual(refunds.refund_amount(Donation.objects.for_order(order.reference)), Decimal('50.00'))

        result = refunds.initiate_refund(order.reference, EMAIL)
        self.assertTrue(result.success)
        self.assertEqual(result.amount, Decimal('50.00'))
        self.provider.refund.assert_called_once_with(order.reference, 'pay-1', Decimal('50.00'), 'USD')

        done.refresh_from_db()
        self.assertEqual(done.donation_status, S.COMPLETED)
        statuses = list(Donation.objects.for_order(order.reference).values_list('donation_status', flat=True))
        self.assertEqual(statuses, [S.COMPLETED, S.REFUNDED, S.REFUNDED])

        self.project.refresh_from_db()
        self.assertEqual(self.project.current_units, 1)

    def test_round_trip_restores_capacity(self):
        before = Project.objects.get(pk=self.project.pk).remaining_units
        order = self.paid_order(4)
        refunds.initiate_refund(order.donations[0].donation_public_id, EMAIL)
        after = Project.objects.get(pk=self.project.pk).remaining_units
        self.assertEqual(before, after)

    def test_provider_failure_restores_previous_status(self):
        self.provider.refund.side_effect = ProviderError("API error 400")
        order = self.paid_order(1, 2)
        advance(order.donations[1], S.CONFIRMED)

        result = refunds.initiate_refund(order.reference, EMAIL)
        self.assertFalse(result.success)
        self.assertEqual(result.error, 'api_error')
        self.assertEqual([d.donation_status for d in result.donations], [S.PAID, S.CONFIRMED])
        self.assertFalse(StatusHistory.objects.filter(to_status=S.REFUNDING).exists())


    def test_lines_marked_refunding_before_provider_call(self):
        order = self.paid_order(1, 2)
        seen = {}

        def refund(*args):
            seen['statuses'] = list(Donation.objects.for_order(order.reference)
                                    .values_list('donation_status', flat=True))
            # повторный запрос, пока провайдер отвечает, второй возврат не создаёт
            seen['second'] = refunds.initiate_refund(order.reference, EMAIL).error
            return RefundOutcome('rf-1', 'pending', target_status=S.REFUND_PROCESSING)

        self.provider.refund.side_effect = refund
        result = refunds.initiate_refund(order.reference, EMAIL)

        self.assertEqual(seen['statuses'], [S.REFUNDING, S.REFUNDING])
        self.assertEqual(seen['second'], 'refund_in_progress')
        self.assertEqual(result.status, S.REFUND_PROCESSING)
        self.assertEqual(self.provider.refund.call_count, 1)

    def test_provider_failure_keeps_status_set_by_callback(self):
        order = self.paid_order(1)
        d = order.donations[0]

        def refund(*args):
            # уведомление о возврате пришло раньше ответа на запрос
            status.transition(d, S.REFUNDED, Actor.SYSTEM, actor_identity='yookassa')
            raise ProviderError("timeout")

        self.provider.refund.side_effect = refund
        result = refunds.initiate_refund(order.reference, EMAIL)
        self.assertEqual(result.error, 'api_error')
        d.refresh_from_db()
        self.assertEqual(d.donation_status, S.REFUNDED)
    def test_completed_order_cannot_be_refunded(self):
        order = self.paid_order(1)
        advance(order.donations[0], S.CONFIRMED, S.DELIVERING, S.COMPLETED)
        result = refunds.initiate_refund(order.reference, EMAIL)
        self.assertEqual(result.error, 'cannot_refund_completed')
        self.provider.refund.assert_not_called()

    def test_second_request_reports_refund_in_progress(self):
        self.provider.refund.return_value = RefundOutcome('rf-1', 'pending', target_status=S.REFUND_PROCESSING)
        order = self.paid_order(1)
        self.assertTrue(refunds.initiate_refund(order.reference, EMAIL).success)
        result = refunds.initiate_refund(order.reference, EMAIL)
        self.assertEqual(result.error, 'refund_in_progress')
        self.assertEqual(self.provider.refund.call_count, 1)

    def test_unpaid_order_not_refundable(self):
        order = make_order(OrderLine(self.project.pk, 1))
        result = refunds.initiate_refund(order.reference, EMAIL)
        self.assertEqual(result.error, 'not_refundable')

    def test_wrong_email_is_not_found(self):
        order = self.paid_order(1)
        result = refunds.initiate_refund(order.reference, 'someone@example.com')
        self.assertEqual(result.error, 'donation_not_found')

    def test_manual_refund_completed_by_staff(self):
        # криптовозврат: провайдер не двигает статус, сотрудник завершает вручную
        self.provider.refund.return_value = RefundOutcome('pay-1', 'manual')
        order = self.paid_order(2)
        result = refunds.initiate_refund(order.reference, EMAIL)
        self.assertEqual(result.status, S.REFUNDING)
        self.project.refresh_from_db()
        self.assertEqual(self.project.current_units, 2)

        status.transition(order.donations[0], S.REFUNDED, Actor.STAFF, actor_identity='staff')
        self.project.refresh_from_db()
        self.assertEqual(self.project.current_units, 0)


class NotificationTests(TestCase):
    def setUp(self):
        self.project = make_project()

    def test_payment_confirmed_mail_sent_after_commit(self):
        order = make_order(OrderLine(self.project.pk, 1))
        with self.captureOnCommitCallbacks(execute=True):
            pay(order)
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, [EMAIL])
        self.assertIn(order.reference, mail.outbox[0].subject)

    def test_batch_sends_one_event_per_order(self):
        order = make_order(OrderLine(self.project.pk, 1), OrderLine(self.project.pk, 2))
        with self.captureOnCommitCallbacks(execute=True):
            status.transition_batch([d.pk for d in order.donations], S.PAID, Actor.SYSTEM)
        self.assertEqual(len(mail.outbox), 1)
        self.assertIn('Аптечки', mail.outbox[0].body)

    def test_failing_receiver_does_not_roll_back_status(self):
        def broken(sender, **kwargs):
            raise RuntimeError("smtp down")

        payment_confirmed.connect(broken, dispatch_uid='test_broken_receiver')
        self.addCleanup(payment_confirmed.disconnect, dispatch_uid='test_broken_receiver')

        d = make_order(OrderLine(self.project.pk, 1)).donations[0]
        with self.assertLogs('mail', level='ERROR'):
            with self.captureOnCommitCallbacks(execute=True):
                status.transition(d, S.PAID, Actor.SYSTEM)
        d.refresh_from_db()
        self.assertEqual(d.donation_status, S.PAID)
        self.assertEqual(len(mail.outbox), 1)


class DonorViewTests(TestCase):
    def setUp(self):
        self.project = make_project()
        self.order = pay(make_order(OrderLine(self.project.pk, 1)))

    def post_json(self, url, data):
        return self.client.post(url, data=json.dumps(data), content_type='application/json')

    def test_track_returns_donations_with_history(self):
        resp = self.post_json(reverse('donations:track'), {'email': EMAIL, 'donation_id': self.order.reference})
        self.assertEqual(resp.status_code, 200)
        data = resp.json()['donations']
        self.assertEqual(data[0]['status'], S.PAID)
        self.assertEqual(data[0]['history'][0]['to'], S.PAID)

    def test_track_same_answer_for_wrong_email_and_unknown_id(self):
        wrong_email = self.post_json(reverse('donations:track'),
                                     {'email': 'x@example.com', 'donation_id': self.order.reference})
        unknown = self.post_json(reverse('donations:track'), {'email': EMAIL, 'donation_id': 'nope'})
        self.assertEqual(wrong_email.status_code, 404)
        self.assertEqual(wrong_email.json(), unknown.json())

    def test_track_validates_input(self):
        resp = self.post_json(reverse('donations:track'), {'email': 'bad'})
        self.assertEqual(resp.status_code, 400)

    def test_refund_endpoint_reports_business_error(self):
        d = self.order.donations[0]
        advance(d, S.CONFIRMED, S.DELIVERING, S.COMPLETED)
        resp = self.post_json(reverse('donations:refund'), {'email': EMAIL, 'reference': d.donation_public_id})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['error'], 'cannot_refund_completed')

    def test_order_summary_hides_donor(self):
        resp = self.client.get(reverse('donations:order_summary', args=[self.order.reference]))
        self.assertEqual(resp.status_code, 200)
        self.assertNotIn(EMAIL, resp.content.decode())


class StaffViewTests(TestCase):
    def setUp(self):
        User = get_user_model()
        self.staff = User.objects.create_user('manager', 'manager@example.com', 'pass', is_staff=True)
        self.project = make_project()
        self.donation = pay(make_order(OrderLine(self.project.pk, 1))).donations[0]

    def post_json(self, url, data):
        return self.client.post(url, data=json.dumps(data), content_type='application/json')

    def test_non_staff_forbidden(self):
        get_user_model().objects.create_user('donor', EMAIL, 'pass')
        self.client.login(username='donor', password='pass')
        resp = self.post_json(reverse('donations:update_status', args=[self.donation.donation_public_id]),
                              {'status': S.CONFIRMED})
        self.assertEqual(resp.status_code, 403)

    def test_update_status_and_illegal_transition(self):
        self.client.login(username='manager', password='pass')
        url = reverse('donations:update_status', args=[self.donation.donation_public_id])
        ok = self.post_json(url, {'status': S.CONFIRMED})
        self.assertEqual(ok.status_code, 200)
        self.assertEqual(ok.json()['status'], S.CONFIRMED)

        illegal = self.post_json(url, {'status': S.COMPLETED})
        self.assertEqual(illegal.status_code, 409)
        self.assertEqual(illegal.json()['error'], 'illegal_transition')

        history = StatusHistory.objects.filter(donation=self.donation, actor=Actor.STAFF)
        self.assertEqual(history.get().actor_identity, 'manager')

    def test_complete_requires_proof_then_succeeds(self):
        self.client.login(username='manager', password='pass')
        advance(self.donation, S.CONFIRMED, S.DELIVERING)
        public_id = self.donation.donation_public_id
        url = reverse('donations:update_status', args=[public_id])

        resp = self.post_json(url, {'status': S.COMPLETED})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['error'], 'proof_required')

        resp = self.post_json(reverse('donations:attach_proof', args=[public_id]),
                              {'file_path': f'{public_id}/video.mp4', 'content_type': 'video/mp4'})
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(self.post_json(url, {'status': S.COMPLETED}).status_code, 200)

    def test_batch_endpoint(self):
        other = pay(make_order(OrderLine(self.project.pk, 2))).donations[0]
        self.client.login(username='manager', password='pass')
        resp = self.post_json(reverse('donations:batch_status'), {
            'donation_ids': [self.donation.donation_public_id, other.donation_public_id],
            'status': S.CONFIRMED,
        })
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(resp.json()['updated']), 2)

    def test_staff_donation_lists_next_statuses(self):
        self.client.login(username='manager', password='pass')
        resp = self.client.get(reverse('donations:staff_donation', args=[self.donation.donation_public_id]))
        self.assertEqual(resp.json()['next_statuses'], [S.CONFIRMED])


class AdminTests(TestCase):
    def setUp(self):
        self.staff = get_user_model().objects.create_superuser('admin', 'admin@example.com', 'pass')
        self.request = RequestFactory().post('/admin/')
        self.request.user = self.staff
        self.donation = pay(make_order(OrderLine(make_project().pk, 1))).donations[0]

    def proof_formset(self, file_path):
        FormSet = inlineformset_factory(Donation, DeliveryProof, form=DeliveryProofForm,
                                        fields=('file_path', 'content_type'), extra=1, can_delete=False)
        return FormSet({
            'proofs-TOTAL_FORMS': '1',
            'proofs-INITIAL_FORMS': '0',
            'proofs-0-file_path': file_path,
            'proofs-0-content_type': 'image/jpeg',
        }, instance=self.donation, prefix='proofs')

    def test_history_admin_is_read_only(self):
        history_admin = StatusHistoryAdmin(StatusHistory, site)
        entry = self.donation.history.latest('id')
        self.assertFalse(history_admin.has_add_permission(self.request))
        self.assertFalse(history_admin.has_change_permission(self.request, entry))
        self.assertFalse(history_admin.has_delete_permission(self.request, entry))

    def test_proof_from_other_donation_rejected(self):
        formset = self.proof_formset('other-donation/photo.jpg')
        self.assertFalse(formset.is_valid())
        self.assertIn('file_path', formset.forms[0].errors)

    def test_proof_saved_through_store(self):
        formset = self.proof_formset(f'{self.donation.donation_public_id}/photo.jpg')
        self.assertTrue(formset.is_valid(), formset.errors)

        with mock.patch('donations.admin.get_proof_store', return_value=ModelProofStore()) as store:
            DonationAdmin(Donation, site).save_formset(self.request, mock.Mock(instance=self.donation),
                                                       formset, change=True)

        store.assert_called_once_with()
        proof = DeliveryProof.objects.get(donation=self.donation)
        self.assertEqual(proof.file_path, f'{self.donation.donation_public_id}/photo.jpg')
        self.assertEqual(proof.uploaded_by, 'admin')


class RefundLockingTests(TransactionTestCase):
    """Без обёртки TestCase: видно, идёт ли вызов провайдера внутри транзакции."""

    def setUp(self):
        self.project = make_project()
        order = pay(make_order(OrderLine(self.project.pk, 2)))
        record_transaction('yookassa', 'payment', order_reference=order.reference, payment_id='pay-1',
                           status='succeeded', amount=order.total_amount, currency='USD')
        self.order = order

    def test_provider_called_outside_transaction(self):
        provider = mock.Mock()
        provider.name = 'yookassa'
        seen = {}

        def refund(*args):
            seen['in_transaction'] = connection.in_atomic_block
            return RefundOutcome('rf-1', 'succeeded', target_status=S.REFUNDED)

        provider.refund.side_effect = refund
        with mock.patch('donations.refunds.get_provider', return_value=provider):
            result = refunds.initiate_refund(self.order.reference, EMAIL)

        self.assertTrue(result.success)
        self.assertIs(seen['in_transaction'], False)
        self.project.refresh_from_db()
        self.assertEqual(self.project.current_units, 0)

    def test_failure_after_commit_restores_status(self):
        provider = mock.Mock()
        provider.name = 'yookassa'
        provider.refund.side_effect = ProviderError("API error 500")
        with mock.patch('donations.refunds.get_provider', return_value=provider):
            result = refunds.initiate_refund(self.order.reference, EMAIL)

        self.assertEqual(result.error, 'api_error')
        self.assertEqual([d.donation_status for d in result.donations], [S.PAID])
        self.assertFalse(StatusHistory.objects.filter(to_status=S.REFUNDING).exists())
