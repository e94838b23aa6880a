import base64
import hashlib
import hmac
import json
from decimal import Decimal
from unittest import mock

import requests
from django.test import TestCase, override_settings
from django.urls import reverse
from yookassa import Configuration
from yookassa.domain.exceptions.bad_request_error import BadRequestError
from yookassa.domain.exceptions.too_many_request_error import TooManyRequestsError

from donations import status
from donations.models import Donation, StatusHistory
from donations.refunds import confirm_refund
from donations.services import OrderLine, create_order
from payments.models import PaymentTransaction, ProcessedCallback
from payments.providers.base import (
    CallbackNotReadyError, InvalidCallbackError, PaymentIntent, ProviderError, TransientProviderError,
)
from payments.providers.nowpayments import NowPaymentsProvider
from payments.providers.yookassa import YooKassaProvider
from payments.services import AMOUNT_BELOW_MINIMUM, reconcile_callback, start_checkout
from projects.models import Project

S = Donation.Status
EMAIL = 'donor@example.com'
IPN_SECRET = 'ipn-secret'

PROVIDER_SETTINGS = dict(
    PAYMENT_PROVIDER_RETRIES=3,
    PAYMENT_PROVIDER_RETRY_WAIT=0,
    YOO_KASSA_SHOP_ID='shop',
    YOO_KASSA_SECRET_KEY='secret',
    YOO_KASSA_SKIP_WEBHOOK_AUTH=False,
    NOWPAYMENTS_API_KEY='np-key',
    NOWPAYMENTS_IPN_SECRET=IPN_SECRET,
    NOWPAYMENTS_API_BASE='https://np.test/v1',
)


def make_project(**kwargs):
    defaults = {
        'name': 'Генераторы',
        'unit_price': Decimal('10.00'),
        'target_units': 10,
        'status': Project.Status.ACTIVE,
    }
    defaults.update(kwargs)
    return Project.objects.create(**defaults)


def fake_response(status_code=200, data=None):
    resp = mock.Mock(status_code=status_code)
    resp.json.return_value = data if data is not None else {}
    resp.text = json.dumps(data)
    return resp


class SdkObject(dict):
    """Ответ SDK ЮKassa: поля доступны как атрибуты, dict(obj) даёт словарь."""

    def __getattr__(self, name):
        try:
            return self[name]
        except KeyError:
            raise AttributeError(name)


def sdk_object(**fields):
    return SdkObject({k: SdkObject(v) if isinstance(v, dict) else v for k, v in fields.items()})


def signed_ipn(payload, secret=IPN_SECRET):
    message = json.dumps(payload, sort_keys=True, separators=(',', ':'))
    sig = hmac.new(secret.encode(), message.encode(), hashlib.sha512).hexdigest()
    return json.dumps(payload).encode(), {'x-nowpayments-sig': sig}


def yk_auth_header():
    return 'Basic ' + base64.b64encode(b'shop:secret').decode()


@override_settings(**PROVIDER_SETTINGS)
class YooKassaProviderTests(TestCase):
    def setUp(self):
        self.provider = YooKassaProvider()
        self.project = make_project()
        self.order = create_order([OrderLine(self.project.pk, 3)], donor_email=EMAIL).order
        for name in ('Payment', 'Refund'):
            patcher = mock.patch(f'payments.providers.yookassa.{name}')
            setattr(self, name.lower(), patcher.start())
            self.addCleanup(patcher.stop)

    def test_create_intent_uses_order_reference_as_idempotence_key(self):
        self.payment.create.return_value = sdk_object(
            id='yk-1', status='pending',
            confirmation={'type': 'redirect', 'confirmation_url': 'https://yk.test/pay/yk-1'},
        )
        intent = self.provider.create_intent(self.order)

        self.assertEqual(intent.external_reference, 'yk-1')
        self.assertEqual(intent.redirect_url, 'https://yk.test/pay/yk-1')
        params, key = self.payment.create.call_args.args
        self.assertEqual(key, self.order.reference)
        self.assertEqual(params['amount'], {'value': '30.00', 'currency': 'USD'})
        self.assertEqual(params['metadata'], {'order_reference': self.order.reference})
        self.assertTrue(params['capture'])

    def test_sdk_configured_from_settings(self):
        self.payment.create.return_value = sdk_object(id='yk-1', status='pending')
        self.provider.create_intent(self.order)
        self.assertEqual((Configuration.account_id, Configuration.secret_key), ('shop', 'secret'))

    def test_transient_errors_are_retried(self):
        self.payment.create.side_effect = [
            requests.ConnectionError('reset'),
            TooManyRequestsError({'type': 'error', 'code': 'too_many_requests'}),
            sdk_object(id='yk-1', status='pending'),
        ]
        intent = self.provider.create_intent(self.order)
        self.assertEqual(intent.external_reference, 'yk-1')
        self.assertEqual(self.payment.create.call_count, 3)

    def test_retries_are_bounded(self):
        self.payment.create.side_effect = requests.Timeout('slow')
        with self.assertRaises(TransientProviderError):
            self.provider.create_intent(self.order)
        self.assertEqual(self.payment.create.call_count, 3)

    def test_client_error_is_not_retried(self):
        self.payment.create.side_effect = BadRequestError({'type': 'error', 'code': 'invalid_request'})
        with self.assertRaises(ProviderError) as ctx:
            self.provider.create_intent(self.order)
        self.assertNotIsInstance(ctx.exception, TransientProviderError)
        self.assertEqual(self.payment.create.call_count, 1)

    def test_reconcile_rejects_bad_basic_auth(self):
        body = json.dumps({'event': 'payment.succeeded', 'object': {'id': 'yk-1'}}).encode()
        with self.assertRaises(InvalidCallbackError):
            self.provider.reconcile(body, {'Authorization': 'Basic nope'})
        self.payment.find_one.assert_not_called()

    def test_reconcile_trusts_api_not_body(self):
        # тело говорит succeeded, но ЮKassa отвечает pending: ничего не меняем
        self.payment.find_one.return_value = sdk_object(
            id='yk-1', status='pending',
            amount={'value': '30.00', 'currency': 'USD'},
            metadata={'order_reference': self.order.reference},
        )
        body = json.dumps({'event': 'payment.succeeded', 'object': {'id': 'yk-1', 'status': 'succeeded'}}).encode()
        outcome = self.provider.reconcile(body, {'Authorization': yk_auth_header()})
        self.payment.find_one.assert_called_once_with('yk-1')
        self.assertIsNone(outcome.target_status)
        self.assertEqual(outcome.order_reference, self.order.reference)
        self.assertEqual(outcome.amount, Decimal('30.00'))

    def test_reconcile_refund_event(self):
        self.refund.find_one.return_value = sdk_object(
            id='rf-1', status='succeeded', payment_id='yk-1',
            amount={'value': '30.00', 'currency': 'USD'},
        )
        self.payment.find_one.return_value = sdk_object(
            id='yk-1', status='succeeded', metadata={'order_reference': self.order.reference},
        )
        body = json.dumps({'event': 'refund.succeeded', 'object': {'id': 'rf-1'}}).encode()
        outcome = self.provider.reconcile(body, {'Authorization': yk_auth_header()})
        self.payment.find_one.assert_called_once_with('yk-1')
        self.assertEqual(outcome.kind, 'refund')
        self.assertEqual(outcome.target_status, S.REFUNDED)
        self.assertEqual(outcome.idempotency_key, 'refund:rf-1:succeeded')
        self.assertEqual(outcome.payload['payment_id'], 'yk-1')

    def test_refund_created_with_idempotence_key(self):
        self.refund.create.return_value = sdk_object(id='rf-1', status='pending')
        outcome = self.provider.refund(self.order.reference, 'yk-1', Decimal('30'), 'USD')
        params, key = self.refund.create.call_args.args
        self.assertEqual(params['payment_id'], 'yk-1')
        self.assertEqual(params['amount'], {'value': '30.00', 'currency': 'USD'})
        self.assertEqual(key, f'refund-{self.order.reference}-30.00')
        self.assertEqual(outcome.target_status, S.REFUND_PROCESSING)

    def test_canceled_refund_raises(self):
        self.refund.create.return_value = sdk_object(
            id='rf-1', status='canceled', cancellation_details={'reason': 'insufficient_funds'},
        )
        with self.assertRaises(ProviderError):
            self.provider.refund(self.order.reference, 'yk-1', Decimal('30.00'), 'USD')


@override_settings(**PROVIDER_SETTINGS)
class NowPaymentsProviderTests(TestCase):
    def setUp(self):
        self.provider = NowPaymentsProvider()

    def test_valid_signature(self):
        body, headers = signed_ipn({'payment_id': 42, 'payment_status': 'finished', 'order_id': 'DONATE-1-1-AAAAAA',
                                    'price_amount': 30, 'price_currency': 'usd'})
        outcome = self.provider.reconcile(body, headers)
        self.assertEqual(outcome.target_status, S.PAID)
        self.assertEqual(outcome.idempotency_key, '42:finished')
        self.assertEqual(outcome.amount, Decimal('30'))

    def test_tampered_payload_rejected(self):
        body, headers = signed_ipn({'payment_id': 42, 'payment_status': 'waiting', 'order_id': 'DONATE-1-1-AAAAAA'})
        tampered = body.replace(b'waiting', b'finished')
        with self.assertRaises(InvalidCallbackError):
            self.provider.reconcile(tampered, headers)
        with self.assertRaises(InvalidCallbackError):
            self.provider.reconcile(body, {})

    def test_status_vocabulary(self):
        for provider_status, expected in [('partially_paid', S.PAID), ('expired', S.FAILED),
                                          ('wrong_asset_confirmed', S.FAILED), ('confirming', None),
                                          ('refunded', S.REFUNDED)]:
            body, headers = signed_ipn({'payment_id': 1, 'payment_status': provider_status, 'order_id': 'X'})
            self.assertEqual(self.provider.reconcile(body, headers).target_status, expected)

    @mock.patch('payments.providers.base.requests.request')
    def test_minimum_amount_with_buffer(self, request):
        request.side_effect = [
            fake_response(200, {'currency_from': 'trx', 'currency_to': 'usdttrc20', 'min_amount': 12.5}),
            fake_response(200, {'estimated_amount': '2.01'}),
        ]
        # 2.01 * 1.1 = 2.211 -> вверх до центов
        self.assertEqual(self.provider.minimum_amount('USD', 'TRX'), Decimal('2.22'))
        self.assertEqual(request.call_args_list[0].kwargs['params']['currency_from'], 'trx')

    @mock.patch('payments.providers.base.requests.request')
    def test_minimum_amount_fallback(self, request):
        request.side_effect = [
            fake_response(200, {'status': False}),
            fake_response(200, {'min_amount': 5}),
        ]
        self.assertEqual(self.provider.minimum_amount('USD', 'btc'), Decimal('5.00'))
        self.assertEqual(request.call_args_list[1].kwargs['params'], {'currency_from': 'usd', 'currency_to': 'btc'})

    def test_refund_is_manual(self):
        outcome = self.provider.refund('DONATE-1-1-AAAAAA', '42', Decimal('30.00'), 'USD')
        self.assertIsNone(outcome.target_status)


@override_settings(**PROVIDER_SETTINGS)
class ReconcileTests(TestCase):
    def setUp(self):
        self.project = make_project()
        self.order = create_order([OrderLine(self.project.pk, 3)], donor_email=EMAIL,
                                  payment_method=Donation.PaymentMethod.CRYPTO).order
        self.donation = self.order.donations[0]

    def ipn(self, payment_status, **extra):
        payload = {'payment_id': 77, 'payment_status': payment_status, 'order_id': self.order.reference,
                   'price_amount': 30, 'price_currency': 'usd'}
        payload.update(extra)
        return signed_ipn(payload)

    def test_redelivered_payment_is_noop(self):
        body, headers = self.ipn('finished')
        first = reconcile_callback('crypto', body, headers)
        second = reconcile_callback('crypto', body, headers)

        self.assertEqual(first.applied_count, 1)
        self.assertTrue(second.replayed)
        self.assertEqual(second.statuses, [S.PAID])
        self.project.refresh_from_db()
        self.assertEqual((self.project.current_units, self.project.reserved_units), (3, 0))
        self.assertEqual(self.donation.history.count(), 1)
        self.assertEqual(ProcessedCallback.objects.count(), 1)
        self.assertEqual(PaymentTransaction.objects.get().status, 'finished')

    def test_different_paid_statuses_do_not_double_count(self):
        reconcile_callback('crypto', *self.ipn('partially_paid'))
        result = reconcile_callback('crypto', *self.ipn('finished'))
        self.assertEqual(result.applied_count, 0)
        self.project.refresh_from_db()
        self.assertEqual(self.project.current_units, 3)

    def test_out_of_order_failure_after_paid_is_skipped(self):
        reconcile_callback('crypto', *self.ipn('finished'))
        reconcile_callback('crypto', *self.ipn('expired'))
        self.donation.refresh_from_db()
        self.assertEqual(self.donation.donation_status, S.PAID)

    def test_progress_status_changes_nothing(self):
        result = reconcile_callback('crypto', *self.ipn('confirming'))
        self.assertEqual(result.applied_count, 0)
        self.donation.refresh_from_db()
        self.assertEqual(self.donation.donation_status, S.PENDING)

    def test_failed_payment_releases_reservation(self):
        reconcile_callback('crypto', *self.ipn('failed'))
        self.project.refresh_from_db()
        self.assertEqual(self.project.reserved_units, 0)
        self.assertEqual(self.project.remaining_units, 10)

    def test_unknown_order_signals_retry(self):
        body, headers = signed_ipn({'payment_id': 5, 'payment_status': 'finished', 'order_id': 'DONATE-9-9-ZZZZZZ'})
        with self.assertRaises(CallbackNotReadyError):
            reconcile_callback('crypto', body, headers)
        self.assertFalse(ProcessedCallback.objects.exists())

    def test_amount_mismatch_is_logged(self):
        with self.assertLogs('payments', level='WARNING') as logs:
            reconcile_callback('crypto', *self.ipn('finished', price_amount=25))
        self.assertTrue(any('mismatch' in line for line in logs.output))
        self.donation.refresh_from_db()
        self.assertEqual(self.donation.donation_status, S.PAID)

    def test_refund_confirmation_applied_once(self):
        reconcile_callback('crypto', *self.ipn('finished'))
        status.transition(self.donation, S.REFUNDING, StatusHistory.Actor.DONOR, actor_identity=EMAIL)

        body, headers = self.ipn('refunded')
        confirm_refund('crypto', body, headers)
        confirm_refund('crypto', body, headers)

        self.donation.refresh_from_db()
        self.assertEqual(self.donation.donation_status, S.REFUNDED)
        self.project.refresh_from_db()
        self.assertEqual(self.project.current_units, 0)
        self.assertEqual(self.project.remaining_units, 10)

    def test_refund_notice_for_paid_lines_is_skipped(self):
        reconcile_callback('crypto', *self.ipn('finished'))
        result = reconcile_callback('crypto', *self.ipn('refunded'))
        self.assertEqual(result.applied_count, 0)
        self.donation.refresh_from_db()
        self.assertEqual(self.donation.donation_status, S.PAID)

    def test_confirm_refund_rejects_payment_notice(self):
        with self.assertRaises(InvalidCallbackError):
            confirm_refund('crypto', *self.ipn('finished'))
        self.donation.refresh_from_db()
        self.assertEqual(self.donation.donation_status, S.PENDING)


class CheckoutTests(TestCase):
    def setUp(self):
        self.project = make_project()
        self.provider = mock.Mock()
        self.provider.name = 'yookassa'
        self.provider.method = Donation.PaymentMethod.CARD
        self.provider.minimum_amount.return_value = Decimal('0.00')
        self.provider.create_intent.return_value = PaymentIntent(
            'yk-1', Decimal('30.00'), 'USD', status='pending', redirect_url='https://yk.test/pay/yk-1',
        )
        patcher = mock.patch('payments.services.get_provider', return_value=self.provider)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_checkout_creates_pending_order_and_payment(self):
        result = start_checkout([OrderLine(self.project.pk, 3)], donor_email=EMAIL)
        self.assertTrue(result.success)
        self.assertEqual(result.payment['redirect_url'], 'https://yk.test/pay/yk-1')
        d = Donation.objects.get()
        self.assertEqual(d.donation_status, S.PENDING)
        self.assertEqual(d.order_reference, result.order.reference)
        pt = PaymentTransaction.objects.get()
        self.assertEqual((pt.payment_id, pt.order_reference), ('yk-1', result.order.reference))

    def test_intent_failure_fails_lines_and_releases_capacity(self):
        self.provider.create_intent.side_effect = TransientProviderError('timeout')
        result = start_checkout([OrderLine(self.project.pk, 3)], donor_email=EMAIL)
        self.assertFalse(result.success)
        self.assertEqual(result.error, 'api_error')
        self.assertEqual(Donation.objects.get().donation_status, S.FAILED)
        self.project.refresh_from_db()
        self.assertEqual(self.project.reserved_units, 0)

    def test_below_minimum_rejected_before_reservation(self):
        self.provider.method = Donation.PaymentMethod.CRYPTO
        self.provider.minimum_amount.return_value = Decimal('35.00')
        result = start_checkout([OrderLine(self.project.pk, 3)], donor_email=EMAIL,
                                payment_method='crypto', pay_currency='btc')
        self.assertEqual(result.error, AMOUNT_BELOW_MINIMUM)
        self.assertEqual(result.minimum, Decimal('35.00'))
        self.assertFalse(Donation.objects.exists())
        self.project.refresh_from_db()
        self.assertEqual(self.project.reserved_units, 0)
        self.provider.create_intent.assert_not_called()

    def test_minimum_lookup_failure_is_api_error(self):
        self.provider.minimum_amount.side_effect = ProviderError('down')
        result = start_checkout([OrderLine(self.project.pk, 1)], donor_email=EMAIL,
                                payment_method='crypto', pay_currency='btc')
        self.assertEqual(result.error, 'api_error')
        self.assertFalse(Donation.objects.exists())

    def test_capacity_error_is_returned(self):
        result = start_checkout([OrderLine(self.project.pk, 11)], donor_email=EMAIL)
        self.assertEqual(result.error, 'quantity_exceeded')
        self.assertEqual(result.max_allowed, 10)
        self.provider.create_intent.assert_not_called()

    def test_checkout_view(self):
        url = reverse('payments:checkout')
        resp = self.client.post(url, data=json.dumps({
            'lines': [{'project_id': self.project.pk, 'quantity': 3}],
            'donor_email': EMAIL,
            'payment_method': 'card',
        }), content_type='application/json')
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()['amount'], '30.00')

        bad = self.client.post(url, data=json.dumps({
            'lines': [{'project_id': self.project.pk}],
            'donor_email': EMAIL,
            'payment_method': 'crypto',
        }), content_type='application/json')
        self.assertEqual(bad.status_code, 400)
        self.assertIn('pay_currency', bad.json()['fields'])

    def test_checkout_view_rejects_line_for_wrong_project_mode(self):
        school = make_project(name='Школа', aggregate_donations=True, unit_price=None,
                              target_units=None, target_amount=Decimal('500.00'))
        url = reverse('payments:checkout')
        for line in ({'project_id': school.pk, 'quantity': 1},
                     {'project_id': self.project.pk, 'amount': '15.00'}):
            resp = self.client.post(url, data=json.dumps({
                'lines': [line], 'donor_email': EMAIL, 'payment_method': 'card',
            }), content_type='application/json')
            self.assertEqual(resp.status_code, 400)
            self.assertEqual(resp.json()['error'], 'invalid_request')
        self.assertFalse(Donation.objects.exists())
        self.provider.create_intent.assert_not_called()


@override_settings(**PROVIDER_SETTINGS)
class WebhookViewTests(TestCase):
    def setUp(self):
        self.project = make_project()
        self.order = create_order([OrderLine(self.project.pk, 2)], donor_email=EMAIL,
                                  payment_method=Donation.PaymentMethod.CRYPTO).order
        self.url = reverse('payments:webhook', args=['crypto'])

    def post_ipn(self, payload):
        body, headers = signed_ipn(payload)
        return self.client.post(self.url, data=body, content_type='application/json',
                                HTTP_X_NOWPAYMENTS_SIG=headers['x-nowpayments-sig'])

    def test_paid_and_redelivered(self):
        payload = {'payment_id': 9, 'payment_status': 'finished', 'order_id': self.order.reference}
        first = self.post_ipn(payload)
        second = self.post_ipn(payload)
        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.json(), {'status': 'ok'})
        self.project.refresh_from_db()
        self.assertEqual(self.project.current_units, 2)

    def test_invalid_signature(self):
        resp = self.client.post(self.url, data=b'{"payment_status": "finished"}', content_type='application/json',
                                HTTP_X_NOWPAYMENTS_SIG='0' * 128)
        self.assertEqual(resp.status_code, 400)

    def test_order_not_visible_yet(self):
        resp = self.post_ipn({'payment_id': 9, 'payment_status': 'finished', 'order_id': 'DONATE-0-0-NOTYET'})
        self.assertEqual(resp.status_code, 503)

    def test_unknown_provider_and_method(self):
        self.assertEqual(self.client.post(reverse('payments:webhook', args=['paypal'])).status_code, 404)
        self.assertEqual(self.client.get(self.url).status_code, 400)
