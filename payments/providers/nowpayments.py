# payments/providers/nowpayments.py
import hashlib
import hmac
import json
import logging
from decimal import Decimal, InvalidOperation, ROUND_CEILING

from django.conf import settings

from donations.models import Donation
from .base import (
    KIND_PAYMENT, KIND_REFUND, CallbackOutcome, InvalidCallbackError, PaymentIntent, PaymentProvider,
    ProviderError, RefundOutcome, call_with_retries, request_json,
)

logger = logging.getLogger('payments')

S = Donation.Status
CENT = Decimal('0.01')
# запас на колебание курса
MINIMUM_BUFFER = Decimal('1.1')

# waiting, confirming, confirmed, sending - платёж ещё идёт
PAYMENT_STATUSES = {
    'finished': S.PAID,
    'partially_paid': S.PAID,
    'failed': S.FAILED,
    'expired': S.FAILED,
    'cancelled': S.FAILED,
    'wrong_asset_confirmed': S.FAILED,
}
REFUND_STATUSES = {
    'refunded': S.REFUNDED,
}


def _to_decimal(value):
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return None


class NowPaymentsProvider(PaymentProvider):
    """Криптоплатежи через NOWPayments."""
    name = 'nowpayments'
    method = Donation.PaymentMethod.CRYPTO
    ack_content_type = 'application/json'

    def _call(self, method: str, path: str, *, params=None, body=None):
        if not settings.NOWPAYMENTS_API_KEY:
            raise ProviderError("NOWPAYMENTS_API_KEY is not configured")
        headers = {'x-api-key': settings.NOWPAYMENTS_API_KEY}
        if body is not None:
            headers['Content-Type'] = 'application/json'
        return call_with_retries(
            request_json, method, f'{settings.NOWPAYMENTS_API_BASE}{path}',
            headers=headers, params=params, json=body,
        )

    def _fallback_minimum(self, pay_currency: str) -> Decimal:
        data = self._call('GET', '/min-amount', params={'currency_from': 'usd', 'currency_to': pay_currency})
        minimum = _to_decimal(data.get('min_amount'))
        if not minimum:
            raise ProviderError(f"No minimum amount for {pay_currency}")
        return minimum.quantize(CENT, rounding=ROUND_CEILING)

    def minimum_amount(self, currency, pay_currency=None) -> Decimal:
        """
        Минимальная сумма в USD для оплаты в pay_currency.

        Берём минимум pay_currency -> кошелёк вывода, переводим в USD через
        estimate и добавляем 10% запаса. Если пара не поддерживается,
        спрашиваем минимум usd -> pay_currency напрямую.
        """
        if not pay_currency:
            raise ProviderError("pay_currency is required for crypto payments")
        pay_currency = pay_currency.lower()

        data = self._call('GET', '/min-amount', params={
            'currency_from': pay_currency,
            'currency_to': settings.NOWPAYMENTS_OUTCOME_WALLET,
        })
        min_crypto = _to_decimal(data.get('min_amount'))
        if data.get('status') is False or not min_crypto:
            return self._fallback_minimum(pay_currency)

        estimate = self._call('GET', '/estimate', params={
            'amount': str(min_crypto),
            'currency_from': pay_currency,
            'currency_to': 'usd',
        })
        usd = _to_decimal(estimate.get('estimated_amount'))
        if estimate.get('status') is False or not usd:
            return self._fallback_minimum(pay_currency)

        return (usd * MINIMUM_BUFFER).quantize(CENT, rounding=ROUND_CEILING)

    def create_intent(self, order, *, pay_currency=None) -> PaymentIntent:
        if not pay_currency:
            raise ProviderError("pay_currency is required for crypto payments")
        amount = Decimal(order.total_amount).quantize(CENT)
        payment = self._call('POST', '/payment', body={
            'price_amount': float(amount),
            'price_currency': order.currency.lower(),
            'pay_currency': pay_currency.lower(),
            'order_id': order.reference,
            'order_description': f'{settings.SITE_NAME}: пожертвование {order.reference}',
            'ipn_callback_url': settings.NOWPAYMENTS_IPN_URL,
        })

        logger.info("NOWPayments payment created: order=%s payment=%s status=%s",
                    order.reference, payment.get('payment_id'), payment.get('payment_status'))
        return PaymentIntent(
            external_reference=str(payment['payment_id']),
            amount=amount,
            currency=order.currency,
            status=payment.get('payment_status', ''),
            pay_address=payment.get('pay_address', ''),
            pay_amount=_to_decimal(payment.get('pay_amount')),
            pay_currency=payment.get('pay_currency', pay_currency),
            payload=payment,
        )

    @staticmethod
    def signature(payload: dict) -> str:
        # HMAC-SHA512 от тела с отсортированными ключами, без пробелов
        message = json.dumps(payload, sort_keys=True, separators=(',', ':'), ensure_ascii=False)
        return hmac.new(settings.NOWPAYMENTS_IPN_SECRET.encode('utf-8'),
                        message.encode('utf-8'), hashlib.sha512).hexdigest()

    def reconcile(self, body: bytes, headers) -> CallbackOutcome:
        if not settings.NOWPAYMENTS_IPN_SECRET:
            logger.error("NOWPAYMENTS_IPN_SECRET is not configured")
            raise InvalidCallbackError("IPN secret not configured")
        try:
            payload = json.loads(body.decode('utf-8'))
        except (UnicodeDecodeError, ValueError):
            raise InvalidCallbackError("Bad JSON")
        if not isinstance(payload, dict):
            raise InvalidCallbackError("Bad JSON")

        received = (headers.get('x-nowpayments-sig', '') or '').lower()
        if not received or not hmac.compare_digest(received, self.signature(payload)):
            raise InvalidCallbackError("Invalid signature")

        status = payload.get('payment_status', '')
        payment_id = str(payload.get('payment_id') or '')
        order_reference = payload.get('order_id')
        if not payment_id or not order_reference:
            raise InvalidCallbackError("No payment_id or order_id")

        if status in REFUND_STATUSES:
            kind, target = KIND_REFUND, REFUND_STATUSES[status]
        else:
            kind, target = KIND_PAYMENT, PAYMENT_STATUSES.get(status)
            if status not in PAYMENT_STATUSES:
                logger.info("NOWPayments status %s for order %s: nothing to apply", status, order_reference)

        if status == 'partially_paid':
            logger.warning("Partial payment: order=%s expected=%s received=%s %s, manual reconciliation required",
                           order_reference, payload.get('pay_amount'), payload.get('actually_paid'),
                           payload.get('pay_currency'))

        return CallbackOutcome(
            kind=kind,
            order_reference=order_reference,
            external_reference=payment_id,
            provider_status=status,
            target_status=target,
            idempotency_key=f'{payment_id}:{status}',
            amount=_to_decimal(payload.get('price_amount')),
            currency=(payload.get('price_currency') or '').upper(),
            payload=payload,
        )

    def refund(self, order_reference, external_reference, amount, currency) -> RefundOutcome:
        # у NOWPayments нет API возврата: деньги возвращают вручную,
        # строки остаются в refunding до IPN refunded или ручного завершения
        logger.warning("Crypto refund requires manual processing: order=%s payment=%s amount=%s %s",
                       order_reference, external_reference, amount, currency)
        return RefundOutcome(external_reference=external_reference, provider_status='manual')

    def acknowledge(self, outcome) -> str:
        return json.dumps({'status': 'ok'})
