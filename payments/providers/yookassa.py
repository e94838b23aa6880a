# payments/providers/yookassa.py
import base64
import hmac
import json
import logging
from decimal import Decimal

import requests
from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from yookassa import Configuration, Payment, Refund
from yookassa.domain.exceptions.api_error import ApiError
from yookassa.domain.exceptions.response_processing_error import ResponseProcessingError
from yookassa.domain.exceptions.too_many_request_error import TooManyRequestsError

from donations.models import Donation
from .base import (
    KIND_PAYMENT, KIND_REFUND, CallbackOutcome, InvalidCallbackError, PaymentIntent, PaymentProvider,
    ProviderError, RefundOutcome, TransientProviderError, call_with_retries,
)

logger = logging.getLogger('payments')

S = Donation.Status
CENT = Decimal('0.01')

# pending и waiting_for_capture ничего не меняют
PAYMENT_STATUSES = {
    'succeeded': S.PAID,
    'canceled': S.FAILED,
}
REFUND_STATUSES = {
    'succeeded': S.REFUNDED,
    'pending': S.REFUND_PROCESSING,
}


def _yk_configure():
    # SDK конфигурируется глобально
    Configuration.account_id = settings.YOO_KASSA_SHOP_ID
    Configuration.secret_key = settings.YOO_KASSA_SECRET_KEY


def _sdk_call(method, *args):
    """Вызов SDK; ошибки ЮKassa переводятся в ошибки провайдера."""
    try:
        return method(*args)
    except (TooManyRequestsError, ResponseProcessingError, requests.RequestException) as e:
        raise TransientProviderError(f"YooKassa temporarily unavailable: {e}") from e
    except ApiError as e:
        # у 4xx свои подклассы, голый ApiError - ответ 5xx
        if type(e) is ApiError:
            raise TransientProviderError(f"YooKassa error: {e}") from e
        raise ProviderError(f"YooKassa error: {e}") from e


def _payload(obj) -> dict:
    # объекты SDK -> JSON-совместимый dict для PaymentTransaction.payload
    return json.loads(json.dumps(dict(obj), cls=DjangoJSONEncoder))


def _amount(obj):
    amount = getattr(obj, 'amount', None)
    if amount is None or getattr(amount, 'value', None) in (None, ''):
        return None, ''
    return Decimal(str(amount.value)), amount.currency or ''


class YooKassaProvider(PaymentProvider):
    """Оплата картой через ЮKassa."""
    name = 'yookassa'
    method = Donation.PaymentMethod.CARD

    def _call(self, method, *args):
        _yk_configure()
        return call_with_retries(_sdk_call, method, *args)

    def create_intent(self, order, *, pay_currency=None) -> PaymentIntent:
        """
        Создаёт платеж в ЮKassa и возвращает ссылку на страницу оплаты.
        Ключ идемпотентности - номер заказа: повторный запрос не создаст второй платёж.
        """
        amount = Decimal(order.total_amount).quantize(CENT)
        payment = self._call(Payment.create, {
            'amount': {
                'value': str(amount),
                'currency': order.currency,
            },
            'confirmation': {
                'type': 'redirect',
                'return_url': settings.YOO_KASSA_RETURN_URL,
            },
            'capture': True,  # авто-капчер, без wait_for_capture
            'description': f'{settings.SITE_NAME}: пожертвование {order.reference}',
            'metadata': {
                'order_reference': order.reference,
            },
        }, order.reference)

        logger.info("YooKassa payment created: order=%s payment=%s status=%s",
                    order.reference, payment.id, payment.status)
        confirmation = getattr(payment, 'confirmation', None)
        return PaymentIntent(
            external_reference=payment.id,
            amount=amount,
            currency=order.currency,
            status=payment.status or '',
            redirect_url=getattr(confirmation, 'confirmation_url', '') or '',
            payload=_payload(payment),
        )

    def _check_auth(self, headers) -> None:
        if settings.YOO_KASSA_SKIP_WEBHOOK_AUTH:
            return
        expected = 'Basic ' + base64.b64encode(
            f"{settings.YOO_KASSA_SHOP_ID}:{settings.YOO_KASSA_SECRET_KEY}".encode('utf-8')
        ).decode('utf-8')
        got = headers.get('Authorization', '') or ''
        if not hmac.compare_digest(got.encode('utf-8'), expected.encode('utf-8')):
            raise InvalidCallbackError("Invalid signature")

    def reconcile(self, body: bytes, headers) -> CallbackOutcome:
        self._check_auth(headers)
        try:
            payload = json.loads(body.decode('utf-8'))
        except (UnicodeDecodeError, ValueError):
            raise InvalidCallbackError("Bad JSON")
        if not isinstance(payload, dict):
            raise InvalidCallbackError("Bad JSON")

        event = payload.get('event', '')
        object_id = (payload.get('object') or {}).get('id')
        if not object_id:
            raise InvalidCallbackError("No object id")

        # телу вебхука не верим: статус и сумму перечитываем у ЮKassa
        if event.startswith('refund.'):
            refund = self._call(Refund.find_one, object_id)
            payment = self._call(Payment.find_one, refund.payment_id)
            kind, obj = KIND_REFUND, refund
            status = refund.status or ''
            target = REFUND_STATUSES.get(status)
        else:
            payment = self._call(Payment.find_one, object_id)
            kind, obj = KIND_PAYMENT, payment
            status = payment.status or ''
            target = PAYMENT_STATUSES.get(status)

        order_reference = (payment.metadata or {}).get('order_reference')
        if not order_reference:
            raise InvalidCallbackError("Payment has no order_reference")

        amount, currency = _amount(obj)
        return CallbackOutcome(
            kind=kind,
            order_reference=order_reference,
            external_reference=obj.id,
            provider_status=status,
            target_status=target,
            idempotency_key=f"{kind}:{obj.id}:{status}",
            amount=amount,
            currency=currency,
            payload=_payload(obj),
        )

    def refund(self, order_reference, external_reference, amount, currency) -> RefundOutcome:
        amount = Decimal(amount).quantize(CENT)
        refund = self._call(Refund.create, {
            'payment_id': external_reference,
            'amount': {'value': str(amount), 'currency': currency},
            'description': f'{settings.SITE_NAME}: возврат по заказу {order_reference}',
        }, f'refund-{order_reference}-{amount}')

        status = refund.status or ''
        if status == 'canceled':
            details = getattr(refund, 'cancellation_details', None)
            raise ProviderError(f"Refund canceled: {getattr(details, 'reason', '')}")

        logger.info("YooKassa refund created: order=%s refund=%s status=%s",
                    order_reference, refund.id, status)
        return RefundOutcome(
            external_reference=refund.id or '',
            provider_status=status,
            target_status=REFUND_STATUSES.get(status),
            payload=_payload(refund),
        )
