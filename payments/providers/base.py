# payments/providers/base.py
"""
Общий интерфейс платёжных провайдеров.

Провайдер создаёт платёж (create_intent), проверяет и разбирает входящий
вебхук (reconcile), запускает возврат (refund). Статусы провайдера
переводятся только в статусы пожертвования; сами переходы выполняет
payments.services.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

import requests
from django.conf import settings
from django.utils.module_loading import import_string
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

logger = logging.getLogger('payments')

API_ERROR = 'api_error'

KIND_PAYMENT = 'payment'
KIND_REFUND = 'refund'


class ProviderError(Exception):
    """Провайдер не смог выполнить запрос; наружу уходит как api_error."""
    code = API_ERROR


class TransientProviderError(ProviderError):
    """Сетевая ошибка, таймаут или 5xx: запрос можно повторить."""


class InvalidCallbackError(Exception):
    """Подпись или содержимое вебхука не прошли проверку."""


class CallbackNotReadyError(Exception):
    """Строки заказа ещё не видны: провайдер должен прислать вебхук повторно."""


@dataclass
class PaymentIntent:
    external_reference: str
    amount: Decimal
    currency: str
    status: str = ''
    redirect_url: str = ''
    # для криптоплатежа: куда и сколько перевести
    pay_address: str = ''
    pay_amount: Optional[Decimal] = None
    pay_currency: str = ''
    payload: dict = field(default_factory=dict)

    def as_dict(self) -> dict:
        data = {
            'external_reference': self.external_reference,
            'status': self.status,
            'amount': str(self.amount),
            'currency': self.currency,
        }
        if self.redirect_url:
            data['redirect_url'] = self.redirect_url
        if self.pay_address:
            data.update({
                'pay_address': self.pay_address,
                'pay_amount': str(self.pay_amount) if self.pay_amount is not None else None,
                'pay_currency': self.pay_currency,
            })
        return data


@dataclass
class CallbackOutcome:
    """Проверенный вебхук: чему верим после проверки подписи."""
    kind: str
    order_reference: str
    external_reference: str
    provider_status: str
    # целевой статус пожертвований; None - ничего не меняем
    target_status: Optional[str]
    idempotency_key: str
    amount: Optional[Decimal] = None
    currency: str = ''
    payload: dict = field(default_factory=dict)


@dataclass
class RefundOutcome:
    external_reference: str
    provider_status: str
    # None - возврат оформляется вручную или ещё не начат, строки остаются в refunding
    target_status: Optional[str] = None
    payload: dict = field(default_factory=dict)


class PaymentProvider:
    name = ''
    method = ''
    ack_content_type = 'text/plain'

    def minimum_amount(self, currency: str, pay_currency: Optional[str] = None) -> Decimal:
        """Минимальная сумма платежа в валюте заказа; 0 - ограничения нет."""
        return Decimal('0.00')

    def create_intent(self, order, *, pay_currency: Optional[str] = None) -> PaymentIntent:
        raise NotImplementedError

    def reconcile(self, body: bytes, headers) -> CallbackOutcome:
        """Проверяет подлинность вебхука и переводит его в CallbackOutcome."""
        raise NotImplementedError

    def refund(self, order_reference: str, external_reference: str, amount: Decimal,
               currency: str) -> RefundOutcome:
        raise NotImplementedError

    def acknowledge(self, outcome: Optional[CallbackOutcome]) -> str:
        return 'OK'


def request_json(method: str, url: str, **kwargs) -> dict:
    """
    HTTP-запрос к провайдеру с ограниченным таймаутом.
    Сетевые ошибки и 5xx - TransientProviderError, остальные отказы - ProviderError.
    """
    try:
        resp = requests.request(method, url, timeout=settings.PAYMENT_PROVIDER_TIMEOUT, **kwargs)
    except requests.RequestException as e:
        raise TransientProviderError(f"Network error: {e}") from e

    if resp.status_code >= 500 or resp.status_code == 429:
        raise TransientProviderError(f"API error {resp.status_code}")
    if resp.status_code >= 400:
        # попробуем вытащить текст ошибки
        try:
            err = resp.json()
        except ValueError:
            err = resp.text
        raise ProviderError(f"API error {resp.status_code}: {err}")

    try:
        return resp.json()
    except ValueError as e:
        raise ProviderError(f"Bad response format: {e}") from e


def call_with_retries(func, *args, **kwargs):
    """Повторяет вызов провайдера при временных ошибках, затем отдаёт последнюю ошибку."""
    retrying = Retrying(
        stop=stop_after_attempt(max(1, int(settings.PAYMENT_PROVIDER_RETRIES))),
        wait=wait_random_exponential(multiplier=float(settings.PAYMENT_PROVIDER_RETRY_WAIT), max=10),
        retry=retry_if_exception_type(TransientProviderError),
        reraise=True,
    )
    return retrying(func, *args, **kwargs)


def get_provider(name: str) -> PaymentProvider:
    try:
        path = settings.PAYMENT_PROVIDERS[name]
    except KeyError:
        raise ValueError(f"Unknown payment provider: {name}")
    return import_string(path)()


def provider_names() -> list:
    return list(settings.PAYMENT_PROVIDERS)
