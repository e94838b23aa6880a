# payments/services.py
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from django.conf import settings
from django.db import transaction

from donations import status
from donations.models import Donation, StatusHistory
from donations.services import CheckoutResult, create_order, estimate_total
from .models import PaymentTransaction, ProcessedCallback
from .providers.base import (
    API_ERROR, KIND_PAYMENT, CallbackNotReadyError, CallbackOutcome, InvalidCallbackError, ProviderError,
    get_provider,
)

logger = logging.getLogger('payments')

AMOUNT_BELOW_MINIMUM = 'amount_below_minimum'


@dataclass
class CallbackResult:
    outcome: CallbackOutcome
    replayed: bool = False
    applied: list = field(default_factory=list)
    statuses: list = field(default_factory=list)

    @property
    def applied_count(self) -> int:
        return len(self.applied)


def record_transaction(provider_name: str, kind: str, *, order_reference: str, payment_id: str,
                       status: str, amount=None, currency: str = '', payload=None) -> PaymentTransaction:
    pt, _ = PaymentTransaction.objects.update_or_create(
        provider=provider_name,
        kind=kind,
        payment_id=payment_id,
        defaults={
            'order_reference': order_reference,
            'status': status or '',
            'amount': Decimal(amount or 0),
            'currency': currency or '',
            'payload': payload or {},
        },
    )
    return pt


def payment_reference_for(order_reference: str, provider_name: str) -> Optional[str]:
    """Номер платежа у провайдера, которым оплачен заказ."""
    pt = (PaymentTransaction.objects
          .filter(order_reference=order_reference, provider=provider_name, kind=KIND_PAYMENT)
          .order_by('-updated_at')
          .first())
    return pt.payment_id if pt else None


def _fail_order(order, provider_name: str, note: str) -> None:
    # свежие строки заказа ещё pending: снимаем их резерв
    ids = [d.pk for d in order.donations]
    status.transition_batch(ids, Donation.Status.FAILED, StatusHistory.Actor.SYSTEM,
                            actor_identity=provider_name, note=note[:255])
    for d in order.donations:
        d.donation_status = Donation.Status.FAILED


def start_checkout(lines, *, donor_email: str, donor_name: str = '', donor_message: str = '',
                   tip_amount=None, payment_method: str = Donation.PaymentMethod.CARD,
                   pay_currency: Optional[str] = None) -> CheckoutResult:
    """
    Оформление пожертвования целиком: минимум провайдера, резерв и pending-строки, платёж.

    Минимальная сумма проверяется до резервирования, чтобы не занимать ёмкость
    проекта зря. Если провайдер не смог создать платёж, строки заказа
    переводятся в failed и возвращается api_error.
    """
    provider = get_provider(payment_method)
    currency = settings.DONATIONS_CURRENCY
    lines = list(lines)

    try:
        minimum = provider.minimum_amount(currency, pay_currency)
    except ProviderError as e:
        logger.error("Minimum amount lookup failed: provider=%s currency=%s: %s", provider.name, pay_currency, e)
        return CheckoutResult(False, error=API_ERROR, message=str(e))

    if minimum:
        total = estimate_total(lines, tip_amount)
        if total < minimum:
            logger.info("Checkout below provider minimum: provider=%s total=%s minimum=%s",
                        provider.name, total, minimum)
            return CheckoutResult(False, error=AMOUNT_BELOW_MINIMUM, minimum=minimum)

    result = create_order(lines, donor_email=donor_email, donor_name=donor_name,
                          donor_message=donor_message, tip_amount=tip_amount,
                          payment_method=provider.method, currency=currency)
    if not result.success:
        return result

    order = result.order
    try:
        intent = provider.create_intent(order, pay_currency=pay_currency)
    except ProviderError as e:
        logger.error("Payment intent failed: provider=%s order=%s: %s", provider.name, order.reference, e)
        _fail_order(order, provider.name, f"payment intent failed: {e}")
        return CheckoutResult(False, order=order, error=API_ERROR, message=str(e))

    record_transaction(provider.name, KIND_PAYMENT, order_reference=order.reference,
                       payment_id=intent.external_reference, status=intent.status,
                       amount=intent.amount, currency=intent.currency, payload=intent.payload)

    result.external_reference = intent.external_reference
    result.payment = intent.as_dict()
    logger.info("Checkout started: provider=%s order=%s payment=%s amount=%s %s",
                provider.name, order.reference, intent.external_reference, intent.amount, intent.currency)
    return result


def _apply_outcome(provider, outcome: CallbackOutcome, donations) -> list:
    target = outcome.target_status
    if target is None:
        logger.info("Callback without status change: provider=%s order=%s status=%s",
                    provider.name, outcome.order_reference, outcome.provider_status)
        return []

    if any(d.payment_method != provider.method for d in donations):
        logger.warning("Callback for order paid another way: provider=%s order=%s",
                       provider.name, outcome.order_reference)
        return []

    applied, skipped = [], []
    for d in donations:
        if d.donation_status == target:
            continue
        # опоздавшие и повторные уведомления не двигают статус назад
        if not status.is_allowed_for(d.donation_status, target, StatusHistory.Actor.SYSTEM):
            skipped.append(d)
            continue
        status.apply_transition(
            d, target, StatusHistory.Actor.SYSTEM,
            actor_identity=provider.name,
            note=f"{outcome.provider_status} {outcome.external_reference}",
        )
        applied.append(d)

    if skipped:
        logger.info("Callback skipped lines: provider=%s order=%s target=%s statuses=%s",
                    provider.name, outcome.order_reference, target,
                    ','.join(sorted({d.donation_status for d in skipped})))

    if target == Donation.Status.PAID and applied and outcome.amount is not None:
        expected = sum((d.amount for d in applied), Decimal('0.00'))
        if outcome.amount != expected:
            logger.warning("Paid amount mismatch: order=%s expected=%s got=%s %s, manual reconciliation required",
                           outcome.order_reference, expected, outcome.amount, outcome.currency)

    status.notify(target, applied)
    return applied


def reconcile_callback(provider_name: str, body: bytes, headers, *, expected_kind: Optional[str] = None) -> CallbackResult:
    """
    Проверяет вебхук провайдера и применяет его к строкам заказа ровно один раз.

    InvalidCallbackError - подпись или тело не прошли проверку.
    CallbackNotReadyError - строк заказа ещё не видно, провайдер должен повторить.
    Повтор уже обработанного вебхука ничего не меняет и возвращает прежний результат.
    """
    provider = get_provider(provider_name)
    outcome = provider.reconcile(body, headers)
    if expected_kind and outcome.kind != expected_kind:
        raise InvalidCallbackError(f"Expected {expected_kind} notification, got {outcome.kind}")

    with transaction.atomic():
        # блокировка строк заказа упорядочивает параллельные повторы
        donations = list(Donation.objects.select_for_update()
                         .filter(order_reference=outcome.order_reference).order_by('id'))
        if not donations:
            logger.warning("Callback for unknown order: provider=%s order=%s",
                           provider.name, outcome.order_reference)
            raise CallbackNotReadyError(outcome.order_reference)

        prior = ProcessedCallback.objects.filter(
            provider=provider.name, idempotency_key=outcome.idempotency_key,
        ).first()
        if prior is not None:
            logger.info("Callback replay: provider=%s key=%s order=%s",
                        provider.name, outcome.idempotency_key, outcome.order_reference)
            return CallbackResult(outcome, replayed=True,
                                  statuses=[d.donation_status for d in donations])

        applied = _apply_outcome(provider, outcome, donations)

        record_transaction(provider.name, outcome.kind, order_reference=outcome.order_reference,
                           payment_id=outcome.external_reference, status=outcome.provider_status,
                           amount=outcome.amount, currency=outcome.currency, payload=outcome.payload)
        ProcessedCallback.objects.create(
            provider=provider.name,
            idempotency_key=outcome.idempotency_key,
            order_reference=outcome.order_reference,
            kind=outcome.kind,
            provider_status=outcome.provider_status,
            outcome_status=outcome.target_status or '',
            amount=outcome.amount,
            currency=outcome.currency,
            applied_count=len(applied),
        )

    logger.info("Callback reconciled: provider=%s order=%s status=%s applied=%s",
                provider.name, outcome.order_reference, outcome.provider_status, len(applied))
    return CallbackResult(outcome, applied=applied, statuses=[d.donation_status for d in donations])
