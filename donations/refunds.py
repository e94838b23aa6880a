# donations/refunds.py
"""
Возвраты: какие строки заказа можно вернуть, на какую сумму, и запуск возврата у провайдера.

Вернуть можно только то, что ещё не доставлено (paid, confirmed, delivering).
Доставленные строки (completed) в возврат не попадают и не меняются.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from django.db import transaction

from payments.providers.base import API_ERROR, KIND_REFUND, ProviderError, get_provider
from payments.services import payment_reference_for, reconcile_callback, record_transaction
from . import status
from .models import Donation, StatusHistory
from .services import lookup_donations

logger = logging.getLogger('donations')

S = Donation.Status

DONATION_NOT_FOUND = 'donation_not_found'
CANNOT_REFUND_COMPLETED = 'cannot_refund_completed'
REFUND_IN_PROGRESS = 'refund_in_progress'
NOT_REFUNDABLE = 'not_refundable'

MESSAGES = {
    DONATION_NOT_FOUND: "Пожертвование не найдено.",
    CANNOT_REFUND_COMPLETED: "Помощь уже доставлена, возврат невозможен.",
    REFUND_IN_PROGRESS: "Возврат по этому заказу уже запрошен.",
    NOT_REFUNDABLE: "Этот заказ нельзя вернуть.",
    API_ERROR: "Платёжная система не ответила, попробуйте позже.",
}


@dataclass
class RefundResult:
    success: bool
    order_reference: str = ''
    donations: list = field(default_factory=list)
    amount: Decimal = Decimal('0.00')
    currency: str = ''
    status: str = ''
    error: Optional[str] = None
    message: str = ''

    def as_dict(self) -> dict:
        data = {
            'success': self.success,
            'order_reference': self.order_reference,
            # статусы всегда из базы, а не из предположений клиента
            'donations': [
                {'donation_id': d.donation_public_id, 'status': d.donation_status, 'amount': str(d.amount)}
                for d in self.donations
            ],
        }
        if self.success:
            data.update({'refund_amount': str(self.amount), 'currency': self.currency, 'status': self.status})
        else:
            data.update({'error': self.error, 'message': self.message or MESSAGES.get(self.error, '')})
        return data


def eligible_for_refund(order_reference: str) -> list:
    return list(Donation.objects.for_order(order_reference).with_status(*status.REFUNDABLE_STATUSES))


def refund_amount(donations) -> Decimal:
    """Сумма только тех строк, которые ещё можно вернуть."""
    return sum(
        (d.amount for d in donations if d.donation_status in status.REFUNDABLE_STATUSES),
        Decimal('0.00'),
    )


def _refusal(lines) -> str:
    statuses = {d.donation_status for d in lines}
    if statuses & set(status.REFUND_IN_PROGRESS_STATUSES):
        return REFUND_IN_PROGRESS
    if S.COMPLETED in statuses:
        return CANNOT_REFUND_COMPLETED
    return NOT_REFUNDABLE


def _start_refund(order_reference: str, requester_email: str):
    """
    Первая транзакция: строки, которые ещё можно вернуть, переходят в refunding.
    Возвращает (RefundResult с отказом, None) или (None, план возврата).
    """
    with transaction.atomic():
        lines = list(Donation.objects.select_for_update().filter(order_reference=order_reference).order_by('id'))
        eligible = [d for d in lines if d.donation_status in status.REFUNDABLE_STATUSES]
        if not eligible:
            error = _refusal(lines)
            logger.info("Refund refused: order=%s error=%s", order_reference, error)
            return RefundResult(False, order_reference=order_reference, donations=lines,
                                error=error, message=MESSAGES[error]), None

        provider = get_provider(eligible[0].payment_method)
        payment_id = payment_reference_for(order_reference, provider.name)
        if not payment_id:
            logger.error("Refund impossible, no payment recorded: order=%s provider=%s",
                         order_reference, provider.name)
            return RefundResult(False, order_reference=order_reference, donations=lines,
                                error=API_ERROR, message="Платёж по заказу не найден."), None

        amount = refund_amount(eligible)
        previous = {}
        for d in eligible:
            status.check_transition(d.donation_status, S.REFUNDING, StatusHistory.Actor.DONOR)
            source = status.apply_transition(d, S.REFUNDING, StatusHistory.Actor.DONOR,
                                              actor_identity=requester_email, note="refund requested")
            previous[d.pk] = (source, d.history.latest('id').pk)

    plan = {
        'provider': provider,
        'payment_id': payment_id,
        'previous': previous,
        'amount': amount,
        'currency': eligible[0].currency,
    }
    return None, plan


def _restore(previous: dict) -> None:
    """Провайдер отказал: строки, всё ещё ждущие возврата, возвращаются в прежний статус."""
    with transaction.atomic():
        lines = Donation.objects.select_for_update().filter(pk__in=previous).order_by('id')
        for d in lines:
            if d.donation_status != S.REFUNDING:
                # провайдер успел прислать уведомление, его статус важнее
                continue
            source, history_id = previous[d.pk]
            d.donation_status = source
            d.save(update_fields=['donation_status', 'updated_at'])
            # переход в refunding не состоялся и в истории не остаётся
            StatusHistory.objects.filter(pk=history_id).delete()
            logger.info("Donation %s restored to %s after refund failure", d.donation_public_id, source)


def _finish_refund(provider, previous: dict, outcome) -> str:
    if not outcome.target_status:
        return S.REFUNDING
    with transaction.atomic():
        lines = list(Donation.objects.select_for_update().filter(pk__in=previous).order_by('id'))
        applied = []
        for d in lines:
            if d.donation_status == outcome.target_status:
                continue
            if not status.is_allowed_for(d.donation_status, outcome.target_status, StatusHistory.Actor.SYSTEM):
                continue
            status.apply_transition(d, outcome.target_status, StatusHistory.Actor.SYSTEM,
                                    actor_identity=provider.name, note=f"refund {outcome.provider_status}")
            applied.append(d)
        status.notify(outcome.target_status, applied)
    return outcome.target_status


def initiate_refund(order_reference_or_public_id: str, requester_email: str) -> RefundResult:
    """
    Запрос возврата от донора по номеру заказа или пожертвования.

    Возвращаются все ещё не доставленные строки заказа. Сначала они переходят
    в refunding (отдельной транзакцией), затем у провайдера создаётся возврат
    уже без блокировок. Если провайдер отказал, строки возвращаются в прежние
    статусы и возвращается api_error со свежими статусами из базы.
    """
    matched = lookup_donations(requester_email, order_reference_or_public_id)
    if not matched:
        return RefundResult(False, error=DONATION_NOT_FOUND, message=MESSAGES[DONATION_NOT_FOUND])
    order_reference = matched[0].order_reference

    refusal, plan = _start_refund(order_reference, requester_email)
    if refusal is not None:
        return refusal

    provider, amount, currency = plan['provider'], plan['amount'], plan['currency']
    try:
        outcome = provider.refund(order_reference, plan['payment_id'], amount, currency)
    except ProviderError as e:
        logger.error("Refund failed at provider: order=%s provider=%s: %s", order_reference, provider.name, e)
        _restore(plan['previous'])
        return RefundResult(False, order_reference=order_reference,
                            donations=list(Donation.objects.for_order(order_reference)),
                            error=API_ERROR, message=MESSAGES[API_ERROR])

    record_transaction(provider.name, KIND_REFUND, order_reference=order_reference,
                       payment_id=outcome.external_reference or plan['payment_id'],
                       status=outcome.provider_status, amount=amount, currency=currency,
                       payload=outcome.payload)
    final = _finish_refund(provider, plan['previous'], outcome)

    logger.info("Refund initiated: order=%s lines=%s amount=%s %s status=%s",
                order_reference, len(plan['previous']), amount, currency, final)
    return RefundResult(True, order_reference=order_reference, donations=list(Donation.objects.for_order(order_reference)),
                        amount=amount, currency=currency, status=final)


def confirm_refund(provider_name: str, body: bytes, headers):
    """Уведомление провайдера о возврате: refunding -> refund_processing | refunded, ровно один раз."""
    return reconcile_callback(provider_name, body, headers, expected_kind=KIND_REFUND)
