# donations/signals.py
import logging

from django.db import transaction
from django.dispatch import Signal

logger = logging.getLogger('mail')

# Аргументы: order_reference, donations (список строк одного заказа)
payment_confirmed = Signal()
donation_completed = Signal()
refund_completed = Signal()


def _send(signal, name, order_reference, donations):
    responses = signal.send_robust(sender='donations', order_reference=order_reference, donations=donations)
    for receiver, result in responses:
        if isinstance(result, Exception):
            # уведомление не откатывает смену статуса
            logger.error("Notification %s failed: order=%s receiver=%r: %s",
                         name, order_reference, receiver, result,
                         exc_info=(type(result), result, result.__traceback__))


def emit_on_commit(signal, name: str, donations) -> None:
    """Рассылает событие после коммита, по одному на каждый заказ."""
    by_order = {}
    for d in donations:
        by_order.setdefault(d.order_reference, []).append(d)
    for order_reference, items in by_order.items():
        transaction.on_commit(
            lambda s=signal, ref=order_reference, its=items: _send(s, name, ref, its)
        )
