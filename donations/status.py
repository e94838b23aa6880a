# donations/status.py
"""
Статусы пожертвования: допустимые переходы, кто их выполняет и что меняется вместе со статусом.

Основной путь: pending -> paid -> confirmed -> delivering -> completed.
Ответвления: paid|confirmed|delivering -> refunding -> (refund_processing) -> refunded,
pending -> failed.
Смена статуса и изменение счётчиков проекта коммитятся одной транзакцией.
"""
import logging

from django.db import transaction

from projects import services as ledger
from . import signals
from .exceptions import (
    BatchTransitionError, DeliveryProofRequiredError, IllegalTransitionError, TransitionNotPermittedError,
)
from .models import Donation, StatusHistory
from .proofs import get_proof_store

logger = logging.getLogger('donations')

S = Donation.Status
Actor = StatusHistory.Actor

TRANSITIONS = {
    S.PENDING: {S.PAID, S.FAILED},
    S.PAID: {S.CONFIRMED, S.REFUNDING},
    S.CONFIRMED: {S.DELIVERING, S.REFUNDING},
    S.DELIVERING: {S.COMPLETED, S.REFUNDING},
    S.REFUNDING: {S.REFUND_PROCESSING, S.REFUNDED},
    S.REFUND_PROCESSING: {S.REFUNDED},
}

ACTOR_TRANSITIONS = {
    # вебхуки платёжных провайдеров
    Actor.SYSTEM: {
        (S.PENDING, S.PAID),
        (S.PENDING, S.FAILED),
        (S.REFUNDING, S.REFUND_PROCESSING),
        (S.REFUNDING, S.REFUNDED),
        (S.REFUND_PROCESSING, S.REFUNDED),
    },
    # сотрудники; ручное завершение возврата нужно для криптоплатежей
    Actor.STAFF: {
        (S.PAID, S.CONFIRMED),
        (S.CONFIRMED, S.DELIVERING),
        (S.DELIVERING, S.COMPLETED),
        (S.REFUNDING, S.REFUNDED),
        (S.REFUND_PROCESSING, S.REFUNDED),
    },
    Actor.DONOR: {
        (S.PAID, S.REFUNDING),
        (S.CONFIRMED, S.REFUNDING),
        (S.DELIVERING, S.REFUNDING),
    },
}

# помощь ещё не доставлена - деньги можно вернуть
REFUNDABLE_STATUSES = (S.PAID, S.CONFIRMED, S.DELIVERING)
REFUND_IN_PROGRESS_STATUSES = (S.REFUNDING, S.REFUND_PROCESSING, S.REFUNDED)
COUNTED_STATUSES = (S.PAID, S.CONFIRMED, S.DELIVERING, S.COMPLETED)

EVENTS = {
    S.PAID: (signals.payment_confirmed, 'payment_confirmed'),
    S.COMPLETED: (signals.donation_completed, 'donation_completed'),
    S.REFUNDED: (signals.refund_completed, 'refund_completed'),
}


def allowed_targets(status) -> set:
    return set(TRANSITIONS.get(status, ()))


def is_allowed(source, target) -> bool:
    return target in TRANSITIONS.get(source, ())


def is_allowed_for(source, target, actor) -> bool:
    return (source, target) in ACTOR_TRANSITIONS.get(actor, ())


def next_statuses_for(status, actor) -> list:
    return [t for (s, t) in ACTOR_TRANSITIONS.get(actor, ()) if s == status]


def needs_delivery_proof(source, target) -> bool:
    return source == S.DELIVERING and target == S.COMPLETED


def can_batch_edit(status) -> bool:
    # delivering -> completed требует отдельного подтверждения на каждое пожертвование
    return status != S.DELIVERING and bool(next_statuses_for(status, Actor.STAFF))


def check_transition(source, target, actor) -> None:
    if not is_allowed(source, target):
        raise IllegalTransitionError(source, target)
    if not is_allowed_for(source, target, actor):
        raise TransitionNotPermittedError(source, target, actor)


def _apply_ledger(donation: Donation, target) -> None:
    if target == S.PAID:
        ledger.commit_reservation(donation.project_id, donation.quantity, donation.amount)
    elif target == S.FAILED:
        ledger.release_reservation(donation.project_id, donation.quantity, donation.amount)
    elif target == S.REFUNDED:
        ledger.release_committed(donation.project_id, donation.quantity, donation.amount)


def apply_transition(donation: Donation, target, actor, *, actor_identity: str = '', note: str = ''):
    """
    Меняет статус строки, уже заблокированной select_for_update.
    Проверки переходов здесь не делаются; вызывать внутри transaction.atomic().
    """
    source = donation.donation_status
    donation.donation_status = target
    donation.save(update_fields=['donation_status', 'updated_at'])
    StatusHistory.objects.create(
        donation=donation,
        from_status=source,
        to_status=target,
        actor=actor,
        actor_identity=actor_identity[:255],
        note=note[:255],
    )
    _apply_ledger(donation, target)
    logger.info("Donation %s: %s -> %s by %s %s",
                donation.donation_public_id, source, target, actor, actor_identity)
    return source


def notify(target, donations) -> None:
    event = EVENTS.get(target)
    if event and donations:
        signal, name = event
        signals.emit_on_commit(signal, name, donations)


def transition(donation: Donation, target, actor, *, actor_identity: str = '', note: str = '',
               proof_store=None) -> Donation:
    """Переводит одно пожертвование в target или бросает IllegalTransitionError без побочных эффектов."""
    with transaction.atomic():
        locked = Donation.objects.select_for_update().get(pk=donation.pk)
        check_transition(locked.donation_status, target, actor)
        if needs_delivery_proof(locked.donation_status, target):
            store = proof_store or get_proof_store()
            if not store.has_delivery_proof(locked):
                raise DeliveryProofRequiredError(locked.donation_public_id)
        apply_transition(locked, target, actor, actor_identity=actor_identity, note=note)
        notify(target, [locked])

    donation.donation_status = locked.donation_status
    donation.updated_at = locked.updated_at
    return locked


def transition_batch(donation_ids, target, actor, *, actor_identity: str = '', note: str = '') -> list:
    """
    Массовая смена статуса: всё или ничего.
    Все выбранные пожертвования должны быть в одном статусе, и это не delivering.
    """
    ids = list(dict.fromkeys(donation_ids))
    if not ids:
        raise BatchTransitionError(None, target, "Не выбрано ни одного пожертвования.")

    with transaction.atomic():
        locked = list(Donation.objects.select_for_update().filter(pk__in=ids).order_by('id'))
        if len(locked) != len(ids):
            raise BatchTransitionError(None, target, "Часть выбранных пожертвований не найдена.")

        statuses = {d.donation_status for d in locked}
        if len(statuses) != 1:
            raise BatchTransitionError(
                None, target, f"Выбраны пожертвования в разных статусах: {', '.join(sorted(statuses))}."
            )
        source = statuses.pop()
        if source == S.DELIVERING:
            raise BatchTransitionError(
                source, target, "Доставку нужно завершать по одному, с подтверждением."
            )
        check_transition(source, target, actor)

        for d in locked:
            apply_transition(d, target, actor, actor_identity=actor_identity, note=note)
        notify(target, locked)
    return locked
