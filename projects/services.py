# projects/services.py
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from typing import Optional, Union

from django.conf import settings
from django.db import OperationalError, models, transaction
from django.db.models import F, Value
from django.db.models.functions import Greatest
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from .models import Project

logger = logging.getLogger('donations')

QUANTITY_EXCEEDED = 'quantity_exceeded'
AMOUNT_LIMIT_EXCEEDED = 'amount_limit_exceeded'
PROJECT_NOT_FOUND = 'project_not_found'
PROJECT_NOT_ACTIVE = 'project_not_active'

CENT = Decimal('0.01')
# сколько раз перечитываем строку проекта, если её успели изменить
CAS_ATTEMPTS = 5
# сколько раз повторяем транзакцию, не дождавшуюся блокировки записи
LOCK_ATTEMPTS = 3

Number = Union[int, Decimal]


class LedgerConflict(Exception):
    pass


@dataclass
class Reservation:
    """
    Результат try_reserve.
    При ошибке granted = максимум, который можно предложить донору; резерв при этом не создаётся.
    """
    project_id: int
    granted: Number = 0
    remaining: Optional[Number] = None
    error: Optional[str] = None
    quantity: int = 0
    amount: Decimal = Decimal('0.00')

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def max_allowed(self):
        return None if self.ok else self.granted


def order_limits():
    return (
        int(settings.DONATIONS_MAX_UNITS_PER_ORDER),
        Decimal(str(settings.DONATIONS_MAX_AMOUNT_PER_ORDER)),
    )


def _check_units(project: Project, quantity: int, extra_amount: Decimal) -> Reservation:
    max_units, max_amount = order_limits()
    unit_price = project.unit_price
    amount = (unit_price * quantity).quantize(CENT)

    by_amount = ((max_amount - extra_amount) / unit_price).to_integral_value(rounding=ROUND_FLOOR)
    caps = [max_units, max(int(by_amount), 0)]
    remaining = project.remaining_units
    if remaining is not None:
        caps.append(remaining)
    best = min(caps)

    if remaining is not None and quantity > remaining:
        return Reservation(project.pk, granted=best, remaining=remaining, error=QUANTITY_EXCEEDED)
    if quantity > max_units:
        return Reservation(project.pk, granted=best, remaining=remaining, error=QUANTITY_EXCEEDED)
    if amount + extra_amount > max_amount:
        return Reservation(project.pk, granted=best, remaining=remaining, error=AMOUNT_LIMIT_EXCEEDED)

    left = None if remaining is None else remaining - quantity
    return Reservation(project.pk, granted=quantity, remaining=left, quantity=quantity, amount=amount)


def _check_amount(project: Project, amount: Decimal, extra_amount: Decimal) -> Reservation:
    _, max_amount = order_limits()
    amount = Decimal(amount).quantize(CENT)

    best = max(max_amount - extra_amount, Decimal('0.00'))
    remaining = project.remaining_amount
    if remaining is not None:
        best = min(best, remaining)

    if remaining is not None and amount > remaining:
        return Reservation(project.pk, granted=best, remaining=remaining, error=AMOUNT_LIMIT_EXCEEDED)
    if amount + extra_amount > max_amount:
        return Reservation(project.pk, granted=best, remaining=remaining, error=AMOUNT_LIMIT_EXCEEDED)

    left = None if remaining is None else remaining - amount
    return Reservation(project.pk, granted=amount, remaining=left, quantity=1, amount=amount)


def with_lock_retries(func, *args, **kwargs):
    """
    Выполняет func (транзакцию целиком) и повторяет её, если база не дождалась
    блокировки записи. Внутри чужой транзакции повтор невозможен, поэтому там
    func вызывается один раз.
    """
    if transaction.get_connection().in_atomic_block:
        return func(*args, **kwargs)
    retrying = Retrying(
        stop=stop_after_attempt(LOCK_ATTEMPTS),
        wait=wait_random_exponential(multiplier=0.05, max=1),
        retry=retry_if_exception_type(OperationalError),
        reraise=True,
    )
    return retrying(func, *args, **kwargs)


def try_reserve(project_id: int, *, quantity: int = 1, amount: Optional[Decimal] = None,
                extra_amount: Decimal = Decimal('0.00')) -> Reservation:
    """
    Резервирует ёмкость проекта под ожидающее оплаты пожертвование.

    Для проектов с единицами запрашивается quantity, для проектов со свободной
    суммой - amount. extra_amount - сумма остальных строк заказа (и чаевых),
    она учитывается в общем лимите заказа.
    Превышение остатка или лимита не бросает исключение, а возвращает
    Reservation с кодом ошибки и максимально допустимым значением.
    """
    return with_lock_retries(_reserve, project_id, quantity, amount, Decimal(extra_amount or 0))


def _reserve(project_id, quantity, amount, extra_amount) -> Reservation:
    with transaction.atomic():
        # сначала запись: блокировка строки берётся до чтения остатка. В SQLite
        # select_for_update не работает, и два читателя иначе не смогут записать оба
        Project.objects.filter(pk=project_id).update(ledger_version=F('ledger_version') + 1)
        for _ in range(CAS_ATTEMPTS):
            project = Project.objects.select_for_update().filter(pk=project_id).first()
            if project is None:
                return Reservation(project_id, error=PROJECT_NOT_FOUND)
            if project.status != Project.Status.ACTIVE:
                return Reservation(project_id, error=PROJECT_NOT_ACTIVE)

            if project.aggregate_donations:
                if amount is None or Decimal(amount) <= 0:
                    raise ValueError("amount is required for amount-based projects")
                result = _check_amount(project, Decimal(amount), extra_amount)
            else:
                if quantity is None or int(quantity) < 1:
                    raise ValueError("quantity must be a positive integer")
                result = _check_units(project, int(quantity), extra_amount)

            if not result.ok:
                logger.info("Reservation refused: project=%s error=%s max=%s",
                            project.pk, result.error, result.granted)
                return result

            # compare-and-swap по версии строки: резерв не может обогнать чужой коммит
            updated = (Project.objects
                       .filter(pk=project.pk, ledger_version=project.ledger_version)
                       .update(reserved_units=F('reserved_units') + result.quantity,
                               reserved_amount=F('reserved_amount') + result.amount,
                               ledger_version=F('ledger_version') + 1))
            if updated:
                logger.info("Reserved project=%s quantity=%s amount=%s remaining=%s",
                            project.pk, result.quantity, result.amount, result.remaining)
                return result
    raise LedgerConflict(f"Project {project_id} changed concurrently {CAS_ATTEMPTS} times")


def _decrease(field: str, by):
    zero = Value(Decimal('0.00'), output_field=models.DecimalField(max_digits=12, decimal_places=2)) \
        if isinstance(by, Decimal) else Value(0)
    return Greatest(F(field) - by, zero)


def commit_reservation(project_id: int, quantity: int, amount: Decimal) -> None:
    """Резерв переходит в собранное (pending -> paid)."""
    Project.objects.filter(pk=project_id).update(
        reserved_units=_decrease('reserved_units', quantity),
        reserved_amount=_decrease('reserved_amount', Decimal(amount)),
        current_units=F('current_units') + quantity,
        current_amount=F('current_amount') + Decimal(amount),
        ledger_version=F('ledger_version') + 1,
    )


def release_reservation(project_id: int, quantity: int, amount: Decimal) -> None:
    """Снимает резерв неоплаченного пожертвования (pending -> failed)."""
    Project.objects.filter(pk=project_id).update(
        reserved_units=_decrease('reserved_units', quantity),
        reserved_amount=_decrease('reserved_amount', Decimal(amount)),
        ledger_version=F('ledger_version') + 1,
    )


def release_committed(project_id: int, quantity: int, amount: Decimal) -> None:
    """Возврат средств освобождает ёмкость для следующих доноров."""
    Project.objects.filter(pk=project_id).update(
        current_units=_decrease('current_units', quantity),
        current_amount=_decrease('current_amount', Decimal(amount)),
        ledger_version=F('ledger_version') + 1,
    )


def remaining_capacity(project_id: int):
    project = Project.objects.get(pk=project_id)
    return project.remaining
