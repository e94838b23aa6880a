# donations/services.py
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import validate_email
from django.db import transaction
from django.db.models import Q
from django.utils.crypto import get_random_string

from projects import services as ledger
from projects.models import Project
from .models import Donation

logger = logging.getLogger('donations')

CENT = Decimal('0.01')
REFERENCE_CHARS = 'ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789'
INVALID_REQUEST = 'invalid_request'


@dataclass
class OrderLine:
    project_id: int
    quantity: int = 1
    # только для проектов со свободной суммой
    amount: Optional[Decimal] = None


@dataclass
class Order:
    """Строки одного оформления, связанные общим order_reference."""
    reference: str
    donations: List[Donation] = field(default_factory=list)

    @classmethod
    def load(cls, reference: str) -> Optional['Order']:
        donations = list(Donation.objects.for_order(reference).select_related('project'))
        if not donations:
            return None
        return cls(reference, donations)

    @property
    def total_amount(self) -> Decimal:
        return sum((d.amount for d in self.donations), Decimal('0.00'))

    @property
    def currency(self) -> str:
        return self.donations[0].currency if self.donations else settings.DONATIONS_CURRENCY

    @property
    def donor_email(self) -> str:
        return self.donations[0].donor_email if self.donations else ''

    @property
    def donor_name(self) -> str:
        return self.donations[0].donor_name if self.donations else ''

    @property
    def payment_method(self) -> str:
        return self.donations[0].payment_method if self.donations else ''

    @property
    def project_ids(self) -> list:
        return list(dict.fromkeys(d.project_id for d in self.donations))


@dataclass
class CheckoutResult:
    success: bool
    order: Optional[Order] = None
    error: Optional[str] = None
    project_id: Optional[int] = None
    max_allowed: Optional[object] = None
    remaining: Optional[object] = None
    minimum: Optional[Decimal] = None
    message: str = ''
    external_reference: str = ''
    payment: dict = field(default_factory=dict)

    def as_dict(self) -> dict:
        if not self.success:
            data = {'success': False, 'error': self.error}
            if self.project_id is not None:
                data['project_id'] = self.project_id
            if self.max_allowed is not None:
                data['max_allowed'] = str(self.max_allowed)
            if self.minimum is not None:
                data['minimum'] = str(self.minimum)
            if self.message:
                data['message'] = self.message
            if self.order is not None:
                data['order_reference'] = self.order.reference
            return data
        return {
            'success': True,
            'order_reference': self.order.reference,
            'amount': str(self.order.total_amount),
            'currency': self.order.currency,
            'donation_ids': [d.donation_public_id for d in self.order.donations],
            'external_reference': self.external_reference,
            'payment': self.payment,
        }


def make_order_reference(project_id) -> str:
    return f'DONATE-{project_id}-{int(time.time() * 1000)}-{get_random_string(6, REFERENCE_CHARS)}'


def estimate_total(lines, tip_amount=None) -> Decimal:
    """Предварительная сумма заказа без резервирования (нужна для проверки минимума криптоплатежа)."""
    total = Decimal(tip_amount or 0)
    prices = dict(Project.objects.filter(pk__in=[l.project_id for l in lines])
                  .values_list('pk', 'unit_price'))
    for line in lines:
        if line.amount is not None:
            total += Decimal(line.amount)
        elif prices.get(line.project_id) is not None:
            total += prices[line.project_id] * line.quantity
    return total.quantize(CENT)


def _check_line_modes(lines) -> Optional[CheckoutResult]:
    # проект со свободной суммой принимает amount, проект с единицами - только quantity
    modes = dict(Project.objects
                 .filter(pk__in={line.project_id for line in lines})
                 .values_list('pk', 'aggregate_donations'))
    for line in lines:
        aggregate = modes.get(line.project_id)
        if aggregate is None:
            # project_not_found вернёт try_reserve
            continue
        if aggregate and line.amount is None:
            return CheckoutResult(False, error=INVALID_REQUEST, project_id=line.project_id,
                                  message="Для этого проекта нужно указать сумму.")
        if not aggregate and line.amount is not None:
            return CheckoutResult(False, error=INVALID_REQUEST, project_id=line.project_id,
                                  message="Для этого проекта указывается количество, а не сумма.")
    return None


def create_order(lines, *, donor_email: str, donor_name: str = '', donor_message: str = '',
                 tip_amount=None, payment_method: str = Donation.PaymentMethod.CARD,
                 currency: Optional[str] = None) -> CheckoutResult:
    """
    Резервирует ёмкость по каждой строке и создаёт пожертвования в статусе pending.

    Все строки получают общий order_reference и сохраняют порядок lines; чаевые
    добавляются последней строкой на проект из DONATIONS_TIP_PROJECT_ID.
    Если хотя бы одна строка не проходит по остатку или лимиту, ни одна
    строка не создаётся и все резервы откатываются.
    """
    lines = list(lines)
    if not lines:
        raise ValueError("Пустой заказ.")

    currency = currency or settings.DONATIONS_CURRENCY
    tip = Decimal(tip_amount or 0).quantize(CENT)
    tip_project_id = settings.DONATIONS_TIP_PROJECT_ID
    if tip > 0 and tip_project_id is None:
        raise ValueError("Проект для чаевых не настроен (DONATIONS_TIP_PROJECT_ID).")

    invalid = _check_line_modes(lines)
    if invalid is not None:
        logger.info("Order line does not match project mode: project=%s", invalid.project_id)
        return invalid

    reference = make_order_reference(lines[0].project_id)
    donor = {'donor_name': donor_name, 'donor_email': donor_email, 'donor_message': donor_message}
    return ledger.with_lock_retries(_create_pending, reference, lines, tip, tip_project_id,
                                    currency=currency, payment_method=payment_method, donor=donor)


def _create_pending(reference, lines, tip, tip_project_id, *, currency, payment_method, donor) -> CheckoutResult:
    with transaction.atomic():
        reserved = []
        # чаевые входят в общий лимит заказа с самого начала
        running = tip
        for line in lines:
            r = ledger.try_reserve(line.project_id, quantity=line.quantity, amount=line.amount,
                                   extra_amount=running)
            if not r.ok:
                transaction.set_rollback(True)
                return CheckoutResult(False, error=r.error, project_id=line.project_id,
                                      max_allowed=r.max_allowed, remaining=r.remaining)
            running += r.amount
            reserved.append((r, False))

        if tip > 0:
            r = ledger.try_reserve(tip_project_id, amount=tip, extra_amount=running - tip)
            if not r.ok:
                transaction.set_rollback(True)
                return CheckoutResult(False, error=r.error, project_id=tip_project_id,
                                      max_allowed=r.max_allowed, remaining=r.remaining)
            reserved.append((r, True))

        donations = []
        for r, is_tip in reserved:
            donations.append(Donation.objects.create(
                donation_public_id=Donation.make_public_id(r.project_id),
                order_reference=reference,
                project_id=r.project_id,
                quantity=r.quantity,
                amount=r.amount,
                currency=currency,
                is_tip=is_tip,
                payment_method=payment_method,
                **donor,
            ))

    logger.info("Pending records created: order=%s count=%s total=%s",
                reference, len(donations), running)
    return CheckoutResult(True, order=Order(reference, donations))


def lookup_donations(email: str, donation_or_order_id: str) -> list:
    """
    Пожертвования донора по email и номеру пожертвования или заказа.
    Возвращает только строки, совпавшие по обоим фильтрам; иначе пустой список.
    """
    email = (email or '').strip()
    ident = (donation_or_order_id or '').strip()
    if not email or not ident:
        return []
    try:
        validate_email(email)
    except ValidationError:
        return []

    donations = list(
        Donation.objects
        .select_related('project')
        .filter(donor_email__iexact=email)
        .filter(Q(donation_public_id=ident) | Q(order_reference=ident))
        .order_by('id')
    )
    if not donations:
        # не сообщаем, что именно не совпало
        logger.info("Donation lookup without match: id=%s", ident)
    return donations
