# donations/models.py
import uuid
from decimal import Decimal

from django.db import models

from projects.models import Project


class DonationQuerySet(models.QuerySet):
    def for_order(self, order_reference: str):
        return self.filter(order_reference=order_reference).order_by('id')

    def with_status(self, *statuses):
        return self.filter(donation_status__in=statuses)


class Donation(models.Model):
    class Status(models.TextChoices):
        PENDING = 'pending', 'Ожидает оплаты'
        PAID = 'paid', 'Оплачено'
        CONFIRMED = 'confirmed', 'Подтверждено'
        DELIVERING = 'delivering', 'Доставляется'
        COMPLETED = 'completed', 'Доставлено'
        REFUNDING = 'refunding', 'Запрошен возврат'
        REFUND_PROCESSING = 'refund_processing', 'Возврат обрабатывается'
        REFUNDED = 'refunded', 'Возвращено'
        FAILED = 'failed', 'Оплата не прошла'

    class PaymentMethod(models.TextChoices):
        CARD = 'card', 'Банковская карта'
        CRYPTO = 'crypto', 'Криптовалюта'

    # публичный номер для донора (ссылка в письме, отслеживание)
    donation_public_id = models.CharField(max_length=32, unique=True, db_index=True)
    # общий номер для всех строк одного оформления
    order_reference = models.CharField(max_length=64, db_index=True)
    project = models.ForeignKey(Project, on_delete=models.PROTECT, related_name='donations')
    quantity = models.PositiveIntegerField(default=1)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=8, default='USD')
    is_tip = models.BooleanField(default=False)

    donor_name = models.CharField(max_length=255, blank=True)
    donor_email = models.EmailField(db_index=True)
    donor_message = models.TextField(blank=True)

    payment_method = models.CharField(max_length=16, choices=PaymentMethod.choices, default=PaymentMethod.CARD)
    donation_status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING, db_index=True)

    donated_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = DonationQuerySet.as_manager()

    class Meta:
        ordering = ['-donated_at', '-id']
        verbose_name = 'Пожертвование'
        verbose_name_plural = 'Пожертвования'
        indexes = [
            models.Index(fields=['order_reference', 'donation_status'], name='donation_order_status_idx'),
        ]

    def __str__(self):
        return f'{self.donation_public_id} ({self.get_donation_status_display()})'

    @staticmethod
    def make_public_id(project_id) -> str:
        return f'{project_id}-{uuid.uuid4().hex[:10].upper()}'

    @property
    def line_total(self) -> Decimal:
        return self.amount


class StatusHistory(models.Model):
    class Actor(models.TextChoices):
        SYSTEM = 'system', 'Система'
        STAFF = 'staff', 'Сотрудник'
        DONOR = 'donor', 'Донор'

    donation = models.ForeignKey(Donation, on_delete=models.CASCADE, related_name='history')
    from_status = models.CharField(max_length=20, choices=Donation.Status.choices)
    to_status = models.CharField(max_length=20, choices=Donation.Status.choices)
    actor = models.CharField(max_length=10, choices=Actor.choices)
    # кто именно: логин сотрудника, email донора, имя провайдера
    actor_identity = models.CharField(max_length=255, blank=True)
    note = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['created_at', 'id']
        verbose_name = 'Смена статуса'
        verbose_name_plural = 'История статусов'

    def __str__(self):
        return f'{self.donation_id}: {self.from_status} -> {self.to_status} ({self.actor})'


class DeliveryProof(models.Model):
    """Ссылка на фото/видео доставки; сами файлы лежат во внешнем хранилище."""
    donation = models.ForeignKey(Donation, on_delete=models.CASCADE, related_name='proofs')
    file_path = models.CharField(max_length=500)
    content_type = models.CharField(max_length=100, blank=True)
    uploaded_by = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']
        verbose_name = 'Подтверждение доставки'
        verbose_name_plural = 'Подтверждения доставки'

    def __str__(self):
        return self.file_path
