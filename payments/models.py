from django.db import models


class PaymentTransaction(models.Model):
    class Kind(models.TextChoices):
        PAYMENT = 'payment', 'Платёж'
        REFUND = 'refund', 'Возврат'

    provider = models.CharField(max_length=20, default='yookassa', db_index=True)
    kind = models.CharField(max_length=10, choices=Kind.choices, default=Kind.PAYMENT)
    order_reference = models.CharField(max_length=64, db_index=True)
    payment_id = models.CharField(max_length=64, db_index=True)
    status = models.CharField(max_length=32, db_index=True)  # статус на стороне провайдера
    amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    currency = models.CharField(max_length=8, blank=True)
    payload = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']
        unique_together = [('provider', 'kind', 'payment_id')]
        verbose_name = 'Транзакция'
        verbose_name_plural = 'Транзакции'

    def __str__(self):
        return f'{self.provider}:{self.payment_id} -> {self.status}'


class ProcessedCallback(models.Model):
    """Уже обработанный вебхук; повтор с тем же ключом возвращает сохранённый результат."""
    provider = models.CharField(max_length=20)
    idempotency_key = models.CharField(max_length=128)
    order_reference = models.CharField(max_length=64, db_index=True)
    kind = models.CharField(max_length=10, choices=PaymentTransaction.Kind.choices)
    provider_status = models.CharField(max_length=32, blank=True)
    # итоговые статусы пожертвований заказа на момент обработки
    outcome_status = models.CharField(max_length=20, blank=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    currency = models.CharField(max_length=8, blank=True)
    applied_count = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']
        unique_together = [('provider', 'idempotency_key')]
        verbose_name = 'Обработанный вебхук'
        verbose_name_plural = 'Обработанные вебхуки'

    def __str__(self):
        return f'{self.provider}:{self.idempotency_key}'
