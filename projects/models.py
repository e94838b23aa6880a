from decimal import Decimal

from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.utils.text import slugify


# генерация уникального слага
def generate_unique_slug(instance, value, slug_field_name: str = 'slug', max_len: int = 60) -> str:
    base = slugify(value) or 'project'
    base = base[:max_len]
    slug = base
    Model = instance.__class__
    n = 2
    while Model.objects.filter(**{slug_field_name: slug}).exclude(pk=instance.pk).exists():
        suffix = f'-{n}'
        slug = (base[:max_len - len(suffix)] + suffix)
        n += 1
    return slug


# проекты гуманитарной помощи
class Project(models.Model):
    class Status(models.TextChoices):
        PLANNED = 'planned', 'Запланирован'
        ACTIVE = 'active', 'Идёт сбор'
        COMPLETED = 'completed', 'Завершён'
        PAUSED = 'paused', 'Приостановлен'

    name = models.CharField('Название', max_length=255)
    slug = models.SlugField('Слаг', max_length=140, unique=True)
    location = models.CharField('Локация', max_length=255, blank=True)
    unit_name = models.CharField('Единица помощи', max_length=50, blank=True, default='kit')

    # Цена единицы; пусто для проектов со свободной суммой
    unit_price = models.DecimalField(
        'Цена единицы', max_digits=12, decimal_places=2,
        blank=True, null=True, validators=[MinValueValidator(Decimal('0.01'))],
    )
    # true = донор жертвует произвольную сумму, а не покупает единицы
    aggregate_donations = models.BooleanField('Свободная сумма', default=False)
    # долгосрочный проект: цели нет, ограничены только лимиты заказа
    is_long_term = models.BooleanField('Долгосрочный', default=False)

    target_units = models.PositiveIntegerField('Цель, единиц', blank=True, null=True)
    target_amount = models.DecimalField('Цель, сумма', max_digits=12, decimal_places=2, blank=True, null=True)

    # Подтверждённые (оплаченные) пожертвования
    current_units = models.PositiveIntegerField('Собрано единиц', default=0)
    current_amount = models.DecimalField('Собрано', max_digits=12, decimal_places=2, default=Decimal('0.00'))
    # Резерв под ожидающие оплаты пожертвования
    reserved_units = models.PositiveIntegerField('В резерве, единиц', default=0)
    reserved_amount = models.DecimalField('В резерве, сумма', max_digits=12, decimal_places=2, default=Decimal('0.00'))
    # растёт при каждом изменении счётчиков (compare-and-swap в projects.services)
    ledger_version = models.PositiveIntegerField('Версия счётчиков', default=0, editable=False)

    status = models.CharField('Статус', max_length=20, choices=Status.choices, default=Status.PLANNED, db_index=True)

    created_at = models.DateTimeField('Создан', auto_now_add=True)
    updated_at = models.DateTimeField('Обновлён', auto_now=True)

    class Meta:
        ordering = ['-created_at']
        verbose_name = 'Проект'
        verbose_name_plural = 'Проекты'

    def __str__(self):
        return self.name

    def clean(self):
        if not self.aggregate_donations and self.unit_price is None:
            raise ValidationError({'unit_price': "Для проекта с единицами нужна цена единицы."})
        if self.is_long_term:
            return
        if self.aggregate_donations and self.target_amount is None:
            raise ValidationError({'target_amount': "Укажите целевую сумму или отметьте проект долгосрочным."})
        if not self.aggregate_donations and self.target_units is None:
            raise ValidationError({'target_units': "Укажите цель в единицах или отметьте проект долгосрочным."})

    def save(self, *args, **kwargs):
        if not self.slug:
            self.slug = generate_unique_slug(self, self.name, max_len=140)
        super().save(*args, **kwargs)

    @property
    def has_target(self) -> bool:
        if self.is_long_term:
            return False
        if self.aggregate_donations:
            return self.target_amount is not None
        return self.target_units is not None

    @property
    def remaining_units(self):
        # None = без ограничения
        if not self.has_target or self.aggregate_donations:
            return None
        return max((self.target_units or 0) - (self.current_units or 0) - (self.reserved_units or 0), 0)

    @property
    def remaining_amount(self):
        if not self.has_target or not self.aggregate_donations:
            return None
        rest = (self.target_amount or 0) - (self.current_amount or 0) - (self.reserved_amount or 0)
        return max(Decimal(rest), Decimal('0.00'))

    @property
    def remaining(self):
        """Остаток ёмкости в единицах проекта (штуки или деньги)."""
        if self.aggregate_donations:
            return self.remaining_amount
        return self.remaining_units
