from decimal import Decimal

import django.core.validators
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Project',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=255, verbose_name='Название')),
                ('slug', models.SlugField(max_length=140, unique=True, verbose_name='Слаг')),
                ('location', models.CharField(blank=True, max_length=255, verbose_name='Локация')),
                ('unit_name', models.CharField(blank=True, default='kit', max_length=50, verbose_name='Единица помощи')),
                ('unit_price', models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True, validators=[django.core.validators.MinValueValidator(Decimal('0.01'))], verbose_name='Цена единицы')),
                ('aggregate_donations', models.BooleanField(default=False, verbose_name='Свободная сумма')),
                ('is_long_term', models.BooleanField(default=False, verbose_name='Долгосрочный')),
                ('target_units', models.PositiveIntegerField(blank=True, null=True, verbose_name='Цель, единиц')),
                ('target_amount', models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True, verbose_name='Цель, сумма')),
                ('current_units', models.PositiveIntegerField(default=0, verbose_name='Собрано единиц')),
                ('current_amount', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12, verbose_name='Собрано')),
                ('reserved_units', models.PositiveIntegerField(default=0, verbose_name='В резерве, единиц')),
                ('reserved_amount', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12, verbose_name='В резерве, сумма')),
                ('ledger_version', models.PositiveIntegerField(default=0, editable=False, verbose_name='Версия счётчиков')),
                ('status', models.CharField(choices=[('planned', 'Запланирован'), ('active', 'Идёт сбор'), ('completed', 'Завершён'), ('paused', 'Приостановлен')], db_index=True, default='planned', max_length=20, verbose_name='Статус')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='Создан')),
                ('updated_at', models.DateTimeField(auto_now=True, verbose_name='Обновлён')),
            ],
            options={
                'verbose_name': 'Проект',
                'verbose_name_plural': 'Проекты',
                'ordering': ['-created_at'],
            },
        ),
    ]
