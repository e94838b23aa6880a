from django.db import migrations, models


KIND_CHOICES = [('payment', 'Платёж'), ('refund', 'Возврат')]


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='PaymentTransaction',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('provider', models.CharField(db_index=True, default='yookassa', max_length=20)),
                ('kind', models.CharField(choices=KIND_CHOICES, default='payment', max_length=10)),
                ('order_reference', models.CharField(db_index=True, max_length=64)),
                ('payment_id', models.CharField(db_index=True, max_length=64)),
                ('status', models.CharField(db_index=True, max_length=32)),
                ('amount', models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ('currency', models.CharField(blank=True, max_length=8)),
                ('payload', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Транзакция',
                'verbose_name_plural': 'Транзакции',
                'ordering': ['-created_at'],
                'unique_together': {('provider', 'kind', 'payment_id')},
            },
        ),
        migrations.CreateModel(
            name='ProcessedCallback',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('provider', models.CharField(max_length=20)),
                ('idempotency_key', models.CharField(max_length=128)),
                ('order_reference', models.CharField(db_index=True, max_length=64)),
                ('kind', models.CharField(choices=KIND_CHOICES, max_length=10)),
                ('provider_status', models.CharField(blank=True, max_length=32)),
                ('outcome_status', models.CharField(blank=True, max_length=20)),
                ('amount', models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ('currency', models.CharField(blank=True, max_length=8)),
                ('applied_count', models.PositiveIntegerField(default=0)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'verbose_name': 'Обработанный вебхук',
                'verbose_name_plural': 'Обработанные вебхуки',
                'ordering': ['-created_at'],
                'unique_together': {('provider', 'idempotency_key')},
            },
        ),
    ]
