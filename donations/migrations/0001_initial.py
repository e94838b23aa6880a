import django.db.models.deletion
from django.db import migrations, models


STATUS_CHOICES = [
    ('pending', 'Ожидает оплаты'),
    ('paid', 'Оплачено'),
    ('confirmed', 'Подтверждено'),
    ('delivering', 'Доставляется'),
    ('completed', 'Доставлено'),
    ('refunding', 'Запрошен возврат'),
    ('refund_processing', 'Возврат обрабатывается'),
    ('refunded', 'Возвращено'),
    ('failed', 'Оплата не прошла'),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('projects', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='Donation',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('donation_public_id', models.CharField(db_index=True, max_length=32, unique=True)),
                ('order_reference', models.CharField(db_index=True, max_length=64)),
                ('quantity', models.PositiveIntegerField(default=1)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('currency', models.CharField(default='USD', max_length=8)),
                ('is_tip', models.BooleanField(default=False)),
                ('donor_name', models.CharField(blank=True, max_length=255)),
                ('donor_email', models.EmailField(db_index=True, max_length=254)),
                ('donor_message', models.TextField(blank=True)),
                ('payment_method', models.CharField(choices=[('card', 'Банковская карта'), ('crypto', 'Криптовалюта')], default='card', max_length=16)),
                ('donation_status', models.CharField(choices=STATUS_CHOICES, db_index=True, default='pending', max_length=20)),
                ('donated_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('project', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='donations', to='projects.project')),
            ],
            options={
                'verbose_name': 'Пожертвование',
                'verbose_name_plural': 'Пожертвования',
                'ordering': ['-donated_at', '-id'],
                'indexes': [models.Index(fields=['order_reference', 'donation_status'], name='donation_order_status_idx')],
            },
        ),
        migrations.CreateModel(
            name='StatusHistory',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('from_status', models.CharField(choices=STATUS_CHOICES, max_length=20)),
                ('to_status', models.CharField(choices=STATUS_CHOICES, max_length=20)),
                ('actor', models.CharField(choices=[('system', 'Система'), ('staff', 'Сотрудник'), ('donor', 'Донор')], max_length=10)),
                ('actor_identity', models.CharField(blank=True, max_length=255)),
                ('note', models.CharField(blank=True, max_length=255)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('donation', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='history', to='donations.donation')),
            ],
            options={
                'verbose_name': 'Смена статуса',
                'verbose_name_plural': 'История статусов',
                'ordering': ['created_at', 'id'],
            },
        ),
        migrations.CreateModel(
            name='DeliveryProof',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('file_path', models.CharField(max_length=500)),
                ('content_type', models.CharField(blank=True, max_length=100)),
                ('uploaded_by', models.CharField(blank=True, max_length=255)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('donation', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='proofs', to='donations.donation')),
            ],
            options={
                'verbose_name': 'Подтверждение доставки',
                'verbose_name_plural': 'Подтверждения доставки',
                'ordering': ['-created_at'],
            },
        ),
    ]
