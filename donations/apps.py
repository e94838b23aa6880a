from django.apps import AppConfig


class DonationsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'donations'
    verbose_name = 'Пожертвования'

    def ready(self):
        # подключаем получателей уведомлений
        from . import notifications  # noqa: F401
