from pathlib import Path
import os
import django
from dotenv import load_dotenv

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent


# === env ===
load_dotenv(BASE_DIR / ".env")
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key")
DEBUG = os.getenv("DEBUG", "True") == "True"
ALLOWED_HOSTS = os.getenv("ALLOWED_HOSTS", "127.0.0.1,localhost").split(",")


# Application definition

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'projects',
    'donations.apps.DonationsConfig', # подключаем через apps.py для уведомлений
    'payments',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'config.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [BASE_DIR / 'templates'],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'config.wsgi.application'


# Database
# https://docs.djangoproject.com/en/5.2/ref/settings/#databases

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': BASE_DIR / 'db.sqlite3',
        # сколько секунд ждать блокировку записи
        'OPTIONS': {'timeout': int(os.getenv('DB_LOCK_TIMEOUT', '20'))},
        # тестовая база в памяти блокирует таблицы без ожидания, параллельным тестам нужен файл
        'TEST': {'NAME': str(BASE_DIR / 'test_db.sqlite3')},
    }
}
# транзакция сразу берёт блокировку записи (BEGIN IMMEDIATE)
if django.VERSION >= (5, 1):
    DATABASES['default']['OPTIONS']['transaction_mode'] = 'IMMEDIATE'


# Password validation
# https://docs.djangoproject.com/en/5.2/ref/settings/#auth-password-validators

AUTH_PASSWORD_VALIDATORS = [
    {
        'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator',
    },
]


# Internationalization
# https://docs.djangoproject.com/en/5.2/topics/i18n/

LANGUAGE_CODE = 'ru-ru'
TIME_ZONE = 'Europe/Moscow'
USE_I18N = True
USE_TZ = True

# --- Данные сайта для писем и ссылок возврата ---
SITE_NAME = os.getenv('SITE_NAME', 'Aid Donations')
SITE_URL = os.getenv('SITE_URL', 'http://localhost:8000')

# --- Пожертвования ---
DONATIONS_MAX_UNITS_PER_ORDER = int(os.getenv('DONATIONS_MAX_UNITS_PER_ORDER', '10'))
DONATIONS_MAX_AMOUNT_PER_ORDER = os.getenv('DONATIONS_MAX_AMOUNT_PER_ORDER', '10000')
DONATIONS_CURRENCY = os.getenv('DONATIONS_CURRENCY', 'USD')
# проект, на который уходят чаевые; без него чаевые не принимаются
DONATIONS_TIP_PROJECT_ID = int(os.getenv('DONATIONS_TIP_PROJECT_ID')) if os.getenv('DONATIONS_TIP_PROJECT_ID') else None
DONATIONS_PROOF_STORE = os.getenv('DONATIONS_PROOF_STORE', 'donations.proofs.ModelProofStore')

# --- Платёжные провайдеры ---
PAYMENT_PROVIDERS = {
    'card': 'payments.providers.yookassa.YooKassaProvider',
    'crypto': 'payments.providers.nowpayments.NowPaymentsProvider',
}
PAYMENT_PROVIDER_TIMEOUT = float(os.getenv('PAYMENT_PROVIDER_TIMEOUT', '10'))
PAYMENT_PROVIDER_RETRIES = int(os.getenv('PAYMENT_PROVIDER_RETRIES', '3'))
PAYMENT_PROVIDER_RETRY_WAIT = float(os.getenv('PAYMENT_PROVIDER_RETRY_WAIT', '0.5'))

# ЮKassa
YOO_KASSA_SHOP_ID = os.getenv('YOO_KASSA_SHOP_ID', '')
YOO_KASSA_SECRET_KEY = os.getenv('YOO_KASSA_SECRET_KEY', '')
YOO_KASSA_RETURN_URL = os.getenv('YOO_KASSA_RETURN_URL', f'{SITE_URL}/')
YOO_KASSA_SKIP_WEBHOOK_AUTH = os.getenv('YOO_KASSA_SKIP_WEBHOOK_AUTH', 'false').lower() == 'true'

# NOWPayments
NOWPAYMENTS_API_KEY = os.getenv('NOWPAYMENTS_API_KEY', '')
NOWPAYMENTS_IPN_SECRET = os.getenv('NOWPAYMENTS_IPN_SECRET', '')
NOWPAYMENTS_API_BASE = os.getenv('NOWPAYMENTS_API_BASE', 'https://api.nowpayments.io/v1')
NOWPAYMENTS_OUTCOME_WALLET = os.getenv('NOWPAYMENTS_OUTCOME_WALLET', 'usdttrc20')
NOWPAYMENTS_IPN_URL = os.getenv('NOWPAYMENTS_IPN_URL', f'{SITE_URL}/payments/webhook/crypto/')

# --- Email backend ---
EMAIL_BACKEND = os.getenv('EMAIL_BACKEND', "django.core.mail.backends.smtp.EmailBackend")

# SMTP (Яндекс), SSL на порту 465
EMAIL_HOST = os.getenv('EMAIL_HOST', 'smtp.yandex.ru')
EMAIL_PORT = int(os.getenv('EMAIL_PORT', '465'))
EMAIL_HOST_USER = os.getenv('EMAIL_HOST_USER', '')
EMAIL_HOST_PASSWORD = os.getenv('EMAIL_HOST_PASSWORD', '')
EMAIL_USE_SSL = os.getenv('EMAIL_USE_SSL', 'true').lower() == 'true'
EMAIL_USE_TLS = os.getenv('EMAIL_USE_TLS', 'false').lower() == 'true'  # для 587 ставьте true, а SSL -> false

DEFAULT_FROM_EMAIL = os.getenv('DEFAULT_FROM_EMAIL', EMAIL_HOST_USER or 'noreply@localhost')
SERVER_EMAIL = os.getenv('SERVER_EMAIL', DEFAULT_FROM_EMAIL)

# --- Логирование ---
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'handlers': {'console': {'class': 'logging.StreamHandler'}},
    'loggers': {
        # переходы статусов, оформление, возвраты
        'donations': {'handlers': ['console'], 'level': 'INFO'},
        # провайдеры и вебхуки
        'payments': {'handlers': ['console'], 'level': 'INFO'},
        # наш явный логгер для писем
        'mail': {'handlers': ['console'], 'level': 'INFO'},
    },
}


# Static files (CSS, JavaScript, Images)
# https://docs.djangoproject.com/en/5.2/howto/static-files/

STATIC_URL = 'static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'    # для collectstatic на проде
# Default primary key field type
# https://docs.djangoproject.com/en/5.2/ref/settings/#default-auto-field

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# === Вход для сотрудников через админку ===
LOGIN_URL = 'admin:login'
