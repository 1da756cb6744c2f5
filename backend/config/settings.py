"""
Django settings for the Club Billing engine.
"""

import base64
import hashlib
from pathlib import Path

from decouple import config

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = config("DJANGO_SECRET_KEY", default="change-me")
DEBUG = config("DJANGO_DEBUG", cast=bool, default=False)
FRONTEND_BASE_URL = config("FRONTEND_BASE_URL", default="http://localhost:3000")


def split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def derive_fernet_key(secret: str) -> str:
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8")


ALLOWED_HOSTS = split_csv(config("DJANGO_ALLOWED_HOSTS", default="localhost,127.0.0.1,[::1]"))

# Security hardening toggles (set via environment for production).
SECURE_SSL_REDIRECT = config("DJANGO_SECURE_SSL_REDIRECT", cast=bool, default=not DEBUG)
SESSION_COOKIE_SECURE = config("DJANGO_SESSION_COOKIE_SECURE", cast=bool, default=not DEBUG)
CSRF_COOKIE_SECURE = config("DJANGO_CSRF_COOKIE_SECURE", cast=bool, default=not DEBUG)
SECURE_HSTS_SECONDS = config(
    "DJANGO_SECURE_HSTS_SECONDS",
    cast=int,
    default=0 if DEBUG else 31536000,
)
SECURE_CONTENT_TYPE_NOSNIFF = True
X_FRAME_OPTIONS = "DENY"
if config("DJANGO_SECURE_USE_X_FORWARDED_PROTO", cast=bool, default=False):
    SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")


INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "simple_history",
    "rest_framework",
    "rest_framework.authtoken",
    "drf_spectacular",
    "corsheaders",
    "django_filters",
    "accounts.apps.AccountsConfig",
    "clubs",
    "members",
    "billing",
    "subscriptions",
    "workers",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "whitenoise.middleware.WhiteNoiseMiddleware",
    "corsheaders.middleware.CorsMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "simple_history.middleware.HistoryRequestMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "config.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    }
]

WSGI_APPLICATION = "config.wsgi.application"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.postgresql",
        "NAME": config("POSTGRES_DB", default="club_billing"),
        "USER": config("POSTGRES_USER", default="club_billing"),
        "PASSWORD": config("POSTGRES_PASSWORD", default="club_billing"),
        "HOST": config("POSTGRES_HOST", default="db"),
        "PORT": config("POSTGRES_PORT", default=5432, cast=int),
    }
}


AUTH_PASSWORD_VALIDATORS = [
    {"NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"},
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
    {"NAME": "django.contrib.auth.password_validation.CommonPasswordValidator"},
    {"NAME": "django.contrib.auth.password_validation.NumericPasswordValidator"},
]

LANGUAGE_CODE = "en-gb"
TIME_ZONE = config("DJANGO_TIME_ZONE", default="Europe/London")
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"
STORAGES = {
    "default": {
        "BACKEND": "django.core.files.storage.FileSystemStorage",
    },
    "staticfiles": {
        "BACKEND": "whitenoise.storage.CompressedManifestStaticFilesStorage",
    },
}
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

AUTH_USER_MODEL = "accounts.User"

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
        "rest_framework.authentication.TokenAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_FILTER_BACKENDS": [
        "django_filters.rest_framework.DjangoFilterBackend",
    ],
    "DEFAULT_THROTTLE_CLASSES": [
        "rest_framework.throttling.AnonRateThrottle",
        "rest_framework.throttling.UserRateThrottle",
    ],
    "DEFAULT_THROTTLE_RATES": {
        "anon": "100/hour",
        "user": "1000/hour",
    },
    "DEFAULT_SCHEMA_CLASS": "drf_spectacular.openapi.AutoSchema",
    "EXCEPTION_HANDLER": "config.exceptions.billing_exception_handler",
    "COERCE_DECIMAL_TO_STRING": False,
}


API_PAGINATION_DEFAULT_PAGE_SIZE = config("API_PAGINATION_DEFAULT_PAGE_SIZE", cast=int, default=50)
API_PAGINATION_MAX_PAGE_SIZE = config("API_PAGINATION_MAX_PAGE_SIZE", cast=int, default=200)

SPECTACULAR_SETTINGS = {
    "TITLE": "Club Billing API",
    "DESCRIPTION": "Invoices, subscriptions, mandates and provider webhooks for football clubs",
    "VERSION": "0.1.0",
}

CORS_ALLOWED_ORIGINS = split_csv(
    config(
        "CORS_ALLOWED_ORIGINS",
        default="http://localhost:3000,http://127.0.0.1:3000",
    )
)
CSRF_TRUSTED_ORIGINS = split_csv(
    config(
        "CSRF_TRUSTED_ORIGINS",
        default="http://localhost:3000,http://127.0.0.1:3000",
    )
)

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{levelname} {asctime} {name} {process:d} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "INFO",
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": config("DJANGO_LOG_LEVEL", default="INFO"),
            "propagate": False,
        },
        **{
            app_logger: {
                "handlers": ["console"],
                "level": config("APP_LOG_LEVEL", default="DEBUG" if DEBUG else "INFO"),
                "propagate": False,
            }
            for app_logger in ["accounts", "billing", "subscriptions", "workers"]
        },
    },
}

EMAIL_BACKEND = "django.core.mail.backends.console.EmailBackend"
RESEND_API_KEY = config("RESEND_API_KEY", default="")
RESEND_FROM_EMAIL = config("RESEND_FROM_EMAIL", default="billing@club-billing.local")
EMAIL_MAX_RETRIES = config("EMAIL_MAX_RETRIES", cast=int, default=3)
EMAIL_RETRY_BACKOFF_MINUTES = config("EMAIL_RETRY_BACKOFF_MINUTES", cast=int, default=15)
EMAIL_RETRY_BATCH_SIZE = config("EMAIL_RETRY_BATCH_SIZE", cast=int, default=50)

FERNET_KEYS = split_csv(
    config("FERNET_KEYS", default=derive_fernet_key(SECRET_KEY))
)

CELERY_BROKER_URL = config("CELERY_BROKER_URL", default="redis://redis:6379/0")
CELERY_RESULT_BACKEND = config("CELERY_RESULT_BACKEND", default="redis://redis:6379/1")
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_TIMEZONE = TIME_ZONE
CELERY_BEAT_SCHEDULE = {
    "subscription-sync-every-5-minutes": {
        "task": "workers.tasks.run_scheduled_worker",
        "schedule": 60 * 5,
        "args": ("subscription_sync",),
    },
    "notification-retry-every-15-minutes": {
        "task": "workers.tasks.run_scheduled_worker",
        "schedule": 60 * 15,
        "args": ("notification_retry",),
    },
    "mark-overdue-invoices-daily": {
        "task": "billing.tasks.mark_overdue_invoices_daily",
        "schedule": 60 * 60 * 24,
    },
}

BILLING_DEFAULT_CURRENCY = config("BILLING_DEFAULT_CURRENCY", default="GBP")
INVOICE_NUMBER_RETRY_ATTEMPTS = config("INVOICE_NUMBER_RETRY_ATTEMPTS", cast=int, default=3)
INVOICE_NUMBER_RETRY_MIN_DELAY_MS = config(
    "INVOICE_NUMBER_RETRY_MIN_DELAY_MS", cast=int, default=10
)
INVOICE_NUMBER_RETRY_MAX_DELAY_MS = config(
    "INVOICE_NUMBER_RETRY_MAX_DELAY_MS", cast=int, default=60
)
INVOICE_TRANSACTION_TIMEOUT_MS = config("INVOICE_TRANSACTION_TIMEOUT_MS", cast=int, default=5000)

SUBSCRIPTION_MAX_FAILED_PAYMENTS = config("SUBSCRIPTION_MAX_FAILED_PAYMENTS", cast=int, default=3)

WEBHOOK_STATEMENT_TIMEOUT_MS = config("WEBHOOK_STATEMENT_TIMEOUT_MS", cast=int, default=8000)

WORKER_LOCK_STALE_SECONDS = config("WORKER_LOCK_STALE_SECONDS", cast=int, default=60 * 60)
WORKER_HISTORY_DEFAULT_LIMIT = 50
WORKER_HISTORY_MAX_LIMIT = 100

STRIPE_SECRET_KEY = config("STRIPE_SECRET_KEY", default="")
STRIPE_WEBHOOK_SECRET = config("STRIPE_WEBHOOK_SECRET", default="")
STRIPE_API_VERSION = config("STRIPE_API_VERSION", default="2026-01-28.clover")
STRIPE_WEBHOOK_TOLERANCE_SECONDS = config("STRIPE_WEBHOOK_TOLERANCE_SECONDS", cast=int, default=300)
STRIPE_MEMBERSHIP_PRODUCT_ID = config("STRIPE_MEMBERSHIP_PRODUCT_ID", default="")

GOCARDLESS_MODE = config("GOCARDLESS_MODE", default="mock")
GOCARDLESS_ACCESS_TOKEN = config("GOCARDLESS_ACCESS_TOKEN", default="")
GOCARDLESS_WEBHOOK_SECRET = config("GOCARDLESS_WEBHOOK_SECRET", default="")
GOCARDLESS_BASE_URL = config("GOCARDLESS_BASE_URL", default="https://api-sandbox.gocardless.com")
GOCARDLESS_VERSION = config("GOCARDLESS_VERSION", default="2015-07-06")
GOCARDLESS_TIMEOUT_SECONDS = config("GOCARDLESS_TIMEOUT_SECONDS", cast=int, default=15)
