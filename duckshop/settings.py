"""
Django settings for the duckshop project.

Every deployment-specific value is read from the environment. Defaults are
suitable for local development and the test suite (SQLite, eager Celery,
no chat or payment credentials).
"""

import os
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "insecure-development-key")
DEBUG = env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = os.environ.get("DJANGO_ALLOWED_HOSTS", "*").split(",")

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "shop",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "shop.middleware.RequestResponseLoggingMiddleware",
]

ROOT_URLCONF = "duckshop.urls"
WSGI_APPLICATION = "duckshop.wsgi.application"

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
    },
]

# PostgreSQL in deployment (row-level locks are real there); SQLite otherwise.
if os.environ.get("POSTGRES_DB"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.environ["POSTGRES_DB"],
            "USER": os.environ.get("POSTGRES_USER", "postgres"),
            "PASSWORD": os.environ.get("POSTGRES_PASSWORD", ""),
            "HOST": os.environ.get("POSTGRES_HOST", "localhost"),
            "PORT": os.environ.get("POSTGRES_PORT", "5432"),
            "CONN_MAX_AGE": int(os.environ.get("POSTGRES_CONN_MAX_AGE", "60")),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.environ.get("TIME_ZONE", "Europe/Moscow")
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_PERMISSION_CLASSES": ["rest_framework.permissions.AllowAny"],
    "UNAUTHENTICATED_USER": None,
}

# ------------------------------------------------------------
# Celery
# ------------------------------------------------------------

CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "")
CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND") or None
# Without a broker every task runs inline in the calling process.
CELERY_TASK_ALWAYS_EAGER = env_bool(
    "CELERY_TASK_ALWAYS_EAGER", default=not CELERY_BROKER_URL
)
CELERY_TASK_ACKS_LATE = True
CELERY_TIMEZONE = TIME_ZONE
CELERY_BEAT_SCHEDULE = {
    "purge-expired-operator-sessions": {
        "task": "shop.tasks.purge_expired_operator_sessions",
        "schedule": timedelta(minutes=5),
    },
}

# ------------------------------------------------------------
# Payment gateway
# ------------------------------------------------------------

PAYMENT_GATEWAY_URL = os.environ.get(
    "PAYMENT_GATEWAY_URL", "https://paymentgate.bilee.ru/api"
)
PAYMENT_SHOP_ID = int(os.environ.get("PAYMENT_SHOP_ID", "0"))
PAYMENT_PASSWORD = os.environ.get("PAYMENT_PASSWORD", "")
PAYMENT_TIMEOUT = int(os.environ.get("PAYMENT_TIMEOUT", "10"))
PAYMENT_EXPIRY = timedelta(hours=24)
SERVER_URL = os.environ.get("SERVER_URL", "http://localhost:8000")
SITE_URL = os.environ.get("SITE_URL", "http://localhost:8080")

# ------------------------------------------------------------
# Chat platform (Telegram Bot API)
# ------------------------------------------------------------

TELEGRAM_API_URL = os.environ.get("TELEGRAM_API_URL", "https://api.telegram.org")
TELEGRAM_TIMEOUT = int(os.environ.get("TELEGRAM_TIMEOUT", "10"))
OPERATOR_BOT_TOKEN = os.environ.get("OPERATOR_BOT_TOKEN", "")
CUSTOMER_BOT_TOKEN = os.environ.get("CUSTOMER_BOT_TOKEN", "")
OPERATOR_CHAT_ID = int(os.environ.get("OPERATOR_CHAT_ID", "0"))
TELEGRAM_WEBHOOK_SECRET = os.environ.get("TELEGRAM_WEBHOOK_SECRET", "")

# ------------------------------------------------------------
# Shop rules
# ------------------------------------------------------------

OPERATOR_API_TOKEN = os.environ.get("OPERATOR_API_TOKEN", "")
OPERATOR_SESSION_TTL = int(os.environ.get("OPERATOR_SESSION_TTL", "600"))
MAX_WRONG_CODE_ATTEMPTS = int(os.environ.get("MAX_WRONG_CODE_ATTEMPTS", "2"))
WALLET_EXCHANGE_RATE = Decimal(os.environ.get("WALLET_EXCHANGE_RATE", "1"))

# ------------------------------------------------------------
# Logging
# ------------------------------------------------------------

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
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
        "level": LOG_LEVEL,
    },
    "loggers": {
        "django.db.backends": {
            "level": "WARNING",
        },
        "celery": {
            "level": LOG_LEVEL,
        },
    },
}
