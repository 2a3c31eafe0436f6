# msp_project/settings.py
from pathlib import Path

from decouple import config

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = config("SECRET_KEY", default="change-me")
DEBUG = config("DEBUG", default=False, cast=bool)
ALLOWED_HOSTS = config(
    "ALLOWED_HOSTS", default="localhost",
    cast=lambda v: [s.strip() for s in v.split(",") if s.strip()],
)

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "billing_core",
]

# Replace built-in user before the first migrate
AUTH_USER_MODEL = "billing_core.User"

DATABASES = {
    "default": {
        "ENGINE": config("DB_ENGINE", default="django.db.backends.postgresql"),
        "NAME": config("DB_NAME", default="msp"),
        "USER": config("DB_USER", default="msp"),
        "PASSWORD": config("DB_PASSWORD", default=""),
        "HOST": config("DB_HOST", default="localhost"),
        "PORT": config("DB_PORT", default="5432"),
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

USE_TZ = True
TIME_ZONE = config("TIME_ZONE", default="UTC")

# Celery
CELERY_BROKER_URL = config("CELERY_BROKER_URL", default="redis://localhost:6379/0")
CELERY_RESULT_BACKEND = config("CELERY_RESULT_BACKEND", default=CELERY_BROKER_URL)
CELERY_TASK_ALWAYS_EAGER = config("CELERY_ALWAYS_EAGER", default=False, cast=bool)
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_TIMEZONE = TIME_ZONE

# Billing defaults
BILLING = {
    # Contract tiers bill the whole volume at one rate ("cliff")
    # or band by band ("graduated") unless the contract says otherwise
    "DEFAULT_TIER_POLICY": config("BILLING_DEFAULT_TIER_POLICY", default="graduated"),
    # Days between invoice date and due date for generated contract invoices,
    # empty means the company's payment_terms_days
    "CONTRACT_INVOICE_TERMS_DAYS": config(
        "BILLING_CONTRACT_TERMS_DAYS", default="",
        cast=lambda v: int(v) if v else None,
    ),
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{levelname} {asctime} {name} {message}",
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
        "billing_core": {
            "handlers": ["console"],
            "level": config("BILLING_LOG_LEVEL", default="INFO"),
            "propagate": False,
        },
    },
}
