from dotenv import load_dotenv
load_dotenv()

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent.parent

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-change-me")
DEBUG = os.getenv("DJANGO_DEBUG", "false").lower() in ("1", "true", "yes")
ALLOWED_HOSTS = [h.strip() for h in os.getenv("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1").split(",") if h.strip()]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "purchases",
    "payments",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "walletpay.urls"
WSGI_APPLICATION = "walletpay.wsgi.application"

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

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.getenv("SQLITE_PATH", str(BASE_DIR / "db.sqlite3")),
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = "Asia/Kathmandu"
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"

# ---------- Email ----------
EMAIL_BACKEND = os.getenv("EMAIL_BACKEND", "django.core.mail.backends.console.EmailBackend")
DEFAULT_FROM_EMAIL = os.getenv("DEFAULT_FROM_EMAIL", "payments@localhost")
EMAIL_FAIL_SILENTLY = os.getenv("EMAIL_FAIL_SILENTLY", "true").lower() in ("1", "true", "yes")
PAYMENTS_ADMIN_EMAILS = os.getenv("PAYMENTS_ADMIN_EMAILS", "")

# ---------- Khalti ePayment ----------
KHALTI_BASE_URLS = {
    "sandbox": "https://dev.khalti.com/api/v2",
    "production": "https://khalti.com/api/v2",
}
KHALTI_ENV = os.getenv("KHALTI_ENV", "sandbox").lower()

KHALTI = {
    "BASE_URL": os.getenv("KHALTI_BASE_URL") or KHALTI_BASE_URLS.get(KHALTI_ENV, KHALTI_BASE_URLS["sandbox"]),
    "SECRET_KEY": os.getenv("KHALTI_SECRET_KEY", ""),
    "WEBSITE_URL": os.getenv("KHALTI_WEBSITE_URL", "http://localhost:8000"),
    "CALLBACK_BASE_URL": os.getenv("PAYMENTS_CALLBACK_BASE_URL", "http://localhost:8000"),
    "TIMEOUT": float(os.getenv("KHALTI_TIMEOUT", "15")),
    "LOOKUP_ON_CALLBACK": os.getenv("KHALTI_LOOKUP_ON_CALLBACK", "false").lower() in ("1", "true", "yes"),
}

# Presentation pages live outside this service
PAYMENTS_SUCCESS_URL = os.getenv("PAYMENTS_SUCCESS_URL", "/payment/success/")
PAYMENTS_FAILURE_URL = os.getenv("PAYMENTS_FAILURE_URL", "/payment/failure/")

# ---------- Logging ----------
PAYMENTS_LOG_LEVEL = os.getenv("PAYMENTS_LOG_LEVEL", "INFO").upper()

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "root": {"handlers": ["console"], "level": "WARNING"},
    "loggers": {
        "payments": {"handlers": ["console"], "level": PAYMENTS_LOG_LEVEL, "propagate": False},
        "purchases": {"handlers": ["console"], "level": PAYMENTS_LOG_LEVEL, "propagate": False},
    },
}
