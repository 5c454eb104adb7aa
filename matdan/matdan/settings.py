"""
Django settings for the matdan online-voting project.

Environment is read through python-decouple; a `.env` file or real
environment variables both work. Production points DATABASE_URL at
PostgreSQL, development falls back to SQLite.
"""

import os
from pathlib import Path

import dj_database_url
from decouple import Csv, config

BASE_DIR = Path(__file__).resolve().parent.parent

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = config("SECRET_KEY", default="django-insecure-dev-key-change-in-production")

DEBUG = config("DEBUG", default=False, cast=bool)

ALLOWED_HOSTS = config("ALLOWED_HOSTS", default="localhost,127.0.0.1", cast=Csv())

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "rest_framework.authtoken",
    "django_filters",
    "accounts",
    "audit",
    "elections",
    "otp",
    "voting",
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

ROOT_URLCONF = "matdan.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "matdan.wsgi.application"

# Database
# Production: PostgreSQL via DATABASE_URL. Development: SQLite.
DATABASE_URL = config("DATABASE_URL", default="")

if DATABASE_URL:
    DATABASES = {
        "default": dj_database_url.config(
            default=DATABASE_URL,
            conn_max_age=600,
            conn_health_checks=True,
        )
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.path.join(BASE_DIR, "db.sqlite3"),
        }
    }

AUTH_USER_MODEL = "accounts.User"

AUTH_PASSWORD_VALIDATORS = [
    {"NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"},
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
    {"NAME": "django.contrib.auth.password_validation.CommonPasswordValidator"},
    {"NAME": "django.contrib.auth.password_validation.NumericPasswordValidator"},
]

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"
STATIC_ROOT = os.path.join(BASE_DIR, "staticfiles")

MEDIA_URL = "/media/"
MEDIA_ROOT = os.path.join(BASE_DIR, "media")

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.TokenAuthentication",
        "rest_framework.authentication.SessionAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_FILTER_BACKENDS": [
        "django_filters.rest_framework.DjangoFilterBackend",
    ],
}

# Results are cached and invalidated on every vote. Multi-instance deployments
# need a shared backend, e.g. CACHE_BACKEND=django.core.cache.backends.db.DatabaseCache
# with CACHE_LOCATION=matdan_cache (then `manage.py createcachetable`).
CACHES = {
    "default": {
        "BACKEND": config("CACHE_BACKEND", default="django.core.cache.backends.locmem.LocMemCache"),
        "LOCATION": config("CACHE_LOCATION", default=""),
    }
}

# Only enable behind a reverse proxy that overwrites X-Forwarded-For.
AUDIT_TRUST_X_FORWARDED_FOR = config("AUDIT_TRUST_X_FORWARDED_FOR", default=False, cast=bool)

# One-time passcode issuance and verification
OTP_CONFIG = {
    "CODE_TTL_SECONDS": config("OTP_CODE_TTL_SECONDS", default=300, cast=int),
    "MAX_ATTEMPTS": config("OTP_MAX_ATTEMPTS", default=3, cast=int),
    "RATE_LIMIT_COUNT": config("OTP_RATE_LIMIT_COUNT", default=5, cast=int),
    "RATE_LIMIT_WINDOW_SECONDS": config("OTP_RATE_LIMIT_WINDOW_SECONDS", default=3600, cast=int),
    "HASH_SECRET": config("OTP_HASH_SECRET", default=SECRET_KEY),
}

# Outbound messaging providers used to deliver passcodes
MESSAGING_CONFIG = {
    "SENDGRID_API_URL": config("SENDGRID_API_URL", default="https://api.sendgrid.com/v3/mail/send"),
    "SENDGRID_API_KEY": config("SENDGRID_API_KEY", default=""),
    "SENDGRID_FROM_EMAIL": config("SENDGRID_FROM_EMAIL", default=""),
    "SENDGRID_FROM_NAME": config("SENDGRID_FROM_NAME", default="Voting System"),
    "TWILIO_API_URL": config("TWILIO_API_URL", default="https://api.twilio.com/2010-04-01"),
    "TWILIO_ACCOUNT_SID": config("TWILIO_ACCOUNT_SID", default=""),
    "TWILIO_AUTH_TOKEN": config("TWILIO_AUTH_TOKEN", default=""),
    "TWILIO_PHONE_NUMBER": config("TWILIO_PHONE_NUMBER", default=""),
    "TIMEOUT_SECONDS": config("MESSAGING_TIMEOUT_SECONDS", default=10, cast=int),
}

VOTING_CONFIG = {
    "BALLOT_TOKEN_PREFIX": "VT-",
    "BALLOT_TOKEN_LENGTH": 12,
    "BALLOT_TOKEN_MAX_ATTEMPTS": config("BALLOT_TOKEN_MAX_ATTEMPTS", default=3, cast=int),
    "RESULTS_CACHE_TIMEOUT": config("RESULTS_CACHE_TIMEOUT", default=300, cast=int),
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "[{levelname}] {asctime} {name} - {message}",
            "style": "{",
        },
        "simple": {
            "format": "{levelname} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "level": "DEBUG" if DEBUG else "INFO",
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
            "level": "INFO",
            "propagate": False,
        },
        "accounts": {"handlers": ["console"], "level": "INFO", "propagate": False},
        "audit": {"handlers": ["console"], "level": "INFO", "propagate": False},
        "elections": {"handlers": ["console"], "level": "INFO", "propagate": False},
        "otp": {"handlers": ["console"], "level": "DEBUG" if DEBUG else "INFO", "propagate": False},
        "voting": {"handlers": ["console"], "level": "DEBUG" if DEBUG else "INFO", "propagate": False},
    },
}
