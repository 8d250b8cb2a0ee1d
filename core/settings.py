"""
Django settings for the HIS -> insurance authority queue bridge.

Every value can be overridden from the environment so the same module serves
local development, CI and production.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_list(name, default=''):
    return [item.strip() for item in os.environ.get(name, default).split(',') if item.strip()]


SECRET_KEY = os.environ.get('SECRET_KEY', 'django-insecure-qsync-development-key')
DEBUG = _env_bool('DEBUG', False)
ALLOWED_HOSTS = _env_list('ALLOWED_HOSTS', 'localhost,127.0.0.1')

# Fernet key for the encrypted authority credentials on AuthorityConfig
FIELD_ENCRYPTION_KEY = os.environ.get('FIELD_ENCRYPTION_KEY', 'cXN5bmMtZGV2ZWxvcG1lbnQtZmVybmV0LWtleS0zMmI=')

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'encrypted_model_fields',
    'Qsync',
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

ROOT_URLCONF = 'core.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
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

# ============================================================================
# DATABASES
# ============================================================================
# 'default' holds the bridge state (visits, watermarks, queue).
# 'his' is the legacy hospital information system, read-only.

DATABASES = {
    'default': {
        'ENGINE': os.environ.get('DB_ENGINE', 'django.db.backends.sqlite3'),
        'NAME': os.environ.get('DB_NAME', str(BASE_DIR / 'db.sqlite3')),
        'USER': os.environ.get('DB_USER', ''),
        'PASSWORD': os.environ.get('DB_PASSWORD', ''),
        'HOST': os.environ.get('DB_HOST', ''),
        'PORT': os.environ.get('DB_PORT', ''),
    },
    'his': {
        'ENGINE': os.environ.get('HIS_DB_ENGINE', 'django.db.backends.sqlite3'),
        'NAME': os.environ.get('HIS_DB_NAME', str(BASE_DIR / 'his.sqlite3')),
        'USER': os.environ.get('HIS_DB_USER', ''),
        'PASSWORD': os.environ.get('HIS_DB_PASSWORD', ''),
        'HOST': os.environ.get('HIS_DB_HOST', ''),
        'PORT': os.environ.get('HIS_DB_PORT', ''),
    },
}

DATABASE_ROUTERS = ['Qsync.routers.HisRouter']
HIS_DATABASE_ALIAS = 'his'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# ============================================================================
# CACHES
# ============================================================================
# The 'qsync' alias holds refresh locks and single-flight claims. It must be
# shared by every worker process, so it lives in Redis next to the broker.

REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379/0')

CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'default',
    },
    'qsync': {
        'BACKEND': os.environ.get('QSYNC_CACHE_BACKEND', 'django.core.cache.backends.redis.RedisCache'),
        'LOCATION': os.environ.get('QSYNC_CACHE_LOCATION', REDIS_URL),
        'KEY_PREFIX': 'qsync',
    },
}

# ============================================================================
# INTERNATIONALIZATION
# ============================================================================
# The HIS stores wall-clock local time; keep it naive end to end.

LANGUAGE_CODE = 'en-us'
TIME_ZONE = os.environ.get('TIME_ZONE', 'Asia/Jakarta')
USE_I18N = True
USE_TZ = False

STATIC_URL = 'static/'
STATIC_ROOT = os.environ.get('STATIC_ROOT', str(BASE_DIR / 'staticfiles'))

# ============================================================================
# CELERY
# ============================================================================

CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', REDIS_URL)
CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', CELERY_BROKER_URL)
CELERY_TASK_ALWAYS_EAGER = _env_bool('CELERY_TASK_ALWAYS_EAGER', False)
CELERY_TASK_SERIALIZER = 'json'
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TIMEZONE = TIME_ZONE

# ============================================================================
# INSURANCE AUTHORITY API
# ============================================================================

AUTHORITY_BASE_URL = os.environ.get('AUTHORITY_BASE_URL', 'https://apijkn.bpjs-kesehatan.go.id/antreanrs')
AUTHORITY_CONS_ID = os.environ.get('AUTHORITY_CONS_ID', '')
AUTHORITY_SECRET_KEY = os.environ.get('AUTHORITY_SECRET_KEY', '')
AUTHORITY_USER_KEY = os.environ.get('AUTHORITY_USER_KEY', '')
AUTHORITY_TIMEOUT = int(os.environ.get('AUTHORITY_TIMEOUT', '10'))

# ============================================================================
# QSYNC PIPELINE
# ============================================================================

QSYNC_POLL_BATCH_SIZE = int(os.environ.get('QSYNC_POLL_BATCH_SIZE', '100'))
QSYNC_INITIAL_CURSOR = os.environ.get('QSYNC_INITIAL_CURSOR', '2000-01-01 00:00:00')
QSYNC_INSURED_PAYER_CODE = os.environ.get('QSYNC_INSURED_PAYER_CODE', 'BPJ')

QSYNC_DISPATCH_MAX_RETRY = int(os.environ.get('QSYNC_DISPATCH_MAX_RETRY', '5'))
QSYNC_DISPATCH_CLAIM_SECONDS = int(os.environ.get('QSYNC_DISPATCH_CLAIM_SECONDS', '120'))
QSYNC_QUEUE_BUILD_LIMIT = int(os.environ.get('QSYNC_QUEUE_BUILD_LIMIT', '100'))
QSYNC_QUEUE_LOOKBACK_DAYS = int(os.environ.get('QSYNC_QUEUE_LOOKBACK_DAYS', '7'))

QSYNC_REFRESH_LOCK_TTL = int(os.environ.get('QSYNC_REFRESH_LOCK_TTL', '300'))
QSYNC_CIRCUIT_OPEN_SECONDS = int(os.environ.get('QSYNC_CIRCUIT_OPEN_SECONDS', '600'))
QSYNC_REFRESH_WAIT_SECONDS = float(os.environ.get('QSYNC_REFRESH_WAIT_SECONDS', '3'))
QSYNC_REFRESH_POLL_INTERVAL = float(os.environ.get('QSYNC_REFRESH_POLL_INTERVAL', '0.1'))
QSYNC_FALLBACK_WINDOW_DAYS = int(os.environ.get('QSYNC_FALLBACK_WINDOW_DAYS', '7'))
QSYNC_REFRESH_CLINICS = _env_list(
    'QSYNC_REFRESH_CLINICS', 'ANA,BED,INT,MAT,OBG,ORT,THT,PD,JAN,KLT,SAR,JIW,GIG'
)

QSYNC_NON_INSURED_QUOTA_RATIO = float(os.environ.get('QSYNC_NON_INSURED_QUOTA_RATIO', '0.3'))
QSYNC_MINUTES_PER_PATIENT = int(os.environ.get('QSYNC_MINUTES_PER_PATIENT', '6'))

QSYNC_RESOLVED_RECHECK_MINUTES = int(os.environ.get('QSYNC_RESOLVED_RECHECK_MINUTES', '10'))
QSYNC_LOG_RETENTION_DAYS = int(os.environ.get('QSYNC_LOG_RETENTION_DAYS', '30'))
QSYNC_TASK_LOCK_TTL = int(os.environ.get('QSYNC_TASK_LOCK_TTL', '600'))

# Dotted path to a callable(encrypted: str, key: str) -> str that turns an
# encrypted authority response body into JSON text. key is
# cons_id + secret_key + request timestamp.
QSYNC_AUTHORITY_RESPONSE_DECODER = os.environ.get('QSYNC_AUTHORITY_RESPONSE_DECODER', '')

# ============================================================================
# LOGGING
# ============================================================================

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {name} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': os.environ.get('LOG_LEVEL', 'INFO'),
    },
    'loggers': {
        'Qsync': {
            'handlers': ['console'],
            'level': os.environ.get('QSYNC_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
    },
}
