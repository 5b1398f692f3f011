"""
Exchange Workflow Module Settings
"""

import os
import sys
from datetime import timedelta
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'exchange-platform-insecure-dev-key')
DEBUG = os.environ.get('DJANGO_DEBUG', 'false').lower() == 'true'
ALLOWED_HOSTS = os.environ.get('DJANGO_ALLOWED_HOSTS', 'localhost').split(',')

TESTING = 'pytest' in sys.modules or 'test' in sys.argv

INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'exchanges',
]

DATABASES = {
    'default': {
        'ENGINE': os.environ.get('DB_ENGINE', 'django.db.backends.sqlite3'),
        'NAME': os.environ.get('DB_NAME', str(BASE_DIR / 'exchange_platform.sqlite3')),
        'USER': os.environ.get('DB_USER', ''),
        'PASSWORD': os.environ.get('DB_PASSWORD', ''),
        'HOST': os.environ.get('DB_HOST', ''),
        'PORT': os.environ.get('DB_PORT', ''),
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'
USE_TZ = True
TIME_ZONE = 'UTC'

# Module configuration
EXCHANGE_WORKFLOW_CONFIG = {
    # Regulatory windows counted from the exchange start date
    "IDENTIFICATION_PERIOD_DAYS": 45,
    "COMPLETION_PERIOD_DAYS": 180,

    # Days before the completion deadline at which an exchange is at risk
    "AT_RISK_WINDOW_DAYS": 30,

    # Reminder lead times, in days before a deadline
    "REMINDER_THRESHOLDS": [30, 14, 7, 1],

    # Deadline scan cadence for celery beat
    "DEADLINE_SCAN_INTERVAL_MINUTES": 5,
}

# Celery
CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', 'redis://localhost:6379/1')
CELERY_TASK_ALWAYS_EAGER = TESTING or os.environ.get('CELERY_TASK_ALWAYS_EAGER', 'false').lower() == 'true'
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_BEAT_SCHEDULE = {
    'scan-exchange-deadlines': {
        'task': 'exchanges.tasks.scan_exchange_deadlines',
        'schedule': timedelta(
            minutes=EXCHANGE_WORKFLOW_CONFIG['DEADLINE_SCAN_INTERVAL_MINUTES']
        ),
    },
}

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
    'loggers': {
        'exchanges': {
            'handlers': ['console'],
            'level': os.environ.get('EXCHANGES_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
    },
}
