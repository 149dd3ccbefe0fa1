"""
Django settings for the tollpay project.
"""

import os
import dj_database_url
from pathlib import Path
from decouple import config
import firebase_admin
from firebase_admin import credentials

# Build paths
BASE_DIR = Path(__file__).resolve().parent.parent

# Security Settings
SECRET_KEY = config('SECRET_KEY', default='django-insecure-please-change-in-production-12345')
DEBUG = config('DEBUG', default=True, cast=bool)
ALLOWED_HOSTS = config('ALLOWED_HOSTS', default='localhost,127.0.0.1').split(',')

# Application definition
INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',

    # Local apps
    'apps.geofencing',
    'apps.trips',
    'apps.wallet',
    'apps.reconciler',
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
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'config.wsgi.application'

# Database - local durable store of the vehicle unit.
# SQLite on the unit by default, PostgreSQL (or anything else) through DATABASE_URL.
DATABASES = {
    'default': dj_database_url.config(
        default=f"sqlite:///{BASE_DIR / 'db.sqlite3'}",
        conn_max_age=600,
    ),
}

# Internationalization
LANGUAGE_CODE = 'en-us'
TIME_ZONE = config('TIME_ZONE', default='Asia/Kolkata')
USE_I18N = True
USE_TZ = True

# Static files
STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

# Default primary key
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# Firebase Configuration
FIREBASE_CREDENTIALS_PATH = config('FIREBASE_CREDENTIALS_PATH', default='')

if FIREBASE_CREDENTIALS_PATH and os.path.exists(FIREBASE_CREDENTIALS_PATH):
    try:
        cred = credentials.Certificate(FIREBASE_CREDENTIALS_PATH)
        firebase_admin.initialize_app(cred)
        print("✓ Firebase initialized successfully")
    except Exception as e:
        print(f"✗ Firebase initialization failed: {e}")
else:
    print("⚠ Firebase credentials not configured")

FIREBASE_PROJECT_ID = config('FIREBASE_PROJECT_ID', default='')

# Vehicle unit identity: the Firebase UID of the wallet owner this unit tolls.
VEHICLE_USER_ID = config('VEHICLE_USER_ID', default='')

# Local MQTT bus carrying GPS, hardware and network status from the unit
MQTT_BROKER = config('MQTT_BROKER', default='localhost')
MQTT_PORT = config('MQTT_PORT', default=1883, cast=int)
MQTT_USERNAME = config('MQTT_USERNAME', default='')
MQTT_PASSWORD = config('MQTT_PASSWORD', default='')
MQTT_USE_TLS = config('MQTT_USE_TLS', default=False, cast=bool)
MQTT_TOPIC_PREFIX = config('MQTT_TOPIC_PREFIX', default='vehicles')

# Tolling tunables. See config/tolling.py for how they reach the components.
TOLLING = {
    'GRACE_PERIOD_SECONDS': config('TOLL_GRACE_PERIOD_SECONDS', default=20, cast=int),
    # 50 per 20 meters
    'RATE_PER_METER': config('TOLL_RATE_PER_METER', default=2.5, cast=float),
    'WALLET_FLOOR': config('TOLL_WALLET_FLOOR', default=500, cast=int),
    'ACCURACY_CEILING_METERS': config('TOLL_ACCURACY_CEILING_METERS', default=50.0, cast=float),
    'JUMP_THRESHOLD_METERS': config('TOLL_JUMP_THRESHOLD_METERS', default=100.0, cast=float),
    'SMOOTHING_WINDOW': config('TOLL_SMOOTHING_WINDOW', default=5, cast=int),
    'ZONE_SEARCH_RADIUS_METERS': config('TOLL_ZONE_SEARCH_RADIUS_METERS', default=5000.0, cast=float),
    'ZONE_REFETCH_DISTANCE_METERS': config('TOLL_ZONE_REFETCH_DISTANCE_METERS', default=1000.0, cast=float),
    'GPS_STATUS_POLL_SECONDS': config('TOLL_GPS_STATUS_POLL_SECONDS', default=5, cast=int),
    'POSITION_ACCURACY': config('TOLL_POSITION_ACCURACY', default='best_for_navigation'),
    'POSITION_TIME_INTERVAL_MS': config('TOLL_POSITION_TIME_INTERVAL_MS', default=1000, cast=int),
    'POSITION_DISTANCE_INTERVAL_M': config('TOLL_POSITION_DISTANCE_INTERVAL_M', default=5.0, cast=float),
    'EMAIL_ALERTS': config('TOLL_EMAIL_ALERTS', default=False, cast=bool),
}

# Logging
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'simple': {
            'format': '{asctime} {levelname} {name}: {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'simple',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'INFO',
    },
    'loggers': {
        'apps': {
            'handlers': ['console'],
            'level': config('APPS_LOG_LEVEL', default='INFO'),
            'propagate': False,
        },
    },
}

# Email Backend Configuration (user notices)
EMAIL_BACKEND = config('EMAIL_BACKEND', default='django.core.mail.backends.smtp.EmailBackend')

# SMTP Configuration
EMAIL_HOST = config('EMAIL_HOST', default='smtp.gmail.com')
EMAIL_PORT = config('EMAIL_PORT', default=587, cast=int)
EMAIL_USE_TLS = config('EMAIL_USE_TLS', default=True, cast=bool)
EMAIL_HOST_USER = config('EMAIL_HOST_USER', default='')
EMAIL_HOST_PASSWORD = config('EMAIL_HOST_PASSWORD', default='')
DEFAULT_FROM_EMAIL = config('DEFAULT_FROM_EMAIL', default='alerts@tollpay.local')
EMAIL_SUBJECT_PREFIX = '[TollPay] '
