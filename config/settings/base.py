"""
Django Base Settings for AgentSpace Billing

This file contains all shared settings used across environments.
Environment-specific settings are in development.py, production.py and test.py.
"""
from pathlib import Path

from decouple import Csv, config

BASE_DIR = Path(__file__).resolve().parent.parent.parent

# =============================================================================
# Core Settings
# =============================================================================

SECRET_KEY = config('DJANGO_SECRET_KEY', default='django-insecure-change-me-in-production')

DEBUG = config('DJANGO_DEBUG', default=True, cast=bool)

ALLOWED_HOSTS = config('ALLOWED_HOSTS', default='localhost,127.0.0.1', cast=Csv())

# =============================================================================
# Application Definition
# =============================================================================

INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'django.contrib.auth',

    'rest_framework',
    'corsheaders',

    # Local apps
    'apps.core',
    'apps.billing',    # Stripe webhooks, subscriptions, usage metering
]

MIDDLEWARE = [
    'corsheaders.middleware.CorsMiddleware',
    'django.middleware.security.SecurityMiddleware',
    'django.middleware.common.CommonMiddleware',
    'apps.core.middleware.SupabaseAuthMiddleware',
    'apps.core.middleware.AgencyContextMiddleware',
]

ROOT_URLCONF = 'config.urls'

# =============================================================================
# Database
# Connects to existing Supabase PostgreSQL - no migrations run
# =============================================================================

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.postgresql',
        'NAME': config('SUPABASE_DB_NAME', default='postgres'),
        'USER': config('SUPABASE_DB_USER', default='postgres'),
        'PASSWORD': config('SUPABASE_DB_PASSWORD', default=''),
        'HOST': config('SUPABASE_DB_HOST', default='localhost'),
        'PORT': config('SUPABASE_DB_PORT', default='5432'),
        'OPTIONS': {
            'sslmode': config('SUPABASE_DB_SSLMODE', default='require'),
        },
    }
}

# =============================================================================
# Supabase Configuration
# =============================================================================

SUPABASE_URL = config('NEXT_PUBLIC_SUPABASE_URL', default='')
SUPABASE_JWT_SECRET = config('SUPABASE_JWT_SECRET', default='')

# Cron authentication secret (shared with frontend)
CRON_SECRET = config('CRON_SECRET', default='')

# =============================================================================
# Stripe Configuration
# =============================================================================

STRIPE_SECRET_KEY = config('STRIPE_SECRET_KEY', default='')
STRIPE_WEBHOOK_SECRET = config('STRIPE_WEBHOOK_SECRET', default='')

# Recurring tier prices
STRIPE_TIER_PRICE_IDS = {
    'basic': config('STRIPE_BASIC_PRICE_ID', default=''),
    'pro': config('STRIPE_PRO_PRICE_ID', default=''),
    'expert': config('STRIPE_EXPERT_PRICE_ID', default=''),
}

# Usage-based prices attached next to the tier price
STRIPE_METERED_PRICE_IDS = {
    'basic_messages': config('STRIPE_BASIC_METERED_MESSAGES_PRICE_ID', default=''),
    'pro_messages': config('STRIPE_PRO_METERED_MESSAGES_PRICE_ID', default=''),
    'expert_messages': config('STRIPE_EXPERT_METERED_MESSAGES_PRICE_ID', default=''),
    'expert_ai': config('STRIPE_EXPERT_METERED_AI_PRICE_ID', default=''),
}

# One-time top-up prices
STRIPE_TOPUP_PRICE_IDS = {
    'MESSAGE_BASIC_50': config('STRIPE_MESSAGE_BASIC_50_PRICE_ID', default=''),
    'MESSAGE_PRO_100': config('STRIPE_MESSAGE_PRO_100_PRICE_ID', default=''),
    'MESSAGE_EXPERT_500': config('STRIPE_MESSAGE_EXPERT_500_PRICE_ID', default=''),
    'AI_EXPERT_50': config('STRIPE_AI_EXPERT_50_PRICE_ID', default=''),
}

# Lets developers trigger a billing cycle rollover without waiting on Stripe
BILLING_ALLOW_RENEWAL_SIMULATION = config(
    'BILLING_ALLOW_RENEWAL_SIMULATION', default=DEBUG, cast=bool
)

# =============================================================================
# REST Framework
# =============================================================================

REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [
        'apps.core.authentication.SupabaseJWTAuthentication',
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.IsAuthenticated',
    ],
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
    ],
    'EXCEPTION_HANDLER': 'apps.core.exceptions.custom_exception_handler',
    'UNAUTHENTICATED_USER': None,
}

# =============================================================================
# CORS Configuration
# =============================================================================

CORS_ALLOWED_ORIGINS = config(
    'CORS_ALLOWED_ORIGINS',
    default='http://localhost:3000',
    cast=Csv()
)

CORS_ALLOW_CREDENTIALS = True

CORS_ALLOW_HEADERS = [
    'accept',
    'accept-encoding',
    'authorization',
    'content-type',
    'origin',
    'user-agent',
    'x-cron-secret',
    'x-requested-with',
]

# =============================================================================
# Internationalization
# =============================================================================

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = False
USE_TZ = True

# =============================================================================
# Application Settings
# =============================================================================

APP_URL = config('APP_URL', default='http://localhost:3000')

# =============================================================================
# Logging
# =============================================================================

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {module} {message}',
            'style': '{',
        },
        'simple': {
            'format': '{levelname} {message}',
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
        'level': 'INFO',
    },
    'loggers': {
        'django': {
            'handlers': ['console'],
            'level': config('DJANGO_LOG_LEVEL', default='INFO'),
            'propagate': False,
        },
        'apps': {
            'handlers': ['console'],
            'level': 'DEBUG',
            'propagate': False,
        },
    },
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'
