"""
Django Test Settings for AgentSpace Billing

Uses an in-memory SQLite database unless TEST_DB_ENGINE points at PostgreSQL.
Unmanaged models are switched to managed in the root conftest.py so the test
database gets real tables.
"""
from .base import *  # noqa: F401, F403

DEBUG = False

# =============================================================================
# Database
# =============================================================================

if config('TEST_DB_ENGINE', default='sqlite') == 'postgresql':  # noqa: F405
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.postgresql',
            'NAME': config('TEST_DB_NAME', default='agentspace_billing_test'),  # noqa: F405
            'USER': config('TEST_DB_USER', default='postgres'),  # noqa: F405
            'PASSWORD': config('TEST_DB_PASSWORD', default='postgres'),  # noqa: F405
            'HOST': config('TEST_DB_HOST', default='localhost'),  # noqa: F405
            'PORT': config('TEST_DB_PORT', default='5432'),  # noqa: F405
            'OPTIONS': {},
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': ':memory:',
        }
    }

PASSWORD_HASHERS = [
    'django.contrib.auth.hashers.MD5PasswordHasher',
]

# Disable logging during tests
LOGGING = {
    'version': 1,
    'disable_existing_loggers': True,
    'handlers': {
        'null': {
            'class': 'logging.NullHandler',
        },
    },
    'root': {
        'handlers': ['null'],
        'level': 'CRITICAL',
    },
}

# =============================================================================
# Supabase / Cron Mock Configuration
# =============================================================================

SUPABASE_URL = 'http://localhost:54321'
SUPABASE_JWT_SECRET = 'test-jwt-secret-key-for-testing-purposes-only'

CRON_SECRET = 'test-cron-secret'

# =============================================================================
# Stripe Mock Configuration
# =============================================================================

STRIPE_SECRET_KEY = 'sk_test_dummy'
STRIPE_WEBHOOK_SECRET = 'whsec_test_dummy'

STRIPE_TIER_PRICE_IDS = {
    'basic': 'price_basic',
    'pro': 'price_pro',
    'expert': 'price_expert',
}

STRIPE_METERED_PRICE_IDS = {
    'basic_messages': 'price_basic_messages',
    'pro_messages': 'price_pro_messages',
    'expert_messages': 'price_expert_messages',
    'expert_ai': 'price_expert_ai',
}

STRIPE_TOPUP_PRICE_IDS = {
    'MESSAGE_BASIC_50': 'price_topup_basic_50',
    'MESSAGE_PRO_100': 'price_topup_pro_100',
    'MESSAGE_EXPERT_500': 'price_topup_expert_500',
    'AI_EXPERT_50': 'price_topup_ai_50',
}

BILLING_ALLOW_RENEWAL_SIMULATION = True

CORS_ALLOW_ALL_ORIGINS = True
