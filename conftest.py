"""
Pytest Configuration for AgentSpace Billing Tests

Lives at the project root so the fixtures reach both tests/ and the
app-level test packages under apps/.

Key Features:
- Enables managed=True for unmanaged models during tests
- Issues real Supabase-style JWTs so requests pass the auth middleware
- Provides a mocked Stripe client for service tests
"""
from unittest.mock import MagicMock

import pytest
from django.conf import settings
from rest_framework.test import APIClient

from tests.factories.payloads import make_jwt


# =============================================================================
# pytest-django Configuration
# =============================================================================

def pytest_configure(config):
    """
    Switch unmanaged models to managed so the test database gets tables
    for models that normally point to existing Supabase tables.
    """
    import django
    from django.apps import apps

    if not apps.ready:
        django.setup()

    for model in apps.get_models():
        if not model._meta.managed:
            model._meta.managed = True


# =============================================================================
# API Client Fixtures
# =============================================================================

@pytest.fixture
def api_client():
    """Basic API client without authentication."""
    return APIClient()


@pytest.fixture
def auth_client():
    """
    Factory returning an API client authenticated as the given user row.

    Usage:
        client = auth_client(user)
    """
    def _make(user):
        client = APIClient()
        client.credentials(HTTP_AUTHORIZATION=f'Bearer {make_jwt(user.auth_user_id)}')
        return client

    return _make


@pytest.fixture
def cron_client():
    """API client carrying the cron secret header."""
    client = APIClient()
    client.credentials(HTTP_X_CRON_SECRET=settings.CRON_SECRET)
    return client


# =============================================================================
# Stripe
# =============================================================================

@pytest.fixture
def mock_stripe(mocker):
    """
    MagicMock standing in for the configured stripe module.

    Patched where each billing module looks it up. Stripe exception classes
    stay real because the services import them from stripe directly.
    """
    client = MagicMock(name='stripe')
    mocker.patch('apps.billing.services.get_stripe', return_value=client)
    mocker.patch('apps.billing.stripe_service.get_stripe', return_value=client)
    return client
