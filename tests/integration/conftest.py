"""
Integration Test Fixtures

Provides real database fixtures using Factory Boy, plus signed Stripe
webhook deliveries.
"""
import json

import pytest

from tests.factories import AgencyFactory, UserFactory
from tests.factories.payloads import sign_payload


# =============================================================================
# Agency & User Fixtures
# =============================================================================

@pytest.fixture
def agency(db):
    """Create a test agency."""
    return AgencyFactory(name='Test Insurance Agency')


@pytest.fixture
def free_user(agency):
    return UserFactory(agency=agency)


@pytest.fixture
def pro_user(agency):
    """Active Pro subscriber mid-cycle."""
    return UserFactory(agency=agency, subscribed=True, stripe_customer_id='cus_pro')


@pytest.fixture
def expert_admin(agency):
    return UserFactory(agency=agency, subscribed=True, admin=True, subscription_tier='expert')


# =============================================================================
# Stripe webhook delivery
# =============================================================================

@pytest.fixture
def deliver_webhook(api_client):
    """
    POST a signed Stripe event to the webhook endpoint.

    Usage:
        response = deliver_webhook(event)
    """
    def _deliver(event: dict, signature: str | None = None):
        payload = json.dumps(event)
        return api_client.post(
            '/api/webhooks/stripe',
            data=payload,
            content_type='application/json',
            HTTP_STRIPE_SIGNATURE=signature or sign_payload(payload),
        )

    return _deliver
