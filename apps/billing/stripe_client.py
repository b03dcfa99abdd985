"""
Stripe SDK access

All Stripe calls go through get_stripe() so tests can patch a single seam
and the API key is read from settings at call time.
"""
from typing import Any

import stripe
from django.conf import settings


def get_stripe():
    """Return the stripe module configured with the secret key."""
    if not settings.STRIPE_SECRET_KEY:
        raise ValueError('Stripe secret key not configured')

    stripe.api_key = settings.STRIPE_SECRET_KEY
    return stripe


def to_dict(obj: Any) -> dict:
    """
    Convert a Stripe API object into plain nested dicts.

    Reconciliation works on dicts only; webhook payloads already are dicts.
    """
    if obj is None:
        return {}
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    return obj.to_dict(recursive=True)
