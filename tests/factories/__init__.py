"""
Factory Boy Factories for AgentSpace Billing Models

Import all factories here for easy access in tests.
"""
from tests.factories.core import (
    AgencyFactory,
    PurchaseFactory,
    UserFactory,
)

__all__ = [
    'AgencyFactory',
    'UserFactory',
    'PurchaseFactory',
]
