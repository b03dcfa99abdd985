"""
Permission Classes for AgentSpace Billing

Authenticated users act on their own billing profile only; cron endpoints
accept the system user created by CronSecretAuthentication.
"""
import logging

from django.conf import settings
from rest_framework import permissions

from .authentication import AuthenticatedUser

logger = logging.getLogger(__name__)


class IsAuthenticated(permissions.BasePermission):
    """
    Allows access only to users resolved from a Supabase JWT.
    """
    message = 'Authentication required'

    def has_permission(self, request, view):
        user = getattr(request, 'user', None)
        if not isinstance(user, AuthenticatedUser):
            return False
        return not user.is_system


class IsSystemUser(permissions.BasePermission):
    """
    Allows access only to the cron system user.
    """
    message = 'Cron secret required'

    def has_permission(self, request, view):
        user = getattr(request, 'user', None)
        return isinstance(user, AuthenticatedUser) and user.is_system


class RenewalSimulationEnabled(permissions.BasePermission):
    """
    Gate for development-only billing tools.
    """
    message = 'Renewal simulation is disabled in this environment'

    def has_permission(self, request, view):
        enabled = getattr(settings, 'BILLING_ALLOW_RENEWAL_SIMULATION', False)
        if not enabled:
            logger.warning(f'Blocked renewal simulation request to {request.path}')
        return enabled
