"""
Authentication Middleware for AgentSpace Billing

Handles JWT authentication and attaches user context to requests.
"""
import logging
import re
from collections.abc import Callable

from django.http import JsonResponse
from rest_framework import exceptions

from .authentication import SupabaseJWTAuthentication

logger = logging.getLogger(__name__)


class SupabaseAuthMiddleware:
    """
    Middleware that authenticates requests using Supabase JWTs.

    Public routes pass through untouched. Every other route must carry a
    valid bearer token, otherwise a 401 JSON response is returned before
    the view runs.
    """

    PUBLIC_ROUTES: list[str] = [
        r'^/api/health$',
        r'^/api/webhooks/stripe$',   # Stripe signature verified in the view
        r'^/api/cron/',              # X-Cron-Secret verified in the view
    ]

    def __init__(self, get_response: Callable):
        self.get_response = get_response
        self.authenticator = SupabaseJWTAuthentication()
        self._public_patterns = [re.compile(pattern) for pattern in self.PUBLIC_ROUTES]

    def __call__(self, request):
        if self._is_public_route(request.path):
            request.user = None
            return self.get_response(request)

        try:
            auth_result = self.authenticator.authenticate(request)
        except exceptions.AuthenticationFailed as e:
            logger.warning(f'Authentication failed: {e}')
            return JsonResponse(
                {'error': 'Unauthorized', 'message': str(e.detail)},
                status=401
            )

        if auth_result is None:
            return JsonResponse(
                {'error': 'Unauthorized', 'message': 'Authentication required'},
                status=401
            )

        user, token = auth_result
        request.user = user
        request.auth_token = token

        logger.debug(
            f'Authenticated user {user.id} (agency: {user.agency_id}) '
            f'accessing {request.path}'
        )

        return self.get_response(request)

    def _is_public_route(self, path: str) -> bool:
        return any(pattern.match(path) for pattern in self._public_patterns)


class AgencyContextMiddleware:
    """
    Middleware that sets request.agency_id.

    SECURITY: Agency ID is ALWAYS derived from the authenticated user,
    NEVER from request headers or body.
    """

    def __init__(self, get_response: Callable):
        self.get_response = get_response

    def __call__(self, request):
        user = getattr(request, 'user', None)
        request.agency_id = getattr(user, 'agency_id', None) if user else None
        return self.get_response(request)
