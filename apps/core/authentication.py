"""
Supabase JWT Authentication for Django REST Framework

Validates JWTs issued by Supabase Auth and attaches user context to requests.
"""
import hmac
import logging
from dataclasses import dataclass
from uuid import UUID

import jwt
from django.conf import settings
from django.db import DatabaseError
from rest_framework import authentication, exceptions

from .models import User

logger = logging.getLogger(__name__)

SYSTEM_USER_ID = UUID('00000000-0000-0000-0000-000000000000')


@dataclass
class AuthenticatedUser:
    """
    Represents an authenticated user from Supabase.

    This is NOT a Django User model - it's a lightweight container
    for user context derived from the JWT and users table.
    """
    id: UUID                      # users.id (public.users primary key)
    auth_user_id: UUID            # auth.users.id (Supabase auth user ID)
    email: str
    agency_id: UUID | None
    role: str                     # 'admin', 'agent', 'client'
    is_admin: bool
    status: str
    subscription_tier: str        # 'free', 'basic', 'pro', 'expert'
    first_name: str | None = None
    last_name: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return True

    @property
    def is_administrator(self) -> bool:
        return self.is_admin or self.role == 'admin'

    @property
    def is_system(self) -> bool:
        return self.id == SYSTEM_USER_ID


class SupabaseJWTAuthentication(authentication.BaseAuthentication):
    """
    Authenticates requests using Supabase JWTs.

    Flow:
    1. Extract Bearer token from Authorization header
    2. Decode and validate JWT using the Supabase JWT secret
    3. Look up user in public.users by auth_user_id (sub claim)
    """

    def authenticate(self, request):
        auth_header = request.META.get('HTTP_AUTHORIZATION', '')

        if not auth_header.startswith('Bearer '):
            return None

        token = auth_header[7:]
        if not token:
            return None

        payload = self._decode_jwt(token)
        if not payload:
            raise exceptions.AuthenticationFailed('Invalid or expired token')

        user = self._get_user_from_payload(payload)
        if not user:
            raise exceptions.AuthenticationFailed('User not found')

        return (user, token)

    def authenticate_header(self, request):
        return 'Bearer realm="api"'

    def _decode_jwt(self, token: str) -> dict | None:
        jwt_secret = getattr(settings, 'SUPABASE_JWT_SECRET', None)
        if not jwt_secret:
            logger.error('SUPABASE_JWT_SECRET not configured')
            return None

        supabase_url = getattr(settings, 'SUPABASE_URL', '')
        expected_issuer = f'{supabase_url}/auth/v1' if supabase_url else None

        decode_kwargs = {
            'jwt': token,
            'key': jwt_secret,
            'algorithms': ['HS256'],
            'audience': 'authenticated',
            'options': {
                'verify_exp': True,
                'verify_aud': True,
                'verify_iss': bool(expected_issuer),
            },
        }
        if expected_issuer:
            decode_kwargs['issuer'] = expected_issuer

        try:
            return jwt.decode(**decode_kwargs)
        except jwt.ExpiredSignatureError:
            logger.debug('JWT has expired')
            return None
        except jwt.InvalidTokenError as e:
            logger.debug(f'JWT validation failed: {e}')
            return None

    def _get_user_from_payload(self, payload: dict) -> AuthenticatedUser | None:
        auth_user_id = payload.get('sub')
        if not auth_user_id:
            logger.warning('JWT missing sub claim')
            return None

        try:
            row = User.objects.filter(auth_user_id=auth_user_id).values(
                'id', 'auth_user_id', 'email', 'agency_id', 'role', 'is_admin',
                'status', 'subscription_tier', 'first_name', 'last_name',
            ).first()
        except (DatabaseError, ValueError) as e:
            logger.error(f'Database error looking up user: {e}')
            return None

        if not row:
            logger.warning(f'No user found for auth_user_id: {auth_user_id}')
            return None

        return AuthenticatedUser(
            id=row['id'],
            auth_user_id=row['auth_user_id'],
            email=row['email'] or '',
            agency_id=row['agency_id'],
            role=row['role'] or 'agent',
            is_admin=row['is_admin'] or False,
            status=row['status'] or 'active',
            subscription_tier=row['subscription_tier'] or 'free',
            first_name=row['first_name'],
            last_name=row['last_name'],
        )


def get_user_context(request) -> AuthenticatedUser | None:
    """Return the AuthenticatedUser attached to the request, if any."""
    user = getattr(request, 'user', None)
    if isinstance(user, AuthenticatedUser):
        return user
    return None


class CronSecretAuthentication(authentication.BaseAuthentication):
    """
    Authenticates cron jobs using a shared CRON_SECRET.

    The secret is passed via the X-Cron-Secret header. Returns a
    system-level AuthenticatedUser that is not tied to a real user.
    """

    def authenticate(self, request):
        cron_secret = request.META.get('HTTP_X_CRON_SECRET', '')
        if not cron_secret:
            return None

        expected_secret = getattr(settings, 'CRON_SECRET', None)
        if not expected_secret:
            logger.error('CRON_SECRET not configured in settings')
            return None

        if not hmac.compare_digest(cron_secret, expected_secret):
            raise exceptions.AuthenticationFailed('Invalid cron secret')

        system_user = AuthenticatedUser(
            id=SYSTEM_USER_ID,
            auth_user_id=SYSTEM_USER_ID,
            email='system@internal',
            agency_id=None,
            role='admin',
            is_admin=True,
            status='active',
            subscription_tier='expert',
            first_name='System',
            last_name='Cron',
        )
        return (system_user, None)
