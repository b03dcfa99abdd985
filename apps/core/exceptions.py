"""
Custom Exception Handling for AgentSpace Billing

Provides consistent error response format across all API endpoints.
"""
import logging

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


class APIException(Exception):
    """
    Base exception class for API errors raised from service code.

    Usage:
        raise APIException('Something went wrong', status_code=400)
    """
    status_code = 400
    default_message = 'Bad request'

    def __init__(self, message: str | None = None, status_code: int | None = None,
                 details: dict | None = None):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(APIException):
    """Raised when request validation fails."""
    status_code = 400
    default_message = 'Invalid request'


class AuthenticationError(APIException):
    """Raised when authentication fails."""
    status_code = 401
    default_message = 'Authentication required'


class PermissionDeniedError(APIException):
    """Raised when user lacks permission."""
    status_code = 403
    default_message = 'Permission denied'


class NotFoundError(APIException):
    """Raised when a resource is not found."""
    status_code = 404
    default_message = 'Resource not found'


class ConflictError(APIException):
    """Raised when there's a conflict (e.g., duplicate resource)."""
    status_code = 409
    default_message = 'Resource conflict'


class ExternalServiceError(APIException):
    """Raised when a third-party API (Stripe) call fails."""
    status_code = 502
    default_message = 'Upstream service error'


def custom_exception_handler(exc, context):
    """
    Custom exception handler that provides consistent error format.

    Error Response Format:
    {
        "error": "ErrorType",
        "message": "Human-readable error message",
        "details": {...}  // Optional, additional context
    }
    """
    if isinstance(exc, APIException):
        error_data = {
            'error': exc.__class__.__name__,
            'message': exc.message,
        }
        if exc.details:
            error_data['details'] = exc.details
        return Response(error_data, status=exc.status_code)

    response = exception_handler(exc, context)

    if response is not None:
        error_data = {
            'error': exc.__class__.__name__,
            'message': str(exc.detail) if hasattr(exc, 'detail') else str(exc),
        }

        if hasattr(exc, 'detail'):
            if isinstance(exc.detail, dict):
                error_data['details'] = exc.detail
                messages = []
                for field, errors in exc.detail.items():
                    if isinstance(errors, list):
                        messages.append(f"{field}: {', '.join(str(e) for e in errors)}")
                    else:
                        messages.append(f"{field}: {errors}")
                error_data['message'] = '; '.join(messages)
            elif isinstance(exc.detail, list):
                error_data['message'] = ', '.join(str(e) for e in exc.detail)

        response.data = error_data
        return response

    logger.exception(f'Unhandled exception: {exc}')
    return Response(
        {
            'error': 'InternalServerError',
            'message': 'An unexpected error occurred',
        },
        status=status.HTTP_500_INTERNAL_SERVER_ERROR
    )
