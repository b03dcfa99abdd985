"""
Billing Views - Stripe webhook, subscription management and usage metering

Endpoints:
- POST /api/webhooks/stripe - Handle Stripe webhooks
- POST /api/webhooks/stripe/checkout-session - Create checkout session
- POST /api/webhooks/stripe/create-topup-session - Create top-up checkout session
- POST /api/webhooks/stripe/portal-session - Create customer portal session
- POST /api/webhooks/stripe/change-subscription - Change subscription tier
- POST /api/webhooks/stripe/cancel-scheduled-change - Drop a pending tier change
- POST /api/webhooks/stripe/add-subscription-item - Attach a metered price
- GET  /api/billing/usage - Subscription and usage summary
- POST /api/billing/usage/messages - Record an outbound message
- POST /api/billing/usage/ai-requests - Record an AI Mode request
- POST /api/billing/simulate-renewal - Replay a renewal (development only)
- POST /api/cron/reset-expired-usage - Reset counters of lapsed cycles
"""
import json
import logging

import stripe
from django.conf import settings
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.core.authentication import (
    CronSecretAuthentication,
    SupabaseJWTAuthentication,
    get_user_context,
)
from apps.core.exceptions import ValidationError
from apps.core.permissions import IsAuthenticated, IsSystemUser, RenewalSimulationEnabled

from .services import dispatch_event, simulate_renewal
from .stripe_service import (
    add_subscription_item,
    cancel_scheduled_change,
    change_subscription,
    create_checkout_session,
    create_portal_session,
    create_topup_session,
)
from .usage import (
    get_usage_summary,
    record_ai_request,
    record_message_sent,
    reset_expired_usage,
)

logger = logging.getLogger(__name__)


def _require(data, *fields: str) -> list:
    """Return the named request fields, raising if any is missing."""
    values = [data.get(name) for name in fields]
    missing = [name for name, value in zip(fields, values) if not value]
    if missing:
        raise ValidationError(f"{' and '.join(missing)} {'is' if len(missing) == 1 else 'are'} required")
    return values


@method_decorator(csrf_exempt, name='dispatch')
class StripeWebhookView(APIView):
    """
    POST /api/webhooks/stripe - Handle Stripe webhook events

    No authentication (public webhook endpoint); the Stripe-Signature
    header is always verified against STRIPE_WEBHOOK_SECRET.
    """
    authentication_classes = []
    permission_classes = []

    def post(self, request):
        payload = request.body
        signature = request.META.get('HTTP_STRIPE_SIGNATURE')

        if not signature:
            logger.warning('No Stripe signature provided')
            return Response(
                {'error': 'No signature provided'},
                status=status.HTTP_400_BAD_REQUEST
            )

        webhook_secret = settings.STRIPE_WEBHOOK_SECRET
        if not webhook_secret:
            logger.error('STRIPE_WEBHOOK_SECRET not configured')
            return Response(
                {'error': 'Webhook not configured'},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR
            )

        try:
            stripe.Webhook.construct_event(payload, signature, webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.error(f'Webhook signature verification failed: {e}')
            return Response(
                {'error': 'Invalid signature'},
                status=status.HTTP_400_BAD_REQUEST
            )
        except ValueError as e:
            logger.error(f'Invalid webhook payload: {e}')
            return Response(
                {'error': 'Invalid payload'},
                status=status.HTTP_400_BAD_REQUEST
            )

        # Handlers work on plain dicts; the payload is verified at this point
        event = json.loads(payload)
        logger.info(f"Received Stripe webhook: {event.get('type')}")

        try:
            result = dispatch_event(event)
        except Exception as e:
            logger.error(f'Stripe webhook error: {e}', exc_info=True)
            return Response(
                {'error': str(e)},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR
            )

        if result is None:
            return Response({'received': True})

        if not result.success:
            logger.error(f'Webhook handler failed: {result.error}')
            return Response(
                {'error': result.error},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR
            )

        return Response({
            'received': True,
            'user_id': result.user_id,
            'tier': result.tier,
            'status': result.status,
        })

    def get(self, request):
        """Health check for webhook endpoint."""
        return Response({
            'status': 'ok',
            'message': 'Stripe webhook endpoint is active'
        })


class BillingAPIView(APIView):
    """Base for endpoints acting on the caller's own billing profile."""
    authentication_classes = [SupabaseJWTAuthentication]
    permission_classes = [IsAuthenticated]


class CreateCheckoutSessionView(BillingAPIView):
    """
    POST /api/webhooks/stripe/checkout-session

    Request body:
        price_id: The Stripe price ID of the tier
        success_url: URL to redirect on successful checkout
        cancel_url: URL to redirect on cancelled checkout
        coupon_code: Optional coupon code
    """

    def post(self, request):
        user = get_user_context(request)
        price_id, success_url, cancel_url = _require(request.data, 'price_id', 'success_url', 'cancel_url')

        result = create_checkout_session(
            user_id=user.id,
            price_id=price_id,
            success_url=success_url,
            cancel_url=cancel_url,
            coupon_code=request.data.get('coupon_code') or None,
        )

        return Response({
            'session_id': result.session_id,
            'url': result.url,
        })


class CreateTopupSessionView(BillingAPIView):
    """
    POST /api/webhooks/stripe/create-topup-session

    Request body:
        product_key: e.g. 'MESSAGE_PRO_100'
        success_url / cancel_url: optional, default to the billing page
    """

    def post(self, request):
        user = get_user_context(request)
        (product_key,) = _require(request.data, 'product_key')

        origin = request.META.get('HTTP_ORIGIN', settings.APP_URL)
        success_url = request.data.get('success_url') or f'{origin}/user/profile?topup=success'
        cancel_url = request.data.get('cancel_url') or f'{origin}/user/profile?topup=cancelled'

        result = create_topup_session(
            user_id=user.id,
            product_key=product_key,
            success_url=success_url,
            cancel_url=cancel_url,
        )

        return Response({
            'session_id': result.session_id,
            'url': result.url,
        })


class CreatePortalSessionView(BillingAPIView):
    """
    POST /api/webhooks/stripe/portal-session

    Request body:
        return_url: URL to redirect when leaving the portal
    """

    def post(self, request):
        user = get_user_context(request)
        (return_url,) = _require(request.data, 'return_url')

        result = create_portal_session(user_id=user.id, return_url=return_url)
        return Response({'url': result.url})


def _change_response(result) -> Response:
    response_data = {
        'success': True,
        'status': result.status,
        'new_tier': result.new_tier,
    }
    if result.effective_date:
        response_data['effective_date'] = result.effective_date
    if result.checkout_url:
        response_data['checkout_url'] = result.checkout_url
    return Response(response_data)


class ChangeSubscriptionView(BillingAPIView):
    """
    POST /api/webhooks/stripe/change-subscription

    Change subscription tier. Handles upgrades, downgrades, and cancellations.

    Request body:
        new_tier: The target subscription tier ('free', 'basic', 'pro', 'expert')
        coupon_code: Optional coupon code (for upgrades from free)
    """

    def post(self, request):
        user = get_user_context(request)
        (new_tier,) = _require(request.data, 'new_tier')

        # Origin for checkout redirect URLs
        origin = request.META.get('HTTP_ORIGIN', settings.APP_URL)

        result = change_subscription(
            user_id=user.id,
            new_tier=new_tier,
            coupon_code=request.data.get('coupon_code') or None,
            base_url=origin,
        )
        return _change_response(result)


class CancelScheduledChangeView(BillingAPIView):
    """POST /api/webhooks/stripe/cancel-scheduled-change"""

    def post(self, request):
        user = get_user_context(request)
        return _change_response(cancel_scheduled_change(user.id))


class AddSubscriptionItemView(BillingAPIView):
    """
    POST /api/webhooks/stripe/add-subscription-item

    Request body:
        price_id: A metered price of the caller's tier
    """

    def post(self, request):
        user = get_user_context(request)
        (price_id,) = _require(request.data, 'price_id')

        added = add_subscription_item(user.id, price_id)
        return Response({
            'success': True,
            'added': added,
            'message': 'Subscription item added' if added else 'Subscription item already exists',
        })


class UsageSummaryView(BillingAPIView):
    """GET /api/billing/usage"""

    def get(self, request):
        user = get_user_context(request)
        return Response(get_usage_summary(user.id))


def _usage_response(record) -> Response:
    return Response({
        'count': record.count,
        'limit': record.limit,
        'remaining': record.remaining,
        'used_topup_credit': record.used_topup_credit,
        'overage': record.overage,
        'overage_reported': record.overage_reported,
        'cycle_reset': record.cycle_reset,
    })


class RecordMessageUsageView(BillingAPIView):
    """
    POST /api/billing/usage/messages

    Counts one outbound message. Returns 403 on tiers without messaging.
    """

    def post(self, request):
        user = get_user_context(request)
        return _usage_response(record_message_sent(user.id))


class RecordAIRequestUsageView(BillingAPIView):
    """
    POST /api/billing/usage/ai-requests

    Counts one AI Mode request (Expert tier admins only).
    """

    def post(self, request):
        user = get_user_context(request)
        return _usage_response(record_ai_request(user.id, is_admin=user.is_administrator))


class SimulateRenewalView(BillingAPIView):
    """
    POST /api/billing/simulate-renewal

    Development tool: advance the caller's billing cycle and run the
    renewal reconciliation. Disabled unless BILLING_ALLOW_RENEWAL_SIMULATION.
    """
    permission_classes = [RenewalSimulationEnabled, IsAuthenticated]

    def post(self, request):
        user = get_user_context(request)
        result = simulate_renewal(user.id)

        if not result.success:
            return Response(
                {'success': False, 'error': result.error},
                status=status.HTTP_400_BAD_REQUEST
            )

        return Response({
            'success': True,
            'tier': result.tier,
            'status': result.status,
            'is_renewal': result.is_renewal,
        })


class ResetExpiredUsageView(APIView):
    """
    POST /api/cron/reset-expired-usage

    Resets usage counters for users whose billing cycle ended without a
    renewal webhook. Requires X-Cron-Secret.
    """
    authentication_classes = [CronSecretAuthentication]
    permission_classes = [IsSystemUser]

    def post(self, request):
        reset_count = reset_expired_usage()
        return Response({
            'success': True,
            'reset_count': reset_count,
        })
