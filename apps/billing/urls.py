"""
Billing URL Configuration

Routes mounted under /api/webhooks/:
- POST /api/webhooks/stripe - Stripe webhook events
- POST /api/webhooks/stripe/checkout-session - Create checkout session
- POST /api/webhooks/stripe/create-topup-session - Create top-up session
- POST /api/webhooks/stripe/portal-session - Create customer portal session
- POST /api/webhooks/stripe/change-subscription - Change subscription tier
- POST /api/webhooks/stripe/cancel-scheduled-change - Drop a pending tier change
- POST /api/webhooks/stripe/add-subscription-item - Attach a metered price

usage_urlpatterns are mounted under /api/billing/, cron_urlpatterns under /api/cron/.
"""
from django.urls import path

from .views import (
    AddSubscriptionItemView,
    CancelScheduledChangeView,
    ChangeSubscriptionView,
    CreateCheckoutSessionView,
    CreatePortalSessionView,
    CreateTopupSessionView,
    RecordAIRequestUsageView,
    RecordMessageUsageView,
    ResetExpiredUsageView,
    SimulateRenewalView,
    StripeWebhookView,
    UsageSummaryView,
)

urlpatterns = [
    # Stripe webhook (public, signature-verified)
    path('stripe', StripeWebhookView.as_view(), name='stripe_webhook'),

    # Stripe session management (authenticated)
    path('stripe/checkout-session', CreateCheckoutSessionView.as_view(), name='stripe_checkout_session'),
    path('stripe/create-topup-session', CreateTopupSessionView.as_view(), name='stripe_topup_session'),
    path('stripe/portal-session', CreatePortalSessionView.as_view(), name='stripe_portal_session'),
    path('stripe/change-subscription', ChangeSubscriptionView.as_view(), name='stripe_change_subscription'),
    path('stripe/cancel-scheduled-change', CancelScheduledChangeView.as_view(), name='stripe_cancel_scheduled_change'),
    path('stripe/add-subscription-item', AddSubscriptionItemView.as_view(), name='stripe_add_subscription_item'),
]

usage_urlpatterns = [
    path('usage', UsageSummaryView.as_view(), name='billing_usage'),
    path('usage/messages', RecordMessageUsageView.as_view(), name='billing_usage_messages'),
    path('usage/ai-requests', RecordAIRequestUsageView.as_view(), name='billing_usage_ai_requests'),
    path('simulate-renewal', SimulateRenewalView.as_view(), name='billing_simulate_renewal'),
]

cron_urlpatterns = [
    path('reset-expired-usage', ResetExpiredUsageView.as_view(), name='cron_reset_expired_usage'),
]
