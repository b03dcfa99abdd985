"""
URL Configuration for AgentSpace Billing API

All routes are prefixed with /api/ to match Next.js conventions.
"""
from django.urls import include, path

from apps.billing.urls import cron_urlpatterns, usage_urlpatterns
from apps.core.views import health_check

urlpatterns = [
    # Health check endpoint (public)
    path('api/health', health_check, name='health_check'),

    # Stripe webhook and customer-initiated subscription operations
    path('api/webhooks/', include('apps.billing.urls')),

    # Usage metering and billing profile
    path('api/billing/', include(usage_urlpatterns)),

    # Cron jobs (X-Cron-Secret)
    path('api/cron/', include(cron_urlpatterns)),
]
