"""
Usage Metering

Counts outbound messages and AI requests against the tier allowance.
Usage beyond the allowance first spends top-up credits, then is reported
to Stripe as metered overage.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from django.db import transaction
from django.db.models import F, Q
from django.utils import timezone

from apps.core.exceptions import NotFoundError, PermissionDeniedError
from apps.core.models import User

from . import tiers
from .stripe_service import (
    AI_METER_EVENT,
    SMS_METER_EVENT,
    get_metered_subscription_items,
    report_usage,
)

logger = logging.getLogger(__name__)


class UsageLimitExceeded(PermissionDeniedError):
    """Raised when the tier does not allow the action at all."""
    default_message = 'Usage limit reached for your subscription tier'


@dataclass
class UsageRecord:
    """Outcome of recording one unit of usage."""
    count: int
    limit: int
    used_topup_credit: bool = False
    overage: bool = False
    overage_reported: bool = False
    cycle_reset: bool = False

    @property
    def remaining(self) -> int:
        return max(self.limit - self.count, 0)


@dataclass(frozen=True)
class _Meter:
    count_field: str
    reset_field: str
    credit_field: str
    limit_attr: str
    event_name: str


MESSAGES = _Meter(
    count_field='messages_sent_count',
    reset_field='messages_reset_date',
    credit_field='messages_topup_credits',
    limit_attr='messages',
    event_name=SMS_METER_EVENT,
)

AI_REQUESTS = _Meter(
    count_field='ai_requests_count',
    reset_field='ai_requests_reset_date',
    credit_field='ai_requests_topup_credits',
    limit_attr='ai_requests',
    event_name=AI_METER_EVENT,
)


def cycle_expired(cycle_end: datetime | None, last_reset: datetime | None, now: datetime) -> bool:
    """
    True when the stored cycle has ended and usage was not reset since.

    Covers the gap between the cycle end and the renewal webhook (or users
    whose subscription lapsed without one).
    """
    if cycle_end is None or now <= cycle_end:
        return False
    return last_reset is None or last_reset < cycle_end


def _record(user_id: UUID | str, meter: _Meter) -> UsageRecord:
    now = timezone.now()

    with transaction.atomic():
        user = User.objects.select_for_update().filter(id=user_id).first()
        if user is None:
            raise NotFoundError('User not found')

        limit = getattr(tiers.get_tier_limits(user.tier), meter.limit_attr)
        record = UsageRecord(count=0, limit=limit)
        update_fields = [meter.count_field]

        current = getattr(user, meter.count_field) or 0
        if cycle_expired(user.billing_cycle_end, getattr(user, meter.reset_field), now):
            logger.info(f'Resetting {meter.count_field} for new billing cycle for user {user.id}')
            current = 0
            setattr(user, meter.reset_field, now)
            update_fields.append(meter.reset_field)
            record.cycle_reset = True

        record.count = current + 1
        setattr(user, meter.count_field, record.count)

        if record.count > limit:
            credits = getattr(user, meter.credit_field) or 0
            if credits > 0:
                setattr(user, meter.credit_field, credits - 1)
                update_fields.append(meter.credit_field)
                record.used_topup_credit = True
            else:
                record.overage = True

        user.save(update_fields=[*update_fields, 'updated_at'])

    if record.overage and user.stripe_subscription_id and user.stripe_customer_id:
        metered = get_metered_subscription_items(user.stripe_subscription_id)
        item_id = metered.messages_item_id if meter is MESSAGES else metered.ai_item_id
        if item_id:
            record.overage_reported = report_usage(user.stripe_customer_id, meter.event_name, 1)
            logger.info(
                f'Reported {meter.event_name} overage for user {user.id}: '
                f'#{record.count} (limit: {limit})'
            )
        else:
            logger.warning(f'No metered item for {meter.event_name} on subscription {user.stripe_subscription_id}')

    return record


def record_message_sent(user_id: UUID | str) -> UsageRecord:
    """
    Count one outbound message for the user.

    Raises:
        UsageLimitExceeded: on tiers where SMS is blocked
        NotFoundError: if the user does not exist
    """
    tier = User.objects.filter(id=user_id).values_list('subscription_tier', flat=True).first()
    if tiers.get_tier_limits(tier).sms_blocked:
        raise UsageLimitExceeded('Messaging is not available on the Free tier. Upgrade to send messages.')

    return _record(user_id, MESSAGES)


def record_ai_request(user_id: UUID | str, is_admin: bool) -> UsageRecord:
    """
    Count one AI Mode request for the user.

    Raises:
        UsageLimitExceeded: if the tier has no AI allowance or the user is not an admin
    """
    tier = User.objects.filter(id=user_id).values_list('subscription_tier', flat=True).first()
    limits = tiers.get_tier_limits(tier)

    if limits.ai_requests <= 0:
        raise UsageLimitExceeded('AI Mode requires the Expert tier')
    if limits.ai_mode_admin_only and not is_admin:
        raise UsageLimitExceeded('AI Mode is only available for admin users')

    return _record(user_id, AI_REQUESTS)


def get_usage_summary(user_id: UUID | str) -> dict:
    """Subscription and usage snapshot for the billing page."""
    user = User.objects.filter(id=user_id).first()
    if user is None:
        raise NotFoundError('User not found')

    limits = tiers.get_tier_limits(user.tier)

    def _iso(value):
        return value.isoformat() if value else None

    def _limit(value):
        return None if value == tiers.UNLIMITED else value

    return {
        'subscription_tier': user.tier,
        'subscription_status': user.subscription_status or 'free',
        'tier_name': limits.name,
        'billing_cycle_start': _iso(user.billing_cycle_start),
        'billing_cycle_end': _iso(user.billing_cycle_end),
        'scheduled_tier_change': user.scheduled_tier_change,
        'scheduled_tier_change_date': _iso(user.scheduled_tier_change_date),
        'has_subscription': bool(user.stripe_subscription_id),
        'deals': {
            'used': user.deals_created_count or 0,
            'limit': _limit(limits.deals),
        },
        'messages': {
            'used': user.messages_sent_count or 0,
            'limit': limits.messages,
            'remaining': max(limits.messages - (user.messages_sent_count or 0), 0),
            'topup_credits': user.messages_topup_credits or 0,
            'blocked': limits.sms_blocked,
            'overage_price': str(limits.overage_price) if limits.overage_price else None,
            'reset_date': _iso(user.messages_reset_date),
        },
        'ai_requests': {
            'used': user.ai_requests_count or 0,
            'limit': limits.ai_requests,
            'remaining': max(limits.ai_requests - (user.ai_requests_count or 0), 0),
            'topup_credits': user.ai_requests_topup_credits or 0,
            'overage_price': str(limits.ai_overage_price) if limits.ai_overage_price else None,
            'reset_date': _iso(user.ai_requests_reset_date),
        },
        'features': list(limits.features),
    }


def reset_expired_usage(now: datetime | None = None) -> int:
    """
    Reset counters of users whose billing cycle ended without a reset.

    Returns:
        Number of users with at least one counter reset
    """
    now = now or timezone.now()
    touched = set()

    for meter in (MESSAGES, AI_REQUESTS):
        stale = User.objects.filter(billing_cycle_end__lt=now).filter(
            Q(**{f'{meter.reset_field}__isnull': True})
            | Q(**{f'{meter.reset_field}__lt': F('billing_cycle_end')})
        )
        ids = list(stale.values_list('id', flat=True))
        if not ids:
            continue

        User.objects.filter(id__in=ids).update(
            updated_at=now,
            **{meter.count_field: 0, meter.reset_field: now},
        )
        touched.update(ids)

    if touched:
        logger.info(f'Reset expired usage counters for {len(touched)} users')

    return len(touched)
