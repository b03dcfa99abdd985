"""
Stripe Service

Customer-initiated billing operations: checkout and top-up sessions, the
billing portal, tier changes and metered usage reporting.

Failures are raised as apps.core.exceptions.APIException subclasses and
rendered by the DRF exception handler.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

import stripe
from django.conf import settings
from django.db import transaction
from django.utils import timezone

from apps.core.exceptions import (
    ExternalServiceError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from apps.core.models import User

from . import reconciliation, tiers
from .stripe_client import get_stripe, to_dict

logger = logging.getLogger(__name__)

SMS_METER_EVENT = 'sms_messages'
AI_METER_EVENT = 'ai_requests'


@dataclass
class CheckoutSessionResult:
    session_id: str
    url: str


@dataclass
class PortalSessionResult:
    url: str


@dataclass
class SubscriptionChangeResult:
    """Result of changing a subscription."""
    status: str  # 'upgraded', 'scheduled', 'checkout_required', 'unscheduled'
    new_tier: str
    effective_date: str | None = None
    checkout_url: str | None = None


@dataclass
class MeteredItems:
    messages_item_id: str | None = None
    ai_item_id: str | None = None


def _get_user(user_id: UUID | str, for_update: bool = False) -> User:
    qs = User.objects.all()
    if for_update:
        qs = qs.select_for_update()
    user = qs.filter(id=user_id).first()
    if user is None:
        raise NotFoundError('User not found')
    return user


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def get_or_create_customer(user: User) -> str:
    """Return the user's Stripe customer ID, creating the customer on first use."""
    if user.stripe_customer_id:
        return user.stripe_customer_id

    client = get_stripe()
    try:
        customer = client.Customer.create(
            email=user.email,
            name=user.full_name or None,
            metadata={
                'user_id': str(user.id),
                'auth_user_id': str(user.auth_user_id) if user.auth_user_id else '',
            },
        )
    except stripe.StripeError as e:
        logger.error(f'Failed to create Stripe customer for user {user.id}: {e}')
        raise ExternalServiceError('Failed to create billing customer') from e

    user.stripe_customer_id = customer['id']
    user.save(update_fields=['stripe_customer_id', 'updated_at'])
    logger.info(f'Created Stripe customer {user.stripe_customer_id} for user {user.id}')
    return user.stripe_customer_id


def _validate_coupon(client, coupon_code: str, customer_id: str) -> list[dict]:
    """One promotional discount per customer lifetime."""
    try:
        coupon = to_dict(client.Coupon.retrieve(coupon_code))
    except stripe.InvalidRequestError as e:
        raise ValidationError('Invalid coupon code') from e

    if not coupon.get('valid'):
        raise ValidationError('This coupon is no longer active')

    customer = to_dict(client.Customer.retrieve(customer_id))
    if not customer.get('deleted') and (customer.get('metadata') or {}).get('has_used_coupon') == 'true':
        raise ValidationError('You have already used your one-time promotional discount')

    return [{'coupon': coupon_code}]


def create_checkout_session(
    user_id: UUID | str,
    price_id: str,
    success_url: str,
    cancel_url: str,
    coupon_code: str | None = None,
) -> CheckoutSessionResult:
    """
    Create a Stripe checkout session for a new subscription.

    Session and subscription metadata both carry user_id so every later
    webhook can be tied back to the user.
    """
    user = _get_user(user_id)

    tier = tiers.get_tier_from_price_id(price_id)
    if tier == tiers.FREE:
        raise ValidationError('Unknown subscription price')
    if not tiers.can_access_tier(tier, user.is_admin):
        raise PermissionDeniedError(f'{tiers.get_tier_limits(tier).name} tier is only available for admin users')

    customer_id = get_or_create_customer(user)
    client = get_stripe()

    session_config = {
        'customer': customer_id,
        'line_items': [{'price': price_id, 'quantity': 1}],
        'mode': 'subscription',
        'success_url': success_url,
        'cancel_url': cancel_url,
        'metadata': {
            'user_id': str(user.id),
            'tier': tier,
        },
        'subscription_data': {
            'metadata': {
                'user_id': str(user.id),
                'tier': tier,
            },
        },
    }

    try:
        if coupon_code:
            session_config['discounts'] = _validate_coupon(client, coupon_code, customer_id)
            session_config['metadata']['applied_coupon'] = coupon_code
        else:
            # Stripe rejects allow_promotion_codes together with discounts
            session_config['allow_promotion_codes'] = True

        session = client.checkout.Session.create(**session_config)
    except stripe.StripeError as e:
        logger.error(f'Error creating checkout session for user {user.id}: {e}')
        raise ExternalServiceError('Failed to create checkout session') from e

    logger.info(f"Checkout session created for user {user.id}: {session['id']}")
    return CheckoutSessionResult(session_id=session['id'], url=session['url'])


def create_topup_session(
    user_id: UUID | str,
    product_key: str,
    success_url: str,
    cancel_url: str,
) -> CheckoutSessionResult:
    """
    Create a one-time checkout session for a top-up product.

    Credits are granted by the payment_intent.succeeded webhook using the
    metadata set here.
    """
    product = tiers.get_topup_product(product_key)
    if product is None:
        raise ValidationError('Invalid top-up product')
    if not product.price_id:
        raise ValidationError('Top-up product is not configured')

    user = _get_user(user_id)

    if not user.has_paid_subscription or user.subscription_status != reconciliation.ACTIVE:
        raise PermissionDeniedError('An active subscription is required to purchase top-ups')
    if user.tier != product.required_tier:
        raise PermissionDeniedError(
            f'{product.name} top-up is only available on the {tiers.get_tier_limits(product.required_tier).name} tier'
        )
    if product.topup_type == tiers.AI_TOPUP and not user.is_admin:
        raise PermissionDeniedError('AI Mode is only available for admin users')

    customer_id = get_or_create_customer(user)
    client = get_stripe()

    metadata = {
        'user_id': str(user.id),
        'topup_type': product.topup_type,
        'topup_quantity': str(product.quantity),
        'topup_product': product.key,
    }

    try:
        session = client.checkout.Session.create(
            customer=customer_id,
            line_items=[{'price': product.price_id, 'quantity': 1}],
            mode='payment',
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            payment_intent_data={'metadata': metadata},
        )
    except stripe.StripeError as e:
        logger.error(f'Error creating top-up session for user {user.id}: {e}')
        raise ExternalServiceError('Failed to create top-up session') from e

    logger.info(f"Top-up session created for user {user.id}: {product.key} ({session['id']})")
    return CheckoutSessionResult(session_id=session['id'], url=session['url'])


def create_portal_session(user_id: UUID | str, return_url: str) -> PortalSessionResult:
    """Create a Stripe customer portal session."""
    user = _get_user(user_id)
    if not user.stripe_customer_id:
        raise NotFoundError('No subscription found')

    client = get_stripe()
    try:
        session = client.billing_portal.Session.create(
            customer=user.stripe_customer_id,
            return_url=return_url,
        )
    except stripe.StripeError as e:
        logger.error(f'Error creating portal session for user {user.id}: {e}')
        raise ExternalServiceError('Failed to create portal session') from e

    logger.info(f'Portal session created for user {user.id}')
    return PortalSessionResult(url=session['url'])


def change_subscription(
    user_id: UUID | str,
    new_tier: str,
    coupon_code: str | None = None,
    base_url: str | None = None,
) -> SubscriptionChangeResult:
    """
    Handle subscription tier changes.

    - Changes from free require a new checkout session
    - Changes to free cancel at period end
    - Upgrades are applied immediately with proration
    - Downgrades are scheduled for the next billing cycle and applied by
      the renewal webhook
    """
    if not tiers.is_valid_tier(new_tier):
        raise ValidationError('Invalid tier specified')

    user = _get_user(user_id)
    current_tier = user.tier

    if current_tier == new_tier:
        if user.scheduled_tier_change:
            # Staying on the current tier means dropping the pending change
            cancel_scheduled_change(user.id)
            return SubscriptionChangeResult(status='unscheduled', new_tier=new_tier)
        raise ValidationError('Already on this tier')

    if not tiers.can_access_tier(new_tier, user.is_admin):
        raise PermissionDeniedError(f'{tiers.get_tier_limits(new_tier).name} tier is only available for admin users')

    if new_tier == tiers.FREE:
        return _schedule_cancellation(user)

    new_price_id = tiers.get_tier_price_id(new_tier)
    if not new_price_id:
        raise ValidationError('Invalid tier configuration')

    if current_tier == tiers.FREE or not user.stripe_subscription_id:
        base_url = base_url or settings.APP_URL
        checkout = create_checkout_session(
            user_id=user.id,
            price_id=new_price_id,
            success_url=f'{base_url}/user/profile?upgrade=success',
            cancel_url=f'{base_url}/user/profile?upgrade=cancelled',
            coupon_code=coupon_code,
        )
        return SubscriptionChangeResult(
            status='checkout_required',
            new_tier=new_tier,
            checkout_url=checkout.url,
        )

    client = get_stripe()
    try:
        subscription = to_dict(client.Subscription.retrieve(
            user.stripe_subscription_id,
            expand=['items.data.price', 'discounts'],
        ))
    except stripe.StripeError as e:
        logger.error(f'Failed to retrieve subscription {user.stripe_subscription_id}: {e}')
        raise ExternalServiceError('Failed to load subscription') from e

    if not reconciliation.subscription_items(subscription):
        raise ValidationError('Invalid subscription state')

    if user.scheduled_tier_change == tiers.FREE or subscription.get('cancel_at_period_end'):
        _resume_subscription(client, user.stripe_subscription_id)

    if tiers.is_upgrade(current_tier, new_tier):
        return _upgrade(client, user, subscription, new_tier)
    return _schedule_downgrade(user, subscription, new_tier)


def _schedule_cancellation(user: User) -> SubscriptionChangeResult:
    if not user.stripe_subscription_id:
        raise ValidationError('No active subscription to cancel')

    client = get_stripe()
    try:
        client.Subscription.modify(user.stripe_subscription_id, cancel_at_period_end=True)
    except stripe.StripeError as e:
        logger.error(f'Failed to schedule cancellation for user {user.id}: {e}')
        raise ExternalServiceError('Failed to cancel subscription') from e

    User.objects.filter(id=user.id).update(
        updated_at=timezone.now(),
        scheduled_tier_change=tiers.FREE,
        scheduled_tier_change_date=user.billing_cycle_end,
    )

    logger.info(f'Subscription cancellation scheduled for user {user.id}')
    return SubscriptionChangeResult(
        status='scheduled',
        new_tier=tiers.FREE,
        effective_date=_isoformat(user.billing_cycle_end),
    )


def _resume_subscription(client, subscription_id: str) -> None:
    try:
        client.Subscription.modify(subscription_id, cancel_at_period_end=False)
    except stripe.StripeError as e:
        logger.error(f'Failed to resume subscription {subscription_id}: {e}')
        raise ExternalServiceError('Failed to resume subscription') from e


def _has_active_discount(client, subscription: dict) -> tuple[bool, str | None]:
    """Return (has_discount, subscription_coupon_id)."""
    coupon_id = None
    for discount in subscription.get('discounts') or []:
        if isinstance(discount, dict) and discount.get('coupon'):
            coupon_id = discount['coupon'].get('id')
            break

    customer_ref = subscription.get('customer')
    customer_id = customer_ref.get('id') if isinstance(customer_ref, dict) else customer_ref
    has_customer_discount = False
    if customer_id:
        customer = to_dict(client.Customer.retrieve(customer_id))
        has_customer_discount = not customer.get('deleted') and bool(customer.get('discount'))

    return bool(coupon_id) or has_customer_discount, coupon_id


def _upgrade(client, user: User, subscription: dict, new_tier: str) -> SubscriptionChangeResult:
    logger.info(f'Processing upgrade: {user.tier} -> {new_tier} for user {user.id}')

    items, metered_prices = reconciliation.plan_items_for_tier(
        reconciliation.subscription_items(subscription), new_tier, user.is_admin
    )

    try:
        has_discount, coupon_id = _has_active_discount(client, subscription)

        update_config = {
            'items': items,
            # Prorating against a discounted price would over-charge
            'proration_behavior': 'none' if has_discount else 'always_invoice',
            'billing_cycle_anchor': 'unchanged',
        }
        if coupon_id:
            update_config['discounts'] = [{'coupon': coupon_id}]

        client.Subscription.modify(user.stripe_subscription_id, **update_config)
    except stripe.StripeError as e:
        logger.error(f'Upgrade failed for user {user.id}: {e}')
        raise ExternalServiceError('Failed to upgrade subscription') from e

    for price_id in metered_prices:
        try:
            client.SubscriptionItem.create(subscription=user.stripe_subscription_id, price=price_id)
        except stripe.StripeError as e:
            logger.error(f'Failed to add metered price {price_id}: {e}')

    User.objects.filter(id=user.id).update(
        updated_at=timezone.now(),
        subscription_tier=new_tier,
        scheduled_tier_change=None,
        scheduled_tier_change_date=None,
    )

    logger.info(f'Upgrade completed for user {user.id}: {new_tier}')
    return SubscriptionChangeResult(status='upgraded', new_tier=new_tier)


def _schedule_downgrade(user: User, subscription: dict, new_tier: str) -> SubscriptionChangeResult:
    try:
        period = reconciliation.extract_billing_period(subscription)
    except reconciliation.BillingPeriodMissing as e:
        raise ValidationError('Unable to schedule downgrade - missing billing cycle data') from e

    User.objects.filter(id=user.id).update(
        updated_at=timezone.now(),
        scheduled_tier_change=new_tier,
        scheduled_tier_change_date=period.end,
    )

    logger.info(
        f'Scheduling downgrade: {user.tier} -> {new_tier} for user {user.id}, '
        f'effective {period.end.isoformat()}'
    )
    return SubscriptionChangeResult(
        status='scheduled',
        new_tier=new_tier,
        effective_date=period.end.isoformat(),
    )


def cancel_scheduled_change(user_id: UUID | str) -> SubscriptionChangeResult:
    """Drop a pending downgrade or cancellation."""
    with transaction.atomic():
        user = _get_user(user_id, for_update=True)
        scheduled = user.scheduled_tier_change
        if not scheduled:
            raise ValidationError('No scheduled subscription change')

        if scheduled == tiers.FREE and user.stripe_subscription_id:
            _resume_subscription(get_stripe(), user.stripe_subscription_id)

        user.scheduled_tier_change = None
        user.scheduled_tier_change_date = None
        user.save(update_fields=['scheduled_tier_change', 'scheduled_tier_change_date', 'updated_at'])

    logger.info(f'Scheduled change to {scheduled} canceled for user {user.id}')
    return SubscriptionChangeResult(status='unscheduled', new_tier=user.tier)


def add_subscription_item(user_id: UUID | str, price_id: str) -> bool:
    """
    Attach a metered price to the user's subscription.

    Only the metered prices of the user's current tier are accepted.

    Returns:
        True if the item was added, False if it was already present
    """
    user = _get_user(user_id)
    if not user.stripe_subscription_id:
        raise ValidationError('No active subscription found')

    if price_id not in tiers.metered_prices_for_tier(user.tier, user.is_admin):
        raise ValidationError('Price is not available for your subscription tier')

    client = get_stripe()
    try:
        subscription = to_dict(client.Subscription.retrieve(user.stripe_subscription_id))
        existing = {
            (item.get('price') or {}).get('id')
            for item in reconciliation.subscription_items(subscription)
        }
        if price_id in existing:
            return False

        client.SubscriptionItem.create(subscription=user.stripe_subscription_id, price=price_id)
    except stripe.StripeError as e:
        logger.error(f'Failed to add subscription item {price_id} for user {user.id}: {e}')
        raise ExternalServiceError('Failed to add subscription item') from e

    logger.info(f'Added metered price {price_id} to subscription {user.stripe_subscription_id}')
    return True


def get_metered_subscription_items(subscription_id: str) -> MeteredItems:
    """Find the message and AI metered items on a subscription."""
    try:
        subscription = to_dict(get_stripe().Subscription.retrieve(subscription_id))
    except (stripe.StripeError, ValueError) as e:
        logger.error(f'Error getting metered subscription items: {e}')
        return MeteredItems()

    message_prices = tiers.message_metered_price_ids()
    ai_prices = tiers.ai_metered_price_ids()
    result = MeteredItems()

    for item in reconciliation.subscription_items(subscription):
        price_id = (item.get('price') or {}).get('id')
        if price_id in message_prices and not result.messages_item_id:
            result.messages_item_id = item.get('id')
        elif price_id in ai_prices and not result.ai_item_id:
            result.ai_item_id = item.get('id')

    return result


def report_usage(customer_id: str, event_name: str, quantity: int = 1) -> bool:
    """
    Report metered usage to Stripe Billing Meters.

    Never raises: a reporting failure must not block the user's action.
    """
    try:
        get_stripe().billing.MeterEvent.create(
            event_name=event_name,
            payload={
                'stripe_customer_id': customer_id,
                'value': str(quantity),
            },
        )
    except (stripe.StripeError, ValueError) as e:
        logger.error(f'Error reporting usage {event_name} for {customer_id}: {e}')
        return False

    logger.debug(f'Usage reported: {event_name} x {quantity} for {customer_id}')
    return True
