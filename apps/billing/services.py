"""
Webhook Services - Stripe subscription reconciliation

Business logic for processing Stripe webhook events:
- Subscription activation after checkout
- Top-up credit handling
- Renewal detection, scheduled tier changes and usage resets
- Cancellation
"""
import logging
from dataclasses import dataclass
from datetime import timedelta

from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from apps.core.models import Purchase, User

from . import reconciliation, tiers
from .stripe_client import get_stripe, to_dict

logger = logging.getLogger(__name__)


@dataclass
class SubscriptionUpdateResult:
    """Result of a webhook handler."""
    success: bool
    user_id: str | None = None
    tier: str | None = None
    status: str | None = None
    is_renewal: bool = False
    error: str | None = None


def _user_id_from_metadata(obj: dict) -> str | None:
    return (obj.get('metadata') or {}).get('user_id')


def _lock_user(user_id: str) -> User | None:
    return User.objects.select_for_update().filter(id=user_id).first()


def _apply_updates(user: User, updates: dict) -> None:
    for field_name, value in updates.items():
        setattr(user, field_name, value)
    user.save(update_fields=[*updates.keys(), 'updated_at'])


def dispatch_event(event: dict) -> SubscriptionUpdateResult | None:
    """
    Route a verified Stripe event to its handler.

    Returns None for event types this service does not handle.
    """
    event_type = event.get('type')
    data = (event.get('data') or {}).get('object') or {}

    handlers = {
        'checkout.session.completed': handle_checkout_completed,
        'payment_intent.succeeded': handle_payment_intent_succeeded,
        'customer.subscription.updated': handle_subscription_updated,
        'customer.subscription.deleted': handle_subscription_deleted,
    }

    handler = handlers.get(event_type)
    if handler is None:
        logger.info(f'Unhandled event type: {event_type}')
        return None

    logger.info(f"Processing Stripe event {event.get('id')}: {event_type}")
    return handler(data)


def handle_checkout_completed(session_data: dict) -> SubscriptionUpdateResult:
    """
    Handle checkout.session.completed.

    Subscription checkouts activate the tier and start a fresh usage cycle.
    One-time (top-up) checkouts are credited by payment_intent.succeeded.
    """
    user_id = _user_id_from_metadata(session_data)
    if not user_id:
        logger.error('Missing user_id in checkout session metadata')
        return SubscriptionUpdateResult(success=False, error='Missing user_id')

    mode = session_data.get('mode')

    if mode == 'payment':
        logger.info(f'One-time payment checkout completed for user {user_id}, waiting for payment_intent.succeeded')
        return SubscriptionUpdateResult(success=True, user_id=user_id)

    if mode != 'subscription':
        return SubscriptionUpdateResult(success=True, user_id=user_id)

    subscription_id = session_data.get('subscription')
    if isinstance(subscription_id, dict):
        subscription_id = subscription_id.get('id')
    if not subscription_id:
        return SubscriptionUpdateResult(success=False, user_id=user_id, error='No subscription ID')

    try:
        client = get_stripe()
        subscription = to_dict(client.Subscription.retrieve(subscription_id))
    except Exception as e:
        logger.error(f'Failed to retrieve subscription {subscription_id}: {e}', exc_info=True)
        return SubscriptionUpdateResult(success=False, user_id=user_id, error=str(e))

    if not reconciliation.primary_price_id(subscription):
        logger.error(f'No price ID found in subscription {subscription_id}')
        return SubscriptionUpdateResult(success=False, user_id=user_id, error='No price ID in subscription')

    try:
        plan = reconciliation.plan_checkout_activation(subscription)
    except reconciliation.BillingPeriodMissing as e:
        logger.error(str(e))
        return SubscriptionUpdateResult(success=False, user_id=user_id, error='Missing billing cycle dates')

    with transaction.atomic():
        user = _lock_user(user_id)
        if user is None:
            logger.error(f'Checkout completed for unknown user {user_id}')
            return SubscriptionUpdateResult(success=False, user_id=user_id, error='User not found')
        _apply_updates(user, plan.updates)
        is_admin = user.is_admin

    logger.info(f'Subscription activated for user {user_id}: {plan.tier} tier')

    sync_metered_items(
        subscription_id,
        plan.tier,
        is_admin,
        reconciliation.subscription_items(subscription),
    )
    _mark_coupon_used(session_data)

    return SubscriptionUpdateResult(
        success=True,
        user_id=user_id,
        tier=plan.tier,
        status=plan.status,
    )


def _mark_coupon_used(session_data: dict) -> None:
    """Flag the customer so checkout refuses a second promotional coupon."""
    coupon = (session_data.get('metadata') or {}).get('applied_coupon')
    customer_id = session_data.get('customer')
    if not coupon or not customer_id:
        return

    try:
        get_stripe().Customer.modify(customer_id, metadata={'has_used_coupon': 'true'})
        logger.info(f'Coupon {coupon} recorded as used for customer {customer_id}')
    except Exception as e:
        logger.error(f'Failed to record coupon use for customer {customer_id}: {e}')


def handle_payment_intent_succeeded(payment_intent_data: dict) -> SubscriptionUpdateResult:
    """
    Handle payment_intent.succeeded for top-up payments.

    The top-up details live on the checkout session metadata. Payments that
    did not come from a top-up checkout (e.g. subscription invoices) are
    acknowledged without changes. Credits are granted once per payment intent.
    """
    payment_intent_id = payment_intent_data.get('id')

    try:
        client = get_stripe()
        sessions = to_dict(client.checkout.Session.list(payment_intent=payment_intent_id, limit=1))
    except Exception as e:
        logger.error(f'Failed to look up checkout session for {payment_intent_id}: {e}', exc_info=True)
        return SubscriptionUpdateResult(success=False, error=str(e))

    session = (sessions.get('data') or [None])[0]
    if not session:
        logger.info('No session found for payment intent - may be subscription payment')
        return SubscriptionUpdateResult(success=True)

    metadata = session.get('metadata') or {}
    user_id = metadata.get('user_id')
    topup_type = metadata.get('topup_type')
    try:
        topup_quantity = int(metadata.get('topup_quantity') or 0)
    except (TypeError, ValueError):
        topup_quantity = 0

    if not user_id or not topup_type or topup_quantity <= 0:
        logger.info('Not a top-up payment - missing metadata')
        return SubscriptionUpdateResult(success=True)

    credit_field = {
        tiers.MESSAGE_TOPUP: 'messages_topup_credits',
        tiers.AI_TOPUP: 'ai_requests_topup_credits',
    }.get(topup_type)
    if credit_field is None:
        logger.warning(f'Unknown top-up type {topup_type} on payment intent {payment_intent_id}')
        return SubscriptionUpdateResult(success=True, user_id=user_id)

    if Purchase.objects.filter(stripe_payment_intent_id=payment_intent_id).exists():
        logger.info(f'Top-up {payment_intent_id} already credited, skipping')
        return SubscriptionUpdateResult(success=True, user_id=user_id)

    try:
        with transaction.atomic():
            updated = User.objects.filter(id=user_id).update(
                updated_at=timezone.now(),
                **{credit_field: F(credit_field) + topup_quantity},
            )
            if not updated:
                logger.error(f'Top-up for unknown user {user_id}')
                return SubscriptionUpdateResult(success=False, user_id=user_id, error='User not found')

            Purchase.objects.create(
                user_id=user_id,
                purchase_type=topup_type,
                stripe_payment_intent_id=payment_intent_id,
                amount_cents=payment_intent_data.get('amount') or 0,
                currency=payment_intent_data.get('currency') or 'usd',
                quantity=topup_quantity,
                description=tiers.describe_topup(topup_type, topup_quantity),
                status='completed',
                purchased_at=reconciliation.from_timestamp(payment_intent_data.get('created')),
                metadata={
                    'product': metadata.get('topup_product'),
                    'payment_method': payment_intent_data.get('payment_method'),
                },
            )
    except IntegrityError:
        # Concurrent delivery of the same event won the insert
        logger.info(f'Top-up {payment_intent_id} recorded concurrently, skipping')
        return SubscriptionUpdateResult(success=True, user_id=user_id)

    logger.info(f'Top-up successful: User {user_id} received {topup_quantity} {topup_type} credits')

    return SubscriptionUpdateResult(success=True, user_id=user_id)


def handle_subscription_updated(subscription_data: dict) -> SubscriptionUpdateResult:
    """
    Handle customer.subscription.updated.

    Distinguishes a billing cycle renewal from an in-cycle update and
    applies scheduled tier changes at the renewal boundary.
    """
    user_id = _user_id_from_metadata(subscription_data)
    if not user_id:
        logger.error('Missing user_id in subscription metadata')
        return SubscriptionUpdateResult(success=False, error='Missing user_id')

    subscription_id = subscription_data.get('id')

    with transaction.atomic():
        user = _lock_user(user_id)
        if user is None:
            logger.error(f'Subscription {subscription_id} updated for unknown user {user_id}')
            return SubscriptionUpdateResult(success=False, user_id=user_id, error='User not found')

        state = reconciliation.UserBillingState(
            subscription_tier=user.subscription_tier,
            billing_cycle_start=user.billing_cycle_start,
            scheduled_tier_change=user.scheduled_tier_change,
            is_admin=user.is_admin,
        )

        try:
            plan = reconciliation.plan_subscription_update(state, subscription_data)
        except reconciliation.BillingPeriodMissing as e:
            logger.error(str(e))
            return SubscriptionUpdateResult(success=False, user_id=user_id, error='Missing billing cycle dates')

        _apply_updates(user, plan.updates)

    if plan.is_renewal:
        logger.info(f'Billing cycle renewal detected for user {user_id}, usage reset')
        if state.scheduled_tier_change:
            logger.info(
                f'Applied scheduled tier change for user {user_id}: '
                f'{state.subscription_tier} -> {state.scheduled_tier_change}'
            )
    elif state.scheduled_tier_change:
        logger.info(
            f'Scheduled change to {state.scheduled_tier_change} pending for user {user_id}, '
            f'keeping {plan.tier}'
        )

    if plan.apply_tier_to_stripe:
        apply_tier_to_subscription(
            subscription_id,
            plan.apply_tier_to_stripe,
            state.is_admin,
            reconciliation.subscription_items(subscription_data),
        )

    cancel_note = ' (scheduled to cancel)' if subscription_data.get('cancel_at_period_end') else ''
    logger.info(f'Subscription updated for user {user_id}: {plan.tier} tier, status: {plan.status}{cancel_note}')

    return SubscriptionUpdateResult(
        success=True,
        user_id=user_id,
        tier=plan.tier,
        status=plan.status,
        is_renewal=plan.is_renewal,
    )


def handle_subscription_deleted(subscription_data: dict) -> SubscriptionUpdateResult:
    """Handle customer.subscription.deleted: revert the user to the free tier."""
    user_id = _user_id_from_metadata(subscription_data)
    if not user_id:
        logger.error('Missing user_id in subscription metadata')
        return SubscriptionUpdateResult(success=False, error='Missing user_id')

    plan = reconciliation.plan_subscription_deleted()

    with transaction.atomic():
        user = _lock_user(user_id)
        if user is None:
            logger.error(f'Subscription deleted for unknown user {user_id}')
            return SubscriptionUpdateResult(success=False, user_id=user_id, error='User not found')

        # A stale delete for an older subscription must not wipe a newer one
        current = user.stripe_subscription_id
        if current and subscription_data.get('id') and current != subscription_data['id']:
            logger.info(
                f"Ignoring deletion of {subscription_data['id']} for user {user_id}: "
                f'current subscription is {current}'
            )
            return SubscriptionUpdateResult(
                success=True, user_id=user_id, tier=user.tier, status=user.subscription_status
            )

        _apply_updates(user, plan.updates)

    logger.info(f'Subscription canceled for user {user_id} - reverted to free tier')

    return SubscriptionUpdateResult(
        success=True,
        user_id=user_id,
        tier=plan.tier,
        status=plan.status,
    )


# =============================================================================
# Stripe subscription item synchronisation
# =============================================================================

def sync_metered_items(subscription_id: str, tier: str, is_admin: bool, existing_items: list[dict]) -> list[str]:
    """
    Add the tier's metered prices that are missing from a subscription.

    Failures are logged per price and never raised: the subscription itself
    is already active and a missing metered item only affects overage billing.

    Returns:
        Price IDs that were added
    """
    added = []
    to_add = reconciliation.missing_metered_prices(existing_items, tier, is_admin)
    if not to_add:
        return added

    try:
        client = get_stripe()
    except ValueError as e:
        logger.error(f'Cannot add metered prices to {subscription_id}: {e}')
        return added

    for price_id in to_add:
        try:
            client.SubscriptionItem.create(subscription=subscription_id, price=price_id)
            added.append(price_id)
            logger.info(f'Added metered price {price_id} to subscription {subscription_id}')
        except Exception as e:
            logger.error(f'Failed to add metered price {price_id}: {e}')

    return added


def apply_tier_to_subscription(subscription_id: str, new_tier: str, is_admin: bool, existing_items: list[dict]) -> bool:
    """
    Swap a subscription onto a new tier at a renewal boundary.

    No proration: the new cycle has just started at the old price.
    The database already reflects the new tier; a Stripe failure is logged.
    """
    try:
        items, metered_prices = reconciliation.plan_items_for_tier(existing_items, new_tier, is_admin)
    except ValueError as e:
        logger.error(f'Cannot move subscription {subscription_id} to {new_tier}: {e}')
        return False

    try:
        client = get_stripe()
        client.Subscription.modify(
            subscription_id,
            items=items,
            proration_behavior='none',
            billing_cycle_anchor='unchanged',
        )
    except Exception as e:
        logger.error(f'Failed to update Stripe subscription {subscription_id} for scheduled change: {e}')
        return False

    for price_id in metered_prices:
        try:
            client.SubscriptionItem.create(subscription=subscription_id, price=price_id)
        except Exception as e:
            logger.error(f'Failed to add metered price {price_id}: {e}')

    logger.info(f'Updated subscription {subscription_id} to {new_tier} tier')
    return True


# =============================================================================
# Development tooling
# =============================================================================

RENEWAL_SIMULATION_DAYS = 30


def simulate_renewal(user_id: str) -> SubscriptionUpdateResult:
    """
    Replay a billing cycle renewal for a user without waiting for Stripe.

    Builds the subscription snapshot Stripe would send at the next period
    boundary (current items, period advanced by one cycle) and runs it
    through handle_subscription_updated. Only for test environments.
    """
    user = User.objects.filter(id=user_id).first()
    if user is None:
        return SubscriptionUpdateResult(success=False, user_id=str(user_id), error='User not found')
    if not user.stripe_subscription_id:
        return SubscriptionUpdateResult(success=False, user_id=str(user.id), error='No active subscription')

    try:
        client = get_stripe()
        subscription = to_dict(client.Subscription.retrieve(user.stripe_subscription_id))
    except Exception as e:
        logger.error(f'Failed to retrieve subscription {user.stripe_subscription_id}: {e}', exc_info=True)
        return SubscriptionUpdateResult(success=False, user_id=str(user.id), error=str(e))

    new_start = user.billing_cycle_end or timezone.now()
    if user.billing_cycle_start and new_start <= user.billing_cycle_start:
        new_start = timezone.now()
    new_end = new_start + timedelta(days=RENEWAL_SIMULATION_DAYS)

    snapshot = {
        'id': user.stripe_subscription_id,
        'status': subscription.get('status') or reconciliation.ACTIVE,
        'cancel_at_period_end': subscription.get('cancel_at_period_end', False),
        'current_period_start': int(new_start.timestamp()),
        'current_period_end': int(new_end.timestamp()),
        'items': {'data': reconciliation.subscription_items(subscription)},
        'metadata': {'user_id': str(user.id)},
    }

    logger.info(f'Simulating renewal for user {user.id}: new cycle starts {new_start.isoformat()}')
    return handle_subscription_updated(snapshot)
