"""
Subscription Reconciliation

Decides how a Stripe subscription snapshot changes the stored user state.
Everything here is pure: the webhook services load the user row, ask for a
plan, then write it and perform the Stripe calls the plan asks for.

Renewal rules:
- A renewal is a billing period whose start is strictly later than the
  stored start. Stripe also sends subscription.updated for in-cycle edits
  (upgrades, cancel_at_period_end toggles) which must not reset usage.
- On renewal, usage counters reset to the new period start and a scheduled
  tier change takes effect.
- Outside a renewal, a scheduled downgrade pins the stored tier until the
  boundary; otherwise the tier follows the Stripe price (immediate upgrade).
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone

from . import tiers

ACTIVE = 'active'
PAST_DUE = 'past_due'
CANCELED = 'canceled'
FREE_STATUS = 'free'


class BillingPeriodMissing(ValueError):
    """Raised when neither the subscription nor its items carry period dates."""


@dataclass
class BillingPeriod:
    start: datetime
    end: datetime
    source: str  # 'subscription' or 'item'


@dataclass
class UserBillingState:
    """The stored fields reconciliation reads."""
    subscription_tier: str | None
    billing_cycle_start: datetime | None
    scheduled_tier_change: str | None
    is_admin: bool = False


@dataclass
class SubscriptionUpdatePlan:
    """Fields to write plus the Stripe follow-up, if any."""
    updates: dict = field(default_factory=dict)
    is_renewal: bool = False
    tier: str = tiers.FREE
    status: str = FREE_STATUS
    # Tier whose price must be pushed onto the Stripe subscription
    apply_tier_to_stripe: str | None = None


def from_timestamp(value: int | float | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def subscription_items(subscription: dict) -> list[dict]:
    return (subscription.get('items') or {}).get('data') or []


def primary_price_id(subscription: dict) -> str | None:
    items = subscription_items(subscription)
    if not items:
        return None
    return (items[0].get('price') or {}).get('id')


def extract_billing_period(subscription: dict) -> BillingPeriod:
    """
    Read the current billing period from a Stripe subscription.

    Newer Stripe API versions moved current_period_* from the subscription
    onto its items, so both locations are checked.
    """
    start = subscription.get('current_period_start')
    end = subscription.get('current_period_end')
    source = 'subscription'

    if not start or not end:
        items = subscription_items(subscription)
        if items:
            start = items[0].get('current_period_start')
            end = items[0].get('current_period_end')
            source = 'item'

    if not start or not end:
        raise BillingPeriodMissing(
            f"Missing billing cycle dates in subscription: {subscription.get('id')}"
        )

    return BillingPeriod(start=from_timestamp(start), end=from_timestamp(end), source=source)


def map_subscription_status(stripe_status: str | None) -> str:
    if stripe_status in (ACTIVE, PAST_DUE, CANCELED):
        return stripe_status
    return FREE_STATUS


def is_renewal(stored_start: datetime | None, incoming_start: datetime) -> bool:
    """True only when a stored cycle exists and the incoming one starts later."""
    if stored_start is None:
        return False
    return incoming_start > stored_start


def usage_reset_fields(cycle_start: datetime) -> dict:
    return {
        'messages_sent_count': 0,
        'messages_reset_date': cycle_start,
        'ai_requests_count': 0,
        'ai_requests_reset_date': cycle_start,
    }


def plan_subscription_update(state: UserBillingState, subscription: dict) -> SubscriptionUpdatePlan:
    """
    Build the update for a customer.subscription.updated event.

    Raises:
        BillingPeriodMissing: if the subscription has no period dates
    """
    period = extract_billing_period(subscription)
    status = map_subscription_status(subscription.get('status'))
    price_id = primary_price_id(subscription)
    stripe_tier = tiers.get_tier_from_price_id(price_id)

    plan = SubscriptionUpdatePlan(status=status)
    plan.updates = {
        'subscription_status': status,
        'billing_cycle_start': period.start,
        'billing_cycle_end': period.end,
    }
    plan.is_renewal = is_renewal(state.billing_cycle_start, period.start)

    if plan.is_renewal:
        plan.updates.update(usage_reset_fields(period.start))

        if state.scheduled_tier_change:
            plan.tier = state.scheduled_tier_change
            plan.updates['scheduled_tier_change'] = None
            plan.updates['scheduled_tier_change_date'] = None
            # A cancellation is carried out by Stripe itself at period end
            if plan.tier != tiers.FREE:
                plan.apply_tier_to_stripe = plan.tier
        else:
            plan.tier = stripe_tier
    elif state.scheduled_tier_change:
        plan.tier = state.subscription_tier or tiers.FREE
    else:
        plan.tier = stripe_tier

    plan.updates['subscription_tier'] = plan.tier
    return plan


def plan_checkout_activation(subscription: dict) -> SubscriptionUpdatePlan:
    """
    Build the update for a completed subscription checkout.

    A fresh subscription starts a fresh cycle, so usage counters reset.
    Deal counts are left untouched.
    """
    period = extract_billing_period(subscription)
    tier = tiers.get_tier_from_price_id(primary_price_id(subscription))

    updates = {
        'subscription_status': ACTIVE,
        'subscription_tier': tier,
        'stripe_subscription_id': subscription.get('id'),
        'billing_cycle_start': period.start,
        'billing_cycle_end': period.end,
        'scheduled_tier_change': None,
        'scheduled_tier_change_date': None,
    }
    updates.update(usage_reset_fields(period.start))

    return SubscriptionUpdatePlan(updates=updates, tier=tier, status=ACTIVE)


def plan_subscription_deleted() -> SubscriptionUpdatePlan:
    updates = {
        'subscription_status': CANCELED,
        'subscription_tier': tiers.FREE,
        'stripe_subscription_id': None,
        'scheduled_tier_change': None,
        'scheduled_tier_change_date': None,
    }
    return SubscriptionUpdatePlan(updates=updates, tier=tiers.FREE, status=CANCELED)


def plan_items_for_tier(existing_items: list[dict], new_tier: str, is_admin: bool) -> tuple[list[dict], list[str]]:
    """
    Work out the subscription item edits for moving to a new tier.

    Returns (items_to_modify, metered_prices_to_add): the main item gets the
    new tier price, every other item is deleted, then the new tier's metered
    prices are added.

    Raises:
        ValueError: if the tier has no price or the subscription has no items
    """
    new_price_id = tiers.get_tier_price_id(new_tier)
    if not new_price_id:
        raise ValueError(f'No price configured for tier {new_tier}')
    if not existing_items:
        raise ValueError('Subscription has no items')

    main_item = existing_items[0]
    items = [{'id': main_item['id'], 'price': new_price_id}]
    items.extend({'id': item['id'], 'deleted': True} for item in existing_items[1:])

    return items, tiers.metered_prices_for_tier(new_tier, is_admin)


def missing_metered_prices(existing_items: list[dict], tier: str, is_admin: bool) -> list[str]:
    """Metered prices of the tier that are not yet on the subscription."""
    existing = {(item.get('price') or {}).get('id') for item in existing_items}
    return [price for price in tiers.metered_prices_for_tier(tier, is_admin) if price not in existing]
