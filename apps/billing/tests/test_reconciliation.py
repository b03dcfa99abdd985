"""
Subscription Reconciliation Unit Tests

Renewal detection, scheduled tier changes, billing period extraction and
subscription item planning. No database or Stripe access.
"""
from datetime import datetime, timedelta, timezone

import pytest

from apps.billing import reconciliation
from apps.billing.reconciliation import UserBillingState
from tests.factories.payloads import stripe_subscription

CYCLE_START = datetime(2025, 1, 1, tzinfo=timezone.utc)
NEXT_CYCLE = CYCLE_START + timedelta(days=31)


def _state(tier='pro', start=CYCLE_START, scheduled=None, is_admin=False):
    return UserBillingState(
        subscription_tier=tier,
        billing_cycle_start=start,
        scheduled_tier_change=scheduled,
        is_admin=is_admin,
    )


class TestBillingPeriod:

    def test_reads_subscription_level_dates(self):
        period = reconciliation.extract_billing_period(stripe_subscription(period_start=CYCLE_START))
        assert period.start == CYCLE_START
        assert period.end == CYCLE_START + timedelta(days=30)
        assert period.source == 'subscription'

    def test_falls_back_to_first_item(self):
        subscription = stripe_subscription(period_start=CYCLE_START, on_items=True)
        period = reconciliation.extract_billing_period(subscription)
        assert period.start == CYCLE_START
        assert period.source == 'item'

    def test_missing_dates_raise(self):
        subscription = {'id': 'sub_1', 'items': {'data': [{'id': 'si_1', 'price': {'id': 'price_pro'}}]}}
        with pytest.raises(reconciliation.BillingPeriodMissing):
            reconciliation.extract_billing_period(subscription)

    def test_from_timestamp_is_utc_aware(self):
        value = reconciliation.from_timestamp(1735689600)
        assert value == CYCLE_START
        assert value.tzinfo is not None
        assert reconciliation.from_timestamp(None) is None


class TestStatusMapping:

    @pytest.mark.parametrize('stripe_status,expected', [
        ('active', 'active'),
        ('past_due', 'past_due'),
        ('canceled', 'canceled'),
        ('trialing', 'free'),
        ('incomplete', 'free'),
        ('unpaid', 'free'),
        (None, 'free'),
    ])
    def test_map_subscription_status(self, stripe_status, expected):
        assert reconciliation.map_subscription_status(stripe_status) == expected


class TestIsRenewal:

    def test_later_start_is_renewal(self):
        assert reconciliation.is_renewal(CYCLE_START, NEXT_CYCLE) is True

    def test_same_start_is_not_renewal(self):
        assert reconciliation.is_renewal(CYCLE_START, CYCLE_START) is False

    def test_earlier_start_is_not_renewal(self):
        assert reconciliation.is_renewal(NEXT_CYCLE, CYCLE_START) is False

    def test_no_stored_cycle_is_not_renewal(self):
        assert reconciliation.is_renewal(None, NEXT_CYCLE) is False


class TestPlanSubscriptionUpdate:

    def test_in_cycle_update_follows_stripe_price(self):
        plan = reconciliation.plan_subscription_update(
            _state(tier='basic'),
            stripe_subscription(price_id='price_pro', period_start=CYCLE_START),
        )
        assert plan.is_renewal is False
        assert plan.tier == 'pro'
        assert plan.updates['subscription_tier'] == 'pro'
        assert 'messages_sent_count' not in plan.updates
        assert plan.apply_tier_to_stripe is None

    def test_renewal_resets_usage(self):
        plan = reconciliation.plan_subscription_update(
            _state(),
            stripe_subscription(price_id='price_pro', period_start=NEXT_CYCLE),
        )
        assert plan.is_renewal is True
        assert plan.updates['messages_sent_count'] == 0
        assert plan.updates['ai_requests_count'] == 0
        assert plan.updates['messages_reset_date'] == NEXT_CYCLE
        assert plan.updates['ai_requests_reset_date'] == NEXT_CYCLE
        assert plan.updates['billing_cycle_start'] == NEXT_CYCLE

    def test_renewal_applies_scheduled_downgrade(self):
        plan = reconciliation.plan_subscription_update(
            _state(tier='expert', scheduled='basic'),
            stripe_subscription(price_id='price_expert', period_start=NEXT_CYCLE),
        )
        assert plan.tier == 'basic'
        assert plan.updates['subscription_tier'] == 'basic'
        assert plan.updates['scheduled_tier_change'] is None
        assert plan.updates['scheduled_tier_change_date'] is None
        assert plan.apply_tier_to_stripe == 'basic'

    def test_renewal_with_scheduled_cancellation_leaves_stripe_alone(self):
        plan = reconciliation.plan_subscription_update(
            _state(tier='pro', scheduled='free'),
            stripe_subscription(price_id='price_pro', period_start=NEXT_CYCLE),
        )
        assert plan.tier == 'free'
        assert plan.apply_tier_to_stripe is None

    def test_pending_downgrade_keeps_stored_tier_mid_cycle(self):
        plan = reconciliation.plan_subscription_update(
            _state(tier='expert', scheduled='pro'),
            stripe_subscription(price_id='price_basic', period_start=CYCLE_START),
        )
        assert plan.is_renewal is False
        assert plan.tier == 'expert'
        assert 'scheduled_tier_change' not in plan.updates

    def test_first_sync_without_stored_cycle(self):
        plan = reconciliation.plan_subscription_update(
            _state(start=None),
            stripe_subscription(price_id='price_basic', period_start=NEXT_CYCLE),
        )
        assert plan.is_renewal is False
        assert plan.tier == 'basic'
        assert plan.updates['billing_cycle_start'] == NEXT_CYCLE

    def test_status_is_mapped(self):
        plan = reconciliation.plan_subscription_update(
            _state(),
            stripe_subscription(status='past_due', period_start=CYCLE_START),
        )
        assert plan.status == 'past_due'
        assert plan.updates['subscription_status'] == 'past_due'

    def test_missing_period_raises(self):
        with pytest.raises(reconciliation.BillingPeriodMissing):
            reconciliation.plan_subscription_update(_state(), {'id': 'sub_1', 'items': {'data': []}})


class TestCheckoutAndDeletion:

    def test_checkout_activation(self):
        plan = reconciliation.plan_checkout_activation(
            stripe_subscription(subscription_id='sub_new', price_id='price_expert', period_start=CYCLE_START)
        )
        assert plan.tier == 'expert'
        assert plan.status == 'active'
        assert plan.updates['stripe_subscription_id'] == 'sub_new'
        assert plan.updates['messages_sent_count'] == 0
        assert plan.updates['scheduled_tier_change'] is None
        assert 'deals_created_count' not in plan.updates

    def test_subscription_deleted(self):
        plan = reconciliation.plan_subscription_deleted()
        assert plan.tier == 'free'
        assert plan.updates == {
            'subscription_status': 'canceled',
            'subscription_tier': 'free',
            'stripe_subscription_id': None,
            'scheduled_tier_change': None,
            'scheduled_tier_change_date': None,
        }


class TestSubscriptionItems:

    def test_plan_items_swaps_main_price_and_drops_metered(self):
        existing = [
            {'id': 'si_main', 'price': {'id': 'price_expert'}},
            {'id': 'si_msgs', 'price': {'id': 'price_expert_messages'}},
            {'id': 'si_ai', 'price': {'id': 'price_expert_ai'}},
        ]
        items, metered = reconciliation.plan_items_for_tier(existing, 'basic', is_admin=True)
        assert items == [
            {'id': 'si_main', 'price': 'price_basic'},
            {'id': 'si_msgs', 'deleted': True},
            {'id': 'si_ai', 'deleted': True},
        ]
        assert metered == ['price_basic_messages']

    def test_plan_items_requires_price_and_items(self):
        with pytest.raises(ValueError):
            reconciliation.plan_items_for_tier([{'id': 'si_main'}], 'free', is_admin=False)
        with pytest.raises(ValueError):
            reconciliation.plan_items_for_tier([], 'pro', is_admin=False)

    def test_missing_metered_prices(self):
        existing = [
            {'id': 'si_main', 'price': {'id': 'price_expert'}},
            {'id': 'si_msgs', 'price': {'id': 'price_expert_messages'}},
        ]
        assert reconciliation.missing_metered_prices(existing, 'expert', is_admin=True) == ['price_expert_ai']
        assert reconciliation.missing_metered_prices(existing, 'expert', is_admin=False) == []
