"""
Webhook Service Tests

Stripe event handlers against a real test database with the Stripe client
mocked out.
"""
from datetime import timedelta
from unittest.mock import call

import pytest
from django.utils import timezone

from apps.billing import services
from apps.core.models import Purchase
from tests.factories import PurchaseFactory, UserFactory
from tests.factories.payloads import stripe_event, stripe_subscription


def _now():
    return timezone.now().replace(microsecond=0)


@pytest.mark.django_db
class TestDispatchEvent:

    def test_unhandled_event_returns_none(self, mock_stripe):
        assert services.dispatch_event(stripe_event('invoice.paid', {'id': 'in_1'})) is None

    def test_routes_to_handler(self, mock_stripe):
        user = UserFactory(subscribed=True, stripe_subscription_id='sub_123')
        event = stripe_event('customer.subscription.deleted', {'id': 'sub_123', 'metadata': {'user_id': str(user.id)}})

        result = services.dispatch_event(event)

        assert result.success is True
        assert result.tier == 'free'


@pytest.mark.django_db
class TestCheckoutCompleted:

    def _session(self, user, **overrides):
        session = {
            'id': 'cs_1',
            'mode': 'subscription',
            'subscription': 'sub_new',
            'customer': 'cus_1',
            'metadata': {'user_id': str(user.id), 'tier': 'expert'},
        }
        session.update(overrides)
        return session

    def test_activates_subscription_and_resets_usage(self, mock_stripe):
        user = UserFactory(messages_sent_count=12, ai_requests_count=3, deals_created_count=7)
        start = _now()
        mock_stripe.Subscription.retrieve.return_value = stripe_subscription(
            subscription_id='sub_new', price_id='price_expert', period_start=start
        )

        result = services.handle_checkout_completed(self._session(user))

        assert result.success is True
        assert result.tier == 'expert'
        user.refresh_from_db()
        assert user.subscription_tier == 'expert'
        assert user.subscription_status == 'active'
        assert user.stripe_subscription_id == 'sub_new'
        assert user.billing_cycle_start == start
        assert user.billing_cycle_end == start + timedelta(days=30)
        assert user.messages_sent_count == 0
        assert user.ai_requests_count == 0
        assert user.deals_created_count == 7

    def test_adds_missing_metered_items(self, mock_stripe):
        user = UserFactory(admin=True)
        mock_stripe.Subscription.retrieve.return_value = stripe_subscription(
            subscription_id='sub_new', price_id='price_expert'
        )

        services.handle_checkout_completed(self._session(user))

        mock_stripe.SubscriptionItem.create.assert_has_calls([
            call(subscription='sub_new', price='price_expert_messages'),
            call(subscription='sub_new', price='price_expert_ai'),
        ])

    def test_marks_coupon_used(self, mock_stripe):
        user = UserFactory()
        mock_stripe.Subscription.retrieve.return_value = stripe_subscription(subscription_id='sub_new')
        session = self._session(user, metadata={'user_id': str(user.id), 'applied_coupon': 'WELCOME50'})

        services.handle_checkout_completed(session)

        mock_stripe.Customer.modify.assert_called_once_with('cus_1', metadata={'has_used_coupon': 'true'})

    def test_payment_mode_waits_for_payment_intent(self, mock_stripe):
        user = UserFactory()

        result = services.handle_checkout_completed(self._session(user, mode='payment'))

        assert result.success is True
        mock_stripe.Subscription.retrieve.assert_not_called()

    def test_missing_user_id(self, mock_stripe):
        result = services.handle_checkout_completed({'mode': 'subscription', 'metadata': {}})
        assert result.success is False
        assert result.error == 'Missing user_id'

    def test_missing_billing_dates(self, mock_stripe):
        user = UserFactory()
        mock_stripe.Subscription.retrieve.return_value = {
            'id': 'sub_new',
            'items': {'data': [{'id': 'si_1', 'price': {'id': 'price_pro'}}]},
        }

        result = services.handle_checkout_completed(self._session(user))

        assert result.success is False
        assert result.error == 'Missing billing cycle dates'
        user.refresh_from_db()
        assert user.subscription_tier == 'free'

    def test_stripe_failure_is_reported(self, mock_stripe):
        user = UserFactory()
        mock_stripe.Subscription.retrieve.side_effect = RuntimeError('boom')

        result = services.handle_checkout_completed(self._session(user))

        assert result.success is False
        assert result.error == 'boom'


@pytest.mark.django_db
class TestPaymentIntentSucceeded:

    def _payment_intent(self, pi_id='pi_1'):
        return {'id': pi_id, 'amount': 500, 'currency': 'usd', 'created': 1735689600, 'payment_method': 'pm_1'}

    def _session_list(self, user, topup_type='message_topup', quantity='100'):
        return {'data': [{
            'id': 'cs_1',
            'metadata': {
                'user_id': str(user.id),
                'topup_type': topup_type,
                'topup_quantity': quantity,
                'topup_product': 'MESSAGE_PRO_100',
            },
        }]}

    def test_credits_messages_and_records_purchase(self, mock_stripe):
        user = UserFactory(subscribed=True, messages_topup_credits=5)
        mock_stripe.checkout.Session.list.return_value = self._session_list(user)

        result = services.handle_payment_intent_succeeded(self._payment_intent())

        assert result.success is True
        user.refresh_from_db()
        assert user.messages_topup_credits == 105
        purchase = Purchase.objects.get(stripe_payment_intent_id='pi_1')
        assert purchase.quantity == 100
        assert purchase.amount_cents == 500
        assert purchase.purchase_type == 'message_topup'
        assert purchase.description == '100 messages top-up'
        assert purchase.metadata['product'] == 'MESSAGE_PRO_100'

    def test_credits_ai_requests(self, mock_stripe):
        user = UserFactory(subscribed=True)
        mock_stripe.checkout.Session.list.return_value = self._session_list(user, 'ai_topup', '50')

        services.handle_payment_intent_succeeded(self._payment_intent())

        user.refresh_from_db()
        assert user.ai_requests_topup_credits == 50
        assert user.messages_topup_credits == 0

    def test_redelivery_is_idempotent(self, mock_stripe):
        user = UserFactory(subscribed=True, messages_topup_credits=0)
        PurchaseFactory(user=user, stripe_payment_intent_id='pi_1')
        mock_stripe.checkout.Session.list.return_value = self._session_list(user)

        result = services.handle_payment_intent_succeeded(self._payment_intent())

        assert result.success is True
        user.refresh_from_db()
        assert user.messages_topup_credits == 0
        assert Purchase.objects.filter(stripe_payment_intent_id='pi_1').count() == 1

    def test_subscription_payment_is_ignored(self, mock_stripe):
        mock_stripe.checkout.Session.list.return_value = {'data': []}

        result = services.handle_payment_intent_succeeded(self._payment_intent())

        assert result.success is True
        assert Purchase.objects.count() == 0

    def test_session_without_topup_metadata(self, mock_stripe):
        mock_stripe.checkout.Session.list.return_value = {'data': [{'id': 'cs_1', 'metadata': {}}]}

        result = services.handle_payment_intent_succeeded(self._payment_intent())

        assert result.success is True
        assert Purchase.objects.count() == 0


@pytest.mark.django_db
class TestSubscriptionUpdated:

    def test_in_cycle_update_keeps_usage(self, mock_stripe):
        user = UserFactory(subscribed=True, subscription_tier='basic', messages_sent_count=30)
        subscription = stripe_subscription(
            user_id=user.id, price_id='price_pro', period_start=user.billing_cycle_start
        )

        result = services.handle_subscription_updated(subscription)

        assert result.is_renewal is False
        user.refresh_from_db()
        assert user.subscription_tier == 'pro'
        assert user.messages_sent_count == 30

    def test_renewal_resets_usage(self, mock_stripe):
        user = UserFactory(subscribed=True, messages_sent_count=180, ai_requests_count=4)
        new_start = user.billing_cycle_end
        subscription = stripe_subscription(user_id=user.id, price_id='price_pro', period_start=new_start)

        result = services.handle_subscription_updated(subscription)

        assert result.success is True
        assert result.is_renewal is True
        user.refresh_from_db()
        assert user.messages_sent_count == 0
        assert user.ai_requests_count == 0
        assert user.messages_reset_date == new_start
        assert user.billing_cycle_start == new_start

    def test_renewal_applies_scheduled_downgrade(self, mock_stripe):
        user = UserFactory(
            subscribed=True,
            subscription_tier='expert',
            scheduled_tier_change='basic',
            scheduled_tier_change_date=timezone.now(),
        )
        subscription = stripe_subscription(
            user_id=user.id,
            price_id='price_expert',
            period_start=user.billing_cycle_end,
            extra_items=[{'id': 'si_msgs', 'price': {'id': 'price_expert_messages'}}],
        )

        result = services.handle_subscription_updated(subscription)

        assert result.tier == 'basic'
        user.refresh_from_db()
        assert user.subscription_tier == 'basic'
        assert user.scheduled_tier_change is None
        assert user.scheduled_tier_change_date is None
        mock_stripe.Subscription.modify.assert_called_once_with(
            'sub_123',
            items=[{'id': 'si_main', 'price': 'price_basic'}, {'id': 'si_msgs', 'deleted': True}],
            proration_behavior='none',
            billing_cycle_anchor='unchanged',
        )
        mock_stripe.SubscriptionItem.create.assert_called_once_with(
            subscription='sub_123', price='price_basic_messages'
        )

    def test_stripe_failure_keeps_database_change(self, mock_stripe):
        user = UserFactory(subscribed=True, subscription_tier='expert', scheduled_tier_change='pro')
        mock_stripe.Subscription.modify.side_effect = RuntimeError('stripe down')
        subscription = stripe_subscription(
            user_id=user.id, price_id='price_expert', period_start=user.billing_cycle_end
        )

        result = services.handle_subscription_updated(subscription)

        assert result.success is True
        user.refresh_from_db()
        assert user.subscription_tier == 'pro'

    def test_pending_downgrade_is_not_applied_mid_cycle(self, mock_stripe):
        user = UserFactory(subscribed=True, subscription_tier='expert', scheduled_tier_change='basic')
        subscription = stripe_subscription(
            user_id=user.id, price_id='price_expert', period_start=user.billing_cycle_start
        )

        services.handle_subscription_updated(subscription)

        user.refresh_from_db()
        assert user.subscription_tier == 'expert'
        assert user.scheduled_tier_change == 'basic'
        mock_stripe.Subscription.modify.assert_not_called()

    def test_past_due_status(self, mock_stripe):
        user = UserFactory(subscribed=True)
        subscription = stripe_subscription(
            user_id=user.id, status='past_due', period_start=user.billing_cycle_start
        )

        services.handle_subscription_updated(subscription)

        user.refresh_from_db()
        assert user.subscription_status == 'past_due'

    def test_unknown_user(self, mock_stripe):
        result = services.handle_subscription_updated(
            stripe_subscription(user_id='00000000-0000-0000-0000-00000000abcd')
        )
        assert result.success is False
        assert result.error == 'User not found'


@pytest.mark.django_db
class TestSubscriptionDeleted:

    def test_reverts_to_free(self, mock_stripe):
        user = UserFactory(subscribed=True, scheduled_tier_change='free', messages_topup_credits=20)

        result = services.handle_subscription_deleted({'id': 'sub_123', 'metadata': {'user_id': str(user.id)}})

        assert result.status == 'canceled'
        user.refresh_from_db()
        assert user.subscription_tier == 'free'
        assert user.subscription_status == 'canceled'
        assert user.stripe_subscription_id is None
        assert user.scheduled_tier_change is None
        assert user.messages_topup_credits == 20

    def test_stale_delete_for_replaced_subscription_is_ignored(self, mock_stripe):
        user = UserFactory(subscribed=True, stripe_subscription_id='sub_current')

        result = services.handle_subscription_deleted({'id': 'sub_old', 'metadata': {'user_id': str(user.id)}})

        assert result.success is True
        user.refresh_from_db()
        assert user.stripe_subscription_id == 'sub_current'
        assert user.subscription_tier == 'pro'


@pytest.mark.django_db
class TestSimulateRenewal:

    def test_runs_renewal_plan(self, mock_stripe):
        user = UserFactory(subscribed=True, messages_sent_count=99)
        old_end = user.billing_cycle_end
        mock_stripe.Subscription.retrieve.return_value = stripe_subscription(
            price_id='price_pro', period_start=user.billing_cycle_start
        )

        result = services.simulate_renewal(user.id)

        assert result.success is True
        assert result.is_renewal is True
        user.refresh_from_db()
        assert user.messages_sent_count == 0
        assert user.billing_cycle_start == old_end
        assert user.billing_cycle_end == old_end + timedelta(days=30)

    def test_requires_subscription(self, mock_stripe):
        user = UserFactory()

        result = services.simulate_renewal(user.id)

        assert result.success is False
        assert result.error == 'No active subscription'
