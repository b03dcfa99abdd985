"""
Subscription Tier Catalog

Tier limits, Stripe price mappings and top-up products. Price IDs come from
settings so every environment (test mode, live mode) maps its own prices.
"""
import math
from dataclasses import dataclass, field
from decimal import Decimal

from django.conf import settings

FREE = 'free'
BASIC = 'basic'
PRO = 'pro'
EXPERT = 'expert'

TIERS = (FREE, BASIC, PRO, EXPERT)

# Tier hierarchy for determining upgrades vs downgrades
TIER_HIERARCHY = {
    FREE: 0,
    BASIC: 1,
    PRO: 2,
    EXPERT: 3,
}

UNLIMITED = math.inf


@dataclass(frozen=True)
class TierLimits:
    """Per billing cycle allowances and feature gates of a tier."""
    name: str
    price: int
    deals: float
    messages: int
    ai_requests: int
    overage_price: Decimal | None = None
    ai_overage_price: Decimal | None = None
    sms_blocked: bool = False
    analytics_access: bool = False
    expected_payouts_access: bool = False
    downline_data_access: bool = False
    auto_messaging: bool = False
    policy_report_uploads: bool = False
    admin_only: bool = False
    ai_mode_admin_only: bool = False
    policy_report_uploads_admin_only: bool = False
    features: tuple[str, ...] = field(default_factory=tuple)


TIER_LIMITS: dict[str, TierLimits] = {
    FREE: TierLimits(
        name='Free',
        price=0,
        deals=10,
        messages=0,
        ai_requests=0,
        sms_blocked=True,
        features=(
            '10 deal limit',
            'No SMS/messaging access',
            'No analytics or AI mode',
            'No downline data access',
        ),
    ),
    BASIC: TierLimits(
        name='Basic',
        price=20,
        deals=UNLIMITED,
        messages=50,
        ai_requests=0,
        overage_price=Decimal('0.10'),
        expected_payouts_access=True,
        features=(
            'Unlimited deal creation',
            '50 messages/month included',
            '$0.10 per additional message',
            'View expected payouts',
        ),
    ),
    PRO: TierLimits(
        name='Pro',
        price=60,
        deals=UNLIMITED,
        messages=200,
        ai_requests=0,
        overage_price=Decimal('0.08'),
        analytics_access=True,
        expected_payouts_access=True,
        downline_data_access=True,
        auto_messaging=True,
        features=(
            'Everything in Basic',
            '200 messages/month included',
            '$0.08 per additional message',
            'Full analytics dashboard',
            'View downline data',
            'AI-powered client retention',
        ),
    ),
    EXPERT: TierLimits(
        name='Expert',
        price=150,
        deals=UNLIMITED,
        messages=1000,
        ai_requests=50,
        overage_price=Decimal('0.05'),
        ai_overage_price=Decimal('0.25'),
        analytics_access=True,
        expected_payouts_access=True,
        downline_data_access=True,
        auto_messaging=True,
        policy_report_uploads=True,
        ai_mode_admin_only=True,
        policy_report_uploads_admin_only=True,
        features=(
            'Everything in Pro',
            '1,000 messages/month included',
            '$0.05 per additional message',
            'AI Mode: 50 requests/month',
            '$0.25 per additional AI request',
            'Policy report uploads',
            'AI Mode & Report Uploads are Admin users only',
        ),
    ),
}


def get_tier_limits(tier: str | None) -> TierLimits:
    """Limits for a tier, falling back to free for unknown values."""
    return TIER_LIMITS.get(tier or FREE, TIER_LIMITS[FREE])


def is_valid_tier(tier: str | None) -> bool:
    return tier in TIER_HIERARCHY


def is_upgrade(current_tier: str | None, new_tier: str) -> bool:
    return TIER_HIERARCHY.get(new_tier, 0) > TIER_HIERARCHY.get(current_tier or FREE, 0)


def can_access_tier(tier: str, is_admin: bool) -> bool:
    limits = get_tier_limits(tier)
    return not limits.admin_only or is_admin


def can_perform_action(tier: str | None, action: str, current_count: int = 0,
                       is_admin: bool = False) -> bool:
    """
    Check whether a tier allows an action.

    Counted actions ('deals', 'messages', 'ai_requests') compare the current
    count with the tier allowance; the rest are plain feature gates. AI Mode
    and policy report uploads also require an admin where the tier says so.
    """
    limits = get_tier_limits(tier)

    if action in ('ai_requests', 'ai_mode') and limits.ai_mode_admin_only and not is_admin:
        return False
    if action == 'policy_report_uploads' and limits.policy_report_uploads_admin_only and not is_admin:
        return False

    if action == 'deals':
        return current_count < limits.deals
    if action == 'messages':
        return current_count < limits.messages
    if action == 'ai_requests':
        return current_count < limits.ai_requests

    feature_gates = {
        'analytics': limits.analytics_access,
        'expected_payouts': limits.expected_payouts_access,
        'downline_data': limits.downline_data_access,
        'auto_messaging': limits.auto_messaging,
        'policy_report_uploads': limits.policy_report_uploads,
        'ai_mode': limits.ai_requests > 0,
    }
    return feature_gates.get(action, False)


# =============================================================================
# Stripe price mapping
# =============================================================================

def get_tier_from_price_id(price_id: str | None) -> str:
    """Get subscription tier from Stripe price ID; unknown prices map to free."""
    if not price_id:
        return FREE
    for tier, pid in settings.STRIPE_TIER_PRICE_IDS.items():
        if pid and pid == price_id:
            return tier
    return FREE


def get_tier_price_id(tier: str) -> str | None:
    """Get Stripe recurring price ID from tier name."""
    return settings.STRIPE_TIER_PRICE_IDS.get(tier) or None


def metered_prices_for_tier(tier: str, is_admin: bool) -> list[str]:
    """
    Metered price IDs that belong on a subscription of the given tier.

    AI mode is admin-only, so the expert AI price is only attached for admins.
    """
    metered = settings.STRIPE_METERED_PRICE_IDS
    prices = []

    if tier == BASIC:
        prices.append(metered.get('basic_messages'))
    elif tier == PRO:
        prices.append(metered.get('pro_messages'))
    elif tier == EXPERT:
        prices.append(metered.get('expert_messages'))
        if is_admin:
            prices.append(metered.get('expert_ai'))

    return [price for price in prices if price]


def message_metered_price_ids() -> set[str]:
    metered = settings.STRIPE_METERED_PRICE_IDS
    keys = ('basic_messages', 'pro_messages', 'expert_messages')
    return {metered[key] for key in keys if metered.get(key)}


def ai_metered_price_ids() -> set[str]:
    price = settings.STRIPE_METERED_PRICE_IDS.get('expert_ai')
    return {price} if price else set()


# =============================================================================
# Top-up products
# =============================================================================

MESSAGE_TOPUP = 'message_topup'
AI_TOPUP = 'ai_topup'


@dataclass(frozen=True)
class TopupProduct:
    key: str
    quantity: int
    price_cents: int
    topup_type: str
    required_tier: str
    name: str
    description: str

    @property
    def price_id(self) -> str | None:
        return settings.STRIPE_TOPUP_PRICE_IDS.get(self.key) or None

    @property
    def display_price(self) -> str:
        return f'${self.price_cents // 100}'


TOPUP_PRODUCTS: dict[str, TopupProduct] = {
    'MESSAGE_BASIC_50': TopupProduct(
        key='MESSAGE_BASIC_50',
        quantity=50,
        price_cents=500,
        topup_type=MESSAGE_TOPUP,
        required_tier=BASIC,
        name='50 Messages',
        description='Add 50 outbound messages to your account',
    ),
    'MESSAGE_PRO_100': TopupProduct(
        key='MESSAGE_PRO_100',
        quantity=100,
        price_cents=500,
        topup_type=MESSAGE_TOPUP,
        required_tier=PRO,
        name='100 Messages',
        description='Add 100 outbound messages to your account',
    ),
    'MESSAGE_EXPERT_500': TopupProduct(
        key='MESSAGE_EXPERT_500',
        quantity=500,
        price_cents=1000,
        topup_type=MESSAGE_TOPUP,
        required_tier=EXPERT,
        name='500 Messages',
        description='Add 500 outbound messages to your account',
    ),
    'AI_EXPERT_50': TopupProduct(
        key='AI_EXPERT_50',
        quantity=50,
        price_cents=1000,
        topup_type=AI_TOPUP,
        required_tier=EXPERT,
        name='50 AI Requests',
        description='Add 50 AI Mode requests to your account',
    ),
}


def get_topup_product(key: str | None) -> TopupProduct | None:
    return TOPUP_PRODUCTS.get(key or '')


def describe_topup(topup_type: str, quantity: int) -> str:
    noun = 'messages' if topup_type == MESSAGE_TOPUP else 'AI requests'
    return f'{quantity} {noun} top-up'
