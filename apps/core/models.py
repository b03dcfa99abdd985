"""
Core Models for AgentSpace Billing

These are UNMANAGED models that map to existing Supabase PostgreSQL tables.
They do NOT create migrations - Django reads from existing tables.
"""
import uuid

from django.db import models


class Agency(models.Model):
    """
    Represents an insurance agency (tenant) in the system.
    Maps to: public.agencies
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4)
    name = models.CharField(max_length=255)
    display_name = models.CharField(max_length=255, null=True, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        managed = False  # Don't create migrations
        db_table = 'agencies'
        verbose_name_plural = 'Agencies'

    def __str__(self):
        return self.display_name or self.name


class User(models.Model):
    """
    Represents a user in the system along with its subscription state.
    Maps to: public.users
    """
    ROLE_CHOICES = [
        ('admin', 'Admin'),
        ('agent', 'Agent'),
        ('client', 'Client'),
    ]

    STATUS_CHOICES = [
        ('pre-invite', 'Pre-Invite'),
        ('invited', 'Invited'),
        ('onboarding', 'Onboarding'),
        ('active', 'Active'),
        ('inactive', 'Inactive'),
    ]

    TIER_CHOICES = [
        ('free', 'Free'),
        ('basic', 'Basic'),
        ('pro', 'Pro'),
        ('expert', 'Expert'),
    ]

    SUBSCRIPTION_STATUS_CHOICES = [
        ('free', 'Free'),
        ('active', 'Active'),
        ('past_due', 'Past Due'),
        ('canceled', 'Canceled'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4)
    auth_user_id = models.UUIDField(unique=True, null=True, blank=True)
    email = models.CharField(max_length=255, null=True, blank=True)
    first_name = models.CharField(max_length=255, null=True, blank=True)
    last_name = models.CharField(max_length=255, null=True, blank=True)
    agency = models.ForeignKey(
        Agency,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='users'
    )
    role = models.CharField(max_length=50, choices=ROLE_CHOICES, default='agent')
    is_admin = models.BooleanField(default=False)
    status = models.CharField(max_length=50, choices=STATUS_CHOICES, default='invited')
    perm_level = models.CharField(max_length=50, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    # Subscription
    subscription_tier = models.CharField(max_length=50, choices=TIER_CHOICES, default='free')
    subscription_status = models.CharField(
        max_length=50, choices=SUBSCRIPTION_STATUS_CHOICES, default='free'
    )
    stripe_customer_id = models.CharField(max_length=255, null=True, blank=True)
    stripe_subscription_id = models.CharField(max_length=255, null=True, blank=True)
    scheduled_tier_change = models.CharField(
        max_length=50, choices=TIER_CHOICES, null=True, blank=True
    )
    scheduled_tier_change_date = models.DateTimeField(null=True, blank=True)

    # Billing cycle
    billing_cycle_start = models.DateTimeField(null=True, blank=True)
    billing_cycle_end = models.DateTimeField(null=True, blank=True)

    # Usage tracking
    deals_created_count = models.IntegerField(default=0)
    messages_sent_count = models.IntegerField(default=0)
    messages_reset_date = models.DateTimeField(null=True, blank=True)
    messages_topup_credits = models.IntegerField(default=0)
    ai_requests_count = models.IntegerField(default=0)
    ai_requests_reset_date = models.DateTimeField(null=True, blank=True)
    ai_requests_topup_credits = models.IntegerField(default=0)

    class Meta:
        managed = False
        db_table = 'users'

    def __str__(self):
        return f"{self.first_name or ''} {self.last_name or ''} ({self.email or 'No email'})".strip()

    @property
    def full_name(self):
        return f"{self.first_name or ''} {self.last_name or ''}".strip() or self.email

    @property
    def tier(self) -> str:
        return self.subscription_tier or 'free'

    @property
    def has_paid_subscription(self) -> bool:
        return bool(self.stripe_subscription_id) and self.tier != 'free'


class Purchase(models.Model):
    """
    One-time top-up purchase recorded from a successful payment intent.
    Maps to: public.purchases
    """
    TYPE_CHOICES = [
        ('message_topup', 'Message Top-up'),
        ('ai_topup', 'AI Request Top-up'),
    ]

    STATUS_CHOICES = [
        ('completed', 'Completed'),
        ('refunded', 'Refunded'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4)
    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='purchases'
    )
    purchase_type = models.CharField(max_length=50, choices=TYPE_CHOICES)
    stripe_payment_intent_id = models.CharField(max_length=255, unique=True)
    amount_cents = models.IntegerField(default=0)
    currency = models.CharField(max_length=10, default='usd')
    quantity = models.IntegerField(default=0)
    description = models.TextField(null=True, blank=True)
    status = models.CharField(max_length=50, choices=STATUS_CHOICES, default='completed')
    purchased_at = models.DateTimeField(null=True, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        managed = False
        db_table = 'purchases'
        ordering = ['-purchased_at']

    def __str__(self):
        return f"{self.quantity} {self.purchase_type} ({self.stripe_payment_intent_id})"
