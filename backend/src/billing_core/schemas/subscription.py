"""Pydantic schemas for subscriptions and renewals."""
import enum
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from billing_core.models.subscription import SubscriptionStatus
from billing_core.schemas.results import SideEffectResult


class RenewalOutcome(str, enum.Enum):
    """What a renewal attempt did to the subscription."""

    RENEWED = "renewed"
    GRACE_STARTED = "grace_started"
    EXPIRED = "expired"
    SKIPPED = "skipped"


class SubscriptionRead(BaseModel):
    """Schema for returning subscription data."""

    id: UUID
    account_id: UUID
    plan_id: UUID
    service_id: UUID
    status: SubscriptionStatus
    auto_renew: bool
    start_date: datetime
    end_date: datetime
    next_billing: datetime | None
    last_billed: datetime | None
    last_charge_amount: int | None
    monthly_price: int
    failed_charges: int
    grace_period_end: datetime | None
    holds_quota: bool

    model_config = ConfigDict(from_attributes=True)


class RenewalResult(BaseModel):
    """Outcome of one renewal or grace retry."""

    subscription_id: UUID
    outcome: RenewalOutcome
    account_id: UUID | None = None
    plan_name: str | None = None
    balance: int | None = None
    amount: int | None = None
    ledger_entry_id: UUID | None = None
    new_end_date: datetime | None = None
    grace_period_end: datetime | None = None
    reason: str | None = None
    side_effects: list[SideEffectResult] = Field(default_factory=list)


class SubscriptionChange(BaseModel):
    """Result of a purchase or upgrade."""

    subscription: SubscriptionRead
    charged_amount: int
    discount_amount: int = 0
    ledger_entry_id: UUID | None = None
    redemption_id: UUID | None = None


class CancellationResult(BaseModel):
    subscription: SubscriptionRead
    refund_amount: int = 0
    refund_entry_id: UUID | None = None
    quota_released: int = 0
    side_effects: list[SideEffectResult] = Field(default_factory=list)


class LowCreditSubscription(BaseModel):
    """Subscription whose balance will not cover its next renewal."""

    subscription_id: UUID
    account_id: UUID
    email: str
    plan_name: str
    next_billing: datetime
    monthly_price: int
    balance: int
    shortfall: int


class BillingStats(BaseModel):
    """Snapshot of the renewal pipeline. Nothing is persisted."""

    generated_at: datetime
    active_subscriptions: int
    auto_renewing_subscriptions: int
    subscriptions_in_grace: int
    expired_last_24h: int
    renewals_last_24h: int
    renewal_revenue_last_24h: int
    renewals_due_next_24h: int
    monthly_recurring_credit: int
