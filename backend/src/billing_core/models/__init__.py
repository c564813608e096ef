"""SQLAlchemy ORM models for the billing core."""
# Import all models here to ensure they are registered with Alembic

from billing_core.models.base import Base
from billing_core.models.account import Account
from billing_core.models.service import Service
from billing_core.models.plan import PLAN_TIER_RANK, Plan, PlanType
from billing_core.models.subscription import (
    LIVE_SUBSCRIPTION_STATUSES,
    Subscription,
    SubscriptionHistory,
    SubscriptionStatus,
)
from billing_core.models.ledger import LedgerEntry, LedgerEntryStatus, LedgerEntryType
from billing_core.models.coupon import Coupon, CouponRedemption, CouponStatus, CouponType, DiscountType

__all__ = [
    "Base",
    "Account",
    "Service",
    "Plan",
    "PlanType",
    "PLAN_TIER_RANK",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionHistory",
    "LIVE_SUBSCRIPTION_STATUSES",
    "LedgerEntry",
    "LedgerEntryStatus",
    "LedgerEntryType",
    "Coupon",
    "CouponRedemption",
    "CouponStatus",
    "CouponType",
    "DiscountType",
]
