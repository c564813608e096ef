"""Subscription model and its lifecycle audit trail."""
import enum

from sqlalchemy import Boolean, Column, DateTime, Enum as SQLEnum, ForeignKey, Index, Integer, String, Uuid
from sqlalchemy.orm import relationship

from billing_core.models.base import Base
from billing_core.utils.dates import utcnow


class SubscriptionStatus(enum.Enum):
    """Subscription lifecycle status."""

    ACTIVE = "active"
    PENDING_PAYMENT = "pending_payment"
    PENDING_UPGRADE = "pending_upgrade"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# Statuses that count as a live subscription of a service
LIVE_SUBSCRIPTION_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PENDING_PAYMENT,
    SubscriptionStatus.PENDING_UPGRADE,
)


class Subscription(Base):
    """
    Monthly subscription of an account to a plan.

    A subscription is in grace when it is ACTIVE and grace_period_end is set.
    holds_quota records whether it currently owns one slot of its plan's
    used_quota, so releasing twice is impossible.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_status_next_billing", "status", "next_billing"),
        Index("ix_subscriptions_status_grace_end", "status", "grace_period_end"),
    )

    account_id = Column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_id = Column(Uuid, ForeignKey("plans.id"), nullable=False, index=True)
    service_id = Column(Uuid, ForeignKey("services.id"), nullable=False, index=True)
    status = Column(SQLEnum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE, index=True)
    auto_renew = Column(Boolean, nullable=False, default=True)
    start_date = Column(DateTime, nullable=False, default=utcnow)
    end_date = Column(DateTime, nullable=False)
    next_billing = Column(DateTime, nullable=True)
    last_billed = Column(DateTime, nullable=True)
    last_charge_amount = Column(Integer, nullable=True)
    monthly_price = Column(Integer, nullable=False)
    failed_charges = Column(Integer, nullable=False, default=0)
    grace_period_end = Column(DateTime, nullable=True)
    holds_quota = Column(Boolean, nullable=False, default=False)
    previous_plan_id = Column(Uuid, ForeignKey("plans.id"), nullable=True)
    upgraded_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String, nullable=True)

    # Relationships
    account = relationship("Account", back_populates="subscriptions")
    plan = relationship("Plan", foreign_keys=[plan_id], back_populates="subscriptions")
    previous_plan = relationship("Plan", foreign_keys=[previous_plan_id])
    history = relationship("SubscriptionHistory", back_populates="subscription", cascade="all, delete-orphan")

    @property
    def in_grace_period(self) -> bool:
        """Whether the subscription is ACTIVE with an unpaid renewal."""
        return self.status == SubscriptionStatus.ACTIVE and self.grace_period_end is not None

    def __repr__(self) -> str:
        """String representation."""
        return f"<Subscription(id={self.id}, account_id={self.account_id}, status={self.status.value})>"


class SubscriptionHistory(Base):
    """
    Audit trail for subscription changes.

    Tracks renewals, grace periods, expirations, upgrades and cancellations.
    """

    __tablename__ = "subscription_history"

    subscription_id = Column(Uuid, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String, nullable=False)  # created, renewed, grace_started, expired, renewal_blocked, ...
    old_value = Column(String, nullable=True)
    new_value = Column(String, nullable=False)
    reason = Column(String, nullable=True)

    # Relationships
    subscription = relationship("Subscription", back_populates="history")

    def __repr__(self) -> str:
        """String representation."""
        return f"<SubscriptionHistory(subscription_id={self.subscription_id}, event={self.event_type})>"
