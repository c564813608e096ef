"""Ledger entry model: the append-only record of balance movements."""
import enum

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship

from billing_core.models.base import Base, JSONType


class LedgerEntryType(enum.Enum):
    """Kind of balance movement."""

    TOP_UP = "top_up"
    SUBSCRIPTION = "subscription"
    UPGRADE = "upgrade"
    REFUND = "refund"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    COUPON_REDEMPTION = "coupon_redemption"


class LedgerEntryStatus(enum.Enum):
    """Lifecycle of a ledger entry."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class LedgerEntry(Base):
    """
    One movement of credit on an account.

    amount is always a positive magnitude; the direction is visible from
    balance_before and balance_after. Entries are written once. The only
    permitted mutation is a gateway top-up moving from PENDING to a terminal
    status.

    sequence is assigned when the entry takes effect on the balance and is
    unique per account, so COMPLETED entries ordered by sequence form a
    chain where each balance_before equals the previous balance_after.
    """

    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint("account_id", "sequence", name="uq_ledger_entries_account_sequence"),
        CheckConstraint("amount > 0", name="ck_ledger_entries_amount_positive"),
        Index("ix_ledger_entries_account_created", "account_id", "created_at"),
    )

    account_id = Column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(SQLEnum(LedgerEntryType), nullable=False, index=True)
    status = Column(SQLEnum(LedgerEntryStatus), nullable=False, default=LedgerEntryStatus.COMPLETED, index=True)
    amount = Column(Integer, nullable=False)
    balance_before = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    description = Column(String, nullable=False)
    extra_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    sequence = Column(Integer, nullable=True)
    idempotency_key = Column(String, nullable=True, unique=True)
    subscription_id = Column(Uuid, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True)
    payment_method = Column(String, nullable=True)
    payment_reference = Column(String, nullable=True, index=True)  # Gateway order / transaction reference
    completed_at = Column(DateTime, nullable=True)

    # Relationships
    account = relationship("Account", back_populates="ledger_entries")

    @property
    def is_debit(self) -> bool:
        """Whether this entry reduced the balance."""
        return self.balance_after < self.balance_before

    @property
    def signed_amount(self) -> int:
        """Amount with the sign of its balance effect."""
        return self.balance_after - self.balance_before

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<LedgerEntry(id={self.id}, account_id={self.account_id}, type={self.type.value}, "
            f"amount={self.amount}, status={self.status.value})>"
        )
