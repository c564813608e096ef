"""Account model holding the prepaid credit balance."""
from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship

from billing_core.models.base import Base


class Account(Base):
    """
    Customer account with a prepaid integer credit balance.

    The balance and running totals are only changed by the credit ledger,
    always together with a ledger entry in the same transaction.
    """

    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("total_top_up >= 0", name="ck_accounts_total_top_up_non_negative"),
        CheckConstraint("total_spent >= 0", name="ck_accounts_total_spent_non_negative"),
    )

    email = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    credit_balance = Column(Integer, nullable=False, default=0)
    total_top_up = Column(Integer, nullable=False, default=0)
    total_spent = Column(Integer, nullable=False, default=0)
    ledger_sequence = Column(Integer, nullable=False, default=0)  # Last sequence handed to a ledger entry
    deleted_at = Column(DateTime, nullable=True)  # Soft delete timestamp

    # Relationships
    ledger_entries = relationship("LedgerEntry", back_populates="account")
    subscriptions = relationship("Subscription", back_populates="account")

    def __repr__(self) -> str:
        """String representation."""
        return f"<Account(id={self.id}, email={self.email}, balance={self.credit_balance})>"
