"""Hosted service offered through the marketplace."""
from sqlalchemy import Boolean, Column, String
from sqlalchemy.orm import relationship

from billing_core.models.base import Base


class Service(Base):
    """A hosted service that plans and coupons can be scoped to."""

    __tablename__ = "services"

    name = Column(String, nullable=False)
    slug = Column(String, nullable=False, unique=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)

    # Relationships
    plans = relationship("Plan", back_populates="service")

    def __repr__(self) -> str:
        """String representation."""
        return f"<Service(id={self.id}, slug={self.slug})>"
