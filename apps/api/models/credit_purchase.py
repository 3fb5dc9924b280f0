"""CreditPurchase model for settled payment events."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditPurchase(Base):
    """External payment settlement, unique per provider payment id."""

    __tablename__ = "credit_purchases"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    external_payment_id = Column(String, nullable=False, unique=True, index=True)
    amount_credits = Column(Numeric(12, 2), nullable=False)
    amount_paid = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(String, nullable=False, default="succeeded")  # succeeded, failed
    provider = Column(String, nullable=False, default="stripe")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="credit_purchases")
