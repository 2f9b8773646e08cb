"""Payment model definitions."""

from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship

from homitutor.database import Base

PAYMENT_STATUSES = ('pending', 'completed', 'failed', 'refunded', 'tutor_paid')
PAYMENT_METHODS = ('vnpay', 'bank_transfer', 'wallet')


class Payment(Base):
    """Represents the payment for a booking request."""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    request_id = Column(Integer, ForeignKey("booking_requests.id"), nullable=False)
    transaction_id = Column(String, unique=True, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    fee = Column(Numeric(10, 2), nullable=False, default=0)
    net_amount = Column(Numeric(10, 2), nullable=False)
    payer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    payee_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    status = Column(String, nullable=False, default='pending')
    payment_method = Column(String, nullable=False)
    payment_data = Column(JSON)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    request = relationship('BookingRequest', back_populates='payment')
