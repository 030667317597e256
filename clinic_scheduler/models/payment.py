"""Payment hold definitions."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from clinic_scheduler.database import Base
from clinic_scheduler.models import appointment  # noqa: F401


class PaymentStatus:
    PENDING = 'Pending'
    COMPLETED = 'Completed'
    EXPIRED = 'Expired'
    REFUNDED = 'Refunded'
    CANCELLED = 'Cancelled'


class Payment(Base):
    """A time-boxed prepayment hold for one appointment."""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    payer_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    amount = Column(Integer, nullable=False)
    method = Column(String, nullable=False, default='BankTransfer')
    status = Column(String, nullable=False, default=PaymentStatus.PENDING)
    memo = Column(String, nullable=False)
    payable_reference = Column(String, nullable=False)
    external_transaction_id = Column(String)
    hold_expires_at = Column(DateTime)
    confirmed_at = Column(DateTime)
    created_at = Column(DateTime)

    appointment = relationship("Appointment")
