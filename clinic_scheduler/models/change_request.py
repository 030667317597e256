"""Reschedule and change-doctor request definitions."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from clinic_scheduler.database import Base
from clinic_scheduler.models import appointment  # noqa: F401


class ChangeRequestType:
    RESCHEDULE = 'Reschedule'
    CHANGE_DOCTOR = 'ChangeDoctor'


class ChangeRequestStatus:
    PENDING = 'Pending'
    APPROVED = 'Approved'
    REJECTED = 'Rejected'


class ChangeRequest(Base):
    """A patient's request to move an appointment, awaiting staff review."""
    __tablename__ = "change_requests"

    id = Column(Integer, primary_key=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    requested_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    request_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default=ChangeRequestStatus.PENDING)
    current_doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    current_timeslot_id = Column(Integer, ForeignKey("timeslots.id"), nullable=False)
    requested_doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    requested_timeslot_id = Column(Integer, ForeignKey("timeslots.id"), nullable=False)
    reason = Column(String)
    responded_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    response_reason = Column(String)
    responded_at = Column(DateTime)
    created_at = Column(DateTime)

    appointment = relationship("Appointment")
    requested_timeslot = relationship("Timeslot", foreign_keys=[requested_timeslot_id])
