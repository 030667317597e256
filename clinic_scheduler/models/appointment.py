"""Appointment model definitions."""

import re
import uuid
from dataclasses import dataclass

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from clinic_scheduler.database import Base

# Relationship targets must be mapped before first use.
from clinic_scheduler.models import schedule, service, timeslot, user  # noqa: F401


class AppointmentStatus:
    PENDING_PAYMENT = 'PendingPayment'
    PENDING = 'Pending'
    APPROVED = 'Approved'
    CHECKED_IN = 'CheckedIn'
    IN_PROGRESS = 'InProgress'
    COMPLETED = 'Completed'
    CANCELLED = 'Cancelled'
    EXPIRED = 'Expired'
    NO_SHOW = 'No-Show'
    REFUNDED = 'Refunded'

    # Statuses that still occupy the subject's time.
    ACTIVE = (PENDING_PAYMENT, PENDING, APPROVED, CHECKED_IN, IN_PROGRESS)
    # Statuses the appointment reclaimer looks at.
    SWEEPABLE = (PENDING, APPROVED, CHECKED_IN, IN_PROGRESS)


class AppointmentType:
    CONSULTATION = 'Consultation'
    EXAMINATION = 'Examination'
    FOLLOW_UP = 'FollowUp'

    ALL = (CONSULTATION, EXAMINATION, FOLLOW_UP)


class AppointmentMode:
    ONLINE = 'Online'
    OFFLINE = 'Offline'


_WHITESPACE = re.compile(r'\s+')


def normalize_name(value: str | None) -> str:
    return _WHITESPACE.sub(' ', (value or '').strip()).casefold()


def normalize_email(value: str | None) -> str:
    return (value or '').strip().lower()


def new_reference() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class SelfSubject:
    """The booking account is the person being seen."""
    user_id: int


@dataclass(frozen=True)
class ThirdPartySubjectRef:
    """The booking account booked for somebody without an account."""
    subject_id: int


VisitSubject = SelfSubject | ThirdPartySubjectRef


class ThirdPartySubject(Base):
    """Contact details of a person booked for by another account."""
    __tablename__ = "third_party_subjects"

    id = Column(Integer, primary_key=True)
    booked_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    full_name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    phone_number = Column(String, nullable=False)
    normalized_name = Column(String, nullable=False, index=True)
    normalized_email = Column(String, nullable=False, index=True)


class Appointment(Base):
    """Represents a booking and its position in the visit lifecycle."""
    __tablename__ = "appointments"
    __table_args__ = (
        CheckConstraint(
            '(patient_user_id IS NULL) <> (third_party_id IS NULL)',
            name='ck_appointments_single_subject',
        ),
    )

    id = Column(Integer, primary_key=True)
    reference = Column(String(32), unique=True, nullable=False, default=new_reference)
    booked_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    patient_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    third_party_id = Column(Integer, ForeignKey("third_party_subjects.id"), nullable=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    service_id = Column(Integer, ForeignKey("services.id"), nullable=False)
    timeslot_id = Column(Integer, ForeignKey("timeslots.id"), nullable=False)
    status = Column(String, nullable=False)
    type = Column(String, nullable=False)
    mode = Column(String, nullable=False)
    notes = Column(String)
    meeting_url = Column(String)
    payment_hold_expires_at = Column(DateTime)

    original_price = Column(Integer, nullable=False, default=0)
    final_price = Column(Integer, nullable=False, default=0)
    discount_amount = Column(Integer, nullable=False, default=0)
    promotion_id = Column(Integer, nullable=True)

    approved_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    checked_in_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    replaced_doctor_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    checked_in_at = Column(DateTime)
    in_progress_at = Column(DateTime)
    completed_at = Column(DateTime)
    cancel_reason = Column(String)
    cancelled_at = Column(DateTime)
    reschedule_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime)

    refund_account_holder = Column(String)
    refund_account_number = Column(String)
    refund_bank_name = Column(String)

    timeslot = relationship("Timeslot", foreign_keys=[timeslot_id])
    service = relationship("Service")
    doctor = relationship("User", foreign_keys=[doctor_id])
    patient = relationship("User", foreign_keys=[patient_user_id])
    booked_by = relationship("User", foreign_keys=[booked_by_user_id])
    third_party = relationship("ThirdPartySubject")

    @property
    def subject(self) -> VisitSubject:
        if self.third_party_id is not None:
            return ThirdPartySubjectRef(self.third_party_id)
        return SelfSubject(self.patient_user_id)

    @subject.setter
    def subject(self, value: VisitSubject) -> None:
        if isinstance(value, ThirdPartySubjectRef):
            self.patient_user_id = None
            self.third_party_id = value.subject_id
        else:
            self.patient_user_id = value.user_id
            self.third_party_id = None

    @property
    def memo_fragment(self) -> str:
        return self.reference[-8:].upper()

    def recipient(self) -> tuple[str | None, str | None]:
        """Email and display name of the person being seen."""
        if self.third_party is not None:
            return self.third_party.email, self.third_party.full_name
        if self.patient is not None:
            return self.patient.email, self.patient.full_name
        return None, None
