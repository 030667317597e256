"""Timeslot (reservation) model definitions."""

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import relationship
from clinic_scheduler.database import Base
from clinic_scheduler.models import schedule  # noqa: F401


class TimeslotStatus:
    AVAILABLE = 'Available'
    RESERVED = 'Reserved'
    BOOKED = 'Booked'
    CANCELLED = 'Cancelled'
    COMPLETED = 'Completed'

    HELD = (RESERVED, BOOKED)


_HELD_ONLY = text("status IN ('Reserved', 'Booked')")


class Timeslot(Base):
    """A doctor-bound interval claimed for one appointment."""
    __tablename__ = "timeslots"
    __table_args__ = (
        Index('idx_timeslots_doctor_range', 'doctor_id', 'start_time', 'end_time'),
        Index(
            'uq_timeslots_doctor_start_held',
            'doctor_id',
            'start_time',
            unique=True,
            sqlite_where=_HELD_ONLY,
            postgresql_where=_HELD_ONLY,
        ),
    )

    id = Column(Integer, primary_key=True)
    schedule_id = Column(Integer, ForeignKey("doctor_schedules.id"), nullable=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    service_id = Column(Integer, ForeignKey("services.id"), nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    break_after_minutes = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default=TimeslotStatus.AVAILABLE)
    # Back-reference only; the owning side is Appointment.timeslot_id.
    appointment_id = Column(Integer, nullable=True)

    schedule = relationship("DoctorSchedule")

    @property
    def is_held(self) -> bool:
        return self.status in TimeslotStatus.HELD
