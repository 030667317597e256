"""Doctor working-calendar definitions."""

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, String, UniqueConstraint
from clinic_scheduler.database import Base


class Shift:
    MORNING = 'Morning'
    AFTERNOON = 'Afternoon'


class ScheduleStatus:
    AVAILABLE = 'Available'
    UNAVAILABLE = 'Unavailable'
    BOOKED = 'Booked'
    CANCELLED = 'Cancelled'


class DoctorSchedule(Base):
    """One working shift of one doctor on one clinic-local date."""
    __tablename__ = "doctor_schedules"
    __table_args__ = (
        UniqueConstraint('doctor_id', 'date', 'shift', name='uq_doctor_schedules_doctor_date_shift'),
    )

    id = Column(Integer, primary_key=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    shift = Column(String, nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = Column(String, nullable=False, default=ScheduleStatus.AVAILABLE)
    max_slots = Column(Integer, nullable=False, default=1)
