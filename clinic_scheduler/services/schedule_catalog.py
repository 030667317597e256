import logging
from datetime import date, datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinic_scheduler.core import config
from clinic_scheduler.core.timeutils import local_to_utc
from clinic_scheduler.models.schedule import DoctorSchedule, ScheduleStatus, Shift
from clinic_scheduler.services.directory import active_doctors

logger = logging.getLogger(__name__)


def shift_windows(day: date) -> dict[str, tuple[datetime, datetime]]:
    morning_start, morning_end = config.MORNING_SHIFT
    afternoon_start, afternoon_end = config.AFTERNOON_SHIFT
    return {
        Shift.MORNING: (local_to_utc(day, morning_start), local_to_utc(day, morning_end)),
        Shift.AFTERNOON: (local_to_utc(day, afternoon_start), local_to_utc(day, afternoon_end)),
    }


def max_slots_for(start: datetime, end: datetime) -> int:
    window_minutes = int((end - start).total_seconds() // 60)
    step = config.REFERENCE_SLOT_MINUTES + config.SLOT_BUFFER_MINUTES
    return max(1, window_minutes // step)


def ensure_schedules(db: Session, day: date) -> list[DoctorSchedule]:
    """Provision Morning and Afternoon shifts for every active doctor on ``day``.

    Does nothing when the date already has schedule rows. Concurrent callers
    may race on the same date; a row that loses the race on the unique
    (doctor, date, shift) key is skipped.
    """
    existing = db.query(DoctorSchedule).filter(DoctorSchedule.date == day).all()
    if existing:
        return existing

    doctors = active_doctors(db)

    created = 0
    for doctor in doctors:
        for shift, (start_time, end_time) in shift_windows(day).items():
            try:
                with db.begin_nested():
                    db.add(
                        DoctorSchedule(
                            doctor_id=doctor.id,
                            date=day,
                            shift=shift,
                            start_time=start_time,
                            end_time=end_time,
                            status=ScheduleStatus.AVAILABLE,
                            max_slots=max_slots_for(start_time, end_time),
                        )
                    )
                created += 1
            except IntegrityError:
                logger.debug('Schedule %s/%s/%s already provisioned', doctor.id, day, shift)

    db.commit()
    logger.info('Provisioned %s schedule rows for %s', created, day)

    return db.query(DoctorSchedule).filter(DoctorSchedule.date == day).all()


def schedules_for(db: Session, doctor_id: int, day: date, available_only: bool = True) -> list[DoctorSchedule]:
    query = db.query(DoctorSchedule).filter(
        DoctorSchedule.doctor_id == doctor_id,
        DoctorSchedule.date == day,
    )
    if available_only:
        query = query.filter(DoctorSchedule.status == ScheduleStatus.AVAILABLE)
    return query.order_by(DoctorSchedule.start_time.asc()).all()


def date_has_schedules(db: Session, day: date) -> bool:
    return db.query(DoctorSchedule.id).filter(DoctorSchedule.date == day).first() is not None


def afternoon_shift_end(db: Session, doctor_id: int, day: date) -> datetime:
    """End of the doctor's working day: the scheduled afternoon shift end, or
    the configured fallback when no afternoon shift exists."""
    afternoon = db.query(DoctorSchedule).filter(
        DoctorSchedule.doctor_id == doctor_id,
        DoctorSchedule.date == day,
        DoctorSchedule.shift == Shift.AFTERNOON,
    ).first()
    if afternoon is not None:
        return afternoon.end_time
    return local_to_utc(day, config.SHIFT_END_FALLBACK)
