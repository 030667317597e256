"""Bookable-slot queries composed from the working calendar and the ledger."""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy.orm import Session

from clinic_scheduler.core import config
from clinic_scheduler.core.errors import ValidationError
from clinic_scheduler.core.timeutils import day_bounds, format_window, local_date, utcnow
from clinic_scheduler.models.schedule import DoctorSchedule, ScheduleStatus
from clinic_scheduler.models.user import User
from clinic_scheduler.services import ledger, schedule_catalog
from clinic_scheduler.services.directory import active_doctors, get_active_doctor, get_active_service
from clinic_scheduler.services.ledger import PersonKey
from clinic_scheduler.services.slot_generator import generate_slots

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AvailableSlot:
    start_time: datetime
    end_time: datetime
    schedule_id: int
    doctor_id: int
    doctor_name: str | None = None

    @property
    def display_time(self) -> str:
        return format_window(self.start_time, self.end_time)


def _schedules(db: Session, doctor_id: int, day: date) -> list[DoctorSchedule]:
    schedules = schedule_catalog.schedules_for(db, doctor_id, day)
    if not schedules and not schedule_catalog.date_has_schedules(db, day):
        schedule_catalog.ensure_schedules(db, day)
        schedules = schedule_catalog.schedules_for(db, doctor_id, day)
    return schedules


def _doctor_slots(
    db: Session,
    doctor: User,
    duration_minutes: int,
    day: date,
    person: PersonKey | None,
    now: datetime,
) -> list[AvailableSlot]:
    schedules = _schedules(db, doctor.id, day)
    if not schedules:
        return []

    range_start, range_end = day_bounds(day)
    busy = ledger.busy_intervals(db, doctor.id, range_start, range_end)
    if person is not None:
        busy += ledger.person_busy_intervals(db, person, range_start, range_end)

    slots = []
    for schedule in schedules:
        for candidate in generate_slots(
            schedule.start_time,
            schedule.end_time,
            duration_minutes,
            config.SLOT_BUFFER_MINUTES,
            busy,
        ):
            if candidate.start <= now:
                continue
            slots.append(
                AvailableSlot(
                    start_time=candidate.start,
                    end_time=candidate.end,
                    schedule_id=schedule.id,
                    doctor_id=doctor.id,
                    doctor_name=doctor.full_name,
                )
            )
    return slots


def list_slots_for_doctor(
    db: Session,
    service_id: int,
    day: date,
    doctor_id: int,
    person: PersonKey | None = None,
    now: datetime | None = None,
) -> list[AvailableSlot]:
    service = get_active_service(db, service_id)
    doctor = get_active_doctor(db, doctor_id)
    return _doctor_slots(db, doctor, service.duration_minutes, day, person, now or utcnow())


def list_slots(
    db: Session,
    service_id: int,
    day: date,
    person: PersonKey | None = None,
    now: datetime | None = None,
) -> list[AvailableSlot]:
    """Slots across every active doctor working on ``day``, ordered by start."""
    service = get_active_service(db, service_id)
    now = now or utcnow()

    if not schedule_catalog.date_has_schedules(db, day):
        schedule_catalog.ensure_schedules(db, day)

    slots: list[AvailableSlot] = []
    for doctor in active_doctors(db):
        slots.extend(_doctor_slots(db, doctor, service.duration_minutes, day, person, now))

    slots.sort(key=lambda slot: (slot.start_time, slot.doctor_id))
    return slots


def list_doctors_for_window(
    db: Session,
    service_id: int,
    day: date,
    start: datetime,
    end: datetime,
    now: datetime | None = None,
) -> list[User]:
    """Active doctors whose shift covers ``[start, end)`` with no ledger conflict."""
    service = get_active_service(db, service_id)
    now = now or utcnow()

    if end <= start:
        raise ValidationError('End time must be after start time.')
    if end - start != timedelta(minutes=service.duration_minutes):
        raise ValidationError(f'The time window must be exactly {service.duration_minutes} minutes for this service.')
    if local_date(start) != day:
        raise ValidationError('The time window does not fall on the requested date.')
    if start <= now:
        return []

    if not schedule_catalog.date_has_schedules(db, day):
        schedule_catalog.ensure_schedules(db, day)

    covering_doctor_ids = {
        doctor_id
        for (doctor_id,) in db.query(DoctorSchedule.doctor_id).filter(
            DoctorSchedule.date == day,
            DoctorSchedule.status == ScheduleStatus.AVAILABLE,
            DoctorSchedule.start_time <= start,
            DoctorSchedule.end_time >= end,
        ).all()
    }

    return [
        doctor
        for doctor in active_doctors(db)
        if doctor.id in covering_doctor_ids and ledger.find_doctor_conflict(db, doctor.id, start, end) is None
    ]
