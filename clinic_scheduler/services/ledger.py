"""Timeslot ledger: every overlap and buffer rule is enforced here.

Claims follow check-then-write. Two requests can both pass the checks before
either writes; the partial unique index on (doctor_id, start_time) for held rows
catches the identical-start case, other overlapping races are not arbitrated.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinic_scheduler.core import config
from clinic_scheduler.core.errors import ConflictError
from clinic_scheduler.models.appointment import (
    Appointment,
    AppointmentStatus,
    ThirdPartySubject,
    normalize_email,
    normalize_name,
)
from clinic_scheduler.models.timeslot import Timeslot, TimeslotStatus
from clinic_scheduler.services.slot_generator import BusyInterval, intervals_conflict

logger = logging.getLogger(__name__)

# Upper bound on any stored break_after_minutes, used to narrow range queries.
_LOOKBACK = timedelta(hours=12)


@dataclass(frozen=True)
class PersonKey:
    """Who is being seen: an account booking for itself, or a third party
    matched by normalized name and email."""
    user_id: int | None = None
    name: str | None = None
    email: str | None = None

    @classmethod
    def for_self(cls, user_id: int) -> 'PersonKey':
        return cls(user_id=user_id)

    @classmethod
    def for_third_party(cls, name: str, email: str) -> 'PersonKey':
        return cls(name=normalize_name(name), email=normalize_email(email))

    @property
    def is_third_party(self) -> bool:
        return self.user_id is None


def candidate_buffer() -> timedelta:
    return timedelta(minutes=config.SLOT_BUFFER_MINUTES)


def _conflicts(timeslot: Timeslot, start: datetime, end: datetime) -> bool:
    return intervals_conflict(
        timeslot.start_time,
        timeslot.end_time,
        timedelta(minutes=timeslot.break_after_minutes or 0),
        start,
        end,
        candidate_buffer(),
    )


def find_doctor_conflict(
    db: Session,
    doctor_id: int,
    start: datetime,
    end: datetime,
    exclude_timeslot_ids: tuple[int, ...] = (),
) -> Timeslot | None:
    query = db.query(Timeslot).filter(
        Timeslot.doctor_id == doctor_id,
        Timeslot.status.in_(TimeslotStatus.HELD),
        Timeslot.start_time < end + candidate_buffer(),
        Timeslot.end_time > start - _LOOKBACK,
    )
    if exclude_timeslot_ids:
        query = query.filter(Timeslot.id.notin_(exclude_timeslot_ids))
    for timeslot in query.all():
        if _conflicts(timeslot, start, end):
            return timeslot
    return None


def _person_appointments(db: Session, person: PersonKey, start: datetime, end: datetime):
    query = db.query(Appointment, Timeslot).join(Timeslot, Appointment.timeslot_id == Timeslot.id).filter(
        Appointment.status.in_(AppointmentStatus.ACTIVE),
        Timeslot.start_time < end + candidate_buffer(),
        Timeslot.end_time > start - _LOOKBACK,
    )
    if person.is_third_party:
        query = query.join(ThirdPartySubject, Appointment.third_party_id == ThirdPartySubject.id).filter(
            ThirdPartySubject.normalized_name == person.name,
            ThirdPartySubject.normalized_email == person.email,
        )
    else:
        query = query.filter(
            Appointment.patient_user_id == person.user_id,
            Appointment.third_party_id.is_(None),
        )
    return query.all()


def find_person_conflict(
    db: Session,
    person: PersonKey,
    start: datetime,
    end: datetime,
    exclude_appointment_id: int | None = None,
) -> Appointment | None:
    for appointment, timeslot in _person_appointments(db, person, start, end):
        if appointment.id == exclude_appointment_id:
            continue
        if _conflicts(timeslot, start, end):
            return appointment
    return None


def check_doctor(
    db: Session,
    doctor_id: int,
    start: datetime,
    end: datetime,
    exclude_timeslot_ids: tuple[int, ...] = (),
) -> None:
    if find_doctor_conflict(db, doctor_id, start, end, exclude_timeslot_ids) is not None:
        raise ConflictError('The doctor already has a booking that overlaps this time.')


def check_self(
    db: Session,
    user_id: int,
    start: datetime,
    end: datetime,
    exclude_appointment_id: int | None = None,
) -> None:
    if find_person_conflict(db, PersonKey.for_self(user_id), start, end, exclude_appointment_id) is not None:
        raise ConflictError('You already have an appointment that overlaps this time.')


def check_third_party(
    db: Session,
    name: str,
    email: str,
    start: datetime,
    end: datetime,
    exclude_appointment_id: int | None = None,
) -> None:
    person = PersonKey.for_third_party(name, email)
    if find_person_conflict(db, person, start, end, exclude_appointment_id) is not None:
        raise ConflictError('This person already has an appointment that overlaps this time.')


def check_claim(
    db: Session,
    doctor_id: int,
    person: PersonKey,
    start: datetime,
    end: datetime,
    exclude_appointment_id: int | None = None,
    exclude_timeslot_ids: tuple[int, ...] = (),
) -> None:
    """Run the doctor rule, then the self or third-party rule for ``person``."""
    check_doctor(db, doctor_id, start, end, exclude_timeslot_ids)

    if person.is_third_party:
        check_third_party(db, person.name, person.email, start, end, exclude_appointment_id)
    else:
        check_self(db, person.user_id, start, end, exclude_appointment_id)


def claim(
    db: Session,
    *,
    doctor_id: int,
    service_id: int,
    start: datetime,
    end: datetime,
    status: str,
    schedule_id: int | None = None,
) -> Timeslot:
    """Insert a held timeslot inside the caller's transaction.

    A collision on the held-slot unique index leaves the session needing a
    rollback; callers run this inside ``unit_of_work``.
    """
    timeslot = Timeslot(
        schedule_id=schedule_id,
        doctor_id=doctor_id,
        service_id=service_id,
        start_time=start,
        end_time=end,
        break_after_minutes=config.SLOT_BUFFER_MINUTES,
        status=status,
    )
    db.add(timeslot)
    try:
        db.flush()
    except IntegrityError as exc:
        raise ConflictError('This time was just taken. Please choose another slot.') from exc

    logger.info('Claimed timeslot %s for doctor %s (%s)', timeslot.id, doctor_id, status)
    return timeslot


def mark_booked(timeslot: Timeslot, appointment_id: int | None = None) -> None:
    if appointment_id is not None:
        timeslot.appointment_id = appointment_id
    timeslot.status = TimeslotStatus.BOOKED


def release(timeslot: Timeslot | None) -> None:
    if timeslot is None or not timeslot.is_held:
        return
    timeslot.status = TimeslotStatus.AVAILABLE
    timeslot.appointment_id = None
    logger.info('Released timeslot %s', timeslot.id)


def busy_intervals(db: Session, doctor_id: int, range_start: datetime, range_end: datetime) -> list[BusyInterval]:
    rows = db.query(Timeslot.start_time, Timeslot.end_time).filter(
        Timeslot.doctor_id == doctor_id,
        Timeslot.status.in_(TimeslotStatus.HELD),
        Timeslot.start_time < range_end,
        Timeslot.end_time > range_start - _LOOKBACK,
    ).all()
    return [BusyInterval(start=start, end=end) for start, end in rows]


def person_busy_intervals(db: Session, person: PersonKey, range_start: datetime, range_end: datetime) -> list[BusyInterval]:
    return [
        BusyInterval(start=timeslot.start_time, end=timeslot.end_time)
        for _, timeslot in _person_appointments(db, person, range_start, range_end)
    ]
