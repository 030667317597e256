"""Reschedule and change-doctor requests.

A request reserves its target timeslot straight away so the window cannot be
taken while staff review it. Approval rebinds the appointment and frees the old
timeslot; rejection frees the reserved one.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from clinic_scheduler.core.errors import (
    ConflictError,
    InvalidStateTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from clinic_scheduler.core.timeutils import local_date, utcnow
from clinic_scheduler.models.appointment import Appointment, AppointmentStatus
from clinic_scheduler.models.change_request import ChangeRequest, ChangeRequestStatus, ChangeRequestType
from clinic_scheduler.models.schedule import DoctorSchedule, ScheduleStatus
from clinic_scheduler.models.timeslot import Timeslot, TimeslotStatus
from clinic_scheduler.models.user import User
from clinic_scheduler.services import ledger
from clinic_scheduler.services.directory import get_active_doctor
from clinic_scheduler.services.ledger import PersonKey
from clinic_scheduler.services.notifications import NotificationEvent, Notifier, notify_safely
from clinic_scheduler.services.transitions import advance, unit_of_work

logger = logging.getLogger(__name__)

MOVABLE_STATUSES = (AppointmentStatus.PENDING, AppointmentStatus.APPROVED)


def person_for(appointment: Appointment) -> PersonKey:
    if appointment.third_party is not None:
        return PersonKey.for_third_party(appointment.third_party.full_name, appointment.third_party.email)
    return PersonKey.for_self(appointment.patient_user_id)


def _load_movable(db: Session, appointment_id: int, actor: User, request_type: str) -> Appointment:
    appointment = db.get(Appointment, appointment_id)
    if appointment is None:
        raise NotFoundError('Appointment not found.')
    if actor.id not in (appointment.booked_by_user_id, appointment.patient_user_id):
        raise PermissionDeniedError('Only the patient who booked this appointment can request changes.')
    if appointment.status not in MOVABLE_STATUSES:
        raise InvalidStateTransitionError('Appointment', appointment.status, request_type)

    open_request = db.query(ChangeRequest.id).filter(
        ChangeRequest.appointment_id == appointment.id,
        ChangeRequest.status == ChangeRequestStatus.PENDING,
    ).first()
    if open_request is not None:
        raise ConflictError('This appointment already has a pending change request.')
    return appointment


def _covering_schedule(db: Session, doctor_id: int, start: datetime, end: datetime) -> DoctorSchedule | None:
    return db.query(DoctorSchedule).filter(
        DoctorSchedule.doctor_id == doctor_id,
        DoctorSchedule.date == local_date(start),
        DoctorSchedule.status == ScheduleStatus.AVAILABLE,
        DoctorSchedule.start_time <= start,
        DoctorSchedule.end_time >= end,
    ).first()


def _open_request(
    db: Session,
    appointment: Appointment,
    actor: User,
    request_type: str,
    doctor_id: int,
    start: datetime,
    end: datetime,
    reason: str | None,
    now: datetime,
) -> ChangeRequest:
    if start <= now:
        raise ValidationError('The new time must be in the future.')

    ledger.check_claim(
        db,
        doctor_id,
        person_for(appointment),
        start,
        end,
        exclude_appointment_id=appointment.id,
        exclude_timeslot_ids=(appointment.timeslot_id,),
    )

    schedule = _covering_schedule(db, doctor_id, start, end)
    with unit_of_work(db):
        timeslot = ledger.claim(
            db,
            doctor_id=doctor_id,
            service_id=appointment.service_id,
            start=start,
            end=end,
            status=TimeslotStatus.RESERVED,
            schedule_id=schedule.id if schedule else None,
        )
        request = ChangeRequest(
            appointment_id=appointment.id,
            requested_by_user_id=actor.id,
            request_type=request_type,
            status=ChangeRequestStatus.PENDING,
            current_doctor_id=appointment.doctor_id,
            current_timeslot_id=appointment.timeslot_id,
            requested_doctor_id=doctor_id,
            requested_timeslot_id=timeslot.id,
            reason=(reason or '').strip() or None,
            created_at=now,
        )
        db.add(request)
        db.flush()
        timeslot.appointment_id = appointment.id

    logger.info('%s request %s opened for appointment %s', request_type, request.id, appointment.id)
    return request


def request_reschedule(
    db: Session,
    appointment_id: int,
    actor: User,
    new_start: datetime,
    new_end: datetime,
    reason: str | None = None,
    now: datetime | None = None,
) -> ChangeRequest:
    now = now or utcnow()
    appointment = _load_movable(db, appointment_id, actor, ChangeRequestType.RESCHEDULE)

    if new_end <= new_start:
        raise ValidationError('End time must be after start time.')
    duration = appointment.service.duration_minutes
    if new_end - new_start != timedelta(minutes=duration):
        raise ValidationError(f'The new time must be exactly {duration} minutes for this service.')

    current = appointment.timeslot
    if current.start_time == new_start and current.end_time == new_end:
        raise ValidationError('The new time is the same as the current one.')

    get_active_doctor(db, appointment.doctor_id)
    return _open_request(
        db, appointment, actor, ChangeRequestType.RESCHEDULE, appointment.doctor_id, new_start, new_end, reason, now
    )


def request_change_doctor(
    db: Session,
    appointment_id: int,
    actor: User,
    new_doctor_id: int,
    reason: str | None = None,
    now: datetime | None = None,
) -> ChangeRequest:
    now = now or utcnow()
    appointment = _load_movable(db, appointment_id, actor, ChangeRequestType.CHANGE_DOCTOR)

    if new_doctor_id == appointment.doctor_id:
        raise ValidationError('The new doctor must differ from the current one.')
    get_active_doctor(db, new_doctor_id)

    current = appointment.timeslot
    return _open_request(
        db,
        appointment,
        actor,
        ChangeRequestType.CHANGE_DOCTOR,
        new_doctor_id,
        current.start_time,
        current.end_time,
        reason,
        now,
    )


def get_request(db: Session, request_id: int) -> ChangeRequest:
    request = db.get(ChangeRequest, request_id)
    if request is None:
        raise NotFoundError('Change request not found.')
    return request


def approve(
    db: Session,
    request_id: int,
    staff: User,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> Appointment:
    """Rebind the appointment to the requested timeslot and put it back in Pending."""
    now = now or utcnow()
    request = get_request(db, request_id)
    appointment = request.appointment

    with unit_of_work(db):
        advance(
            db,
            request,
            (ChangeRequestStatus.PENDING,),
            ChangeRequestStatus.APPROVED,
            entity='ChangeRequest',
            responded_by_user_id=staff.id,
            responded_at=now,
        )
        values = {
            'timeslot_id': request.requested_timeslot_id,
            'doctor_id': request.requested_doctor_id,
            'approved_by_user_id': None,
            'reschedule_count': (appointment.reschedule_count or 0) + 1,
        }
        if request.request_type == ChangeRequestType.CHANGE_DOCTOR:
            values['replaced_doctor_id'] = request.current_doctor_id
        advance(db, appointment, MOVABLE_STATUSES, AppointmentStatus.PENDING, entity='Appointment', **values)

        ledger.release(db.get(Timeslot, request.current_timeslot_id))
        ledger.mark_booked(db.get(Timeslot, request.requested_timeslot_id), appointment.id)

    db.refresh(appointment)
    logger.info('Change request %s approved; appointment %s rebound', request.id, appointment.id)

    email, name = appointment.recipient()
    notify_safely(
        notifier,
        NotificationEvent.CHANGE_REQUEST_APPROVED,
        email,
        {'appointment_id': appointment.id, 'name': name, 'request_type': request.request_type},
    )
    return appointment


def reject(
    db: Session,
    request_id: int,
    staff: User,
    reason: str | None,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> ChangeRequest:
    now = now or utcnow()
    if not reason or not reason.strip():
        raise ValidationError('A reason is required to reject a change request.')

    request = get_request(db, request_id)
    with unit_of_work(db):
        advance(
            db,
            request,
            (ChangeRequestStatus.PENDING,),
            ChangeRequestStatus.REJECTED,
            entity='ChangeRequest',
            responded_by_user_id=staff.id,
            response_reason=reason.strip(),
            responded_at=now,
        )
        ledger.release(request.requested_timeslot)

    logger.info('Change request %s rejected', request.id)
    email, name = request.appointment.recipient()
    notify_safely(
        notifier,
        NotificationEvent.CHANGE_REQUEST_REJECTED,
        email,
        {'appointment_id': request.appointment_id, 'name': name, 'reason': reason.strip()},
    )
    return request


def close_open_requests(db: Session, appointment_id: int, reason: str, now: datetime) -> int:
    """Reject every pending request of an appointment and free what they reserved.

    Does not commit.
    """
    requests = db.query(ChangeRequest).filter(
        ChangeRequest.appointment_id == appointment_id,
        ChangeRequest.status == ChangeRequestStatus.PENDING,
    ).all()
    for request in requests:
        request.status = ChangeRequestStatus.REJECTED
        request.response_reason = reason
        request.responded_at = now
        ledger.release(request.requested_timeslot)
    return len(requests)


def list_requests(db: Session, status: str | None = None, appointment_id: int | None = None) -> list[ChangeRequest]:
    query = db.query(ChangeRequest)
    if status:
        query = query.filter(ChangeRequest.status == status)
    if appointment_id is not None:
        query = query.filter(ChangeRequest.appointment_id == appointment_id)
    return query.order_by(ChangeRequest.created_at.desc(), ChangeRequest.id.desc()).all()
