from datetime import timedelta

import pytest

from clinic_scheduler.core.errors import (
    ConflictError,
    InvalidStateTransitionError,
    PermissionDeniedError,
    ValidationError,
)
from clinic_scheduler.models.appointment import AppointmentStatus
from clinic_scheduler.models.change_request import ChangeRequestStatus, ChangeRequestType
from clinic_scheduler.models.schedule import Shift
from clinic_scheduler.models.timeslot import Timeslot, TimeslotStatus
from clinic_scheduler.models.user import UserRole
from clinic_scheduler.services import change_requests, lifecycle


@pytest.fixture
def booked(db, make_user, make_service, make_schedule, at, now):
    doctor = make_user(UserRole.DOCTOR)
    other_doctor = make_user(UserRole.DOCTOR)
    schedule = make_schedule(doctor, Shift.MORNING)
    make_schedule(doctor, Shift.AFTERNOON)
    make_schedule(other_doctor, Shift.MORNING)
    patient = make_user(UserRole.PATIENT)
    service = make_service(duration_minutes=30)
    appointment = lifecycle.create_appointment(
        db,
        patient,
        service_id=service.id,
        doctor_id=doctor.id,
        schedule_id=schedule.id,
        start=at(9, 0),
        end=at(9, 30),
        now=now,
    ).appointment
    return {
        'appointment': appointment,
        'doctor': doctor,
        'other_doctor': other_doctor,
        'patient': patient,
        'staff': make_user(UserRole.STAFF),
        'service': service,
        'schedule': schedule,
    }


def test_reschedule_reserves_target_until_approved(db, booked, at, now, notifier) -> None:
    appointment = booked['appointment']
    old_timeslot_id = appointment.timeslot_id
    lifecycle.review(db, appointment.id, booked['staff'], lifecycle.REVIEW_APPROVE, now=now)

    request = change_requests.request_reschedule(
        db, appointment.id, booked['patient'], at(14, 0), at(14, 30), reason='Work meeting', now=now
    )

    assert request.status == ChangeRequestStatus.PENDING
    assert request.request_type == ChangeRequestType.RESCHEDULE
    assert request.requested_timeslot.status == TimeslotStatus.RESERVED
    assert request.requested_timeslot.schedule.shift == Shift.AFTERNOON

    change_requests.approve(db, request.id, booked['staff'], notifier=notifier, now=now)

    assert appointment.status == AppointmentStatus.PENDING
    assert appointment.approved_by_user_id is None
    assert appointment.reschedule_count == 1
    assert appointment.timeslot.start_time == at(14, 0)
    assert appointment.timeslot.status == TimeslotStatus.BOOKED
    assert db.get(Timeslot, old_timeslot_id).status == TimeslotStatus.AVAILABLE
    assert notifier.sent[-1][0] == 'change_request.approved'


def test_reschedule_may_overlap_its_own_current_slot(db, booked, at, now) -> None:
    request = change_requests.request_reschedule(db, booked['appointment'].id, booked['patient'], at(9, 15), at(9, 45), now=now)

    assert request.requested_timeslot.start_time == at(9, 15)


def test_reschedule_rejects_same_window_and_wrong_duration(db, booked, at, now) -> None:
    appointment = booked['appointment']

    with pytest.raises(ValidationError):
        change_requests.request_reschedule(db, appointment.id, booked['patient'], at(9, 0), at(9, 30), now=now)
    with pytest.raises(ValidationError):
        change_requests.request_reschedule(db, appointment.id, booked['patient'], at(10, 0), at(11, 0), now=now)
    with pytest.raises(ValidationError):
        change_requests.request_reschedule(
            db, appointment.id, booked['patient'], at(10, 0), at(10, 30) + timedelta(seconds=30), now=now
        )


def test_reschedule_into_doctor_conflict_is_refused(db, booked, make_user, at, now) -> None:
    lifecycle.create_appointment(
        db,
        make_user(UserRole.PATIENT),
        service_id=booked['service'].id,
        doctor_id=booked['doctor'].id,
        schedule_id=booked['schedule'].id,
        start=at(10, 0),
        end=at(10, 30),
        now=now,
    )

    with pytest.raises(ConflictError):
        change_requests.request_reschedule(db, booked['appointment'].id, booked['patient'], at(10, 15), at(10, 45), now=now)

    assert db.query(Timeslot).filter(Timeslot.status == TimeslotStatus.RESERVED).count() == 0


def test_only_one_pending_request_per_appointment(db, booked, at, now) -> None:
    appointment = booked['appointment']
    change_requests.request_reschedule(db, appointment.id, booked['patient'], at(10, 0), at(10, 30), now=now)

    with pytest.raises(ConflictError):
        change_requests.request_reschedule(db, appointment.id, booked['patient'], at(11, 0), at(11, 30), now=now)


def test_only_the_patient_may_request_changes(db, booked, make_user, at, now) -> None:
    with pytest.raises(PermissionDeniedError):
        change_requests.request_reschedule(
            db, booked['appointment'].id, make_user(UserRole.PATIENT), at(10, 0), at(10, 30), now=now
        )


def test_cancelled_appointment_cannot_be_moved(db, booked, at, now) -> None:
    appointment = booked['appointment']
    lifecycle.cancel(db, appointment.id, booked['patient'], now=now)

    with pytest.raises(InvalidStateTransitionError):
        change_requests.request_reschedule(db, appointment.id, booked['patient'], at(10, 0), at(10, 30), now=now)


def test_reject_requires_reason_and_frees_reserved_slot(db, booked, at, now, notifier) -> None:
    request = change_requests.request_reschedule(db, booked['appointment'].id, booked['patient'], at(10, 0), at(10, 30), now=now)

    with pytest.raises(ValidationError):
        change_requests.reject(db, request.id, booked['staff'], '   ', now=now)

    rejected = change_requests.reject(db, request.id, booked['staff'], 'Doctor is fully booked', notifier=notifier, now=now)

    assert rejected.status == ChangeRequestStatus.REJECTED
    assert rejected.response_reason == 'Doctor is fully booked'
    assert rejected.requested_timeslot.status == TimeslotStatus.AVAILABLE
    assert booked['appointment'].timeslot.status == TimeslotStatus.BOOKED

    with pytest.raises(InvalidStateTransitionError):
        change_requests.approve(db, request.id, booked['staff'], now=now)


def test_change_doctor_keeps_window_and_records_replaced_doctor(db, booked, at, now) -> None:
    appointment = booked['appointment']

    request = change_requests.request_change_doctor(
        db, appointment.id, booked['patient'], booked['other_doctor'].id, reason='Prefer a female doctor', now=now
    )
    assert request.requested_doctor_id == booked['other_doctor'].id
    assert request.requested_timeslot.start_time == at(9, 0)

    change_requests.approve(db, request.id, booked['staff'], now=now)

    assert appointment.doctor_id == booked['other_doctor'].id
    assert appointment.replaced_doctor_id == booked['doctor'].id
    assert appointment.timeslot.doctor_id == booked['other_doctor'].id


def test_change_doctor_rejects_same_doctor(db, booked, now) -> None:
    with pytest.raises(ValidationError):
        change_requests.request_change_doctor(db, booked['appointment'].id, booked['patient'], booked['doctor'].id, now=now)


def test_cancelling_appointment_closes_open_requests(db, booked, at, now) -> None:
    appointment = booked['appointment']
    request = change_requests.request_reschedule(db, appointment.id, booked['patient'], at(10, 0), at(10, 30), now=now)

    lifecycle.cancel(db, appointment.id, booked['patient'], reason='No longer needed', now=now + timedelta(hours=1))

    db.refresh(request)
    assert request.status == ChangeRequestStatus.REJECTED
    assert request.response_reason == 'No longer needed'
    assert request.requested_timeslot.status == TimeslotStatus.AVAILABLE
    assert change_requests.list_requests(db, status=ChangeRequestStatus.PENDING) == []
    assert [r.id for r in change_requests.list_requests(db, appointment_id=appointment.id)] == [request.id]


def test_check_in_rejects_open_request_and_frees_its_slot(db, booked, make_user, at, now) -> None:
    appointment = booked['appointment']
    lifecycle.review(db, appointment.id, booked['staff'], lifecycle.REVIEW_APPROVE, now=now)
    request = change_requests.request_reschedule(db, appointment.id, booked['patient'], at(14, 0), at(14, 30), now=now)
    afternoon_schedule_id = request.requested_timeslot.schedule_id

    lifecycle.check_in(db, appointment.id, booked['staff'], now=at(8, 55))
    lifecycle.start(db, appointment.id, now=at(9, 0))
    lifecycle.complete(db, appointment.id, now=at(9, 30))

    db.refresh(request)
    assert request.status == ChangeRequestStatus.REJECTED
    assert request.response_reason == 'Appointment checked in'
    assert request.requested_timeslot.status == TimeslotStatus.AVAILABLE

    other = lifecycle.create_appointment(
        db,
        make_user(UserRole.PATIENT),
        service_id=booked['service'].id,
        doctor_id=booked['doctor'].id,
        schedule_id=afternoon_schedule_id,
        start=at(14, 0),
        end=at(14, 30),
        now=now,
    ).appointment
    assert other.timeslot.status == TimeslotStatus.BOOKED
