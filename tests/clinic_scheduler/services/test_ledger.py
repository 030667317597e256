from datetime import timedelta

import pytest

from clinic_scheduler.core.errors import ConflictError, InactiveResourceError, NotFoundError, ValidationError
from clinic_scheduler.models.appointment import Appointment, AppointmentStatus
from clinic_scheduler.models.schedule import Shift
from clinic_scheduler.models.service import ServiceStatus
from clinic_scheduler.models.timeslot import Timeslot, TimeslotStatus
from clinic_scheduler.models.user import UserRole, UserStatus
from clinic_scheduler.services import ledger, lifecycle
from clinic_scheduler.services.lifecycle import ThirdPartyDetails


def book(db, actor, service, doctor, schedule, start, now, **kwargs):
    return lifecycle.create_appointment(
        db,
        actor,
        service_id=service.id,
        doctor_id=doctor.id,
        schedule_id=schedule.id,
        start=start,
        end=start + timedelta(minutes=service.duration_minutes),
        now=now,
        **kwargs,
    )


@pytest.fixture
def clinic(make_user, make_service, make_schedule):
    doctor_x = make_user(UserRole.DOCTOR)
    doctor_y = make_user(UserRole.DOCTOR)
    return {
        'service': make_service(duration_minutes=30),
        'doctor_x': doctor_x,
        'doctor_y': doctor_y,
        'schedule_x': make_schedule(doctor_x, Shift.MORNING),
        'schedule_y': make_schedule(doctor_y, Shift.MORNING),
        'patient_a': make_user(UserRole.PATIENT),
        'patient_b': make_user(UserRole.PATIENT),
    }


def test_self_booking_conflicts_across_doctors(db, clinic, at, now) -> None:
    book(db, clinic['patient_a'], clinic['service'], clinic['doctor_x'], clinic['schedule_x'], at(9, 0), now)

    with pytest.raises(ConflictError) as exception_info:
        book(db, clinic['patient_a'], clinic['service'], clinic['doctor_y'], clinic['schedule_y'], at(9, 15), now)

    assert exception_info.value.message == 'You already have an appointment that overlaps this time.'

    result = book(db, clinic['patient_b'], clinic['service'], clinic['doctor_y'], clinic['schedule_y'], at(9, 15), now)
    assert result.appointment.status == AppointmentStatus.PENDING


def test_third_party_conflict_matches_normalized_name_and_email(db, clinic, at, now) -> None:
    jane = ThirdPartyDetails(full_name='Jane Doe', email='jane@x.com', phone_number='0911111111')
    book(db, clinic['patient_a'], clinic['service'], clinic['doctor_x'], clinic['schedule_x'], at(10, 0), now, third_party=jane)

    same_person = ThirdPartyDetails(full_name='  jane   DOE ', email=' JANE@X.COM', phone_number='0922222222')
    with pytest.raises(ConflictError):
        book(
            db, clinic['patient_b'], clinic['service'], clinic['doctor_y'], clinic['schedule_y'], at(10, 15), now,
            third_party=same_person,
        )

    john = ThirdPartyDetails(full_name='John Roe', email='john@x.com', phone_number='0933333333')
    result = book(
        db, clinic['patient_b'], clinic['service'], clinic['doctor_y'], clinic['schedule_y'], at(10, 0), now,
        third_party=john,
    )
    assert result.appointment.third_party_id is not None
    assert result.appointment.patient_user_id is None


def test_third_party_booking_does_not_block_the_booker_self(db, clinic, at, now) -> None:
    jane = ThirdPartyDetails(full_name='Jane Doe', email='jane@x.com', phone_number='0911111111')
    book(db, clinic['patient_a'], clinic['service'], clinic['doctor_x'], clinic['schedule_x'], at(10, 0), now, third_party=jane)

    result = book(db, clinic['patient_a'], clinic['service'], clinic['doctor_y'], clinic['schedule_y'], at(10, 0), now)

    assert result.appointment.patient_user_id == clinic['patient_a'].id


def test_doctor_conflict_honors_trailing_buffer(db, clinic, at, now) -> None:
    book(db, clinic['patient_a'], clinic['service'], clinic['doctor_x'], clinic['schedule_x'], at(9, 0), now)

    with pytest.raises(ConflictError) as exception_info:
        book(db, clinic['patient_b'], clinic['service'], clinic['doctor_x'], clinic['schedule_x'], at(9, 35), now)

    assert exception_info.value.message == 'The doctor already has a booking that overlaps this time.'

    result = book(db, clinic['patient_b'], clinic['service'], clinic['doctor_x'], clinic['schedule_x'], at(9, 40), now)
    assert result.appointment.timeslot.status == TimeslotStatus.BOOKED


def test_held_timeslots_never_overlap_after_many_attempts(db, make_user, clinic, at, now) -> None:
    for minute in range(0, 120, 5):
        patient = make_user(UserRole.PATIENT)
        try:
            book(db, patient, clinic['service'], clinic['doctor_x'], clinic['schedule_x'], at(8, 0) + timedelta(minutes=minute), now)
        except ConflictError:
            pass

    held = db.query(Timeslot).filter(Timeslot.status.in_(TimeslotStatus.HELD)).order_by(Timeslot.start_time).all()
    assert len(held) == 3
    for earlier, later in zip(held, held[1:]):
        assert later.start_time >= earlier.end_time + timedelta(minutes=earlier.break_after_minutes)


def test_create_appointment_rejects_duration_mismatch(db, clinic, at, now) -> None:
    with pytest.raises(ValidationError) as exception_info:
        lifecycle.create_appointment(
            db,
            clinic['patient_a'],
            service_id=clinic['service'].id,
            doctor_id=clinic['doctor_x'].id,
            schedule_id=clinic['schedule_x'].id,
            start=at(9, 0),
            end=at(9, 45),
            now=now,
        )

    assert exception_info.value.message == 'The slot must be exactly 30 minutes for this service.'
    assert db.query(Timeslot).count() == 0


def test_create_appointment_rejects_past_window(db, clinic, at) -> None:
    with pytest.raises(ValidationError):
        book(db, clinic['patient_a'], clinic['service'], clinic['doctor_x'], clinic['schedule_x'], at(9, 0), at(9, 5))


def test_create_appointment_rejects_schedule_of_another_doctor(db, clinic, at, now) -> None:
    with pytest.raises(ValidationError):
        book(db, clinic['patient_a'], clinic['service'], clinic['doctor_x'], clinic['schedule_y'], at(9, 0), now)


def test_create_appointment_rejects_inactive_service_and_unknown_doctor(db, clinic, make_service, at, now) -> None:
    inactive = make_service(status=ServiceStatus.INACTIVE)
    with pytest.raises(InactiveResourceError):
        book(db, clinic['patient_a'], inactive, clinic['doctor_x'], clinic['schedule_x'], at(9, 0), now)

    with pytest.raises(NotFoundError):
        lifecycle.create_appointment(
            db,
            clinic['patient_a'],
            service_id=clinic['service'].id,
            doctor_id=clinic['patient_b'].id,
            schedule_id=clinic['schedule_x'].id,
            start=at(9, 0),
            end=at(9, 30),
            now=now,
        )


def test_create_appointment_rejects_inactive_doctor(db, clinic, at, now) -> None:
    clinic['doctor_x'].status = UserStatus.INACTIVE
    db.commit()

    with pytest.raises(InactiveResourceError):
        book(db, clinic['patient_a'], clinic['service'], clinic['doctor_x'], clinic['schedule_x'], at(9, 0), now)


def test_third_party_booking_requires_all_contact_fields(db, clinic, at, now) -> None:
    with pytest.raises(ValidationError):
        book(
            db, clinic['patient_a'], clinic['service'], clinic['doctor_x'], clinic['schedule_x'], at(9, 0), now,
            third_party=ThirdPartyDetails(full_name='Jane Doe', email='jane@x.com', phone_number='  '),
        )


def test_claim_maps_unique_index_collision_to_conflict(db, clinic, at) -> None:
    ledger.claim(
        db,
        doctor_id=clinic['doctor_x'].id,
        service_id=clinic['service'].id,
        start=at(9, 0),
        end=at(9, 30),
        status=TimeslotStatus.BOOKED,
    )
    db.commit()

    with pytest.raises(ConflictError):
        ledger.claim(
            db,
            doctor_id=clinic['doctor_x'].id,
            service_id=clinic['service'].id,
            start=at(9, 0),
            end=at(9, 30),
            status=TimeslotStatus.RESERVED,
        )
    db.rollback()

    assert db.query(Timeslot).count() == 1


def test_released_timeslot_frees_the_window(db, clinic, at, now) -> None:
    result = book(db, clinic['patient_a'], clinic['service'], clinic['doctor_x'], clinic['schedule_x'], at(9, 0), now)
    ledger.release(result.appointment.timeslot)
    db.commit()

    assert ledger.find_doctor_conflict(db, clinic['doctor_x'].id, at(9, 0), at(9, 30)) is None
    assert db.query(Appointment).count() == 1


def test_check_claim_applies_self_or_third_party_rule(db, clinic, at, now) -> None:
    jane = ThirdPartyDetails(full_name='Jane Doe', email='jane@x.com', phone_number='0911111111')
    book(db, clinic['patient_a'], clinic['service'], clinic['doctor_x'], clinic['schedule_x'], at(9, 0), now)
    book(db, clinic['patient_b'], clinic['service'], clinic['doctor_x'], clinic['schedule_x'], at(10, 0), now, third_party=jane)

    with pytest.raises(ConflictError) as self_conflict:
        ledger.check_claim(db, clinic['doctor_y'].id, ledger.PersonKey.for_self(clinic['patient_a'].id), at(9, 10), at(9, 40))
    assert self_conflict.value.message == 'You already have an appointment that overlaps this time.'

    with pytest.raises(ConflictError) as third_party_conflict:
        ledger.check_claim(
            db, clinic['doctor_y'].id, ledger.PersonKey.for_third_party(' JANE doe', 'Jane@X.com'), at(10, 10), at(10, 40)
        )
    assert third_party_conflict.value.message == 'This person already has an appointment that overlaps this time.'

    ledger.check_claim(db, clinic['doctor_y'].id, ledger.PersonKey.for_self(clinic['patient_b'].id), at(9, 10), at(9, 40))


def test_release_leaves_unheld_timeslots_untouched(db, clinic, at, now) -> None:
    timeslot = book(db, clinic['patient_a'], clinic['service'], clinic['doctor_x'], clinic['schedule_x'], at(9, 0), now).appointment.timeslot
    timeslot.status = TimeslotStatus.COMPLETED
    db.commit()

    ledger.release(timeslot)

    assert timeslot.status == TimeslotStatus.COMPLETED
    assert timeslot.appointment_id is not None
    assert not timeslot.is_held
