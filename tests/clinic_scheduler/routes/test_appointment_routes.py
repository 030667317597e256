from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from clinic_scheduler.core.errors import ConflictError, PermissionDeniedError
from clinic_scheduler.core.errors import ValidationError as SchedulingValidationError
from clinic_scheduler.models.appointment import AppointmentStatus
from clinic_scheduler.models.schedule import Shift
from clinic_scheduler.models.user import UserRole
from clinic_scheduler.routes.appointment_routes import (
    CancelRequest,
    CreateAppointmentRequest,
    ReviewRequest,
    RescheduleRequest,
    ThirdPartyRequest,
    cancel_appointment,
    create_appointment,
    list_my_appointments,
    request_reschedule,
    review_appointment,
)
from clinic_scheduler.routes.availability_routes import list_available_slots, resolve_person
from clinic_scheduler.routes.payment_routes import get_payment, receive_bank_notification
from clinic_scheduler.services.pricing import PromotionResolver


@pytest.fixture(autouse=True)
def skip_schema_check(monkeypatch: pytest.MonkeyPatch) -> None:
    for module in ('appointment_routes', 'availability_routes', 'payment_routes'):
        monkeypatch.setattr(f'clinic_scheduler.routes.{module}.ensure_database_ready', lambda: None)


@pytest.fixture
def clinic(make_user, make_service, make_schedule):
    doctor = make_user(UserRole.DOCTOR)
    return {
        'doctor': doctor,
        'schedule': make_schedule(doctor, Shift.MORNING),
        'patient': make_user(UserRole.PATIENT),
        'staff': make_user(UserRole.STAFF),
        'service': make_service(duration_minutes=30),
        'prepaid_service': make_service(duration_minutes=30, price=300000, is_prepaid=True),
    }


def booking_request(clinic, service=None, hour=9, **kwargs) -> CreateAppointmentRequest:
    return CreateAppointmentRequest(
        service_id=(service or clinic['service']).id,
        doctor_id=clinic['doctor'].id,
        schedule_id=clinic['schedule'].id,
        start_time=datetime(2030, 1, 7, hour, 0),
        end_time=datetime(2030, 1, 7, hour, 30),
        **kwargs,
    )


def book(db, clinic, provider, notifier, user=None, **kwargs):
    return create_appointment(
        data=booking_request(clinic, **kwargs),
        current_user=user or clinic['patient'],
        db=db,
        pricing=PromotionResolver(),
        provider=provider,
        notifier=notifier,
    )


def test_third_party_request_normalizes_fields() -> None:
    request = ThirdPartyRequest(full_name=' Jane Doe ', email=' JANE@X.COM ', phone_number=' 0911 ')

    assert request.full_name == 'Jane Doe'
    assert request.email == 'jane@x.com'
    assert request.phone_number == '0911'


@pytest.mark.parametrize(
    'fields',
    [
        {'full_name': '   ', 'email': 'jane@x.com', 'phone_number': '0911'},
        {'full_name': 'Jane', 'email': 'not-an-email', 'phone_number': '0911'},
        {'full_name': 'Jane', 'email': 'jane@x.com', 'phone_number': ''},
    ],
)
def test_third_party_request_rejects_incomplete_contact(fields: dict) -> None:
    with pytest.raises(ValidationError):
        ThirdPartyRequest(**fields)


def test_create_request_blanks_empty_notes_and_rejects_long_ones() -> None:
    base = {
        'service_id': 1,
        'doctor_id': 1,
        'schedule_id': 1,
        'start_time': datetime(2030, 1, 7, 9, 0),
        'end_time': datetime(2030, 1, 7, 9, 30),
    }

    assert CreateAppointmentRequest(**base, notes='   ').notes is None
    with pytest.raises(ValidationError):
        CreateAppointmentRequest(**base, notes='x' * 601)


def test_review_request_normalizes_action() -> None:
    assert ReviewRequest(action=' Approve ').action == 'approve'
    with pytest.raises(ValidationError):
        ReviewRequest(action='postpone')


def test_create_appointment_returns_clinic_local_display(db, clinic, provider, notifier) -> None:
    response = book(db, clinic, provider, notifier)

    assert response.status == AppointmentStatus.PENDING
    assert response.require_payment is False
    assert response.payment is None
    assert response.appointment.display_time == '09:00 - 09:30'
    assert response.appointment.start_time == datetime(2030, 1, 7, 2, 0, tzinfo=timezone.utc)
    assert notifier.sent[0][0] == 'appointment.created'


def test_create_prepaid_appointment_returns_payment(db, clinic, provider, notifier) -> None:
    response = book(db, clinic, provider, notifier, service=clinic['prepaid_service'])

    assert response.require_payment is True
    assert response.status == AppointmentStatus.PENDING_PAYMENT
    assert response.payment.amount == 300000
    assert response.payment.payable_reference.startswith('https://qr.example/APPOINTMENT-')


def test_create_appointment_conflict_propagates(db, clinic, provider, notifier) -> None:
    book(db, clinic, provider, notifier)

    with pytest.raises(ConflictError):
        book(db, clinic, provider, notifier)


def test_cancel_appointment_rejects_other_patient(db, clinic, make_user, provider, notifier) -> None:
    response = book(db, clinic, provider, notifier)

    with pytest.raises(PermissionDeniedError):
        cancel_appointment(
            appointment_id=response.appointment_id,
            data=CancelRequest(reason='nope'),
            current_user=make_user(UserRole.PATIENT),
            db=db,
            notifier=notifier,
        )


def test_cancel_appointment_reports_old_status(db, clinic, provider, notifier) -> None:
    response = book(db, clinic, provider, notifier)

    cancellation = cancel_appointment(
        appointment_id=response.appointment_id,
        data=CancelRequest(reason=' Sick '),
        current_user=clinic['patient'],
        db=db,
        notifier=notifier,
    )

    assert cancellation.old_status == AppointmentStatus.PENDING
    assert cancellation.status == AppointmentStatus.CANCELLED
    assert cancellation.cancel_reason == 'Sick'
    assert cancellation.cancelled_at.tzinfo is not None
    assert cancellation.refund_eligible is False
    assert list_my_appointments(current_user=clinic['patient'], db=db)[0].status == AppointmentStatus.CANCELLED


class DisabledMeetings:
    enabled = False


def test_review_and_reschedule_round_trip(db, clinic, provider, notifier) -> None:
    response = book(db, clinic, provider, notifier)

    reviewed = review_appointment(
        appointment_id=response.appointment_id,
        data=ReviewRequest(action='approve'),
        current_user=clinic['staff'],
        db=db,
        meetings=DisabledMeetings(),
        notifier=notifier,
    )
    assert reviewed.status == AppointmentStatus.APPROVED

    request = request_reschedule(
        appointment_id=response.appointment_id,
        data=RescheduleRequest(start_time=datetime(2030, 1, 7, 11, 0), end_time=datetime(2030, 1, 7, 11, 30)),
        current_user=clinic['patient'],
        db=db,
    )
    assert request.status == 'Pending'
    assert request.requested_display_time == '11:00 - 11:30'


def test_resolve_person_requires_both_third_party_fields(make_user) -> None:
    user = make_user(UserRole.PATIENT)

    assert resolve_person(user, None, '  ').user_id == user.id
    assert resolve_person(user, ' Jane  Doe ', 'JANE@X.COM').email == 'jane@x.com'
    with pytest.raises(SchedulingValidationError):
        resolve_person(user, 'Jane Doe', None)


def test_list_available_slots_hides_booked_window(db, clinic, provider, notifier, booking_day) -> None:
    book(db, clinic, provider, notifier)

    slots = list_available_slots(
        service_id=clinic['service'].id,
        date=booking_day,
        doctor_id=clinic['doctor'].id,
        subject_name=None,
        subject_email=None,
        current_user=clinic['patient'],
        db=db,
    )

    assert [slot.display_time for slot in slots] == ['08:00 - 08:30', '10:00 - 10:30', '10:40 - 11:10', '11:20 - 11:50']


def test_bank_webhook_confirms_matching_hold(db, clinic, provider, notifier) -> None:
    response = book(db, clinic, provider, notifier, service=clinic['prepaid_service'])

    outcome = receive_bank_notification(
        payload={'id': 'FT9', 'transferAmount': 300000, 'content': f'IBFT {response.payment.memo}'},
        db=db,
        notifier=notifier,
    )

    assert outcome.matched is True
    payment = get_payment(payment_id=response.payment.id, current_user=clinic['patient'], db=db)
    assert payment.status == 'Completed'

    with pytest.raises(PermissionDeniedError):
        get_payment(payment_id=response.payment.id, current_user=clinic['doctor'], db=db)
