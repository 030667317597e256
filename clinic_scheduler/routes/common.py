from datetime import datetime

from fastapi import HTTPException, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from clinic_scheduler.core.timeutils import as_utc, format_window
from clinic_scheduler.database import ensure_booking_schema
from clinic_scheduler.models.appointment import Appointment
from clinic_scheduler.services.meeting_links import MeetingLinkIssuer
from clinic_scheduler.services.notifications import Notifier, default_notifier
from clinic_scheduler.services.payment_provider import PaymentProvider
from clinic_scheduler.services.pricing import PromotionResolver

DATABASE_UNAVAILABLE_DETAIL = 'Database unavailable. Verify DATABASE_URL and Postgres credentials.'


def ensure_database_ready() -> None:
    try:
        ensure_booking_schema()
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=DATABASE_UNAVAILABLE_DETAIL,
        ) from exc


def database_unavailable() -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=DATABASE_UNAVAILABLE_DETAIL)


def get_notifier() -> Notifier:
    return default_notifier()


def get_payment_provider() -> PaymentProvider:
    return PaymentProvider()


def get_meeting_issuer() -> MeetingLinkIssuer:
    return MeetingLinkIssuer()


def get_pricing() -> PromotionResolver:
    return PromotionResolver()


class AppointmentResponse(BaseModel):
    id: int
    reference: str
    status: str
    type: str
    mode: str
    doctor_id: int
    service_id: int
    timeslot_id: int
    booked_by_user_id: int
    patient_user_id: int | None = None
    third_party_name: str | None = None
    start_time: datetime
    end_time: datetime
    display_time: str
    notes: str | None = None
    meeting_url: str | None = None
    original_price: int
    final_price: int
    discount_amount: int
    promotion_id: int | None = None
    payment_hold_expires_at: datetime | None = None
    reschedule_count: int
    cancel_reason: str | None = None


def appointment_to_response(appointment: Appointment) -> AppointmentResponse:
    timeslot = appointment.timeslot
    return AppointmentResponse(
        id=appointment.id,
        reference=appointment.reference,
        status=appointment.status,
        type=appointment.type,
        mode=appointment.mode,
        doctor_id=appointment.doctor_id,
        service_id=appointment.service_id,
        timeslot_id=appointment.timeslot_id,
        booked_by_user_id=appointment.booked_by_user_id,
        patient_user_id=appointment.patient_user_id,
        third_party_name=appointment.third_party.full_name if appointment.third_party else None,
        start_time=as_utc(timeslot.start_time),
        end_time=as_utc(timeslot.end_time),
        display_time=format_window(timeslot.start_time, timeslot.end_time),
        notes=appointment.notes,
        meeting_url=appointment.meeting_url,
        original_price=appointment.original_price,
        final_price=appointment.final_price,
        discount_amount=appointment.discount_amount,
        promotion_id=appointment.promotion_id,
        payment_hold_expires_at=as_utc(appointment.payment_hold_expires_at),
        reschedule_count=appointment.reschedule_count or 0,
        cancel_reason=appointment.cancel_reason,
    )
