from datetime import date, datetime

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_scheduler.auth.dependencies import get_current_user, require_staff
from clinic_scheduler.core import config
from clinic_scheduler.core.timeutils import as_utc, to_utc
from clinic_scheduler.database import get_db
from clinic_scheduler.models.user import User
from clinic_scheduler.routes.change_request_routes import ChangeRequestResponse, change_request_to_response
from clinic_scheduler.routes.common import (
    AppointmentResponse,
    appointment_to_response,
    database_unavailable,
    ensure_database_ready,
    get_meeting_issuer,
    get_notifier,
    get_payment_provider,
    get_pricing,
)
from clinic_scheduler.routes.payment_routes import PaymentResponse, payment_to_response
from clinic_scheduler.services import change_requests, lifecycle
from clinic_scheduler.services.lifecycle import AppointmentFilters, BankInfo, ThirdPartyDetails
from clinic_scheduler.services.meeting_links import MeetingLinkIssuer
from clinic_scheduler.services.notifications import Notifier
from clinic_scheduler.services.payment_provider import PaymentProvider
from clinic_scheduler.services.pricing import PromotionResolver

router = APIRouter(tags=['appointments'])


class ThirdPartyRequest(BaseModel):
    full_name: str
    email: str
    phone_number: str

    @field_validator('full_name', 'phone_number')
    @classmethod
    def validate_required(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('This field is required.')
        return normalized

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        normalized = value.strip().lower()
        if '@' not in normalized:
            raise ValueError('A valid email is required.')
        return normalized


class CreateAppointmentRequest(BaseModel):
    service_id: int
    doctor_id: int
    schedule_id: int
    start_time: datetime
    end_time: datetime
    third_party: ThirdPartyRequest | None = None
    notes: str | None = None
    type: str | None = None

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if not normalized:
            return None

        if len(normalized) > config.MAX_NOTES_LENGTH:
            raise ValueError(f'Notes must be {config.MAX_NOTES_LENGTH} characters or fewer.')

        return normalized


class CreateAppointmentResponse(BaseModel):
    appointment_id: int
    status: str
    require_payment: bool
    appointment: AppointmentResponse
    payment: PaymentResponse | None = None


class ReviewRequest(BaseModel):
    action: str
    reason: str | None = None

    @field_validator('action')
    @classmethod
    def validate_action(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in (lifecycle.REVIEW_APPROVE, lifecycle.REVIEW_CANCEL):
            raise ValueError('Action must be approve or cancel.')
        return normalized


class StatusUpdateRequest(BaseModel):
    status: str
    reason: str | None = None


class StatusUpdateResponse(BaseModel):
    old_status: str
    new_status: str


class BankInfoRequest(BaseModel):
    account_holder: str
    account_number: str
    bank_name: str


class CancelRequest(BaseModel):
    reason: str | None = None
    bank_info: BankInfoRequest | None = None


class CancellationResponse(BaseModel):
    appointment_id: int
    old_status: str
    status: str
    cancel_reason: str | None = None
    cancelled_at: datetime
    refund_eligible: bool
    bank_info: BankInfoRequest | None = None


class RescheduleRequest(BaseModel):
    start_time: datetime
    end_time: datetime
    reason: str | None = None


class ChangeDoctorRequest(BaseModel):
    doctor_id: int
    reason: str | None = None


@router.post('', response_model=CreateAppointmentResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(
    data: CreateAppointmentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    pricing: PromotionResolver = Depends(get_pricing),
    provider: PaymentProvider = Depends(get_payment_provider),
    notifier: Notifier = Depends(get_notifier),
):
    ensure_database_ready()
    third_party = None
    if data.third_party is not None:
        third_party = ThirdPartyDetails(
            full_name=data.third_party.full_name,
            email=data.third_party.email,
            phone_number=data.third_party.phone_number,
        )

    try:
        result = lifecycle.create_appointment(
            db,
            current_user,
            service_id=data.service_id,
            doctor_id=data.doctor_id,
            schedule_id=data.schedule_id,
            start=to_utc(data.start_time),
            end=to_utc(data.end_time),
            third_party=third_party,
            notes=data.notes,
            appointment_type=data.type,
            pricing=pricing,
            provider=provider,
            notifier=notifier,
        )
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return CreateAppointmentResponse(
        appointment_id=result.appointment.id,
        status=result.appointment.status,
        require_payment=result.require_payment,
        appointment=appointment_to_response(result.appointment),
        payment=payment_to_response(result.payment) if result.payment else None,
    )


@router.get('', response_model=list[AppointmentResponse])
def list_appointments(
    status: str | None = None,
    doctor_id: int | None = None,
    date: date | None = None,
    current_user: User = Depends(require_staff),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    try:
        appointments = lifecycle.list_appointments(db, AppointmentFilters(status=status, doctor_id=doctor_id, day=date))
        return [appointment_to_response(appointment) for appointment in appointments]
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/mine', response_model=list[AppointmentResponse])
def list_my_appointments(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    try:
        return [appointment_to_response(appointment) for appointment in lifecycle.list_for_user(db, current_user)]
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/pending', response_model=list[AppointmentResponse])
def list_pending_appointments(
    current_user: User = Depends(require_staff),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    try:
        return [appointment_to_response(appointment) for appointment in lifecycle.list_pending(db)]
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{appointment_id}', response_model=AppointmentResponse)
def get_appointment(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    try:
        return appointment_to_response(lifecycle.get(db, appointment_id, actor=current_user))
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/{appointment_id}/review', response_model=AppointmentResponse)
def review_appointment(
    appointment_id: int,
    data: ReviewRequest,
    current_user: User = Depends(require_staff),
    db: Session = Depends(get_db),
    meetings: MeetingLinkIssuer = Depends(get_meeting_issuer),
    notifier: Notifier = Depends(get_notifier),
):
    ensure_database_ready()
    try:
        appointment = lifecycle.review(
            db,
            appointment_id,
            current_user,
            data.action,
            reason=data.reason,
            meetings=meetings,
            notifier=notifier,
        )
        return appointment_to_response(appointment)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/{appointment_id}/status', response_model=StatusUpdateResponse)
def update_appointment_status(
    appointment_id: int,
    data: StatusUpdateRequest,
    current_user: User = Depends(require_staff),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    ensure_database_ready()
    try:
        return lifecycle.transition_status(
            db,
            appointment_id,
            data.status.strip(),
            current_user,
            reason=data.reason,
            notifier=notifier,
        )
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/{appointment_id}/cancel', response_model=CancellationResponse)
def cancel_appointment(
    appointment_id: int,
    data: CancelRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    ensure_database_ready()
    bank_info = None
    if data.bank_info is not None:
        bank_info = BankInfo(
            account_holder=data.bank_info.account_holder.strip(),
            account_number=data.bank_info.account_number.strip(),
            bank_name=data.bank_info.bank_name.strip(),
        )

    try:
        record = lifecycle.cancel(
            db,
            appointment_id,
            current_user,
            reason=data.reason,
            bank_info=bank_info,
            notifier=notifier,
        )
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return CancellationResponse(
        appointment_id=record.appointment_id,
        old_status=record.old_status,
        status=record.status,
        cancel_reason=record.cancel_reason,
        cancelled_at=as_utc(record.cancelled_at),
        refund_eligible=record.refund_eligible,
        bank_info=BankInfoRequest(
            account_holder=record.bank_info.account_holder,
            account_number=record.bank_info.account_number,
            bank_name=record.bank_info.bank_name,
        ) if record.bank_info else None,
    )


@router.post('/{appointment_id}/refund', response_model=AppointmentResponse)
def refund_appointment(
    appointment_id: int,
    current_user: User = Depends(require_staff),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    try:
        return appointment_to_response(lifecycle.mark_refunded(db, appointment_id, current_user))
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/{appointment_id}/reschedule', response_model=ChangeRequestResponse, status_code=status.HTTP_201_CREATED)
def request_reschedule(
    appointment_id: int,
    data: RescheduleRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    try:
        request = change_requests.request_reschedule(
            db,
            appointment_id,
            current_user,
            to_utc(data.start_time),
            to_utc(data.end_time),
            reason=data.reason,
        )
        return change_request_to_response(request)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/{appointment_id}/change-doctor', response_model=ChangeRequestResponse, status_code=status.HTTP_201_CREATED)
def request_change_doctor(
    appointment_id: int,
    data: ChangeDoctorRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    try:
        request = change_requests.request_change_doctor(
            db,
            appointment_id,
            current_user,
            data.doctor_id,
            reason=data.reason,
        )
        return change_request_to_response(request)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
