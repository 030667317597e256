from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_scheduler.auth.dependencies import require_staff
from clinic_scheduler.core.timeutils import as_utc, format_window
from clinic_scheduler.database import get_db
from clinic_scheduler.models.change_request import ChangeRequest
from clinic_scheduler.models.user import User
from clinic_scheduler.routes.common import (
    AppointmentResponse,
    appointment_to_response,
    database_unavailable,
    ensure_database_ready,
    get_notifier,
)
from clinic_scheduler.services import change_requests
from clinic_scheduler.services.notifications import Notifier

router = APIRouter(tags=['change-requests'])


class ChangeRequestResponse(BaseModel):
    id: int
    appointment_id: int
    request_type: str
    status: str
    current_doctor_id: int
    requested_doctor_id: int
    requested_timeslot_id: int
    requested_start_time: datetime
    requested_end_time: datetime
    requested_display_time: str
    reason: str | None = None
    response_reason: str | None = None
    responded_at: datetime | None = None


class RejectRequest(BaseModel):
    reason: str


def change_request_to_response(request: ChangeRequest) -> ChangeRequestResponse:
    timeslot = request.requested_timeslot
    return ChangeRequestResponse(
        id=request.id,
        appointment_id=request.appointment_id,
        request_type=request.request_type,
        status=request.status,
        current_doctor_id=request.current_doctor_id,
        requested_doctor_id=request.requested_doctor_id,
        requested_timeslot_id=request.requested_timeslot_id,
        requested_start_time=as_utc(timeslot.start_time),
        requested_end_time=as_utc(timeslot.end_time),
        requested_display_time=format_window(timeslot.start_time, timeslot.end_time),
        reason=request.reason,
        response_reason=request.response_reason,
        responded_at=as_utc(request.responded_at),
    )


@router.get('', response_model=list[ChangeRequestResponse])
def list_change_requests(
    status: str | None = None,
    appointment_id: int | None = None,
    current_user: User = Depends(require_staff),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    try:
        requests = change_requests.list_requests(db, status=status, appointment_id=appointment_id)
        return [change_request_to_response(request) for request in requests]
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/{request_id}/approve', response_model=AppointmentResponse)
def approve_change_request(
    request_id: int,
    current_user: User = Depends(require_staff),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    ensure_database_ready()
    try:
        return appointment_to_response(change_requests.approve(db, request_id, current_user, notifier=notifier))
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/{request_id}/reject', response_model=ChangeRequestResponse)
def reject_change_request(
    request_id: int,
    data: RejectRequest,
    current_user: User = Depends(require_staff),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    ensure_database_ready()
    try:
        request = change_requests.reject(db, request_id, current_user, data.reason, notifier=notifier)
        return change_request_to_response(request)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
