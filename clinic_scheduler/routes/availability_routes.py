from datetime import date, datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_scheduler.auth.dependencies import get_current_user
from clinic_scheduler.core.errors import ValidationError
from clinic_scheduler.core.timeutils import as_utc, to_utc
from clinic_scheduler.database import get_db
from clinic_scheduler.models.user import User
from clinic_scheduler.routes.common import database_unavailable, ensure_database_ready
from clinic_scheduler.services import availability
from clinic_scheduler.services.ledger import PersonKey

router = APIRouter(tags=['availability'])


class SlotResponse(BaseModel):
    start_time: datetime
    end_time: datetime
    display_time: str
    schedule_id: int
    doctor_id: int | None = None
    doctor_name: str | None = None


class DoctorResponse(BaseModel):
    id: int
    full_name: str | None = None
    email: str

    class Config:
        from_attributes = True


def resolve_person(user: User, subject_name: str | None, subject_email: str | None) -> PersonKey:
    name = (subject_name or '').strip()
    email = (subject_email or '').strip()
    if not name and not email:
        return PersonKey.for_self(user.id)
    if not name or not email:
        raise ValidationError('Both subject_name and subject_email are required for a third-party search.')
    return PersonKey.for_third_party(name, email)


@router.get('/slots', response_model=list[SlotResponse])
def list_available_slots(
    service_id: int,
    date: date,
    doctor_id: int | None = None,
    subject_name: str | None = Query(default=None),
    subject_email: str | None = Query(default=None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    person = resolve_person(current_user, subject_name, subject_email)

    try:
        if doctor_id is not None:
            slots = availability.list_slots_for_doctor(db, service_id, date, doctor_id, person=person)
        else:
            slots = availability.list_slots(db, service_id, date, person=person)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return [
        SlotResponse(
            start_time=as_utc(slot.start_time),
            end_time=as_utc(slot.end_time),
            display_time=slot.display_time,
            schedule_id=slot.schedule_id,
            doctor_id=slot.doctor_id,
            doctor_name=slot.doctor_name,
        )
        for slot in slots
    ]


@router.get('/doctors', response_model=list[DoctorResponse])
def list_available_doctors(
    service_id: int,
    date: date,
    start_time: datetime,
    end_time: datetime,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return availability.list_doctors_for_window(db, service_id, date, to_utc(start_time), to_utc(end_time))
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
