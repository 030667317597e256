"""Lookups against the user and service directory."""

from sqlalchemy.orm import Session

from clinic_scheduler.core.errors import InactiveResourceError, NotFoundError
from clinic_scheduler.models.service import Service
from clinic_scheduler.models.user import User, UserRole, UserStatus


def get_active_service(db: Session, service_id: int) -> Service:
    service = db.get(Service, service_id)
    if service is None:
        raise NotFoundError('Service not found.')
    if not service.is_active:
        raise InactiveResourceError('Service is not active.')
    return service


def get_active_doctor(db: Session, doctor_id: int) -> User:
    doctor = db.get(User, doctor_id)
    if doctor is None or doctor.role != UserRole.DOCTOR:
        raise NotFoundError('Doctor not found.')
    if not doctor.is_active:
        raise InactiveResourceError('Doctor is not active.')
    return doctor


def active_doctors(db: Session) -> list[User]:
    return db.query(User).filter(
        User.role == UserRole.DOCTOR,
        User.status == UserStatus.ACTIVE,
    ).order_by(User.id.asc()).all()
