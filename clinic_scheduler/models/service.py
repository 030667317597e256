"""Clinic service catalog definitions."""

from sqlalchemy import Boolean, Column, Integer, String
from clinic_scheduler.database import Base


class ServiceCategory:
    CONSULTATION = 'Consultation'
    EXAMINATION = 'Examination'


class ServiceStatus:
    ACTIVE = 'Active'
    INACTIVE = 'Inactive'


class Service(Base):
    """A bookable service with a fixed duration and list price."""
    __tablename__ = "services"

    id = Column(Integer, primary_key=True)
    name = Column(String, unique=True, nullable=False)
    price = Column(Integer, nullable=False, default=0)
    duration_minutes = Column(Integer, nullable=False)
    is_prepaid = Column(Boolean, nullable=False, default=False)
    category = Column(String, nullable=False, default=ServiceCategory.EXAMINATION)
    status = Column(String, nullable=False, default=ServiceStatus.ACTIVE)

    @property
    def is_active(self) -> bool:
        return self.status == ServiceStatus.ACTIVE
