"""User model definitions."""

from sqlalchemy import Column, Integer, String
from clinic_scheduler.database import Base


class UserRole:
    PATIENT = 'Patient'
    DOCTOR = 'Doctor'
    STAFF = 'Staff'
    ADMIN = 'Admin'

    STAFF_ROLES = frozenset({STAFF, ADMIN})


class UserStatus:
    ACTIVE = 'Active'
    INACTIVE = 'Inactive'


class User(Base):
    """Represents an account: patients, doctors and clinic staff."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String)
    phone_number = Column(String)
    role = Column(String, nullable=False, default=UserRole.PATIENT)
    status = Column(String, nullable=False, default=UserStatus.ACTIVE)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    @property
    def is_staff(self) -> bool:
        return self.role in UserRole.STAFF_ROLES
