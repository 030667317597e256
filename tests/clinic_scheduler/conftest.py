import os
from datetime import date, datetime, time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')
os.environ.setdefault('RECLAIMERS_ENABLED', 'false')
os.environ.setdefault('CLINIC_TIMEZONE', 'Asia/Ho_Chi_Minh')

from clinic_scheduler.core.errors import ExternalServiceError  # noqa: E402
from clinic_scheduler.core.timeutils import local_to_utc  # noqa: E402
from clinic_scheduler.database import Base, enable_sqlite_savepoints  # noqa: E402
from clinic_scheduler.models import appointment, change_request, payment, promotion  # noqa: E402,F401
from clinic_scheduler.models.schedule import DoctorSchedule, ScheduleStatus, Shift  # noqa: E402
from clinic_scheduler.models.service import Service, ServiceCategory, ServiceStatus  # noqa: E402
from clinic_scheduler.models.user import User, UserRole, UserStatus  # noqa: E402
from clinic_scheduler.services.payment_provider import IssuedPayment  # noqa: E402

# Monday; the clinic runs on UTC+7 so local 09:00 is 02:00 UTC.
BOOKING_DAY = date(2030, 1, 7)
BEFORE_BOOKING_DAY = datetime(2030, 1, 6, 0, 0)


def local(hour: int, minute: int = 0, day: date = BOOKING_DAY) -> datetime:
    return local_to_utc(day, time(hour, minute))


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def send(self, event, recipient, payload):
        self.sent.append((event, recipient, payload))


class StubPaymentProvider:
    api_token = ''

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.issued = []

    def issue(self, amount, memo, payer_label=None):
        if self.fail:
            raise ExternalServiceError('QR issuer is down.')
        self.issued.append((amount, memo, payer_label))
        return IssuedPayment(payable_reference=f'https://qr.example/{memo.replace(" ", "-")}')

    def list_recent_transactions(self, limit: int = 50):
        return []


@pytest.fixture
def engine():
    test_engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(test_engine)
    Base.metadata.create_all(bind=test_engine)
    try:
        yield test_engine
    finally:
        Base.metadata.drop_all(bind=test_engine)
        test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def now() -> datetime:
    return BEFORE_BOOKING_DAY


@pytest.fixture
def at():
    """Clinic-local wall-clock time on the booking day, as stored UTC."""
    return local


@pytest.fixture
def booking_day() -> date:
    return BOOKING_DAY


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def provider() -> StubPaymentProvider:
    return StubPaymentProvider()


@pytest.fixture
def make_user(db):
    counter = {'value': 0}

    def _make_user(role: str = UserRole.PATIENT, status: str = UserStatus.ACTIVE, full_name: str | None = None) -> User:
        counter['value'] += 1
        user = User(
            email=f'{role.lower()}{counter["value"]}@clinic.test',
            full_name=full_name or f'{role} {counter["value"]}',
            phone_number='0900000000',
            role=role,
            status=status,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make_user


@pytest.fixture
def make_service(db):
    counter = {'value': 0}

    def _make_service(
        duration_minutes: int = 30,
        price: int = 200000,
        is_prepaid: bool = False,
        category: str = ServiceCategory.EXAMINATION,
        status: str = ServiceStatus.ACTIVE,
    ) -> Service:
        counter['value'] += 1
        service = Service(
            name=f'Service {counter["value"]}',
            price=price,
            duration_minutes=duration_minutes,
            is_prepaid=is_prepaid,
            category=category,
            status=status,
        )
        db.add(service)
        db.commit()
        db.refresh(service)
        return service

    return _make_service


@pytest.fixture
def make_schedule(db):
    def _make_schedule(doctor: User, shift: str = Shift.MORNING, day: date = BOOKING_DAY) -> DoctorSchedule:
        start, end = (local(8, 0, day), local(12, 0, day)) if shift == Shift.MORNING else (local(14, 0, day), local(18, 0, day))
        schedule = DoctorSchedule(
            doctor_id=doctor.id,
            date=day,
            shift=shift,
            start_time=start,
            end_time=end,
            status=ScheduleStatus.AVAILABLE,
            max_slots=6,
        )
        db.add(schedule)
        db.commit()
        db.refresh(schedule)
        return schedule

    return _make_schedule


@pytest.fixture
def failing_provider() -> StubPaymentProvider:
    return StubPaymentProvider(fail=True)
