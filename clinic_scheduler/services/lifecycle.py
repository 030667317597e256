"""Appointment creation and state machine.

Every status change is a guarded write: the stored status must still be in the
allowed source set when the UPDATE runs, otherwise the call fails with
InvalidStateTransitionError and nothing is written.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from sqlalchemy import or_
from sqlalchemy.orm import Session

from clinic_scheduler.core import config
from clinic_scheduler.core.errors import (
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from clinic_scheduler.core.timeutils import day_bounds, utcnow
from clinic_scheduler.models.appointment import (
    Appointment,
    AppointmentMode,
    AppointmentStatus,
    AppointmentType,
    SelfSubject,
    ThirdPartySubject,
    ThirdPartySubjectRef,
    normalize_email,
    normalize_name,
)
from clinic_scheduler.models.payment import Payment, PaymentStatus
from clinic_scheduler.models.schedule import DoctorSchedule, ScheduleStatus
from clinic_scheduler.models.service import ServiceCategory
from clinic_scheduler.models.timeslot import Timeslot, TimeslotStatus
from clinic_scheduler.models.user import User, UserRole
from clinic_scheduler.services import change_requests, ledger, payment_gate
from clinic_scheduler.services.directory import get_active_doctor, get_active_service
from clinic_scheduler.services.ledger import PersonKey
from clinic_scheduler.services.meeting_links import MeetingLinkIssuer
from clinic_scheduler.services.notifications import NotificationEvent, Notifier, notify_safely
from clinic_scheduler.services.payment_provider import PaymentProvider
from clinic_scheduler.services.pricing import PromotionResolver
from clinic_scheduler.services.transitions import advance, unit_of_work

logger = logging.getLogger(__name__)

CANCELLABLE = (
    AppointmentStatus.PENDING,
    AppointmentStatus.APPROVED,
    AppointmentStatus.CHECKED_IN,
    AppointmentStatus.IN_PROGRESS,
)
REVIEWABLE = (AppointmentStatus.PENDING, AppointmentStatus.APPROVED)

REVIEW_APPROVE = 'approve'
REVIEW_CANCEL = 'cancel'


@dataclass(frozen=True)
class ThirdPartyDetails:
    full_name: str
    email: str
    phone_number: str


@dataclass(frozen=True)
class BankInfo:
    account_holder: str
    account_number: str
    bank_name: str


@dataclass
class CreationResult:
    appointment: Appointment
    payment: Payment | None = None

    @property
    def require_payment(self) -> bool:
        return self.payment is not None


@dataclass
class CancellationRecord:
    appointment_id: int
    old_status: str
    status: str
    cancel_reason: str | None
    cancelled_at: datetime
    refund_eligible: bool
    bank_info: BankInfo | None = None


@dataclass
class AppointmentFilters:
    status: str | None = None
    doctor_id: int | None = None
    day: date | None = None
    statuses: tuple[str, ...] = field(default_factory=tuple)


def derive_type_and_mode(category: str, requested_type: str | None = None) -> tuple[str, str]:
    if category == ServiceCategory.CONSULTATION:
        default_type, mode = AppointmentType.CONSULTATION, AppointmentMode.ONLINE
    else:
        default_type, mode = AppointmentType.EXAMINATION, AppointmentMode.OFFLINE

    if requested_type is None:
        return default_type, mode
    if requested_type not in AppointmentType.ALL:
        raise ValidationError(f'Unknown appointment type: {requested_type}.')
    return requested_type, mode


def _validate_third_party(details: ThirdPartyDetails) -> ThirdPartyDetails:
    full_name = (details.full_name or '').strip()
    email = (details.email or '').strip()
    phone_number = (details.phone_number or '').strip()
    if not full_name or not email or not phone_number:
        raise ValidationError('Name, email and phone number are required when booking for someone else.')
    if '@' not in email:
        raise ValidationError('A valid email is required when booking for someone else.')
    return ThirdPartyDetails(full_name=full_name, email=email, phone_number=phone_number)


def create_appointment(
    db: Session,
    actor: User,
    *,
    service_id: int,
    doctor_id: int,
    schedule_id: int,
    start: datetime,
    end: datetime,
    third_party: ThirdPartyDetails | None = None,
    notes: str | None = None,
    appointment_type: str | None = None,
    pricing: PromotionResolver | None = None,
    provider: PaymentProvider | None = None,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> CreationResult:
    """Validate a booking request, claim its timeslot and open a payment hold
    when the service is prepaid. All writes commit together or not at all."""
    now = now or utcnow()

    if third_party is not None:
        third_party = _validate_third_party(third_party)
        person = PersonKey.for_third_party(third_party.full_name, third_party.email)
    else:
        person = PersonKey.for_self(actor.id)

    if notes and len(notes) > config.MAX_NOTES_LENGTH:
        raise ValidationError(f'Notes cannot be longer than {config.MAX_NOTES_LENGTH} characters.')

    service = get_active_service(db, service_id)
    doctor = get_active_doctor(db, doctor_id)

    schedule = db.get(DoctorSchedule, schedule_id)
    if schedule is None:
        raise NotFoundError('Schedule not found.')
    if schedule.doctor_id != doctor.id:
        raise ValidationError('The schedule does not belong to the selected doctor.')
    if schedule.status != ScheduleStatus.AVAILABLE:
        raise ValidationError('The selected schedule is not open for booking.')

    quote = (pricing or PromotionResolver()).resolve(db, service.id, service.price or 0, now=now)

    if end <= start:
        raise ValidationError('End time must be after start time.')
    if start <= now:
        raise ValidationError('Cannot book a time in the past.')
    if end - start != timedelta(minutes=service.duration_minutes):
        raise ValidationError(f'The slot must be exactly {service.duration_minutes} minutes for this service.')
    if start < schedule.start_time or end > schedule.end_time:
        raise ValidationError('The slot falls outside the selected schedule.')

    type_, mode = derive_type_and_mode(service.category, appointment_type)

    ledger.check_claim(db, doctor.id, person, start, end)

    prepaid = bool(service.is_prepaid) and quote.final_price > 0
    payment = None

    with unit_of_work(db):
        timeslot = ledger.claim(
            db,
            doctor_id=doctor.id,
            service_id=service.id,
            start=start,
            end=end,
            status=TimeslotStatus.RESERVED if prepaid else TimeslotStatus.BOOKED,
            schedule_id=schedule.id,
        )

        appointment = Appointment(
            booked_by_user_id=actor.id,
            doctor_id=doctor.id,
            service_id=service.id,
            timeslot_id=timeslot.id,
            status=AppointmentStatus.PENDING_PAYMENT if prepaid else AppointmentStatus.PENDING,
            type=type_,
            mode=mode,
            notes=(notes or '').strip() or None,
            payment_hold_expires_at=now + timedelta(minutes=config.PAYMENT_HOLD_MINUTES) if prepaid else None,
            original_price=quote.original_price,
            final_price=quote.final_price,
            discount_amount=quote.discount_amount,
            promotion_id=quote.promotion_id,
            reschedule_count=0,
            created_at=now,
        )

        if third_party is not None:
            subject = ThirdPartySubject(
                booked_by_user_id=actor.id,
                full_name=third_party.full_name,
                email=third_party.email,
                phone_number=third_party.phone_number,
                normalized_name=normalize_name(third_party.full_name),
                normalized_email=normalize_email(third_party.email),
            )
            db.add(subject)
            db.flush()
            appointment.subject = ThirdPartySubjectRef(subject.id)
        else:
            appointment.subject = SelfSubject(actor.id)

        db.add(appointment)
        db.flush()
        timeslot.appointment_id = appointment.id

        if prepaid:
            payer_label = third_party.full_name if third_party is not None else actor.full_name
            payment = payment_gate.open_hold(db, appointment, quote.final_price, payer_label, provider=provider, now=now)

    logger.info(
        'Appointment %s created (%s) for doctor %s at %s',
        appointment.id,
        appointment.status,
        doctor.id,
        start.isoformat(),
    )

    email, name = appointment.recipient()
    notify_safely(
        notifier,
        NotificationEvent.APPOINTMENT_CREATED,
        email,
        {'appointment_id': appointment.id, 'name': name, 'status': appointment.status},
    )
    return CreationResult(appointment=appointment, payment=payment)


def get(db: Session, appointment_id: int, actor: User | None = None) -> Appointment:
    appointment = db.get(Appointment, appointment_id)
    if appointment is None:
        raise NotFoundError('Appointment not found.')
    if actor is not None and not actor.is_staff and actor.id not in (
        appointment.booked_by_user_id,
        appointment.patient_user_id,
        appointment.doctor_id,
    ):
        raise PermissionDeniedError('You cannot view this appointment.')
    return appointment


def _attach_meeting_link(db: Session, appointment: Appointment, meetings: MeetingLinkIssuer | None) -> None:
    """Create a meeting link for an approved online consultation.

    Runs after the approval has committed; the link is saved in its own commit.
    """
    if meetings is None or not meetings.enabled:
        return
    if appointment.mode != AppointmentMode.ONLINE or appointment.type != AppointmentType.CONSULTATION:
        return

    email, name = appointment.recipient()
    timeslot = appointment.timeslot
    title = f'Consultation: {name or appointment.reference}'
    start_time, end_time = timeslot.start_time, timeslot.end_time
    attendees = [email, appointment.doctor.email if appointment.doctor else None]
    # No transaction stays open across the HTTP call.
    db.commit()

    try:
        url = meetings.create(title, start_time, end_time, attendees)
    except Exception:
        logger.exception('Could not create a meeting link for appointment %s', appointment.id)
        return

    with unit_of_work(db):
        appointment.meeting_url = url


def _release_and_close(db: Session, appointment: Appointment, reason: str, now: datetime) -> None:
    ledger.release(appointment.timeslot)
    change_requests.close_open_requests(db, appointment.id, reason, now)


def review(
    db: Session,
    appointment_id: int,
    staff: User,
    decision: str,
    reason: str | None = None,
    meetings: MeetingLinkIssuer | None = None,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> Appointment:
    """Staff decision on a Pending appointment: approve it or cancel it."""
    now = now or utcnow()
    appointment = get(db, appointment_id)

    if decision == REVIEW_APPROVE:
        with unit_of_work(db):
            advance(
                db,
                appointment,
                (AppointmentStatus.PENDING,),
                AppointmentStatus.APPROVED,
                entity='Appointment',
                approved_by_user_id=staff.id,
            )
        _attach_meeting_link(db, appointment, meetings)
        event = NotificationEvent.APPOINTMENT_APPROVED
    elif decision == REVIEW_CANCEL:
        cancel_reason = (reason or '').strip() or 'Cancelled by clinic staff'
        with unit_of_work(db):
            advance(
                db,
                appointment,
                REVIEWABLE,
                AppointmentStatus.CANCELLED,
                entity='Appointment',
                cancel_reason=cancel_reason,
                cancelled_at=now,
            )
            _release_and_close(db, appointment, cancel_reason, now)
        event = NotificationEvent.APPOINTMENT_CANCELLED
    else:
        raise ValidationError(f'Unknown review decision: {decision}.')

    logger.info('Appointment %s reviewed by %s: %s', appointment.id, staff.id, decision)
    email, name = appointment.recipient()
    notify_safely(
        notifier,
        event,
        email,
        {'appointment_id': appointment.id, 'name': name, 'meeting_url': appointment.meeting_url, 'reason': reason},
    )
    return appointment


def check_in(db: Session, appointment_id: int, staff: User, now: datetime | None = None) -> Appointment:
    """Approved or No-Show to CheckedIn. Open change requests are rejected and a
    late arrival re-books the freed timeslot."""
    now = now or utcnow()
    appointment = get(db, appointment_id)

    with unit_of_work(db):
        previous = advance(
            db,
            appointment,
            (AppointmentStatus.APPROVED, AppointmentStatus.NO_SHOW),
            AppointmentStatus.CHECKED_IN,
            entity='Appointment',
            checked_in_at=now,
            checked_in_by_user_id=staff.id,
        )
        change_requests.close_open_requests(db, appointment.id, 'Appointment checked in', now)
        timeslot = appointment.timeslot
        if previous == AppointmentStatus.NO_SHOW and timeslot.status != TimeslotStatus.BOOKED:
            ledger.check_doctor(db, timeslot.doctor_id, timeslot.start_time, timeslot.end_time, (timeslot.id,))
            ledger.mark_booked(timeslot, appointment.id)

    logger.info('Appointment %s checked in by %s', appointment.id, staff.id)
    return appointment


def start(db: Session, appointment_id: int, now: datetime | None = None) -> Appointment:
    now = now or utcnow()
    appointment = get(db, appointment_id)
    with unit_of_work(db):
        advance(
            db,
            appointment,
            (AppointmentStatus.CHECKED_IN,),
            AppointmentStatus.IN_PROGRESS,
            entity='Appointment',
            in_progress_at=now,
        )
    logger.info('Appointment %s in progress', appointment.id)
    return appointment


def complete(db: Session, appointment_id: int, now: datetime | None = None) -> Appointment:
    """InProgress to Completed; the timeslot stays Booked as the visit record."""
    now = now or utcnow()
    appointment = get(db, appointment_id)
    with unit_of_work(db):
        advance(
            db,
            appointment,
            (AppointmentStatus.IN_PROGRESS,),
            AppointmentStatus.COMPLETED,
            entity='Appointment',
            completed_at=now,
        )
    logger.info('Appointment %s completed', appointment.id)
    return appointment


def _paid_payment(db: Session, appointment_id: int) -> Payment | None:
    return db.query(Payment).filter(
        Payment.appointment_id == appointment_id,
        Payment.status == PaymentStatus.COMPLETED,
    ).first()


def cancel(
    db: Session,
    appointment_id: int,
    actor: User,
    reason: str | None = None,
    bank_info: BankInfo | None = None,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> CancellationRecord:
    now = now or utcnow()
    appointment = get(db, appointment_id)
    if not actor.is_staff and actor.id not in (appointment.booked_by_user_id, appointment.patient_user_id):
        raise PermissionDeniedError('You cannot cancel this appointment.')

    refund_eligible = bool(appointment.service.is_prepaid) and _paid_payment(db, appointment.id) is not None
    cancel_reason = (reason or '').strip() or None

    values = {'cancel_reason': cancel_reason, 'cancelled_at': now}
    if refund_eligible and bank_info is not None:
        values.update(
            refund_account_holder=bank_info.account_holder,
            refund_account_number=bank_info.account_number,
            refund_bank_name=bank_info.bank_name,
        )

    with unit_of_work(db):
        previous = advance(db, appointment, CANCELLABLE, AppointmentStatus.CANCELLED, entity='Appointment', **values)
        _release_and_close(db, appointment, cancel_reason or 'Appointment cancelled', now)

    logger.info('Appointment %s cancelled by %s (was %s)', appointment.id, actor.id, previous)
    email, name = appointment.recipient()
    notify_safely(
        notifier,
        NotificationEvent.APPOINTMENT_CANCELLED,
        email,
        {'appointment_id': appointment.id, 'name': name, 'reason': cancel_reason, 'refund_eligible': refund_eligible},
    )
    return CancellationRecord(
        appointment_id=appointment.id,
        old_status=previous,
        status=AppointmentStatus.CANCELLED,
        cancel_reason=cancel_reason,
        cancelled_at=now,
        refund_eligible=refund_eligible,
        bank_info=bank_info if refund_eligible else None,
    )


def transition_status(
    db: Session,
    appointment_id: int,
    target: str,
    staff: User,
    reason: str | None = None,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> dict[str, str]:
    """Staff-driven move to CheckedIn, InProgress, Completed or Cancelled."""
    appointment = get(db, appointment_id)
    old_status = appointment.status

    if target == AppointmentStatus.CHECKED_IN:
        check_in(db, appointment_id, staff, now=now)
    elif target == AppointmentStatus.IN_PROGRESS:
        start(db, appointment_id, now=now)
    elif target == AppointmentStatus.COMPLETED:
        complete(db, appointment_id, now=now)
    elif target == AppointmentStatus.CANCELLED:
        cancel(db, appointment_id, staff, reason=reason, notifier=notifier, now=now)
    else:
        raise ValidationError(f'Unsupported target status: {target}.')

    return {'old_status': old_status, 'new_status': target}


def mark_refunded(db: Session, appointment_id: int, staff: User) -> Appointment:
    """Record that a cancelled prepaid appointment's payment was returned."""
    appointment = get(db, appointment_id)
    payment = _paid_payment(db, appointment.id)
    if payment is None:
        raise ValidationError('This appointment has no completed payment to refund.')

    with unit_of_work(db):
        advance(db, appointment, (AppointmentStatus.CANCELLED,), AppointmentStatus.REFUNDED, entity='Appointment')
        advance(db, payment, (PaymentStatus.COMPLETED,), PaymentStatus.REFUNDED, entity='Payment')

    logger.info('Appointment %s refunded by %s', appointment.id, staff.id)
    return appointment


def expire(db: Session, appointment_id: int, notifier: Notifier | None = None, now: datetime | None = None) -> Appointment:
    """Pending or Approved to Expired once the working day is over."""
    now = now or utcnow()
    appointment = get(db, appointment_id)
    reason = 'Not attended before the end of the working day'
    with unit_of_work(db):
        advance(
            db,
            appointment,
            REVIEWABLE,
            AppointmentStatus.EXPIRED,
            entity='Appointment',
            cancel_reason=reason,
            cancelled_at=now,
        )
        _release_and_close(db, appointment, reason, now)

    logger.info('Appointment %s expired', appointment.id)
    email, name = appointment.recipient()
    notify_safely(
        notifier,
        NotificationEvent.APPOINTMENT_EXPIRED,
        email,
        {'appointment_id': appointment.id, 'name': name, 'reason': 'shift_ended'},
    )
    return appointment


def mark_no_show(db: Session, appointment_id: int) -> Appointment:
    appointment = get(db, appointment_id)
    with unit_of_work(db):
        advance(db, appointment, (AppointmentStatus.CHECKED_IN,), AppointmentStatus.NO_SHOW, entity='Appointment')
        ledger.release(appointment.timeslot)
    logger.info('Appointment %s marked as no-show', appointment.id)
    return appointment


def list_appointments(db: Session, filters: AppointmentFilters | None = None) -> list[Appointment]:
    filters = filters or AppointmentFilters()
    query = db.query(Appointment).join(Timeslot, Appointment.timeslot_id == Timeslot.id)
    if filters.status:
        query = query.filter(Appointment.status == filters.status)
    if filters.statuses:
        query = query.filter(Appointment.status.in_(filters.statuses))
    if filters.doctor_id is not None:
        query = query.filter(Appointment.doctor_id == filters.doctor_id)
    if filters.day is not None:
        day_start, day_end = day_bounds(filters.day)
        query = query.filter(Timeslot.start_time >= day_start, Timeslot.start_time < day_end)
    return query.order_by(Timeslot.start_time.asc(), Appointment.id.asc()).all()


def list_for_user(db: Session, user: User) -> list[Appointment]:
    query = db.query(Appointment).join(Timeslot, Appointment.timeslot_id == Timeslot.id)
    if user.role == UserRole.DOCTOR:
        query = query.filter(Appointment.doctor_id == user.id)
    else:
        query = query.filter(
            or_(Appointment.booked_by_user_id == user.id, Appointment.patient_user_id == user.id)
        )
    return query.order_by(Timeslot.start_time.desc(), Appointment.id.desc()).all()


def list_pending(db: Session) -> list[Appointment]:
    return list_appointments(db, AppointmentFilters(status=AppointmentStatus.PENDING))
