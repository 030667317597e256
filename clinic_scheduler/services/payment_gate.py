"""Prepayment holds: issue, confirm, expire, and match inbound bank transfers."""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from clinic_scheduler.core import config
from clinic_scheduler.core.errors import NotFoundError
from clinic_scheduler.core.timeutils import utcnow
from clinic_scheduler.models.appointment import Appointment, AppointmentStatus
from clinic_scheduler.models.payment import Payment, PaymentStatus
from clinic_scheduler.services import ledger
from clinic_scheduler.services.notifications import NotificationEvent, Notifier, notify_safely
from clinic_scheduler.services.payment_provider import PaymentProvider, parse_transaction
from clinic_scheduler.services.transitions import advance, unit_of_work

logger = logging.getLogger(__name__)

MEMO_PREFIX = 'APPOINTMENT'
_FRAGMENT_PATTERN = re.compile(rf'{MEMO_PREFIX}\s*([0-9A-F]{{8}})')


@dataclass(frozen=True)
class NotificationOutcome:
    matched: bool
    reason: str
    payment_id: int | None = None


def memo_for(appointment: Appointment) -> str:
    return f'{MEMO_PREFIX} {appointment.memo_fragment}'


def extract_fragment(memo: str | None) -> str | None:
    """Pull the appointment fragment out of free-text transfer content."""
    if not memo:
        return None
    match = _FRAGMENT_PATTERN.search(memo.upper())
    return match.group(1) if match else None


def open_hold(
    db: Session,
    appointment: Appointment,
    amount: int,
    payer_label: str | None = None,
    provider: PaymentProvider | None = None,
    now: datetime | None = None,
) -> Payment:
    """Issue a payable reference and record a Pending payment.

    Runs inside the caller's transaction and does not commit.
    """
    now = now or utcnow()
    provider = provider or PaymentProvider()
    memo = memo_for(appointment)

    issued = provider.issue(amount, memo, payer_label)

    payment = Payment(
        appointment_id=appointment.id,
        payer_user_id=appointment.booked_by_user_id,
        amount=amount,
        status=PaymentStatus.PENDING,
        memo=memo,
        payable_reference=issued.payable_reference,
        hold_expires_at=appointment.payment_hold_expires_at or now + timedelta(minutes=config.PAYMENT_HOLD_MINUTES),
        created_at=now,
    )
    db.add(payment)
    db.flush()
    logger.info('Opened payment hold %s for appointment %s (%s)', payment.id, appointment.id, amount)
    return payment


def get_payment(db: Session, payment_id: int) -> Payment:
    payment = db.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError('Payment not found.')
    return payment


def confirm(
    db: Session,
    payment_id: int,
    external_transaction_id: str | None = None,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> Payment:
    """Mark a payment as paid and release the appointment into Pending.

    Confirming an already completed payment returns it unchanged.
    """
    now = now or utcnow()
    payment = get_payment(db, payment_id)
    if payment.status == PaymentStatus.COMPLETED:
        return payment

    with unit_of_work(db):
        advance(
            db,
            payment,
            (PaymentStatus.PENDING,),
            PaymentStatus.COMPLETED,
            entity='Payment',
            confirmed_at=now,
            external_transaction_id=external_transaction_id,
        )
        appointment = payment.appointment
        advance(
            db,
            appointment,
            (AppointmentStatus.PENDING_PAYMENT,),
            AppointmentStatus.PENDING,
            entity='Appointment',
            payment_hold_expires_at=None,
        )
        ledger.mark_booked(appointment.timeslot, appointment.id)

    logger.info('Payment %s confirmed; appointment %s is Pending', payment.id, appointment.id)
    email, name = appointment.recipient()
    notify_safely(
        notifier,
        NotificationEvent.PAYMENT_CONFIRMED,
        email,
        {'appointment_id': appointment.id, 'name': name, 'amount': payment.amount},
    )
    return payment


def cancel_expired(
    db: Session,
    payment_id: int,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> Payment:
    """Cancel an unpaid hold, expire its appointment and free the timeslot."""
    now = now or utcnow()
    payment = get_payment(db, payment_id)

    with unit_of_work(db):
        advance(db, payment, (PaymentStatus.PENDING,), PaymentStatus.CANCELLED, entity='Payment')
        appointment = payment.appointment
        advance(
            db,
            appointment,
            (AppointmentStatus.PENDING_PAYMENT,),
            AppointmentStatus.EXPIRED,
            entity='Appointment',
            cancel_reason='Payment hold expired',
            cancelled_at=now,
        )
        ledger.release(appointment.timeslot)

    logger.info('Payment %s expired; appointment %s released', payment.id, appointment.id)
    email, name = appointment.recipient()
    notify_safely(
        notifier,
        NotificationEvent.APPOINTMENT_EXPIRED,
        email,
        {'appointment_id': appointment.id, 'name': name, 'reason': 'payment_timeout'},
    )
    return payment


def find_pending_payment(db: Session, fragment: str) -> Payment | None:
    return (
        db.query(Payment)
        .join(Appointment, Payment.appointment_id == Appointment.id)
        .filter(
            Appointment.reference.like(f'%{fragment.lower()}'),
            Appointment.status == AppointmentStatus.PENDING_PAYMENT,
            Payment.status == PaymentStatus.PENDING,
        )
        .order_by(Payment.id.desc())
        .first()
    )


def handle_notification(
    db: Session,
    payload: dict[str, Any],
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> NotificationOutcome:
    """Match a bank transfer notice to a pending hold and confirm it."""
    transaction = parse_transaction(payload)
    fragment = extract_fragment(transaction.memo)
    if fragment is None:
        logger.warning('Ignoring transfer %s: no appointment reference in memo %r', transaction.transaction_id, transaction.memo)
        return NotificationOutcome(matched=False, reason='no_reference')

    payment = find_pending_payment(db, fragment)
    if payment is None:
        logger.warning('Ignoring transfer %s: no pending payment for %s', transaction.transaction_id, fragment)
        return NotificationOutcome(matched=False, reason='no_pending_payment')

    if transaction.amount < payment.amount:
        logger.warning(
            'Ignoring transfer %s for payment %s: paid %s, expected %s',
            transaction.transaction_id,
            payment.id,
            transaction.amount,
            payment.amount,
        )
        return NotificationOutcome(matched=False, reason='insufficient_amount', payment_id=payment.id)

    confirm(db, payment.id, transaction.transaction_id, notifier=notifier, now=now)
    return NotificationOutcome(matched=True, reason='confirmed', payment_id=payment.id)


def poll_provider(
    db: Session,
    provider: PaymentProvider | None = None,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> int:
    """Pull recent transfers from the provider and confirm the ones that match."""
    provider = provider or PaymentProvider()
    confirmed = 0
    for transaction in provider.list_recent_transactions():
        fragment = extract_fragment(transaction.memo)
        if fragment is None or find_pending_payment(db, fragment) is None:
            continue
        outcome = handle_notification(
            db,
            {'id': transaction.transaction_id, 'amount': transaction.amount, 'content': transaction.memo},
            notifier=notifier,
            now=now,
        )
        if outcome.matched:
            confirmed += 1
    return confirmed
