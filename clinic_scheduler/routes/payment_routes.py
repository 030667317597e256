import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_scheduler.auth.dependencies import get_current_user, require_staff
from clinic_scheduler.core.errors import PermissionDeniedError
from clinic_scheduler.core.timeutils import as_utc
from clinic_scheduler.database import get_db
from clinic_scheduler.models.payment import Payment
from clinic_scheduler.models.user import User
from clinic_scheduler.routes.common import database_unavailable, ensure_database_ready, get_notifier
from clinic_scheduler.services import payment_gate
from clinic_scheduler.services.notifications import Notifier

router = APIRouter(tags=['payments'])

logger = logging.getLogger(__name__)


class PaymentResponse(BaseModel):
    id: int
    appointment_id: int
    amount: int
    method: str
    status: str
    memo: str
    payable_reference: str
    hold_expires_at: datetime | None = None
    confirmed_at: datetime | None = None


class WebhookResponse(BaseModel):
    matched: bool
    reason: str
    payment_id: int | None = None


class ConfirmPaymentRequest(BaseModel):
    external_transaction_id: str | None = None


def payment_to_response(payment: Payment) -> PaymentResponse:
    return PaymentResponse(
        id=payment.id,
        appointment_id=payment.appointment_id,
        amount=payment.amount,
        method=payment.method,
        status=payment.status,
        memo=payment.memo,
        payable_reference=payment.payable_reference,
        hold_expires_at=as_utc(payment.hold_expires_at),
        confirmed_at=as_utc(payment.confirmed_at),
    )


@router.post('/webhook', response_model=WebhookResponse)
def receive_bank_notification(
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    ensure_database_ready()
    try:
        outcome = payment_gate.handle_notification(db, payload, notifier=notifier)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return WebhookResponse(matched=outcome.matched, reason=outcome.reason, payment_id=outcome.payment_id)


@router.get('/{payment_id}', response_model=PaymentResponse)
def get_payment(
    payment_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    try:
        payment = payment_gate.get_payment(db, payment_id)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    if not current_user.is_staff and current_user.id != payment.payer_user_id:
        raise PermissionDeniedError('You cannot view this payment.')
    return payment_to_response(payment)


@router.post('/{payment_id}/confirm', response_model=PaymentResponse)
def confirm_payment(
    payment_id: int,
    data: ConfirmPaymentRequest | None = None,
    current_user: User = Depends(require_staff),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    ensure_database_ready()
    external_id = data.external_transaction_id if data else None
    try:
        payment = payment_gate.confirm(db, payment_id, external_transaction_id=external_id, notifier=notifier)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Payment %s confirmed manually by %s', payment_id, current_user.id)
    return payment_to_response(payment)
