"""Background sweeps that apply time-based transitions nobody triggered by hand.

Each sweep is a re-entrant scan over the database: a record that another
request already moved on is skipped, and a failure on one record is logged
without stopping the rest of the pass.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from clinic_scheduler.core import config
from clinic_scheduler.core.errors import InvalidStateTransitionError
from clinic_scheduler.core.timeutils import local_date, utcnow
from clinic_scheduler.database import SessionLocal
from clinic_scheduler.models.appointment import Appointment, AppointmentStatus
from clinic_scheduler.models.payment import Payment, PaymentStatus
from clinic_scheduler.models.timeslot import Timeslot
from clinic_scheduler.services import lifecycle, payment_gate
from clinic_scheduler.services.notifications import Notifier, default_notifier
from clinic_scheduler.services.payment_provider import PaymentProvider
from clinic_scheduler.services.schedule_catalog import afternoon_shift_end

logger = logging.getLogger(__name__)


class _Reclaimer(ABC):
    job_id = 'reclaimer'
    job_name = 'Reclaimer'

    def __init__(
        self,
        interval_minutes: float,
        session_factory: Callable[[], Session] = SessionLocal,
        notifier: Notifier | None = None,
    ):
        self.interval_minutes = interval_minutes
        self.session_factory = session_factory
        self.notifier = notifier if notifier is not None else default_notifier()
        self.scheduler: BackgroundScheduler | None = None

    @property
    def is_running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    @abstractmethod
    def run_once(self, now: datetime | None = None) -> dict[str, Any]:
        ...

    def _tick(self) -> None:
        try:
            self.run_once()
        except Exception:
            logger.exception('%s pass failed', self.job_name)

    def start(self) -> None:
        if self.is_running:
            return
        self.scheduler = BackgroundScheduler(timezone='UTC')
        self.scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=self.job_id,
            name=self.job_name,
            coalesce=True,
            max_instances=1,
        )
        self.scheduler.start()
        logger.info('%s started (every %s minutes)', self.job_name, self.interval_minutes)

    def stop(self) -> None:
        if not self.is_running:
            return
        self.scheduler.shutdown(wait=False)
        self.scheduler = None
        logger.info('%s stopped', self.job_name)


class PaymentReclaimer(_Reclaimer):
    """Cancels unpaid holds past their expiry and polls the bank feed."""

    job_id = 'payment_reclaimer'
    job_name = 'Payment reclaimer'

    def __init__(
        self,
        interval_minutes: float = config.PAYMENT_RECLAIM_INTERVAL_MINUTES,
        session_factory: Callable[[], Session] = SessionLocal,
        notifier: Notifier | None = None,
        provider: PaymentProvider | None = None,
    ):
        super().__init__(interval_minutes, session_factory, notifier)
        self.provider = provider if provider is not None else PaymentProvider()

    def run_once(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or utcnow()
        stats = {'scanned': 0, 'expired': 0, 'skipped': 0, 'errors': 0, 'confirmed': 0}

        db = self.session_factory()
        try:
            payment_ids = [
                payment_id
                for (payment_id,) in db.query(Payment.id).filter(
                    Payment.status == PaymentStatus.PENDING,
                    Payment.hold_expires_at < now,
                ).all()
            ]
            stats['scanned'] = len(payment_ids)

            for payment_id in payment_ids:
                try:
                    payment_gate.cancel_expired(db, payment_id, notifier=self.notifier, now=now)
                    stats['expired'] += 1
                except InvalidStateTransitionError:
                    stats['skipped'] += 1
                except Exception:
                    stats['errors'] += 1
                    logger.exception('Could not expire payment %s', payment_id)

            if self.provider.api_token:
                try:
                    stats['confirmed'] = payment_gate.poll_provider(db, self.provider, notifier=self.notifier, now=now)
                except Exception:
                    stats['errors'] += 1
                    logger.exception('Payment feed poll failed')
        finally:
            db.close()

        if stats['scanned'] or stats['confirmed']:
            logger.info('Payment reclaimer pass: %s', stats)
        return stats


class AppointmentReclaimer(_Reclaimer):
    """Closes out appointments whose working day has ended."""

    job_id = 'appointment_reclaimer'
    job_name = 'Appointment reclaimer'

    def __init__(
        self,
        interval_minutes: float = config.APPOINTMENT_RECLAIM_INTERVAL_MINUTES,
        session_factory: Callable[[], Session] = SessionLocal,
        notifier: Notifier | None = None,
    ):
        super().__init__(interval_minutes, session_factory, notifier)

    def _apply(self, db: Session, appointment_id: int, status: str, now: datetime) -> str:
        if status in (AppointmentStatus.PENDING, AppointmentStatus.APPROVED):
            lifecycle.expire(db, appointment_id, notifier=self.notifier, now=now)
            return 'expired'
        if status == AppointmentStatus.CHECKED_IN:
            lifecycle.mark_no_show(db, appointment_id)
            return 'no_show'
        lifecycle.complete(db, appointment_id, now=now)
        return 'completed'

    def run_once(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or utcnow()
        stats = {'scanned': 0, 'expired': 0, 'no_show': 0, 'completed': 0, 'skipped': 0, 'errors': 0}
        cutoffs: dict[tuple[int, Any], datetime] = {}

        db = self.session_factory()
        try:
            rows = (
                db.query(Appointment.id, Appointment.status, Appointment.doctor_id, Timeslot.start_time)
                .join(Timeslot, Appointment.timeslot_id == Timeslot.id)
                .filter(Appointment.status.in_(AppointmentStatus.SWEEPABLE), Timeslot.start_time < now)
                .all()
            )
            stats['scanned'] = len(rows)

            for appointment_id, status, doctor_id, start_time in rows:
                key = (doctor_id, local_date(start_time))
                if key not in cutoffs:
                    cutoffs[key] = afternoon_shift_end(db, *key)
                if now < cutoffs[key]:
                    continue

                try:
                    stats[self._apply(db, appointment_id, status, now)] += 1
                except InvalidStateTransitionError:
                    stats['skipped'] += 1
                except Exception:
                    stats['errors'] += 1
                    logger.exception('Could not close out appointment %s', appointment_id)
        finally:
            db.close()

        if stats['scanned']:
            logger.info('Appointment reclaimer pass: %s', stats)
        return stats
