from threading import Lock

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

from clinic_scheduler.core import config


def enable_sqlite_savepoints(sqlite_engine) -> None:
    """Let SQLAlchemy, not the pysqlite driver, issue BEGIN so SAVEPOINT and
    ROLLBACK behave as on Postgres."""

    @event.listens_for(sqlite_engine, 'connect')
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, 'begin')
    def _emit_begin(connection):
        connection.exec_driver_sql('BEGIN')


connect_args = {'check_same_thread': False} if config.DATABASE_URL.startswith('sqlite') else {}

engine = create_engine(config.DATABASE_URL, connect_args=connect_args)

if config.DATABASE_URL.startswith('sqlite'):
    enable_sqlite_savepoints(engine)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_booking_schema_checked = False


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def ensure_booking_schema(bind=None) -> None:
    """Bring an existing database up to the current booking schema.

    Adds columns introduced after the first release and the indexes the
    ledger relies on. Safe to call repeatedly.
    """
    global _booking_schema_checked

    if _booking_schema_checked:
        return

    with _schema_lock:
        if _booking_schema_checked:
            return

        bind = bind or engine
        inspector = inspect(bind)
        table_names = set(inspector.get_table_names())

        if 'appointments' not in table_names or 'timeslots' not in table_names:
            _booking_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('appointments')}
        migration_steps = [
            ('meeting_url', 'ALTER TABLE appointments ADD COLUMN meeting_url VARCHAR'),
            ('in_progress_at', 'ALTER TABLE appointments ADD COLUMN in_progress_at TIMESTAMP'),
            ('completed_at', 'ALTER TABLE appointments ADD COLUMN completed_at TIMESTAMP'),
            ('refund_account_holder', 'ALTER TABLE appointments ADD COLUMN refund_account_holder VARCHAR'),
            ('refund_account_number', 'ALTER TABLE appointments ADD COLUMN refund_account_number VARCHAR'),
            ('refund_bank_name', 'ALTER TABLE appointments ADD COLUMN refund_bank_name VARCHAR'),
        ]

        with bind.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_timeslots_doctor_range ON timeslots(doctor_id, start_time, end_time)')
            )
            connection.execute(
                text(
                    'CREATE UNIQUE INDEX IF NOT EXISTS uq_timeslots_doctor_start_held '
                    "ON timeslots(doctor_id, start_time) WHERE status IN ('Reserved', 'Booked')"
                )
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_appointments_status ON appointments(status)')
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_payments_status_hold ON payments(status, hold_expires_at)')
            )

        _booking_schema_checked = True
