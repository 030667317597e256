import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from clinic_scheduler.core import config
from clinic_scheduler.core.errors import SchedulingError
from clinic_scheduler.database import Base, engine, ensure_booking_schema
from clinic_scheduler.models import appointment, change_request, payment, promotion  # noqa: F401
from clinic_scheduler.routes import appointment_routes, availability_routes, change_request_routes, payment_routes
from clinic_scheduler.routes.common import DATABASE_UNAVAILABLE_DETAIL
from clinic_scheduler.services.reclaimers import AppointmentReclaimer, PaymentReclaimer

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)

payment_reclaimer = PaymentReclaimer()
appointment_reclaimer = AppointmentReclaimer()


@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError) -> JSONResponse:
    if exc.status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.warning('%s on %s: %s', exc.kind, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception('Database error on %s', request.url.path)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={'detail': DATABASE_UNAVAILABLE_DETAIL},
    )


@app.on_event('startup')
def initialize_database() -> None:
    config.validate_runtime_config()
    try:
        Base.metadata.create_all(bind=engine)
        ensure_booking_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and Postgres credentials.')

    if config.RECLAIMERS_ENABLED:
        payment_reclaimer.start()
        appointment_reclaimer.start()


@app.on_event('shutdown')
def stop_background_jobs() -> None:
    payment_reclaimer.stop()
    appointment_reclaimer.stop()


@app.get('/')
def root():
    return {'status': 'Clinic Scheduler API Running'}


app.include_router(availability_routes.router, prefix='/availability')
app.include_router(appointment_routes.router, prefix='/appointments')
app.include_router(change_request_routes.router, prefix='/change-requests')
app.include_router(payment_routes.router, prefix='/payments')
