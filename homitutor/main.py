import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

import homitutor.models  # noqa: F401  registers every table on Base.metadata
from homitutor.core import config
from homitutor.database import DATABASE_UNAVAILABLE_DETAIL, Base, engine, ensure_schema
from homitutor.routes import (
    admin_routes,
    admin_summary_routes,
    auth_routes,
    booking_routes,
    conversation_routes,
    course_routes,
    message_routes,
    payment_routes,
    schedule_routes,
    student_routes,
    subject_routes,
    tutor_routes,
    user_routes,
)

logging.basicConfig(level=config.LOG_LEVEL.upper())

config.validate_runtime_config()

app = FastAPI(title='HomiTutor API')

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)


@app.on_event('startup')
def initialize_database() -> None:
    try:
        Base.metadata.create_all(bind=engine)
        ensure_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')


@app.exception_handler(SQLAlchemyError)
def handle_database_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception('Database error while handling %s %s', request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={'detail': DATABASE_UNAVAILABLE_DETAIL},
    )


@app.get('/')
def root():
    return {'status': 'HomiTutor API Running'}


API_PREFIX = '/api/v1'

app.include_router(auth_routes.router, prefix=f'{API_PREFIX}/auth')
app.include_router(user_routes.router, prefix=f'{API_PREFIX}/users')
app.include_router(subject_routes.router, prefix=f'{API_PREFIX}/subjects')
app.include_router(subject_routes.levels_router, prefix=f'{API_PREFIX}/education-levels')
app.include_router(tutor_routes.router, prefix=f'{API_PREFIX}/tutors')
app.include_router(course_routes.router, prefix=f'{API_PREFIX}/courses')
app.include_router(schedule_routes.router, prefix=f'{API_PREFIX}/schedules')
app.include_router(booking_routes.router, prefix=f'{API_PREFIX}/bookings')
app.include_router(payment_routes.router, prefix=f'{API_PREFIX}/payments')
app.include_router(conversation_routes.router, prefix=f'{API_PREFIX}/conversations')
app.include_router(message_routes.router, prefix=f'{API_PREFIX}/messages')
app.include_router(student_routes.router, prefix=f'{API_PREFIX}/students')
app.include_router(admin_routes.router, prefix=f'{API_PREFIX}/admin')
app.include_router(admin_summary_routes.router, prefix=f'{API_PREFIX}/admin-summary')
