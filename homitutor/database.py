import logging
from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from homitutor.core import config

logger = logging.getLogger(__name__)

DATABASE_UNAVAILABLE_DETAIL = 'Database unavailable. Verify DATABASE_URL and database credentials.'

_connect_args = {'check_same_thread': False} if config.DATABASE_URL.startswith('sqlite') else {}

engine = create_engine(config.DATABASE_URL, connect_args=_connect_args)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_schema_checked = False

# Columns added after the first release. Each entry is applied only when the
# table exists and the column is missing.
COLUMN_MIGRATIONS = {
    'users': [
        ('is_active', 'ALTER TABLE users ADD COLUMN is_active BOOLEAN NOT NULL DEFAULT TRUE'),
        ('date_of_birth', 'ALTER TABLE users ADD COLUMN date_of_birth VARCHAR'),
        ('address', 'ALTER TABLE users ADD COLUMN address VARCHAR'),
    ],
    'tutor_profiles': [
        ('certifications', 'ALTER TABLE tutor_profiles ADD COLUMN certifications TEXT'),
        ('rejection_reason', 'ALTER TABLE tutor_profiles ADD COLUMN rejection_reason TEXT'),
    ],
    'reviews': [
        ('course_id', 'ALTER TABLE reviews ADD COLUMN course_id INTEGER REFERENCES courses(id)'),
    ],
    'booking_requests': [
        ('payment_method', "ALTER TABLE booking_requests ADD COLUMN payment_method VARCHAR NOT NULL DEFAULT 'direct'"),
    ],
    'booking_sessions': [
        ('schedule_id', 'ALTER TABLE booking_sessions ADD COLUMN schedule_id INTEGER REFERENCES teaching_schedules(id)'),
    ],
}

INDEX_STATEMENTS = [
    'CREATE INDEX IF NOT EXISTS idx_schedules_tutor_date ON teaching_schedules(tutor_id, date)',
    'CREATE INDEX IF NOT EXISTS idx_booking_requests_tutor_status ON booking_requests(tutor_id, status)',
    'CREATE INDEX IF NOT EXISTS idx_booking_requests_student_status ON booking_requests(student_id, status)',
    'CREATE INDEX IF NOT EXISTS idx_booking_sessions_request ON booking_sessions(request_id)',
    'CREATE INDEX IF NOT EXISTS idx_messages_conversation_created ON messages(conversation_id, created_at)',
    'CREATE INDEX IF NOT EXISTS idx_email_otps_email_created ON email_otps(email, created_at)',
]


def ensure_schema() -> None:
    global _schema_checked

    if _schema_checked:
        return

    with _schema_lock:
        if _schema_checked:
            return

        inspector = inspect(engine)
        table_names = set(inspector.get_table_names())

        with engine.begin() as connection:
            for table_name, migration_steps in COLUMN_MIGRATIONS.items():
                if table_name not in table_names:
                    continue

                existing_columns = {column['name'] for column in inspector.get_columns(table_name)}
                for column_name, statement in migration_steps:
                    if column_name not in existing_columns:
                        logger.info('Adding column %s.%s', table_name, column_name)
                        connection.execute(text(statement))

            for statement in INDEX_STATEMENTS:
                table_name = statement.split(' ON ', 1)[1].split('(', 1)[0]
                if table_name in table_names:
                    connection.execute(text(statement))

        _schema_checked = True


def get_db():
    db = SessionLocal()
    try:
        yield db
    except SQLAlchemyError:
        db.rollback()
        raise
    finally:
        db.close()
