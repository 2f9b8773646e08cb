"""Seed subjects, education levels and the admin account.

Usage:
    python -m homitutor.seed

Existing rows are matched by name (or email for the admin) and left untouched,
so the command can be re-run safely.
"""
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import homitutor.models  # noqa: F401
from homitutor.auth.passwords import hash_secret
from homitutor.core import config
from homitutor.database import Base, SessionLocal, engine, ensure_schema
from homitutor.models.catalog import EducationLevel, Subject, SubjectEducationLevel
from homitutor.models.user import User

logger = logging.getLogger(__name__)

SCHOOL_LEVELS = ('Tiểu học', 'THCS', 'THPT')

EDUCATION_LEVELS = [
    ('Tiểu học', 'Hỗ trợ nền tảng học tập vững chắc cho các em học sinh 6-11 tuổi'),
    ('THCS', 'Đồng hành cùng học sinh 11-15 tuổi vượt qua thử thách của bậc trung học cơ sở'),
    ('THPT', 'Chuẩn bị kiến thức và kỹ năng cho kỳ thi quan trọng của học sinh 15-18 tuổi'),
    ('Đại học', 'Hỗ trợ sinh viên trong các môn học chuyên ngành và nâng cao kiến thức học thuật'),
    ('Năng khiếu', 'Phát triển tài năng và đam mê trong các lĩnh vực nghệ thuật, thể thao và công nghệ'),
]

# name, icon, description, levels the subject is offered at
SUBJECTS = [
    ('Toán học', 'calculate', 'Phát triển tư duy logic và kỹ năng giải quyết vấn đề',
     SCHOOL_LEVELS + ('Đại học',)),
    ('Tiếng Anh', 'language', 'Nâng cao 4 kỹ năng nghe, nói, đọc, viết và luyện thi IELTS, TOEFL',
     SCHOOL_LEVELS + ('Đại học',)),
    ('Ngữ văn', 'book-open', 'Rèn luyện kỹ năng phân tích, cảm thụ văn học', SCHOOL_LEVELS),
    ('Vật lý', 'bolt', 'Khám phá các quy luật vận động của vật chất', ('THCS', 'THPT', 'Đại học')),
    ('Hóa học', 'science', 'Tìm hiểu cấu trúc, tính chất của vật chất và các phản ứng hóa học',
     ('THCS', 'THPT', 'Đại học')),
    ('Sinh học', 'biotech', 'Khám phá thế giới sống từ cấp độ phân tử đến hệ sinh thái', ('THCS', 'THPT')),
    ('Lịch sử', 'history', 'Tìm hiểu quá khứ để hiểu rõ hơn hiện tại', ('THCS', 'THPT')),
    ('Địa lý', 'public', 'Khám phá thế giới tự nhiên và xã hội', ('THCS', 'THPT')),
    ('Âm nhạc', 'music_note', 'Học nhạc cụ, thanh nhạc và lý thuyết âm nhạc', ('Năng khiếu',)),
    ('Mỹ thuật', 'palette', 'Khơi dậy sáng tạo nghệ thuật qua vẽ, hội họa và điêu khắc', ('Năng khiếu',)),
    ('Tin học', 'computer', 'Làm quen với máy tính và các phần mềm cơ bản', SCHOOL_LEVELS),
    ('Lập trình', 'code', 'Xây dựng website, ứng dụng di động và giải quyết vấn đề qua code',
     ('THPT', 'Đại học', 'Năng khiếu')),
    ('Kinh tế học', 'trending_up', 'Nguyên lý kinh tế vĩ mô, vi mô và phân tích dữ liệu kinh tế', ('Đại học',)),
    ('Kỹ năng mềm', 'psychology', 'Giao tiếp, làm việc nhóm và quản lý thời gian', ('THPT', 'Đại học')),
]


def seed_reference_data(db: Session) -> dict[str, int]:
    """Insert missing levels, subjects and subject/level links. Returns counts of new rows."""
    created = {'education_levels': 0, 'subjects': 0, 'subject_education_levels': 0}

    levels = {level.name: level for level in db.query(EducationLevel).all()}
    for name, description in EDUCATION_LEVELS:
        if name not in levels:
            levels[name] = EducationLevel(name=name, description=description)
            db.add(levels[name])
            created['education_levels'] += 1

    subjects = {subject.name: subject for subject in db.query(Subject).all()}
    for name, icon, description, _ in SUBJECTS:
        if name not in subjects:
            subjects[name] = Subject(name=name, icon=icon, description=description)
            db.add(subjects[name])
            created['subjects'] += 1

    db.flush()

    existing_links = {
        (link.subject_id, link.level_id)
        for link in db.query(SubjectEducationLevel).all()
    }
    for name, _, _, level_names in SUBJECTS:
        for level_name in level_names:
            key = (subjects[name].id, levels[level_name].id)
            if key not in existing_links:
                db.add(SubjectEducationLevel(subject_id=key[0], level_id=key[1]))
                existing_links.add(key)
                created['subject_education_levels'] += 1

    return created


def seed_admin(db: Session, email: str, password: str) -> bool:
    """Create the admin account unless a user with that email exists."""
    email = email.strip().lower()
    if db.query(User).filter(User.email == email).first() is not None:
        return False

    db.add(User(
        username='admin',
        email=email,
        password=hash_secret(password),
        first_name='Quản',
        last_name='Trị Viên',
        role='admin',
        is_verified=True,
        is_active=True,
    ))
    return True


def main() -> None:
    logging.basicConfig(level=config.LOG_LEVEL.upper())

    Base.metadata.create_all(bind=engine)
    ensure_schema()

    db = SessionLocal()
    try:
        created = seed_reference_data(db)
        admin_created = seed_admin(db, config.SEED_ADMIN_EMAIL, config.SEED_ADMIN_PASSWORD)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception('Seeding failed. Check DATABASE_URL and database credentials.')
        raise
    finally:
        db.close()

    logger.info('Seeded %s', created)
    if admin_created:
        logger.info('Created admin account %s', config.SEED_ADMIN_EMAIL)


if __name__ == "__main__":
    main()
