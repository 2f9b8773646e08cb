import os

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from homitutor.auth.passwords import verify_secret  # noqa: E402
from homitutor.models.catalog import EducationLevel, Subject, SubjectEducationLevel  # noqa: E402
from homitutor.models.user import User  # noqa: E402
from homitutor.seed import EDUCATION_LEVELS, SUBJECTS, seed_admin, seed_reference_data  # noqa: E402


def test_seed_reference_data_is_idempotent(db) -> None:
    first = seed_reference_data(db)
    db.commit()
    second = seed_reference_data(db)
    db.commit()

    assert first['subjects'] == len(SUBJECTS)
    assert first['education_levels'] == len(EDUCATION_LEVELS)
    assert first['subject_education_levels'] == sum(len(levels) for *_, levels in SUBJECTS)
    assert second == {'education_levels': 0, 'subjects': 0, 'subject_education_levels': 0}
    assert db.query(Subject).count() == len(SUBJECTS)
    assert db.query(EducationLevel).count() == len(EDUCATION_LEVELS)
    assert db.query(SubjectEducationLevel).count() == first['subject_education_levels']


def test_seed_admin_creates_verified_admin_once(db) -> None:
    assert seed_admin(db, ' Admin@HomiTutor.vn ', 'admin123') is True
    db.commit()
    assert seed_admin(db, 'admin@homitutor.vn', 'other') is False

    admin = db.query(User).filter(User.email == 'admin@homitutor.vn').one()
    assert admin.role == 'admin'
    assert admin.is_verified is True
    assert verify_secret('admin123', admin.password)
