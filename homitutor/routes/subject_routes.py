from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from homitutor.database import get_db
from homitutor.models.catalog import EducationLevel, Subject, SubjectEducationLevel
from homitutor.models.course import Course
from homitutor.models.tutor import TutorProfile
from homitutor.routes.common import CourseResponse, EducationLevelResponse, SubjectResponse, UserSummaryResponse

router = APIRouter(tags=['subjects'])
levels_router = APIRouter(tags=['education-levels'])


class SubjectCourseResponse(CourseResponse):
    tutor_user: UserSummaryResponse | None = None
    tutor_rating: float = 0


def get_subject_or_404(subject_id: int, db: Session) -> Subject:
    subject = db.get(Subject, subject_id)
    if subject is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Subject not found.')
    return subject


@router.get('', response_model=list[SubjectResponse])
def list_subjects(db: Session = Depends(get_db)):
    return db.query(Subject).order_by(Subject.name).all()


@router.get('/{subject_id}', response_model=SubjectResponse)
def get_subject(subject_id: int, db: Session = Depends(get_db)):
    return get_subject_or_404(subject_id, db)


@router.get('/{subject_id}/education-levels', response_model=list[EducationLevelResponse])
def list_subject_education_levels(subject_id: int, db: Session = Depends(get_db)):
    get_subject_or_404(subject_id, db)
    return db.query(EducationLevel).join(
        SubjectEducationLevel,
        SubjectEducationLevel.level_id == EducationLevel.id,
    ).filter(SubjectEducationLevel.subject_id == subject_id).order_by(EducationLevel.name).all()


@router.get('/{subject_id}/courses', response_model=list[SubjectCourseResponse])
def list_subject_courses(subject_id: int, db: Session = Depends(get_db)):
    get_subject_or_404(subject_id, db)
    courses = db.query(Course).join(TutorProfile, TutorProfile.id == Course.tutor_id).filter(
        Course.subject_id == subject_id,
        Course.status == 'active',
        TutorProfile.is_verified.is_(True),
    ).order_by(Course.created_at.desc()).all()

    results = []
    for course in courses:
        response = SubjectCourseResponse.model_validate(course)
        response.tutor_user = UserSummaryResponse.model_validate(course.tutor.user)
        response.tutor_rating = float(course.tutor.rating or 0)
        results.append(response)
    return results


@levels_router.get('', response_model=list[EducationLevelResponse])
def list_education_levels(db: Session = Depends(get_db)):
    return db.query(EducationLevel).order_by(EducationLevel.name).all()
