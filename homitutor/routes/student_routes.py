from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from homitutor.auth.dependencies import require_student
from homitutor.database import get_db
from homitutor.models.tutor import FavoriteTutor, TutorProfile
from homitutor.models.user import User
from homitutor.routes.common import TutorSummaryResponse, database_unavailable

router = APIRouter(tags=['students'])


class FavoriteTutorResponse(BaseModel):
    id: int
    tutor_id: int
    tutor: TutorSummaryResponse
    created_at: datetime

    class Config:
        from_attributes = True


class FavoriteCheckResponse(BaseModel):
    is_favorite: bool


def get_favorite(student_id: int, tutor_id: int, db: Session) -> FavoriteTutor | None:
    return db.query(FavoriteTutor).filter(
        FavoriteTutor.student_id == student_id,
        FavoriteTutor.tutor_id == tutor_id,
    ).first()


@router.get('/favorite-tutors', response_model=list[FavoriteTutorResponse])
def list_favorite_tutors(current_user: User = Depends(require_student), db: Session = Depends(get_db)):
    return db.query(FavoriteTutor).filter(FavoriteTutor.student_id == current_user.id).order_by(
        FavoriteTutor.created_at.desc(),
        FavoriteTutor.id.desc(),
    ).all()


@router.get('/favorite-tutors/check/{tutor_id}', response_model=FavoriteCheckResponse)
def check_favorite_tutor(
    tutor_id: int,
    current_user: User = Depends(require_student),
    db: Session = Depends(get_db),
):
    return FavoriteCheckResponse(is_favorite=get_favorite(current_user.id, tutor_id, db) is not None)


@router.post('/favorite-tutors/{tutor_id}', response_model=FavoriteTutorResponse, status_code=status.HTTP_201_CREATED)
def add_favorite_tutor(
    tutor_id: int,
    current_user: User = Depends(require_student),
    db: Session = Depends(get_db),
):
    if db.get(TutorProfile, tutor_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Tutor not found.')

    if get_favorite(current_user.id, tutor_id, db) is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail='Tutor is already in your favorites.')

    favorite = FavoriteTutor(student_id=current_user.id, tutor_id=tutor_id)
    db.add(favorite)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail='Tutor is already in your favorites.',
        ) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    db.refresh(favorite)
    return favorite


@router.delete('/favorite-tutors/{tutor_id}', status_code=status.HTTP_204_NO_CONTENT)
def remove_favorite_tutor(
    tutor_id: int,
    current_user: User = Depends(require_student),
    db: Session = Depends(get_db),
):
    favorite = get_favorite(current_user.id, tutor_id, db)
    if favorite is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Tutor is not in your favorites.')

    try:
        db.delete(favorite)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
