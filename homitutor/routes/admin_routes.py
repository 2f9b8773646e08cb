import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from homitutor.auth.dependencies import require_admin
from homitutor.database import get_db
from homitutor.models.booking import BookingRequest, BookingSession
from homitutor.models.catalog import Subject
from homitutor.models.payment import Payment
from homitutor.models.tutor import TEACHING_REQUEST_STATUSES, TeachingRequest, TutorEducationLevel, TutorProfile, TutorSubject
from homitutor.models.user import USER_ROLES, User
from homitutor.routes.common import UserResponse, database_unavailable, total_pages
from homitutor.routes.tutor_routes import TeachingRequestResponse, TutorProfileResponse
from homitutor.routes.user_routes import normalize_optional_text

logger = logging.getLogger(__name__)

router = APIRouter(tags=['admin'], dependencies=[Depends(require_admin)])

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100
VERIFICATION_FILTERS = ('pending', 'approved', 'rejected', 'all')


class ReasonRequest(BaseModel):
    reason: str | None = None


class TeachingRequestRejection(BaseModel):
    rejection_reason: str | None = None


class UserPageResponse(BaseModel):
    users: list[UserResponse]
    total: int
    page: int
    total_pages: int


class TutorPageResponse(BaseModel):
    tutors: list[TutorProfileResponse]
    total: int
    page: int
    total_pages: int


class AdminTutorDetailResponse(TutorProfileResponse):
    teaching_requests: list[TeachingRequestResponse] = []


class AdminTeachingRequestResponse(TeachingRequestResponse):
    tutor_name: str | None = None
    tutor_email: str | None = None


class AdminStatsResponse(BaseModel):
    users_by_role: dict[str, int]
    tutors_by_status: dict[str, int]
    bookings_by_status: dict[str, int]
    sessions_by_status: dict[str, int]
    payments_count: int
    completed_payment_amount: float


def require_reason(value: str | None) -> str:
    reason = normalize_optional_text(value)
    if not reason:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='A reason is required.')
    return reason


def verification_status(tutor: TutorProfile) -> str:
    if tutor.is_verified:
        return 'approved'
    if tutor.rejection_reason:
        return 'rejected'
    return 'pending'


def get_user_or_404(user_id: int, db: Session) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='User not found.')
    return user


def get_tutor_or_404(tutor_id: int, db: Session) -> TutorProfile:
    tutor = db.get(TutorProfile, tutor_id)
    if tutor is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Tutor not found.')
    return tutor


def get_pending_teaching_request(request_id: int, db: Session) -> TeachingRequest:
    teaching_request = db.get(TeachingRequest, request_id)
    if teaching_request is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Teaching request not found.')
    if teaching_request.status != 'pending':
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f'This request has already been {teaching_request.status}.',
        )
    return teaching_request


def count_by(db: Session, column) -> dict[str, int]:
    return {key: count for key, count in db.query(column, func.count()).group_by(column).all()}


# Users


@router.get('/users', response_model=UserPageResponse)
def list_users(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    role: str | None = Query(default=None),
    search: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    query = db.query(User)
    if role and role != 'all':
        if role not in USER_ROLES:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid role filter.')
        query = query.filter(User.role == role)
    if search and search.strip():
        pattern = f'%{search.strip().lower()}%'
        query = query.filter(or_(
            func.lower(User.first_name).like(pattern),
            func.lower(User.last_name).like(pattern),
            func.lower(User.email).like(pattern),
        ))

    total = query.count()
    users = query.order_by(User.created_at.desc(), User.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return UserPageResponse(
        users=[UserResponse.model_validate(user) for user in users],
        total=total,
        page=page,
        total_pages=total_pages(total, limit),
    )


@router.get('/users/{user_id}', response_model=UserResponse)
def get_user(user_id: int, db: Session = Depends(get_db)):
    return get_user_or_404(user_id, db)


@router.patch('/users/{user_id}/deactivate', response_model=UserResponse)
def deactivate_user(
    user_id: int,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    if user_id == current_user.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='You cannot deactivate your own account.')

    user = get_user_or_404(user_id, db)
    try:
        user.is_active = False
        db.commit()
        db.refresh(user)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Admin %s deactivated user %s', current_user.id, user.id)
    return user


@router.patch('/users/{user_id}/activate', response_model=UserResponse)
def activate_user(
    user_id: int,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    user = get_user_or_404(user_id, db)
    try:
        user.is_active = True
        db.commit()
        db.refresh(user)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Admin %s activated user %s', current_user.id, user.id)
    return user


# Tutor verification


@router.get('/tutors/verification', response_model=TutorPageResponse)
def list_tutors_for_verification(
    verification: str = Query(default='pending', alias='status'),
    search: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    db: Session = Depends(get_db),
):
    if verification not in VERIFICATION_FILTERS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid status filter.')

    query = db.query(TutorProfile).join(User, User.id == TutorProfile.user_id)
    if verification == 'approved':
        query = query.filter(TutorProfile.is_verified.is_(True))
    elif verification == 'rejected':
        query = query.filter(TutorProfile.is_verified.is_(False), TutorProfile.rejection_reason.isnot(None))
    elif verification == 'pending':
        query = query.filter(TutorProfile.is_verified.is_(False), TutorProfile.rejection_reason.is_(None))

    if search and search.strip():
        pattern = f'%{search.strip().lower()}%'
        query = query.filter(or_(
            func.lower(User.first_name).like(pattern),
            func.lower(User.last_name).like(pattern),
            func.lower(User.email).like(pattern),
        ))

    total = query.count()
    tutors = query.order_by(TutorProfile.created_at.desc(), TutorProfile.id.desc()).offset(
        (page - 1) * limit
    ).limit(limit).all()
    return TutorPageResponse(
        tutors=[TutorProfileResponse.model_validate(tutor) for tutor in tutors],
        total=total,
        page=page,
        total_pages=total_pages(total, limit),
    )


@router.get('/tutors/{tutor_id}', response_model=AdminTutorDetailResponse)
def get_tutor_detail(tutor_id: int, db: Session = Depends(get_db)):
    tutor = get_tutor_or_404(tutor_id, db)
    detail = AdminTutorDetailResponse.model_validate(tutor)
    detail.teaching_requests = [
        TeachingRequestResponse.model_validate(teaching_request)
        for teaching_request in db.query(TeachingRequest).filter(
            TeachingRequest.tutor_id == tutor.id,
        ).order_by(TeachingRequest.created_at.desc()).all()
    ]
    return detail


@router.patch('/tutors/{tutor_id}/approve', response_model=TutorProfileResponse)
def approve_tutor(
    tutor_id: int,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    tutor = get_tutor_or_404(tutor_id, db)
    try:
        tutor.is_verified = True
        tutor.rejection_reason = None
        db.commit()
        db.refresh(tutor)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Admin %s approved tutor %s', current_user.id, tutor.id)
    return tutor


@router.patch('/tutors/{tutor_id}/reject', response_model=TutorProfileResponse)
def reject_tutor(
    tutor_id: int,
    data: ReasonRequest,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    reason = require_reason(data.reason)
    tutor = get_tutor_or_404(tutor_id, db)
    try:
        tutor.is_verified = False
        tutor.rejection_reason = reason
        db.commit()
        db.refresh(tutor)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Admin %s rejected tutor %s', current_user.id, tutor.id)
    return tutor


# Teaching requests


@router.get('/teaching-requests', response_model=list[AdminTeachingRequestResponse])
def list_teaching_requests(
    request_status: str = Query(default='pending', alias='status'),
    db: Session = Depends(get_db),
):
    query = db.query(TeachingRequest)
    if request_status != 'all':
        if request_status not in TEACHING_REQUEST_STATUSES:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid status filter.')
        query = query.filter(TeachingRequest.status == request_status)

    results = []
    for teaching_request in query.order_by(TeachingRequest.created_at.desc(), TeachingRequest.id.desc()).all():
        item = AdminTeachingRequestResponse.model_validate(teaching_request)
        item.tutor_name = teaching_request.tutor.user.full_name
        item.tutor_email = teaching_request.tutor.user.email
        results.append(item)
    return results


@router.patch('/teaching-requests/{request_id}/approve', response_model=TeachingRequestResponse)
def approve_teaching_request(
    request_id: int,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    teaching_request = get_pending_teaching_request(request_id, db)
    tutor = teaching_request.tutor

    try:
        has_subject = db.query(TutorSubject).filter(
            TutorSubject.tutor_id == tutor.id,
            TutorSubject.subject_id == teaching_request.subject_id,
        ).first()
        if has_subject is None:
            db.add(TutorSubject(tutor_id=tutor.id, subject_id=teaching_request.subject_id))
            db.query(Subject).filter(Subject.id == teaching_request.subject_id).update(
                {Subject.tutor_count: Subject.tutor_count + 1},
                synchronize_session=False,
            )

        has_level = db.query(TutorEducationLevel).filter(
            TutorEducationLevel.tutor_id == tutor.id,
            TutorEducationLevel.level_id == teaching_request.level_id,
        ).first()
        if has_level is None:
            db.add(TutorEducationLevel(tutor_id=tutor.id, level_id=teaching_request.level_id))

        tutor.is_verified = True
        tutor.rejection_reason = None
        teaching_request.status = 'approved'
        teaching_request.approved_by = current_user.id
        teaching_request.updated_at = datetime.now()
        db.commit()
        db.refresh(teaching_request)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Admin %s approved teaching request %s for tutor %s', current_user.id, teaching_request.id, tutor.id)
    return teaching_request


@router.patch('/teaching-requests/{request_id}/reject', response_model=TeachingRequestResponse)
def reject_teaching_request(
    request_id: int,
    data: TeachingRequestRejection,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    reason = require_reason(data.rejection_reason)
    teaching_request = get_pending_teaching_request(request_id, db)

    try:
        teaching_request.status = 'rejected'
        teaching_request.rejection_reason = reason
        teaching_request.approved_by = current_user.id
        db.commit()
        db.refresh(teaching_request)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Admin %s rejected teaching request %s', current_user.id, teaching_request.id)
    return teaching_request


@router.get('/stats', response_model=AdminStatsResponse)
def get_admin_stats(db: Session = Depends(get_db)):
    tutors_by_status = {'approved': 0, 'pending': 0, 'rejected': 0}
    for tutor in db.query(TutorProfile).all():
        tutors_by_status[verification_status(tutor)] += 1

    completed_amount = db.query(func.coalesce(func.sum(Payment.amount), 0)).filter(
        Payment.status.in_(('completed', 'tutor_paid')),
    ).scalar()

    return AdminStatsResponse(
        users_by_role=count_by(db, User.role),
        tutors_by_status=tutors_by_status,
        bookings_by_status=count_by(db, BookingRequest.status),
        sessions_by_status=count_by(db, BookingSession.status),
        payments_count=db.query(Payment).count(),
        completed_payment_amount=float(completed_amount or 0),
    )
