import os
from datetime import datetime
from decimal import Decimal

import pytest
from fastapi import HTTPException

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from homitutor.models.payment import Payment  # noqa: E402
from homitutor.models.tutor import TeachingRequest, TutorSubject  # noqa: E402
from homitutor.routes.admin_routes import (  # noqa: E402
    ReasonRequest,
    TeachingRequestRejection,
    approve_teaching_request,
    deactivate_user,
    get_admin_stats,
    list_teaching_requests,
    list_tutors_for_verification,
    list_users,
    reject_teaching_request,
    reject_tutor,
)
from homitutor.routes.admin_summary_routes import (  # noqa: E402
    build_user_growth,
    get_platform_revenue,
    growth_percent,
    last_twelve_months,
)
from tests.factories import make_booking, make_catalog, make_course, make_schedule, make_tutor, make_user  # noqa: E402


@pytest.fixture
def admin(db):
    return make_user(db, 'admin@example.com', role='admin')


def _teaching_request(db, tutor, subject, level) -> TeachingRequest:
    teaching_request = TeachingRequest(
        tutor_id=tutor.id,
        subject_id=subject.id,
        level_id=level.id,
        introduction='Five years of experience.',
        status='pending',
    )
    db.add(teaching_request)
    db.commit()
    db.refresh(teaching_request)
    return teaching_request


def test_list_users_filters_by_role_and_search(db, admin) -> None:
    make_user(db, 'an.student@example.com', first_name='An')
    make_user(db, 'binh.student@example.com', first_name='Binh')
    make_tutor(db, 'an.tutor@example.com')

    result = list_users(page=1, limit=10, role='student', search='an', db=db)

    assert result.total == 1
    assert result.users[0].email == 'an.student@example.com'
    assert result.total_pages == 1


def test_list_users_rejects_unknown_role(db, admin) -> None:
    with pytest.raises(HTTPException) as exception_info:
        list_users(page=1, limit=10, role='owner', search=None, db=db)

    assert exception_info.value.status_code == 400


def test_deactivate_user_blocks_self(db, admin) -> None:
    with pytest.raises(HTTPException) as exception_info:
        deactivate_user(admin.id, current_user=admin, db=db)

    assert exception_info.value.status_code == 400


def test_deactivate_user_sets_inactive(db, admin) -> None:
    student = make_user(db, 'student@example.com')

    result = deactivate_user(student.id, current_user=admin, db=db)

    assert result.is_active is False


def test_reject_tutor_requires_reason(db, admin) -> None:
    tutor = make_tutor(db, verified=False)

    with pytest.raises(HTTPException) as exception_info:
        reject_tutor(tutor.id, ReasonRequest(reason='   '), current_user=admin, db=db)

    assert exception_info.value.status_code == 400


def test_verification_filters_follow_tutor_state(db, admin) -> None:
    approved = make_tutor(db, 'approved@example.com')
    pending = make_tutor(db, 'pending@example.com', verified=False)
    rejected = make_tutor(db, 'rejected@example.com', verified=False)
    reject_tutor(rejected.id, ReasonRequest(reason='Missing certificates'), current_user=admin, db=db)

    def ids(verification: str) -> list[int]:
        page = list_tutors_for_verification(verification=verification, search=None, page=1, limit=10, db=db)
        return [tutor.id for tutor in page.tutors]

    assert ids('approved') == [approved.id]
    assert ids('pending') == [pending.id]
    assert ids('rejected') == [rejected.id]
    assert sorted(ids('all')) == sorted([approved.id, pending.id, rejected.id])


def test_approve_teaching_request_grants_subject_and_verifies_tutor(db, admin) -> None:
    tutor = make_tutor(db, verified=False)
    subject, level = make_catalog(db)
    teaching_request = _teaching_request(db, tutor, subject, level)

    result = approve_teaching_request(teaching_request.id, current_user=admin, db=db)
    db.refresh(tutor)
    db.refresh(subject)

    assert result.status == 'approved'
    assert teaching_request.approved_by == admin.id
    assert tutor.is_verified is True
    assert [item.id for item in tutor.subjects] == [subject.id]
    assert [item.id for item in tutor.education_levels] == [level.id]
    assert subject.tutor_count == 1


def test_approving_second_level_does_not_recount_subject(db, admin) -> None:
    tutor = make_tutor(db, verified=False)
    subject, level = make_catalog(db)
    _, other_level = make_catalog(db, subject_name='Vật lý', level_name='THCS')
    approve_teaching_request(_teaching_request(db, tutor, subject, level).id, current_user=admin, db=db)
    approve_teaching_request(_teaching_request(db, tutor, subject, other_level).id, current_user=admin, db=db)
    db.refresh(subject)

    assert subject.tutor_count == 1
    assert db.query(TutorSubject).filter(TutorSubject.tutor_id == tutor.id).count() == 1


def test_decided_teaching_request_cannot_be_decided_again(db, admin) -> None:
    tutor = make_tutor(db, verified=False)
    subject, level = make_catalog(db)
    teaching_request = _teaching_request(db, tutor, subject, level)
    reject_teaching_request(
        teaching_request.id,
        TeachingRequestRejection(rejection_reason='Not enough detail'),
        current_user=admin,
        db=db,
    )

    with pytest.raises(HTTPException) as exception_info:
        approve_teaching_request(teaching_request.id, current_user=admin, db=db)

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == 'This request has already been rejected.'


def test_list_teaching_requests_includes_tutor_contact(db, admin) -> None:
    tutor = make_tutor(db, verified=False)
    subject, level = make_catalog(db)
    _teaching_request(db, tutor, subject, level)

    results = list_teaching_requests(request_status='pending', db=db)

    assert len(results) == 1
    assert results[0].tutor_email == 'tutor@example.com'
    assert results[0].tutor_name == tutor.user.full_name


def test_admin_stats_counts_by_status(db, admin) -> None:
    tutor = make_tutor(db)
    subject, level = make_catalog(db)
    course = make_course(db, tutor, subject, level)
    student = make_user(db, 'student@example.com')
    booking = make_booking(db, student, tutor, course, make_schedule(db, tutor), status='confirmed')
    db.add(Payment(
        request_id=booking.id,
        transaction_id='HT1',
        amount=Decimal('400000'),
        fee=Decimal('40000'),
        net_amount=Decimal('360000'),
        payer_id=student.id,
        payee_id=tutor.user_id,
        status='completed',
        payment_method='vnpay',
    ))
    db.commit()

    stats = get_admin_stats(db=db)

    assert stats.users_by_role == {'admin': 1, 'tutor': 1, 'student': 1}
    assert stats.tutors_by_status == {'approved': 1, 'pending': 0, 'rejected': 0}
    assert stats.bookings_by_status == {'confirmed': 1}
    assert stats.payments_count == 1
    assert stats.completed_payment_amount == 400000.0


@pytest.mark.parametrize(
    ('recent', 'previous', 'expected'),
    [
        (15, 10, 50.0),
        (5, 10, -50.0),
        (3, 0, 100.0),
        (0, 0, 0.0),
    ],
)
def test_growth_percent(recent: int, previous: int, expected: float) -> None:
    assert growth_percent(recent, previous) == expected


def test_last_twelve_months_crosses_year_boundary() -> None:
    months = last_twelve_months(datetime(2026, 3, 15))

    assert months[0] == '2025-04'
    assert months[-1] == '2026-03'
    assert len(months) == 12


def test_build_user_growth_buckets_by_role() -> None:
    rows = [
        (datetime(2026, 1, 3), 'student'),
        (datetime(2026, 1, 20), 'tutor'),
        (datetime(2026, 2, 1), 'student'),
        (datetime(2026, 2, 2), 'admin'),
        (datetime(2025, 12, 31), 'student'),
    ]

    growth = build_user_growth(rows, ['2026-01', '2026-02'])

    assert growth == [
        {'month': '2026-01', 'students': 1, 'tutors': 1, 'total': 2},
        {'month': '2026-02', 'students': 1, 'tutors': 0, 'total': 2},
    ]


def test_platform_revenue_sums_paid_payments_per_month(db, admin) -> None:
    tutor = make_tutor(db)
    subject, level = make_catalog(db)
    course = make_course(db, tutor, subject, level)
    student = make_user(db, 'student@example.com')
    booking = make_booking(db, student, tutor, course, make_schedule(db, tutor))
    for index, (payment_status, paid_at) in enumerate([
        ('completed', datetime(2026, 2, 10)),
        ('tutor_paid', datetime(2026, 2, 20)),
        ('failed', datetime(2026, 2, 21)),
    ]):
        db.add(Payment(
            request_id=booking.id,
            transaction_id=f'HT{index}',
            amount=Decimal('100000'),
            fee=Decimal('10000'),
            net_amount=Decimal('90000'),
            payer_id=student.id,
            payee_id=tutor.user_id,
            status=payment_status,
            payment_method='vnpay',
            created_at=paid_at,
            updated_at=paid_at,
        ))
    db.commit()

    revenue = get_platform_revenue(year=2026, db=db)

    assert len(revenue) == 12
    assert revenue[1].month == '2026-02'
    assert revenue[1].amount == 200000.0
    assert revenue[1].fee == 20000.0
    assert revenue[0].amount == 0.0
