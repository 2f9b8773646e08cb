import os
from datetime import datetime
from decimal import Decimal

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from homitutor.models.payment import Payment  # noqa: E402
from homitutor.models.user import User  # noqa: E402
from homitutor.routes.admin_summary_routes import (  # noqa: E402
    count_with_growth,
    get_bookings_volume,
    get_courses_by_subject,
    get_overview,
    get_recent_activities,
)
from tests.factories import make_booking, make_catalog, make_course, make_schedule, make_tutor, make_user  # noqa: E402


def _payment(db, booking, transaction_id: str, payment_status: str, paid_at: datetime) -> Payment:
    payment = Payment(
        request_id=booking.id,
        transaction_id=transaction_id,
        amount=Decimal('400000'),
        fee=Decimal('40000'),
        net_amount=Decimal('360000'),
        payer_id=booking.student_id,
        payee_id=booking.tutor.user_id,
        status=payment_status,
        payment_method='vnpay',
        created_at=paid_at,
        updated_at=paid_at,
    )
    db.add(payment)
    db.commit()
    return payment


def test_count_with_growth_compares_last_two_windows(db) -> None:
    for index, created_at in enumerate([
        datetime(2026, 6, 10),
        datetime(2026, 6, 15),
        datetime(2026, 6, 20),
        datetime(2026, 5, 10),
        datetime(2026, 5, 20),
        datetime(2026, 1, 2),
    ]):
        make_user(db, f'user{index}@example.com', created_at=created_at)

    result = count_with_growth(db.query(User), User.created_at, now=datetime(2026, 6, 30))

    assert result.count == 6
    assert result.growth_percent == 50.0


def test_overview_counts_only_active_verified_tutors(db) -> None:
    tutor = make_tutor(db)
    inactive = make_tutor(db, 'inactive@example.com')
    inactive.user.is_active = False
    db.commit()
    make_tutor(db, 'pending@example.com', verified=False)
    subject, level = make_catalog(db)
    course = make_course(db, tutor, subject, level)
    make_booking(db, make_user(db, 'student@example.com'), tutor, course, make_schedule(db, tutor))

    overview = get_overview(db=db)

    assert overview.total_users.count == 4
    assert overview.active_tutors.count == 1
    assert overview.total_courses.count == 1
    assert overview.total_bookings.count == 1
    assert overview.total_bookings.growth_percent == 100.0


def test_recent_activities_merge_sources_newest_first(db) -> None:
    tutor = make_tutor(db)
    tutor.user.created_at = datetime(2026, 1, 1)
    student = make_user(db, 'student@example.com', first_name='Lan', created_at=datetime(2026, 1, 5))
    subject, level = make_catalog(db)
    course = make_course(db, tutor, subject, level)
    booking = make_booking(db, student, tutor, course, make_schedule(db, tutor))
    booking.created_at = datetime(2026, 2, 1)
    db.commit()
    _payment(db, booking, 'HT-PAID', 'completed', datetime(2026, 3, 1))
    _payment(db, booking, 'HT-OPEN', 'pending', datetime(2026, 3, 2))

    latest = get_recent_activities(limit=3, db=db)
    everything = get_recent_activities(limit=10, db=db)

    assert [activity.type for activity in latest] == ['payment', 'booking', 'registration']
    assert 'HT-PAID' in latest[0].description
    assert latest[2].description == 'Lan Student registered as a student.'
    assert len(everything) == 4
    assert everything[-1].created_at == datetime(2026, 1, 1)


def test_bookings_volume_counts_by_month_and_status(db) -> None:
    tutor = make_tutor(db)
    subject, level = make_catalog(db)
    course = make_course(db, tutor, subject, level)
    schedule = make_schedule(db, tutor)
    student = make_user(db, 'student@example.com')
    for booking_status, created_at in [
        ('pending', datetime(2026, 2, 3)),
        ('confirmed', datetime(2026, 2, 14)),
        ('cancelled', datetime(2026, 4, 1)),
        ('pending', datetime(2025, 12, 31)),
    ]:
        booking = make_booking(db, student, tutor, course, schedule, status=booking_status)
        booking.created_at = created_at
    db.commit()

    volume = get_bookings_volume(year=2026, db=db)

    assert len(volume) == 12
    assert volume[0].total == 0
    assert volume[1].month == '2026-02'
    assert volume[1].counts['pending'] == 1
    assert volume[1].counts['confirmed'] == 1
    assert volume[1].total == 2
    assert volume[3].counts['cancelled'] == 1


def test_courses_by_subject_orders_by_count(db) -> None:
    tutor = make_tutor(db)
    math, level = make_catalog(db)
    physics, other_level = make_catalog(db, subject_name='Vật lý', level_name='THCS')
    make_catalog(db, subject_name='Hóa học', level_name='Đại học')
    make_course(db, tutor, physics, other_level)
    make_course(db, tutor, math, level)
    make_course(db, tutor, math, level, title='Ôn thi học kỳ')

    rows = get_courses_by_subject(db=db)

    assert [(row.subject, row.count) for row in rows] == [('Toán học', 2), ('Vật lý', 1)]
