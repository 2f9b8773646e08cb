from homitutor.models import booking, catalog, conversation, course, payment, review, schedule, tutor, user

__all__ = ['booking', 'catalog', 'conversation', 'course', 'payment', 'review', 'schedule', 'tutor', 'user']
