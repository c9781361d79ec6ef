import logging

from django.db import transaction

from apps.core.academic_sessions.models import AcademicSession
from apps.core.schools.models import School


logger = logging.getLogger(__name__)


def set_current_session(*, session, school=None):
    school = school or School.load()

    with transaction.atomic():
        AcademicSession.objects.filter(
            is_current=True,
        ).exclude(pk=session.pk).update(is_current=False)

        if not session.is_current:
            session.is_current = True
            session.save(update_fields=['is_current'])

        if school.current_session_id != session.id:
            school.current_session = session
            school.save(update_fields=['current_session', 'updated_at'])

    logger.info('Current session set', extra={'session': session.name})
    return session


def get_current_session(school=None):
    school = school or School.load()
    if school.current_session_id:
        return school.current_session
    return AcademicSession.objects.filter(is_current=True).first()
