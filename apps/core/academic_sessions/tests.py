from datetime import date

from django.db import IntegrityError, transaction
from django.test import TestCase

from apps.core.academic_sessions.models import AcademicSession
from apps.core.academic_sessions.services import get_current_session, set_current_session
from apps.core.schools.models import School


class AcademicSessionTests(TestCase):
    def setUp(self):
        self.school = School.load()
        self.first = AcademicSession.objects.create(
            name='2024-25',
            start_date=date(2024, 4, 1),
            end_date=date(2025, 3, 31),
            is_current=True,
        )
        self.second = AcademicSession.objects.create(
            name='2025-26',
            start_date=date(2025, 4, 1),
            end_date=date(2026, 3, 31),
        )

    def test_only_one_session_can_be_current(self):
        with transaction.atomic():
            with self.assertRaises(IntegrityError):
                AcademicSession.objects.filter(pk=self.second.pk).update(is_current=True)

    def test_end_date_must_follow_start_date(self):
        with transaction.atomic():
            with self.assertRaises(IntegrityError):
                AcademicSession.objects.create(
                    name='2026-27',
                    start_date=date(2026, 4, 1),
                    end_date=date(2026, 3, 31),
                )

    def test_set_current_session_moves_flag_and_school_pointer(self):
        set_current_session(session=self.second, school=self.school)

        self.first.refresh_from_db()
        self.second.refresh_from_db()
        self.assertFalse(self.first.is_current)
        self.assertTrue(self.second.is_current)
        self.assertEqual(School.load().current_session_id, self.second.id)
        self.assertEqual(get_current_session(), self.second)

    def test_get_current_session_falls_back_to_flag(self):
        self.assertIsNone(self.school.current_session_id)
        self.assertEqual(get_current_session(), self.first)
