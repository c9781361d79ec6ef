from datetime import date
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.test import TestCase

from apps.core.academic_sessions.models import AcademicSession
from apps.core.students.models import Student
from apps.core.transport.models import TransportEnrollment, TransportRoute
from apps.core.transport.services import (
    MAX_TRANSPORT_MONTHS,
    discontinue_transport,
    enroll_student,
    session_months,
    transport_charge_for_session,
    transport_fee_for_class,
)


class TransportFeeTests(TestCase):
    def setUp(self):
        self.session = AcademicSession.objects.create(
            name='2024-25',
            start_date=date(2024, 4, 1),
            end_date=date(2025, 3, 31),
        )
        self.route = TransportRoute.objects.create(
            name='Route 1',
            fee_nc_to_5=Decimal('500'),
            fee_6_to_8=Decimal('650'),
            fee_9_to_12=Decimal('800'),
        )
        self.student = Student.objects.create(
            sr_number='1',
            account_number='301',
            name='Kiara',
            current_class='7th',
        )

    def test_fee_depends_on_class_tier(self):
        self.assertEqual(transport_fee_for_class(route=self.route, class_name='LKG'), Decimal('500'))
        self.assertEqual(transport_fee_for_class(route=self.route, class_name='8th'), Decimal('650'))
        self.assertEqual(transport_fee_for_class(route=self.route, class_name='12th'), Decimal('800'))

    def test_session_months_span_year_boundary(self):
        months = list(session_months(self.session.start_date, self.session.end_date))
        self.assertEqual(len(months), 12)
        self.assertEqual(months[0], (2024, 4))
        self.assertEqual(months[-1], (2025, 3))

    def test_no_transport_means_no_charge(self):
        self.assertEqual(transport_charge_for_session(student=self.student, session=self.session), (0, Decimal('0.00')))

    def test_full_session_without_history_bills_eleven_months(self):
        Student.objects.filter(pk=self.student.pk).update(has_transport=True, transport_route=self.route)
        self.student.refresh_from_db()

        months, total = transport_charge_for_session(student=self.student, session=self.session)

        self.assertEqual(months, MAX_TRANSPORT_MONTHS)
        self.assertEqual(total, Decimal('7150'))

    def test_enrollment_history_skips_june(self):
        enroll_student(student=self.student, route=self.route, start_date=date(2024, 4, 1))
        discontinue_transport(student=self.student, end_date=date(2024, 8, 31))
        Student.objects.filter(pk=self.student.pk).update(has_transport=True, transport_route=self.route)
        self.student.refresh_from_db()

        months, total = transport_charge_for_session(student=self.student, session=self.session)

        # April, May, July and August.
        self.assertEqual(months, 4)
        self.assertEqual(total, Decimal('2600.00'))

    def test_enroll_closes_previous_enrollment(self):
        other = TransportRoute.objects.create(name='Route 2', fee_6_to_8=Decimal('900'))
        enroll_student(student=self.student, route=self.route, start_date=date(2024, 4, 1))

        enrollment = enroll_student(student=self.student, route=other, start_date=date(2024, 10, 1))

        self.assertEqual(enrollment.monthly_fee_at_enrollment, Decimal('900'))
        self.assertEqual(
            TransportEnrollment.objects.get(student=self.student, route=self.route).end_date,
            date(2024, 10, 1),
        )
        self.student.refresh_from_db()
        self.assertEqual(self.student.transport_route, other)

    def test_inactive_route_cannot_take_enrollments(self):
        self.route.is_active = False
        self.route.save()
        with self.assertRaises(ValidationError):
            enroll_student(student=self.student, route=self.route)

    def test_discontinue_clears_route(self):
        enroll_student(student=self.student, route=self.route, start_date=date(2024, 4, 1))

        closed = discontinue_transport(student=self.student, end_date=date(2024, 12, 31))

        self.assertEqual(closed, 1)
        self.student.refresh_from_db()
        self.assertFalse(self.student.has_transport)
        self.assertIsNone(self.student.transport_route)
