from datetime import timedelta

from django.core.exceptions import ValidationError
from django.test import TestCase, override_settings
from django.utils import timezone

from apps.core.students import classes
from apps.core.students.models import Student
from apps.core.students.services import (
    account_number_conflicts,
    class_strength,
    deactivate_graduates,
    promote_all_classes,
    reactivate_student,
    restore_classes,
    students_created_after,
)


class ClassProgressionTests(TestCase):
    def test_next_class(self):
        self.assertEqual(classes.next_class('NC'), 'LKG')
        self.assertEqual(classes.next_class('8th'), '9th')
        self.assertIsNone(classes.next_class('12th'))
        self.assertIsNone(classes.next_class('13th'))

    def test_promotion_order_is_top_down(self):
        order = classes.promotable_classes_descending()
        self.assertEqual(order[0], '11th')
        self.assertEqual(order[-1], 'NC')
        self.assertNotIn('12th', order)

    def test_fee_and_transport_groups(self):
        self.assertIn('8th', classes.MONTHLY_FEE_CLASSES)
        self.assertNotIn('9th', classes.MONTHLY_FEE_CLASSES)
        self.assertIn('9th', classes.REGISTRATION_FEE_CLASSES)
        self.assertEqual(classes.transport_tier('UKG'), classes.TRANSPORT_TIER_NC_TO_5)
        self.assertEqual(classes.transport_tier('7th'), classes.TRANSPORT_TIER_6_TO_8)
        self.assertEqual(classes.transport_tier('11th'), classes.TRANSPORT_TIER_9_TO_12)


class GraduatePrefixTests(TestCase):
    def test_session_code(self):
        self.assertEqual(classes.session_code('2024-25'), '2425')
        self.assertEqual(classes.session_code('2024-2025'), '2425')

    def test_prefix_is_added_once(self):
        marked = classes.add_graduate_prefix('1201', '2024-25')

        self.assertEqual(marked, 'PASS2425-1201')
        self.assertTrue(classes.has_graduate_prefix(marked))
        self.assertEqual(classes.add_graduate_prefix(marked, '2025-26'), marked)
        self.assertFalse(classes.has_graduate_prefix('PASSBOOK-1'))

    @override_settings(FEES_GRADUATE_PREFIX='OLD')
    def test_prefix_follows_setting(self):
        self.assertEqual(classes.add_graduate_prefix('7', '2023-24'), 'OLD2324-7')


class StudentModelTests(TestCase):
    def test_active_student_cannot_carry_graduate_prefix(self):
        student = Student(sr_number='1', account_number='PASS2425-77', name='Ira', current_class='3rd')
        with self.assertRaises(ValidationError):
            student.full_clean()

    def test_transport_requires_route(self):
        student = Student(sr_number='1', account_number='77', name='Ira', current_class='3rd', has_transport=True)
        with self.assertRaises(ValidationError):
            student.full_clean()


class ClassMovementTests(TestCase):
    def setUp(self):
        self.students = {
            class_name: Student.objects.create(
                sr_number=str(index),
                account_number=f"A{index}",
                name=f"Student {class_name}",
                current_class=class_name,
            )
            for index, class_name in enumerate(('NC', '5th', '6th', '11th', '12th'))
        }
        self.left = Student.objects.create(
            sr_number='99', account_number='A99', name='Left', current_class='4th', is_active=False,
        )

    def _classes(self):
        return {
            key: Student.objects.get(pk=student.pk).current_class
            for key, student in self.students.items()
        }

    def test_promote_moves_each_student_one_class(self):
        moved = promote_all_classes()

        self.assertEqual(len(moved), 4)
        self.assertIn((self.students['11th'].pk, '11th', '12th'), moved)
        self.assertEqual(
            self._classes(),
            {'NC': 'LKG', '5th': '6th', '6th': '7th', '11th': '12th', '12th': '12th'},
        )
        self.left.refresh_from_db()
        self.assertEqual(self.left.current_class, '4th')

    def test_restore_classes_undoes_promote(self):
        before = self._classes()
        moved = promote_all_classes()

        restored = restore_classes((student_id, from_class) for student_id, from_class, _ in moved)

        self.assertEqual(restored, 4)
        self.assertEqual(self._classes(), before)

    def test_restore_classes_leaves_other_students_alone(self):
        restore_classes([(self.students['5th'].pk, '4th')])

        classes_now = self._classes()
        self.assertEqual(classes_now['5th'], '4th')
        self.assertEqual(classes_now['12th'], '12th')
        self.left.refresh_from_db()
        self.assertEqual(self.left.current_class, '4th')

    def test_class_strength_counts_active_students(self):
        self.assertEqual(class_strength(), {'NC': 1, '5th': 1, '6th': 1, '11th': 1, '12th': 1})


class GraduateDeactivationTests(TestCase):
    def setUp(self):
        self.graduate = Student.objects.create(
            sr_number='1', account_number='1201', name='Tara', current_class='12th',
        )
        self.junior = Student.objects.create(
            sr_number='2', account_number='1101', name='Om', current_class='11th',
        )

    def test_graduates_are_deactivated_with_marked_account_number(self):
        pairs = deactivate_graduates(session_name='2024-25')

        self.assertEqual([(student.pk, original) for student, original in pairs], [(self.graduate.pk, '1201')])
        self.graduate.refresh_from_db()
        self.assertFalse(self.graduate.is_active)
        self.assertEqual(self.graduate.account_number, 'PASS2425-1201')
        self.junior.refresh_from_db()
        self.assertTrue(self.junior.is_active)

    def test_reactivate_restores_account_number(self):
        deactivate_graduates(session_name='2024-25')
        self.graduate.refresh_from_db()

        reactivate_student(student=self.graduate, account_number='1201')

        self.graduate.refresh_from_db()
        self.assertTrue(self.graduate.is_active)
        self.assertEqual(self.graduate.account_number, '1201')

    def test_account_number_conflicts(self):
        self.assertEqual(account_number_conflicts(['1201', '9999']), ['1201'])
        self.assertEqual(account_number_conflicts(['1201'], exclude_ids=[self.graduate.pk]), [])
        self.assertEqual(account_number_conflicts([]), [])

    def test_students_created_after(self):
        moment = timezone.now()
        Student.objects.filter(pk=self.junior.pk).update(created_at=moment + timedelta(seconds=5))

        self.assertEqual(list(students_created_after(moment)), [self.junior])
