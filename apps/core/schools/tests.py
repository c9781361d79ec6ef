from django.db import IntegrityError, transaction
from django.test import TestCase

from apps.core.schools.models import School
from apps.core.schools.services import get_school, record_receipt_number


class SchoolSingletonTests(TestCase):
    def test_load_creates_single_row(self):
        first = School.load()
        second = School.load()

        self.assertEqual(first.pk, School.SINGLETON_ID)
        self.assertEqual(second.pk, first.pk)
        self.assertEqual(School.objects.count(), 1)

    def test_save_always_targets_singleton_row(self):
        School.load()
        other = School(name='Branch')
        other.save()

        self.assertEqual(School.objects.count(), 1)
        self.assertEqual(School.load().name, 'Branch')

    def test_second_row_is_rejected_by_database(self):
        School.load()
        with transaction.atomic():
            with self.assertRaises(IntegrityError):
                School.objects.bulk_create([School(id=2, name='Second')])

    def test_get_school_prefers_given_instance(self):
        school = School.load()
        school.name = 'Unsaved name'
        self.assertIs(get_school(school), school)
        self.assertEqual(get_school().name, 'School')


class ReceiptNumberTests(TestCase):
    def test_last_receipt_number_only_moves_forward(self):
        self.assertEqual(record_receipt_number(number=15), 15)
        self.assertEqual(record_receipt_number(number=9), 15)
        self.assertEqual(record_receipt_number(number=16), 16)

        self.assertEqual(School.load().last_receipt_number, 16)
