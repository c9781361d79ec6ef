from datetime import date
from decimal import Decimal
from unittest import mock

from django.core.exceptions import ValidationError
from django.db import DatabaseError
from django.test import TestCase

from apps.core.academic_sessions.models import AcademicSession
from apps.core.academic_sessions.services import get_current_session, set_current_session
from apps.core.fees.exceptions import (
    AlreadyPromoted,
    AlreadyReverted,
    NotFound,
    StorageFailure,
    UnsafeRevert,
)
from apps.core.fees.ledger import current_balance
from apps.core.fees.models import FeeStructure, LedgerEntry
from apps.core.fees.services import add_session_fees, create_receipt
from apps.core.schools.models import School
from apps.core.students.models import Student

from .models import GraduateDeactivation, PromotedStudent, SessionPromotion
from .revert import check_revert_safety, revert_promotion
from .services import PromotionOptions, preview_promotion, promote_session


class PromotionTestCase(TestCase):
    def setUp(self):
        self.school = School.load()
        self.source = AcademicSession.objects.create(
            name='2024-25',
            start_date=date(2024, 4, 1),
            end_date=date(2025, 3, 31),
            is_current=True,
        )
        self.target = AcademicSession.objects.create(
            name='2025-26',
            start_date=date(2025, 4, 1),
            end_date=date(2026, 3, 31),
        )
        self.school.current_session = self.source
        self.school.save(update_fields=['current_session'])

        for class_name, fee_type, amount in (
            ('5th', FeeStructure.FEE_MONTHLY, '1000'),
            ('6th', FeeStructure.FEE_MONTHLY, '1100'),
            ('12th', FeeStructure.FEE_ANNUAL, '20000'),
            ('12th', FeeStructure.FEE_REGISTRATION, '1500'),
            ('LKG', FeeStructure.FEE_ADMISSION, '2000'),
        ):
            FeeStructure.objects.create(session=self.source, class_name=class_name, fee_type=fee_type, amount=amount)

        self.junior = Student.objects.create(
            sr_number='1', account_number='501', name='Anaya', current_class='5th', admission_fee_paid=True,
        )
        self.middle = Student.objects.create(
            sr_number='2', account_number='601', name='Dev', current_class='6th', admission_fee_paid=True,
        )
        self.senior = Student.objects.create(
            sr_number='3', account_number='1201', name='Tara', current_class='12th', admission_fee_paid=True,
        )
        self.newcomer = Student.objects.create(
            sr_number='4', account_number='NC1', name='Vihaan', current_class='NC',
        )
        for student in (self.junior, self.middle, self.senior, self.newcomer):
            add_session_fees(student=student, session=self.source)

        create_receipt(
            student=self.junior,
            session=self.source,
            receipt_number=1,
            total_amount='5000',
            receipt_date=date(2024, 6, 15),
        )

    def _snapshot(self):
        return list(
            Student.objects.order_by('id').values_list(
                'id', 'current_class', 'account_number', 'is_active', 'admission_fee_paid',
            )
        )

    def _target_entries(self):
        return LedgerEntry.objects.filter(session=self.target)


class PromoteSessionTests(PromotionTestCase):
    def test_preview_counts_students_and_dues(self):
        preview = preview_promotion(source_session=self.source, target_session=self.target)

        self.assertEqual(preview.class_counts, {'NC': 1, '5th': 1, '6th': 1, '12th': 1})
        self.assertEqual(preview.total_students, 4)
        self.assertEqual(preview.graduating_students, 1)
        self.assertEqual(preview.students_with_dues, 3)
        self.assertEqual(preview.total_dues_amount, Decimal('7000.00') + Decimal('13200.00') + Decimal('21500.00'))
        self.assertEqual(preview.fee_structures, 5)
        self.assertFalse(preview.already_promoted)

    def test_promotion_runs_every_step(self):
        result = promote_session(source_session=self.source, target_session=self.target)

        self.assertEqual(result.fee_structures_copied, 5)
        self.assertEqual(result.dues_carried_forward_count, 3)
        self.assertEqual(result.dues_carried_forward_amount, Decimal('41700.00'))
        self.assertEqual(result.students_graduated, 1)
        self.assertEqual(result.students_promoted, 3)

        self.junior.refresh_from_db()
        self.middle.refresh_from_db()
        self.senior.refresh_from_db()
        self.newcomer.refresh_from_db()
        self.assertEqual(self.junior.current_class, '6th')
        self.assertEqual(self.middle.current_class, '7th')
        self.assertEqual(self.newcomer.current_class, 'LKG')
        self.assertEqual(self.senior.current_class, '12th')
        self.assertFalse(self.senior.is_active)
        self.assertEqual(self.senior.account_number, 'PASS2425-1201')

        graduate = GraduateDeactivation.objects.get(promotion=result.promotion)
        self.assertEqual(graduate.original_account_number, '1201')
        self.assertEqual(graduate.prefixed_account_number, 'PASS2425-1201')

        # Opening balance 7000 plus twelve months of 6th class tuition.
        self.assertEqual(current_balance(student=self.junior, session=self.target), Decimal('20200.00'))
        self.assertEqual(current_balance(student=self.junior, session=self.source), Decimal('7000.00'))
        self.assertEqual(current_balance(student=self.senior, session=self.target), Decimal('21500.00'))

        self.assertTrue(self.newcomer.admission_fee_paid)
        self.assertEqual(current_balance(student=self.newcomer, session=self.target), Decimal('2000.00'))

        self.assertEqual(get_current_session(), self.target)
        self.target.refresh_from_db()
        self.assertTrue(self.target.is_current)

    def test_promotion_into_same_target_twice_is_rejected(self):
        first = promote_session(source_session=self.source, target_session=self.target)
        entries_before = LedgerEntry.objects.count()

        with self.assertRaises(AlreadyPromoted) as caught:
            promote_session(source_session=self.source, target_session=self.target)

        self.assertEqual(caught.exception.details['promotion_id'], first.promotion.id)
        self.assertEqual(LedgerEntry.objects.count(), entries_before)
        self.assertEqual(SessionPromotion.objects.count(), 1)
        self.assertTrue(preview_promotion(source_session=self.source, target_session=self.target).already_promoted)

    def test_source_and_target_must_differ(self):
        with self.assertRaises(ValidationError):
            promote_session(source_session=self.source, target_session=self.source)

    def test_progress_is_reported_in_order(self):
        updates = []

        promote_session(source_session=self.source, target_session=self.target, progress=updates.append)

        percents = [update.percent for update in updates]
        self.assertEqual(percents, sorted(percents))
        self.assertEqual(updates[-1].percent, 100)
        self.assertEqual(updates[-1].message, 'Promotion completed')

    def test_disabled_steps_are_skipped(self):
        options = PromotionOptions(
            carry_forward_dues=False,
            deactivate_graduates=False,
            add_transport_fees=False,
            set_current_session=False,
        )

        result = promote_session(source_session=self.source, target_session=self.target, options=options)

        self.assertFalse(self._target_entries().filter(reference_type=LedgerEntry.REF_OPENING_BALANCE).exists())
        self.senior.refresh_from_db()
        self.assertTrue(self.senior.is_active)
        self.assertEqual(self.senior.current_class, '12th')
        self.assertEqual(get_current_session(), self.source)
        self.assertFalse(result.promotion.carried_forward_dues)
        self.assertTrue(result.promotion.added_session_fees)


class RevertPromotionTests(PromotionTestCase):
    def test_revert_restores_pre_promotion_state(self):
        before = self._snapshot()
        source_balances = {
            student.id: current_balance(student=student, session=self.source)
            for student in Student.objects.all()
        }
        promotion = promote_session(source_session=self.source, target_session=self.target).promotion

        result = revert_promotion(promotion_id=promotion.id, reason='Promoted too early')

        self.assertEqual(self._snapshot(), before)
        self.assertFalse(self._target_entries().exists())
        self.assertFalse(FeeStructure.objects.filter(session=self.target).exists())
        for student in Student.objects.all():
            self.assertEqual(current_balance(student=student, session=self.source), source_balances[student.id])
        self.assertEqual(get_current_session(), self.source)
        self.assertEqual(result.graduates_restored, 1)
        self.assertEqual(result.students_restored, 3)

        promotion.refresh_from_db()
        self.assertTrue(promotion.is_reverted)
        self.assertEqual(promotion.revert_reason, 'Promoted too early')
        self.assertIsNotNone(GraduateDeactivation.objects.get(promotion=promotion).restored_at)

    def test_revert_twice_is_rejected(self):
        promotion = promote_session(source_session=self.source, target_session=self.target).promotion
        revert_promotion(promotion_id=promotion.id)

        with self.assertRaises(AlreadyReverted):
            revert_promotion(promotion_id=promotion.id)

    def test_unknown_promotion(self):
        with self.assertRaises(NotFound):
            revert_promotion(promotion_id=404)

    def test_target_can_be_promoted_again_after_revert(self):
        promotion = promote_session(source_session=self.source, target_session=self.target).promotion
        revert_promotion(promotion_id=promotion.id)

        again = promote_session(source_session=self.source, target_session=self.target)

        self.assertEqual(again.fee_structures_copied, 5)
        self.assertEqual(again.students_graduated, 1)

    def test_receipt_in_new_session_blocks_revert(self):
        promotion = promote_session(source_session=self.source, target_session=self.target).promotion
        create_receipt(
            student=self.junior,
            session=self.target,
            receipt_number=2,
            total_amount='3000',
            receipt_date=date(2025, 4, 10),
        )

        safety = check_revert_safety(promotion=promotion)
        self.assertFalse(safety.can_revert_safely)
        self.assertEqual(safety.receipts_in_new_session, 1)
        self.assertEqual(safety.receipts_in_new_session_amount, Decimal('3000.00'))
        self.assertTrue(safety.warnings)

        with self.assertRaises(UnsafeRevert) as caught:
            revert_promotion(promotion_id=promotion.id)
        self.assertEqual(caught.exception.details['safety']['receipts_in_new_session'], 1)

        promotion.refresh_from_db()
        self.assertFalse(promotion.is_reverted)
        self.junior.refresh_from_db()
        self.assertEqual(self.junior.current_class, '6th')

    def test_forced_revert_deletes_later_data(self):
        promotion = promote_session(source_session=self.source, target_session=self.target).promotion
        create_receipt(
            student=self.junior,
            session=self.target,
            receipt_number=2,
            total_amount='3000',
            receipt_date=date(2025, 4, 10),
        )
        late = Student.objects.create(sr_number='9', account_number='901', name='Zoya', current_class='1st')
        add_session_fees(student=late, session=self.target)

        result = revert_promotion(promotion_id=promotion.id, force_delete=True)

        self.assertEqual(result.receipts_deleted, 1)
        self.assertEqual(result.students_deleted, 1)
        self.assertFalse(Student.objects.filter(pk=late.pk).exists())
        self.assertFalse(self._target_entries().exists())
        self.junior.refresh_from_db()
        self.assertEqual(self.junior.current_class, '5th')
        self.assertEqual(current_balance(student=self.junior), Decimal('7000.00'))

    def test_new_student_blocks_unforced_revert(self):
        promotion = promote_session(source_session=self.source, target_session=self.target).promotion
        Student.objects.create(sr_number='9', account_number='901', name='Zoya', current_class='1st')

        safety = check_revert_safety(promotion=promotion)

        self.assertEqual(safety.students_added_after_promotion, 1)
        self.assertFalse(safety.can_revert_safely)

    def test_reused_graduate_account_number_blocks_forced_revert(self):
        promotion = promote_session(source_session=self.source, target_session=self.target).promotion
        Student.objects.filter(pk=self.middle.pk).update(account_number='1201')

        safety = check_revert_safety(promotion=promotion)
        self.assertEqual(safety.account_number_conflicts, ['1201'])

        with self.assertRaises(UnsafeRevert) as caught:
            revert_promotion(promotion_id=promotion.id, force_delete=True)
        self.assertEqual(caught.exception.details['held_account_numbers'], ['1201'])

        self.senior.refresh_from_db()
        self.assertFalse(self.senior.is_active)

    def test_edited_graduate_account_number_is_restored_when_forced(self):
        promotion = promote_session(source_session=self.source, target_session=self.target).promotion
        Student.objects.filter(pk=self.senior.pk).update(account_number='PASS2425-1201-OLD')

        safety = check_revert_safety(promotion=promotion)
        self.assertEqual(safety.edited_account_numbers, ['PASS2425-1201'])

        revert_promotion(promotion_id=promotion.id, force_delete=True)

        self.senior.refresh_from_db()
        self.assertEqual(self.senior.account_number, '1201')
        self.assertTrue(self.senior.is_active)

    def test_revert_keeps_fee_structures_not_created_by_promotion(self):
        existing = FeeStructure.objects.create(
            session=self.target,
            class_name='6th',
            fee_type=FeeStructure.FEE_MONTHLY,
            amount=Decimal('1250'),
        )
        promotion = promote_session(source_session=self.source, target_session=self.target).promotion
        self.assertEqual(promotion.fee_structures_copied, 4)

        revert_promotion(promotion_id=promotion.id)

        self.assertEqual(list(FeeStructure.objects.filter(session=self.target)), [existing])

    def test_revert_leaves_current_session_when_promotion_did_not_set_it(self):
        other = AcademicSession.objects.create(
            name='2026-27',
            start_date=date(2026, 4, 1),
            end_date=date(2027, 3, 31),
        )
        options = PromotionOptions(set_current_session=False)
        promotion = promote_session(source_session=self.source, target_session=self.target, options=options).promotion
        set_current_session(session=other)

        revert_promotion(promotion_id=promotion.id)

        self.assertEqual(get_current_session(), other)

    def test_revert_restores_only_students_the_promotion_moved(self):
        before = self._snapshot()
        options = PromotionOptions(deactivate_graduates=False)
        promotion = promote_session(source_session=self.source, target_session=self.target, options=options).promotion
        self.assertEqual(
            sorted(PromotedStudent.objects.filter(promotion=promotion).values_list('student_id', 'from_class')),
            sorted([(self.junior.pk, '5th'), (self.middle.pk, '6th'), (self.newcomer.pk, 'NC')]),
        )

        revert_promotion(promotion_id=promotion.id)

        self.assertEqual(self._snapshot(), before)
        self.senior.refresh_from_db()
        self.assertEqual(self.senior.current_class, '12th')

    def test_revert_follows_recorded_moves_after_roster_changes(self):
        returning = Student.objects.create(
            sr_number='8', account_number='808', name='Ruhi', current_class='3rd', is_active=False,
        )
        promotion = promote_session(source_session=self.source, target_session=self.target).promotion
        Student.objects.filter(pk=self.middle.pk).update(is_active=False)
        Student.objects.filter(pk=returning.pk).update(is_active=True)

        revert_promotion(promotion_id=promotion.id)

        self.middle.refresh_from_db()
        self.assertEqual(self.middle.current_class, '6th')
        returning.refresh_from_db()
        self.assertEqual(returning.current_class, '3rd')

    def test_revert_reports_progress(self):
        promotion = promote_session(source_session=self.source, target_session=self.target).promotion
        updates = []

        revert_promotion(promotion_id=promotion.id, progress=updates.append)

        percents = [update.percent for update in updates]
        self.assertEqual(percents, sorted(percents))
        self.assertEqual(updates[-1].percent, 100)
        self.assertEqual(updates[-1].message, 'Revert completed')


class PipelineRollbackTests(PromotionTestCase):
    def test_failed_promotion_leaves_nothing_behind(self):
        before = self._snapshot()
        entries_before = LedgerEntry.objects.count()

        with mock.patch(
            'apps.core.promotions.services.set_current_session',
            side_effect=DatabaseError('database is locked'),
        ):
            with self.assertRaises(StorageFailure) as caught:
                promote_session(source_session=self.source, target_session=self.target)

        self.assertEqual(caught.exception.details['operation'], 'promote_session')
        self.assertEqual(self._snapshot(), before)
        self.assertFalse(self._target_entries().exists())
        self.assertEqual(LedgerEntry.objects.count(), entries_before)
        self.assertFalse(FeeStructure.objects.filter(session=self.target).exists())
        self.assertFalse(SessionPromotion.objects.exists())
        self.assertFalse(GraduateDeactivation.objects.exists())
        self.assertEqual(get_current_session(), self.source)

    def test_failed_revert_leaves_promotion_in_place(self):
        promotion = promote_session(source_session=self.source, target_session=self.target).promotion
        promoted = self._snapshot()
        target_entries = self._target_entries().count()

        with mock.patch(
            'apps.core.promotions.revert.reactivate_student',
            side_effect=DatabaseError('disk I/O error'),
        ):
            with self.assertRaises(StorageFailure) as caught:
                revert_promotion(promotion_id=promotion.id)

        self.assertEqual(caught.exception.details['operation'], 'revert_promotion')
        promotion.refresh_from_db()
        self.assertEqual(promotion.status, SessionPromotion.STATUS_COMPLETED)
        self.assertIsNone(promotion.reverted_at)
        self.assertEqual(self._snapshot(), promoted)
        self.assertEqual(self._target_entries().count(), target_entries)
        self.assertEqual(FeeStructure.objects.filter(session=self.target).count(), 5)
        self.assertIsNone(GraduateDeactivation.objects.get(promotion=promotion).restored_at)
        self.assertEqual(get_current_session(), self.target)
