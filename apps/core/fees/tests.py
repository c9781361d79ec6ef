from datetime import date
from decimal import Decimal
from io import StringIO
from unittest import mock

from django.core.exceptions import ValidationError
from django.core.management import CommandError, call_command
from django.db import DatabaseError
from django.test import TestCase
from django.utils import timezone

from apps.core.academic_sessions.models import AcademicSession
from apps.core.schools.models import School
from apps.core.students.models import Student
from apps.core.transport.models import TransportRoute

from .exceptions import (
    AlreadyCancelled,
    DuplicateReceiptNumber,
    InvalidAmount,
    NotFound,
    StorageFailure,
)
from .ledger import (
    append_entry,
    closing_balance,
    current_balance,
    recalculate,
    students_with_dues,
    total_credits,
    total_debits,
    total_pending_dues,
    verify_balances,
)
from .models import FeeStructure, LedgerEntry, Receipt, ReceiptItem
from .services import (
    add_session_fees,
    cancel_receipt,
    carry_forward_balance,
    copy_fee_structures,
    create_receipt,
    expected_session_dues,
    fee_for_class,
    sync_opening_balance,
    suggest_next_receipt_number,
)


class FeesBaseTestCase(TestCase):
    def setUp(self):
        self.school = School.load()
        self.session = AcademicSession.objects.create(
            name='2024-25',
            start_date=date(2024, 4, 1),
            end_date=date(2025, 3, 31),
            is_current=True,
        )
        self.school.current_session = self.session
        self.school.save(update_fields=['current_session'])

        self.student = Student.objects.create(
            sr_number='101',
            account_number='101',
            name='Riya Sharma',
            current_class='5th',
            admission_fee_paid=True,
        )
        FeeStructure.objects.create(
            session=self.session,
            class_name='5th',
            fee_type=FeeStructure.FEE_MONTHLY,
            amount=Decimal('1000.00'),
        )

    def _post(self, entry_type, amount, entry_date, reference_type=LedgerEntry.REF_ADJUSTMENT, student=None, session=None):
        return append_entry(
            student=student or self.student,
            session=session or self.session,
            entry_date=entry_date,
            entry_type=entry_type,
            amount=amount,
            reference_type=reference_type,
        )

    def _receipt(self, number, total, receipt_date, discount=0, **kwargs):
        return create_receipt(
            student=kwargs.pop('student', self.student),
            session=kwargs.pop('session', self.session),
            receipt_number=number,
            total_amount=total,
            discount_amount=discount,
            receipt_date=receipt_date,
            **kwargs,
        )

    def _chronological_balances(self, student=None, session=None):
        entries = LedgerEntry.objects.for_student(student or self.student, session or self.session).chronological()
        return [entry.balance for entry in entries]

    def assertLedgerReplays(self, student=None):
        running = {}
        entries = LedgerEntry.objects.filter(student=student or self.student).order_by(
            'session_id', 'entry_date', 'sequence'
        )
        for entry in entries:
            running[entry.session_id] = running.get(entry.session_id, Decimal('0')) + entry.net_effect
            self.assertEqual(entry.balance, running[entry.session_id], f"entry {entry.id} out of step")


class LedgerEngineTests(FeesBaseTestCase):
    def test_append_on_latest_date_extends_running_balance(self):
        charge = self._post(LedgerEntry.TYPE_DEBIT, '12000', date(2024, 4, 1), LedgerEntry.REF_FEE_CHARGE)
        payment = self._post(LedgerEntry.TYPE_CREDIT, '3000', date(2024, 4, 1))

        self.assertEqual(charge.balance, Decimal('12000.00'))
        self.assertEqual(payment.balance, Decimal('9000.00'))
        self.assertEqual(payment.sequence, charge.sequence + 1)

    def test_backdated_entry_is_placed_chronologically(self):
        self._post(LedgerEntry.TYPE_DEBIT, '12000', date(2024, 4, 1), LedgerEntry.REF_FEE_CHARGE)
        self._post(LedgerEntry.TYPE_CREDIT, '3000', date(2024, 5, 2))
        backdated = self._post(LedgerEntry.TYPE_CREDIT, '2000', date(2024, 5, 1))

        self.assertEqual(
            self._chronological_balances(),
            [Decimal('12000.00'), Decimal('10000.00'), Decimal('7000.00')],
        )
        self.assertEqual(backdated.balance, Decimal('10000.00'))
        self.assertEqual(current_balance(student=self.student), Decimal('7000.00'))
        self.assertLedgerReplays()

    def test_same_date_entries_keep_insertion_order(self):
        self._post(LedgerEntry.TYPE_DEBIT, '500', date(2024, 6, 1))
        self._post(LedgerEntry.TYPE_CREDIT, '200', date(2024, 6, 1))
        self._post(LedgerEntry.TYPE_DEBIT, '100', date(2024, 5, 1))

        entries = list(LedgerEntry.objects.for_student(self.student).chronological())
        self.assertEqual([entry.net_effect for entry in entries], [Decimal('100.00'), Decimal('500.00'), Decimal('-200.00')])
        self.assertEqual([entry.balance for entry in entries], [Decimal('100.00'), Decimal('600.00'), Decimal('400.00')])

    def test_recalculate_is_idempotent(self):
        self._post(LedgerEntry.TYPE_DEBIT, '12000', date(2024, 4, 1))
        self._post(LedgerEntry.TYPE_CREDIT, '5000', date(2024, 5, 1))
        LedgerEntry.objects.filter(student=self.student).update(balance=Decimal('1.00'))

        self.assertEqual(recalculate(student=self.student), 2)
        first = self._chronological_balances()
        self.assertEqual(recalculate(student=self.student), 0)
        self.assertEqual(self._chronological_balances(), first)
        self.assertEqual(first, [Decimal('12000.00'), Decimal('7000.00')])

    def test_current_balance_reads_chronologically_last_entry(self):
        self._post(LedgerEntry.TYPE_DEBIT, '1000', date(2024, 7, 1))
        self._post(LedgerEntry.TYPE_DEBIT, '250', date(2024, 4, 1))

        latest = LedgerEntry.objects.for_student(self.student).latest_first().first()
        self.assertEqual(latest.entry_date, date(2024, 7, 1))
        self.assertEqual(current_balance(student=self.student), Decimal('1250.00'))

    def test_current_balance_without_entries_is_zero(self):
        self.assertEqual(current_balance(student=self.student), Decimal('0.00'))

    def test_totals_ignore_ordering(self):
        self._post(LedgerEntry.TYPE_DEBIT, '800', date(2024, 8, 1))
        self._post(LedgerEntry.TYPE_CREDIT, '300', date(2024, 4, 1))
        self._post(LedgerEntry.TYPE_CREDIT, '100', date(2024, 9, 1))

        self.assertEqual(total_debits(student=self.student), Decimal('800.00'))
        self.assertEqual(total_credits(student=self.student), Decimal('400.00'))
        self.assertEqual(closing_balance(student=self.student, session=self.session), Decimal('400.00'))

    def test_balances_are_kept_per_session(self):
        next_session = AcademicSession.objects.create(
            name='2025-26',
            start_date=date(2025, 4, 1),
            end_date=date(2026, 3, 31),
        )
        self._post(LedgerEntry.TYPE_DEBIT, '900', date(2024, 4, 1))
        entry = self._post(LedgerEntry.TYPE_DEBIT, '400', date(2025, 4, 1), session=next_session)

        self.assertEqual(entry.balance, Decimal('400.00'))
        self.assertEqual(current_balance(student=self.student, session=self.session), Decimal('900.00'))
        self.assertEqual(current_balance(student=self.student), Decimal('400.00'))
        self.assertLedgerReplays()

    def test_non_positive_amount_is_rejected(self):
        with self.assertRaises(InvalidAmount):
            self._post(LedgerEntry.TYPE_DEBIT, '0', date(2024, 4, 1))
        self.assertFalse(LedgerEntry.objects.exists())

    def test_unknown_entry_type_is_rejected(self):
        with self.assertRaises(ValidationError):
            self._post('transfer', '10', date(2024, 4, 1))

    def test_entries_cannot_be_deleted_individually(self):
        entry = self._post(LedgerEntry.TYPE_DEBIT, '10', date(2024, 4, 1))
        with self.assertRaises(ValidationError):
            entry.delete()
        self.assertTrue(LedgerEntry.objects.filter(pk=entry.pk).exists())

    def test_database_error_surfaces_as_storage_failure(self):
        with mock.patch('apps.core.fees.ledger._next_sequence', side_effect=DatabaseError('disk I/O error')):
            with self.assertRaises(StorageFailure) as caught:
                self._post(LedgerEntry.TYPE_DEBIT, '10', date(2024, 4, 1))
        self.assertEqual(caught.exception.details['operation'], 'append_entry')
        self.assertFalse(LedgerEntry.objects.exists())

    def test_verify_balances_reports_stale_rows(self):
        entry = self._post(LedgerEntry.TYPE_DEBIT, '300', date(2024, 4, 1))
        LedgerEntry.objects.filter(pk=entry.pk).update(balance=Decimal('5.00'))

        problems = verify_balances(student=self.student)
        self.assertEqual(problems, [{'entry_id': entry.id, 'stored': Decimal('5.00'), 'expected': Decimal('300.00')}])

    def test_pending_dues_per_session(self):
        other = Student.objects.create(sr_number='102', account_number='102', name='Aman', current_class='5th')
        self._post(LedgerEntry.TYPE_DEBIT, '700', date(2024, 4, 1))
        self._post(LedgerEntry.TYPE_CREDIT, '900', date(2024, 4, 1), student=other)

        self.assertEqual(students_with_dues(session=self.session), {self.student.id: Decimal('700.00')})
        self.assertEqual(total_pending_dues(session=self.session), Decimal('700.00'))


class ReceiptLifecycleTests(FeesBaseTestCase):
    def setUp(self):
        super().setUp()
        add_session_fees(student=self.student, session=self.session)

    def test_create_receipt_posts_credit_and_items(self):
        result = self._receipt(
            1,
            '5000',
            date(2024, 5, 10),
            items=[
                {'fee_type': ReceiptItem.FEE_TUITION, 'description': 'April-August tuition', 'amount': '5000'},
            ],
        )

        receipt = result['receipt']
        self.assertEqual(receipt.net_amount, Decimal('5000.00'))
        self.assertEqual(receipt.items.count(), 1)
        self.assertEqual(len(result['ledger_entries']), 1)
        credit = result['ledger_entries'][0]
        self.assertEqual(credit.reference_type, LedgerEntry.REF_RECEIPT)
        self.assertEqual(credit.reference_id, receipt.id)
        self.assertEqual(credit.credit_amount, Decimal('5000.00'))
        self.assertEqual(current_balance(student=self.student), Decimal('7000.00'))

        self.school.refresh_from_db()
        self.assertEqual(self.school.last_receipt_number, 1)

    def test_discount_posts_second_credit_on_same_date(self):
        result = self._receipt(7, '12000', date(2024, 5, 10), discount='1000')

        payment, discount = result['ledger_entries']
        self.assertEqual(payment.credit_amount, Decimal('11000.00'))
        self.assertEqual(discount.reference_type, LedgerEntry.REF_DISCOUNT)
        self.assertEqual(discount.credit_amount, Decimal('1000.00'))
        self.assertEqual(discount.entry_date, payment.entry_date)
        self.assertEqual(current_balance(student=self.student), Decimal('0.00'))

    def test_duplicate_receipt_number_changes_nothing(self):
        self._receipt(11, '2000', date(2024, 5, 10))
        receipts_before = Receipt.objects.count()
        entries_before = LedgerEntry.objects.count()

        with self.assertRaises(DuplicateReceiptNumber) as caught:
            self._receipt(11, '3000', date(2024, 5, 11))

        self.assertEqual(caught.exception.details['receipt_number'], 11)
        self.assertEqual(Receipt.objects.count(), receipts_before)
        self.assertEqual(LedgerEntry.objects.count(), entries_before)
        self.assertEqual(current_balance(student=self.student), Decimal('10000.00'))

    def test_net_amount_must_match_total_minus_discount(self):
        with self.assertRaises(InvalidAmount):
            self._receipt(12, '5000', date(2024, 5, 10), discount='500', net_amount='4000')
        self.assertFalse(Receipt.objects.exists())

    def test_zero_net_receipt_is_rejected(self):
        with self.assertRaises(InvalidAmount):
            self._receipt(13, '1000', date(2024, 5, 10), discount='1000')
        with self.assertRaises(InvalidAmount):
            self._receipt(14, '1000', date(2024, 5, 10), discount='-10')
        self.assertFalse(Receipt.objects.exists())

    def test_online_receipt_requires_reference(self):
        with self.assertRaises(ValidationError):
            self._receipt(15, '1000', date(2024, 5, 10), payment_mode=Receipt.MODE_ONLINE)

    def test_backdated_receipt_recalculates_later_entries(self):
        self._receipt(21, '3000', date(2024, 6, 1))
        self._receipt(22, '2000', date(2024, 5, 1))

        self.assertEqual(
            self._chronological_balances(),
            [Decimal('12000.00'), Decimal('10000.00'), Decimal('7000.00')],
        )
        self.assertLedgerReplays()

    def test_cancel_posts_reversals_without_touching_credits(self):
        receipt = self._receipt(31, '12000', date(2024, 5, 10), discount='1000')['receipt']

        result = cancel_receipt(receipt_id=receipt.id, reason='Cheque bounced')

        receipt.refresh_from_db()
        self.assertTrue(receipt.is_cancelled)
        self.assertIsNotNone(receipt.cancelled_at)
        self.assertEqual(receipt.cancellation_reason, 'Cheque bounced')

        reversals = result['reversal_entries']
        self.assertEqual([entry.debit_amount for entry in reversals], [Decimal('11000.00'), Decimal('1000.00')])
        for entry in reversals:
            self.assertEqual(entry.reference_type, LedgerEntry.REF_REVERSAL)
            self.assertEqual(entry.reference_id, receipt.id)
            self.assertEqual(entry.entry_date, timezone.localdate())

        credits = LedgerEntry.objects.filter(reference_id=receipt.id, entry_type=LedgerEntry.TYPE_CREDIT)
        self.assertEqual(credits.count(), 2)
        self.assertFalse(credits.filter(is_reversed=True).exists())
        self.assertTrue(Receipt.objects.filter(pk=receipt.pk).exists())

    def test_create_then_cancel_restores_balance(self):
        before = current_balance(student=self.student)
        receipt = self._receipt(41, '4500', date(2024, 5, 10), discount='500')['receipt']

        cancel_receipt(receipt_id=receipt.id, reason='Entered twice')

        self.assertEqual(current_balance(student=self.student), before)
        self.assertLedgerReplays()

    def test_cancel_twice_is_rejected(self):
        receipt = self._receipt(51, '1000', date(2024, 5, 10))['receipt']
        cancel_receipt(receipt_id=receipt.id, reason='Wrong student')

        with self.assertRaises(AlreadyCancelled):
            cancel_receipt(receipt_id=receipt.id, reason='Again')
        self.assertEqual(LedgerEntry.objects.filter(reference_type=LedgerEntry.REF_REVERSAL).count(), 1)

    def test_cancel_unknown_receipt(self):
        with self.assertRaises(NotFound) as caught:
            cancel_receipt(receipt_id=999, reason='Missing')
        self.assertEqual(caught.exception.as_dict()['code'], 'not_found')

    def test_full_year_scenario(self):
        self.assertEqual(current_balance(student=self.student), Decimal('12000.00'))

        self._receipt(101, '5000', date(2024, 5, 1))
        self.assertEqual(current_balance(student=self.student), Decimal('7000.00'))

        second = self._receipt(102, '12000', date(2024, 8, 1), discount='1000')['receipt']
        self.assertEqual(current_balance(student=self.student), Decimal('-5000.00'))

        reversals = cancel_receipt(receipt_id=second.id, reason='Paid by mistake')['reversal_entries']
        self.assertEqual(sum(entry.debit_amount for entry in reversals), Decimal('12000.00'))
        self.assertEqual(current_balance(student=self.student), Decimal('7000.00'))
        self.assertLedgerReplays()

    def test_suggest_next_receipt_number(self):
        self.assertEqual(suggest_next_receipt_number(), 1)
        self._receipt(40, '100', date(2024, 5, 1))
        self.assertEqual(suggest_next_receipt_number(), 41)

        School.objects.filter(pk=self.school.pk).update(last_receipt_number=75)
        self.assertEqual(suggest_next_receipt_number(), 76)

    def test_receipts_cannot_be_deleted_individually(self):
        receipt = self._receipt(61, '100', date(2024, 5, 1))['receipt']
        with self.assertRaises(ValidationError):
            receipt.delete()


class SessionFeeTests(FeesBaseTestCase):
    def setUp(self):
        super().setUp()
        for class_name, fee_type, amount in (
            ('10th', FeeStructure.FEE_ANNUAL, '15000'),
            ('10th', FeeStructure.FEE_REGISTRATION, '1200'),
            ('5th', FeeStructure.FEE_ADMISSION, '2500'),
        ):
            FeeStructure.objects.create(session=self.session, class_name=class_name, fee_type=fee_type, amount=amount)

    def test_monthly_class_charged_for_twelve_months(self):
        entries = add_session_fees(student=self.student, session=self.session)

        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].debit_amount, Decimal('12000.00'))
        self.assertEqual(entries[0].entry_date, self.session.start_date)
        self.assertEqual(entries[0].reference_type, LedgerEntry.REF_FEE_CHARGE)

    def test_session_fees_are_charged_once(self):
        add_session_fees(student=self.student, session=self.session)
        self.assertEqual(add_session_fees(student=self.student, session=self.session), [])
        self.assertEqual(LedgerEntry.objects.filter(reference_type=LedgerEntry.REF_FEE_CHARGE).count(), 1)

    def test_senior_class_pays_annual_and_registration(self):
        senior = Student.objects.create(
            sr_number='210',
            account_number='210',
            name='Kabir',
            current_class='10th',
            admission_fee_paid=True,
        )
        entries = add_session_fees(student=senior, session=self.session)
        self.assertEqual(sorted(entry.debit_amount for entry in entries), [Decimal('1200.00'), Decimal('15000.00')])

    def test_admission_fee_charged_once_for_new_admission(self):
        newcomer = Student.objects.create(sr_number='301', account_number='301', name='Meera', current_class='5th')

        entries = add_session_fees(student=newcomer, session=self.session)

        self.assertEqual(sum(entry.debit_amount for entry in entries), Decimal('14500.00'))
        newcomer.refresh_from_db()
        self.assertTrue(newcomer.admission_fee_paid)

    def test_transport_fee_added_for_transport_students(self):
        route = TransportRoute.objects.create(
            name='Route 4',
            fee_nc_to_5=Decimal('600'),
            fee_6_to_8=Decimal('700'),
            fee_9_to_12=Decimal('800'),
        )
        self.student.has_transport = True
        self.student.transport_route = route
        self.student.save()

        entries = add_session_fees(student=self.student, session=self.session)

        transport = [entry for entry in entries if entry.particulars.startswith('Transport Fee')]
        self.assertEqual(len(transport), 1)
        self.assertEqual(transport[0].debit_amount, Decimal('6600.00'))

    def test_expected_session_dues_breakdown(self):
        newcomer = Student.objects.create(sr_number='302', account_number='302', name='Ishaan', current_class='5th')

        dues = expected_session_dues(student=newcomer, session=self.session)

        self.assertEqual(dues['tuition'], Decimal('12000.00'))
        self.assertEqual(dues['admission'], Decimal('2500.00'))
        self.assertEqual(dues['transport'], Decimal('0.00'))
        self.assertEqual(dues['total'], Decimal('14500.00'))
        self.assertFalse(LedgerEntry.objects.exists())

    def test_fee_for_class_ignores_inactive_rows(self):
        FeeStructure.objects.filter(class_name='10th', fee_type=FeeStructure.FEE_ANNUAL).update(is_active=False)
        self.assertIsNone(fee_for_class(session=self.session, class_name='10th', fee_type=FeeStructure.FEE_ANNUAL))
        self.assertEqual(
            fee_for_class(session=self.session, class_name='5th', fee_type=FeeStructure.FEE_MONTHLY),
            Decimal('1000.00'),
        )

    def test_copy_fee_structures_keeps_existing_target_rows(self):
        target = AcademicSession.objects.create(
            name='2025-26',
            start_date=date(2025, 4, 1),
            end_date=date(2026, 3, 31),
        )
        FeeStructure.objects.create(
            session=target,
            class_name='5th',
            fee_type=FeeStructure.FEE_MONTHLY,
            amount=Decimal('1100'),
        )

        copied = copy_fee_structures(source_session=self.session, target_session=target)

        self.assertEqual(len(copied), 3)
        self.assertEqual(
            fee_for_class(session=target, class_name='5th', fee_type=FeeStructure.FEE_MONTHLY),
            Decimal('1100.00'),
        )


class OpeningBalanceTests(FeesBaseTestCase):
    def setUp(self):
        super().setUp()
        self.next_session = AcademicSession.objects.create(
            name='2025-26',
            start_date=date(2025, 4, 1),
            end_date=date(2026, 3, 31),
        )

    def test_dues_open_next_session_as_debit(self):
        self._post(LedgerEntry.TYPE_DEBIT, '12000', date(2024, 4, 1))
        self._post(LedgerEntry.TYPE_CREDIT, '9000', date(2024, 9, 1))

        entry = carry_forward_balance(
            student=self.student,
            source_session=self.session,
            target_session=self.next_session,
        )

        self.assertEqual(entry.reference_type, LedgerEntry.REF_OPENING_BALANCE)
        self.assertEqual(entry.debit_amount, Decimal('3000.00'))
        self.assertEqual(entry.entry_date, self.next_session.start_date)
        self.assertEqual(current_balance(student=self.student), Decimal('3000.00'))

    def test_advance_opens_next_session_as_credit(self):
        self._post(LedgerEntry.TYPE_CREDIT, '500', date(2024, 4, 1))

        entry = carry_forward_balance(
            student=self.student,
            source_session=self.session,
            target_session=self.next_session,
        )

        self.assertEqual(entry.entry_type, LedgerEntry.TYPE_CREDIT)
        self.assertEqual(current_balance(student=self.student, session=self.next_session), Decimal('-500.00'))

    def test_settled_student_carries_nothing(self):
        self._post(LedgerEntry.TYPE_DEBIT, '500', date(2024, 4, 1))
        self._post(LedgerEntry.TYPE_CREDIT, '500', date(2024, 4, 2))

        self.assertIsNone(
            carry_forward_balance(student=self.student, source_session=self.session, target_session=self.next_session)
        )

    def test_sync_opening_balance_posts_difference(self):
        self._post(LedgerEntry.TYPE_DEBIT, '4000', date(2024, 4, 1))
        carry_forward_balance(student=self.student, source_session=self.session, target_session=self.next_session)
        self._post(LedgerEntry.TYPE_CREDIT, '1500', date(2025, 3, 1))

        adjustment = sync_opening_balance(
            student=self.student,
            source_session=self.session,
            target_session=self.next_session,
        )

        self.assertEqual(adjustment.credit_amount, Decimal('1500.00'))
        self.assertEqual(current_balance(student=self.student, session=self.next_session), Decimal('2500.00'))
        self.assertIsNone(
            sync_opening_balance(student=self.student, source_session=self.session, target_session=self.next_session)
        )


class RecalculateBalancesCommandTests(FeesBaseTestCase):
    def test_command_repairs_stale_balances(self):
        self._post(LedgerEntry.TYPE_DEBIT, '300', date(2024, 4, 1))
        LedgerEntry.objects.update(balance=Decimal('0.00'))
        out = StringIO()

        call_command('recalculate_balances', stdout=out)

        self.assertIn('1 stale balances repaired', out.getvalue())
        self.assertEqual(verify_balances(student=self.student), [])

    def test_check_mode_fails_on_stale_balances(self):
        self._post(LedgerEntry.TYPE_DEBIT, '300', date(2024, 4, 1))
        LedgerEntry.objects.update(balance=Decimal('0.00'))

        with self.assertRaises(CommandError):
            call_command('recalculate_balances', '--check', stdout=StringIO())
        self.assertEqual(len(verify_balances(student=self.student)), 1)
