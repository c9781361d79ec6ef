from __future__ import annotations

import logging
from decimal import Decimal

from django.db import IntegrityError, transaction
from django.db.models import Max
from django.utils import timezone

from apps.core.academic_sessions.models import AcademicSession
from apps.core.schools.services import get_school, record_receipt_number
from apps.core.students.classes import MONTHLY_FEE_CLASSES, REGISTRATION_FEE_CLASSES
from apps.core.students.models import Student
from apps.core.transport.services import transport_charge_for_session

from .exceptions import (
    AlreadyCancelled,
    DuplicateReceiptNumber,
    InvalidAmount,
    NotFound,
    storage_guard,
)
from .ledger import ZERO, _quantize, append_entry, current_balance, has_fee_charges
from .models import FeeStructure, LedgerEntry, Receipt, ReceiptItem


logger = logging.getLogger(__name__)

ADMISSION_FEE_PARTICULARS = 'Admission Fee'

CHARGE_TUITION = 'tuition'
CHARGE_REGISTRATION = 'registration'
CHARGE_ADMISSION = 'admission'
CHARGE_TRANSPORT = 'transport'


def fee_for_class(*, session: AcademicSession, class_name: str, fee_type: str):
    amount = (
        FeeStructure.objects.filter(
            session=session,
            class_name=class_name,
            fee_type=fee_type,
            is_active=True,
        )
        .values_list('amount', flat=True)
        .first()
    )
    return amount


@transaction.atomic
def copy_fee_structures(*, source_session: AcademicSession, target_session: AcademicSession) -> list[FeeStructure]:
    """Copy active fee definitions into the target session, keeping any it already has."""
    existing = set(
        FeeStructure.objects.filter(session=target_session).values_list('class_name', 'fee_type')
    )
    copies = [
        FeeStructure(
            session=target_session,
            class_name=row.class_name,
            fee_type=row.fee_type,
            amount=row.amount,
            is_active=True,
        )
        for row in FeeStructure.objects.filter(session=source_session, is_active=True)
        if (row.class_name, row.fee_type) not in existing
    ]
    for copy in copies:
        copy.save()
    return copies


# Receipts ----------------------------------------------------------------


def suggest_next_receipt_number(*, school=None) -> int:
    school = get_school(school)
    stored = Receipt.objects.aggregate(last=Max('receipt_number')).get('last') or 0
    return max(school.last_receipt_number, stored) + 1


@storage_guard
@transaction.atomic
def create_receipt(
    *,
    student: Student,
    session: AcademicSession,
    receipt_number,
    total_amount,
    discount_amount=0,
    net_amount=None,
    receipt_date=None,
    payment_mode=Receipt.MODE_CASH,
    online_reference='',
    remarks='',
    items=(),
    school=None,
):
    receipt_date = receipt_date or timezone.localdate()
    receipt_number = int(receipt_number)

    if Receipt.objects.filter(receipt_number=receipt_number).exists():
        logger.warning('Duplicate receipt number rejected', extra={'receipt_number': receipt_number})
        raise DuplicateReceiptNumber(
            f"Receipt number {receipt_number} is already used.",
            receipt_number=receipt_number,
        )

    total = _quantize(total_amount)
    discount = _quantize(discount_amount)
    expected_net = total - discount
    net = expected_net if net_amount is None else _quantize(net_amount)

    if discount < 0:
        raise InvalidAmount('Discount cannot be negative.', discount_amount=str(discount))
    if net != expected_net:
        raise InvalidAmount(
            'Net amount must equal total minus discount.',
            total_amount=str(total),
            discount_amount=str(discount),
            net_amount=str(net),
        )
    if net <= 0:
        raise InvalidAmount(
            'Receipt amount must be greater than zero.',
            total_amount=str(total),
            discount_amount=str(discount),
            net_amount=str(net),
        )

    receipt = Receipt(
        receipt_number=receipt_number,
        student=student,
        session=session,
        receipt_date=receipt_date,
        total_amount=total,
        discount_amount=discount,
        net_amount=net,
        payment_mode=payment_mode,
        online_reference=(online_reference or '')[:120],
        remarks=(remarks or '')[:255],
    )
    receipt.full_clean(validate_unique=False)
    try:
        with transaction.atomic():
            receipt.save()
    except IntegrityError as exc:
        raise DuplicateReceiptNumber(
            f"Receipt number {receipt_number} is already used.",
            receipt_number=receipt_number,
        ) from exc

    receipt_items = ReceiptItem.objects.bulk_create([
        ReceiptItem(
            receipt=receipt,
            fee_type=item.get('fee_type', ReceiptItem.FEE_TUITION),
            description=(item.get('description') or '')[:255],
            month_year=(item.get('month_year') or '')[:20],
            amount=_quantize(item.get('amount')),
        )
        for item in items
    ])

    ledger_entries = [
        append_entry(
            student=student,
            session=session,
            entry_date=receipt_date,
            entry_type=LedgerEntry.TYPE_CREDIT,
            amount=net,
            reference_type=LedgerEntry.REF_RECEIPT,
            reference_id=receipt.id,
            particulars=f"Receipt #{receipt_number} ({receipt.get_payment_mode_display()})",
        )
    ]
    if discount > 0:
        ledger_entries.append(
            append_entry(
                student=student,
                session=session,
                entry_date=receipt_date,
                entry_type=LedgerEntry.TYPE_CREDIT,
                amount=discount,
                reference_type=LedgerEntry.REF_DISCOUNT,
                reference_id=receipt.id,
                particulars=f"Discount on receipt #{receipt_number}",
            )
        )

    record_receipt_number(number=receipt_number, school=school)

    logger.info(
        'Receipt created',
        extra={
            'receipt_number': receipt_number,
            'student_id': student.pk,
            'session_id': session.pk,
            'net_amount': str(net),
            'discount_amount': str(discount),
        },
    )
    return {
        'receipt': receipt,
        'items': receipt_items,
        'ledger_entries': ledger_entries,
    }


@storage_guard
@transaction.atomic
def cancel_receipt(*, receipt_id, reason=''):
    try:
        receipt = Receipt.objects.select_for_update().select_related('student', 'session').get(pk=receipt_id)
    except Receipt.DoesNotExist:
        raise NotFound(f"Receipt {receipt_id} does not exist.", receipt_id=receipt_id)

    if receipt.is_cancelled:
        raise AlreadyCancelled(
            f"Receipt #{receipt.receipt_number} is already cancelled.",
            receipt_number=receipt.receipt_number,
            cancelled_at=receipt.cancelled_at.isoformat() if receipt.cancelled_at else None,
        )

    receipt.is_cancelled = True
    receipt.cancelled_at = timezone.now()
    receipt.cancellation_reason = (reason or '').strip()[:255]
    receipt.save(update_fields=['is_cancelled', 'cancelled_at', 'cancellation_reason'])

    credits = list(
        LedgerEntry.objects.filter(
            reference_id=receipt.id,
            reference_type__in=[LedgerEntry.REF_RECEIPT, LedgerEntry.REF_DISCOUNT],
            entry_type=LedgerEntry.TYPE_CREDIT,
        ).order_by('sequence')
    )
    cancelled_on = timezone.localdate()
    reversal_entries = [
        append_entry(
            student=receipt.student,
            session=receipt.session,
            entry_date=cancelled_on,
            entry_type=LedgerEntry.TYPE_DEBIT,
            amount=credit.credit_amount,
            reference_type=LedgerEntry.REF_REVERSAL,
            reference_id=receipt.id,
            particulars=f"Cancelled receipt #{receipt.receipt_number} ({credit.get_reference_type_display()})",
        )
        for credit in credits
    ]

    logger.info(
        'Receipt cancelled',
        extra={
            'receipt_number': receipt.receipt_number,
            'student_id': receipt.student_id,
            'reversed_amount': str(sum((entry.debit_amount for entry in reversal_entries), ZERO)),
        },
    )
    return {
        'receipt': receipt,
        'reversal_entries': reversal_entries,
    }


# Session fees --------------------------------------------------------------


def _session_fee_charges(*, student, session, tuition=True, transport=True, admission=True):
    """(kind, particulars, amount) rows the session fees would charge a student."""
    class_name = student.current_class
    charges = []

    if admission and not student.admission_fee_paid:
        fee = fee_for_class(session=session, class_name=class_name, fee_type=FeeStructure.FEE_ADMISSION)
        if fee:
            charges.append((CHARGE_ADMISSION, f"{ADMISSION_FEE_PARTICULARS} (New Admission)", fee))

    if tuition:
        if class_name in MONTHLY_FEE_CLASSES:
            monthly = fee_for_class(session=session, class_name=class_name, fee_type=FeeStructure.FEE_MONTHLY)
            if monthly:
                charges.append((
                    CHARGE_TUITION,
                    f"Tuition Fee - Session {session.name} (12 months @ {monthly}/month)",
                    monthly * 12,
                ))
        else:
            annual = fee_for_class(session=session, class_name=class_name, fee_type=FeeStructure.FEE_ANNUAL)
            if annual:
                charges.append((CHARGE_TUITION, f"Annual Fee - Session {session.name}", annual))
            if class_name in REGISTRATION_FEE_CLASSES:
                registration = fee_for_class(
                    session=session,
                    class_name=class_name,
                    fee_type=FeeStructure.FEE_REGISTRATION,
                )
                if registration:
                    charges.append((CHARGE_REGISTRATION, f"Registration Fee - Session {session.name}", registration))

    if transport:
        months, amount = transport_charge_for_session(student=student, session=session)
        if amount > 0:
            charges.append((
                CHARGE_TRANSPORT,
                f"Transport Fee - Session {session.name} ({months} months excl. June, {student.transport_route.name})",
                amount,
            ))

    return [(kind, particulars, _quantize(amount)) for kind, particulars, amount in charges if amount > 0]


def expected_session_dues(*, student, session) -> dict:
    breakdown = {
        CHARGE_TUITION: ZERO,
        CHARGE_REGISTRATION: ZERO,
        CHARGE_ADMISSION: ZERO,
        CHARGE_TRANSPORT: ZERO,
    }
    for kind, _, amount in _session_fee_charges(student=student, session=session):
        breakdown[kind] += amount
    breakdown['total'] = sum(breakdown.values(), ZERO)
    return breakdown


@transaction.atomic
def add_session_fees(*, student, session, tuition=True, transport=True, admission=True) -> list[LedgerEntry]:
    """Charge a student's session fees once; later calls for the same session are no-ops."""
    if has_fee_charges(student=student, session=session):
        return []

    charges = _session_fee_charges(
        student=student,
        session=session,
        tuition=tuition,
        transport=transport,
        admission=admission,
    )
    entries = [
        append_entry(
            student=student,
            session=session,
            entry_date=session.start_date,
            entry_type=LedgerEntry.TYPE_DEBIT,
            amount=amount,
            reference_type=LedgerEntry.REF_FEE_CHARGE,
            particulars=particulars,
        )
        for _, particulars, amount in charges
    ]

    if any(kind == CHARGE_ADMISSION for kind, _, _ in charges):
        student.admission_fee_paid = True
        student.save(update_fields=['admission_fee_paid', 'updated_at'])

    return entries


# Opening balances ----------------------------------------------------------


def _opening_entry(*, student, target_session, amount, particulars):
    entry_type = LedgerEntry.TYPE_DEBIT if amount > 0 else LedgerEntry.TYPE_CREDIT
    return append_entry(
        student=student,
        session=target_session,
        entry_date=target_session.start_date,
        entry_type=entry_type,
        amount=abs(amount),
        reference_type=LedgerEntry.REF_OPENING_BALANCE,
        particulars=particulars,
    )


def recorded_opening_balance(*, student, session) -> Decimal:
    entries = LedgerEntry.objects.for_student(student, session).of_reference(LedgerEntry.REF_OPENING_BALANCE)
    return sum((entry.net_effect for entry in entries), ZERO)


@transaction.atomic
def carry_forward_balance(*, student, source_session, target_session):
    """Open the target session ledger with the student's source session balance.

    Dues open as a debit, an advance as a credit. Returns the entry, or None
    when the source balance is zero or an opening balance already exists.
    """
    amount = current_balance(student=student, session=source_session)
    if amount == 0:
        return None
    if LedgerEntry.objects.for_student(student, target_session).of_reference(LedgerEntry.REF_OPENING_BALANCE).exists():
        return None

    label = 'Previous dues' if amount > 0 else 'Advance'
    return _opening_entry(
        student=student,
        target_session=target_session,
        amount=amount,
        particulars=f"{label} carried forward from {source_session.name}",
    )


@storage_guard
@transaction.atomic
def sync_opening_balance(*, student, source_session, target_session):
    """Align the target opening balance with the source session's final balance.

    Corrections posted to the source session after the carry-forward leave
    the opening balance stale; the difference is posted as one more opening
    balance entry. Returns that entry or None when already in step.
    """
    expected = current_balance(student=student, session=source_session)
    recorded = recorded_opening_balance(student=student, session=target_session)
    difference = _quantize(expected - recorded)
    if difference == 0:
        return None

    logger.info(
        'Opening balance adjusted',
        extra={
            'student_id': student.pk,
            'session_id': target_session.pk,
            'expected': str(expected),
            'recorded': str(recorded),
        },
    )
    return _opening_entry(
        student=student,
        target_session=target_session,
        amount=difference,
        particulars=f"Opening balance adjustment from {source_session.name}",
    )
