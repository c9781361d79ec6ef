"""
Student ledger engine.

Every entry stores the running balance of its student's session ledger as of
that entry, so balance reads are a single row lookup. Entries are ordered by
``(entry_date, sequence)``; ``sequence`` is a per-student counter assigned
under the student row lock, which makes the order a strict total order even
when several entries share a date.

Appending on or after the latest entry date extends the running balance
directly. Appending before it (a backdated entry) re-walks the session ledger
and rewrites only the balances that changed.
"""
from __future__ import annotations

import logging
from decimal import Decimal, ROUND_HALF_UP

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import F, Max, Sum

from apps.core.students.models import Student

from .exceptions import InvalidAmount, storage_guard
from .models import LedgerEntry


logger = logging.getLogger(__name__)

ZERO = Decimal('0.00')


def _to_decimal(value) -> Decimal:
    return Decimal(str(value or '0'))


def _quantize(value) -> Decimal:
    return _to_decimal(value).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)


def _sum_amount(queryset, field_name) -> Decimal:
    value = queryset.aggregate(total=Sum(field_name)).get('total')
    return _quantize(value)


def _lock_student(student):
    return Student.objects.select_for_update().only('id').get(pk=student.pk)


def _next_sequence(student) -> int:
    last = LedgerEntry.objects.filter(student=student).aggregate(last=Max('sequence')).get('last')
    return (last or 0) + 1


@storage_guard
@transaction.atomic
def append_entry(
    *,
    student,
    session,
    entry_date,
    entry_type,
    amount,
    reference_type,
    particulars='',
    reference_id=None,
):
    amount = _quantize(amount)
    if amount <= 0:
        raise InvalidAmount('Ledger amount must be greater than zero.', amount=str(amount))
    if entry_type not in (LedgerEntry.TYPE_DEBIT, LedgerEntry.TYPE_CREDIT):
        raise ValidationError(f"Unknown ledger entry type '{entry_type}'.")

    _lock_student(student)

    # Read the latest entry only once the lock is held.
    previous = LedgerEntry.objects.for_student(student, session).latest_first().first()
    backdated = previous is not None and entry_date < previous.entry_date

    debit = amount if entry_type == LedgerEntry.TYPE_DEBIT else ZERO
    credit = amount if entry_type == LedgerEntry.TYPE_CREDIT else ZERO
    opening = previous.balance if previous is not None and not backdated else ZERO

    entry = LedgerEntry.objects.create(
        student=student,
        session=session,
        entry_date=entry_date,
        particulars=(particulars or '')[:255],
        entry_type=entry_type,
        debit_amount=debit,
        credit_amount=credit,
        balance=_quantize(opening + debit - credit),
        reference_type=reference_type,
        reference_id=reference_id,
        sequence=_next_sequence(student),
    )

    if backdated:
        logger.info(
            'Backdated ledger entry, recalculating',
            extra={'student_id': student.pk, 'session_id': session.pk, 'entry_date': str(entry_date)},
        )
        recalculate(student=student, session=session)
        entry.refresh_from_db(fields=['balance'])

    return entry


@storage_guard
@transaction.atomic
def recalculate(*, student, session=None) -> int:
    """Rewrite stored balances from a chronological replay.

    Returns the number of entries whose balance changed; a second call in a
    row always returns 0.
    """
    _lock_student(student)

    entries = LedgerEntry.objects.for_student(student, session).order_by('session_id', 'entry_date', 'sequence')
    running = {}
    changed = []
    for entry in entries:
        balance = running.get(entry.session_id, ZERO) + entry.debit_amount - entry.credit_amount
        running[entry.session_id] = balance
        if entry.balance != balance:
            entry.balance = balance
            changed.append(entry)

    if changed:
        LedgerEntry.objects.bulk_update(changed, ['balance'], batch_size=settings.FEES_BATCH_SIZE)
        logger.info(
            'Ledger balances recalculated',
            extra={'student_id': student.pk, 'changed': len(changed)},
        )
    return len(changed)


def verify_balances(*, student, session=None) -> list[dict]:
    """Entries whose stored balance disagrees with a chronological replay."""
    entries = LedgerEntry.objects.for_student(student, session).order_by('session_id', 'entry_date', 'sequence')
    running = {}
    mismatches = []
    for entry in entries:
        balance = running.get(entry.session_id, ZERO) + entry.debit_amount - entry.credit_amount
        running[entry.session_id] = balance
        if entry.balance != balance:
            mismatches.append({'entry_id': entry.id, 'stored': entry.balance, 'expected': balance})
    return mismatches


def current_balance(*, student, session=None) -> Decimal:
    balance = (
        LedgerEntry.objects.for_student(student, session)
        .latest_first()
        .values_list('balance', flat=True)
        .first()
    )
    return balance if balance is not None else ZERO


def total_debits(*, student, session=None) -> Decimal:
    return _sum_amount(LedgerEntry.objects.for_student(student, session), 'debit_amount')


def total_credits(*, student, session=None) -> Decimal:
    return _sum_amount(LedgerEntry.objects.for_student(student, session), 'credit_amount')


def closing_balance(*, student, session) -> Decimal:
    return total_debits(student=student, session=session) - total_credits(student=student, session=session)


def has_fee_charges(*, student, session) -> bool:
    return LedgerEntry.objects.for_student(student, session).of_reference(LedgerEntry.REF_FEE_CHARGE).exists()


def session_balances(*, session):
    """Net balance per student for one session, as ``{student_id: balance}``."""
    rows = (
        LedgerEntry.objects.filter(session=session)
        .values('student_id')
        .annotate(balance=Sum(F('debit_amount') - F('credit_amount')))
        .order_by('student_id')
    )
    return {row['student_id']: _quantize(row['balance']) for row in rows}


def students_with_dues(*, session) -> dict:
    return {
        student_id: balance
        for student_id, balance in session_balances(session=session).items()
        if balance > 0
    }


def total_pending_dues(*, session) -> Decimal:
    return _quantize(sum(students_with_dues(session=session).values(), ZERO))
