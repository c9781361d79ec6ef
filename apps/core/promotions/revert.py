"""
Undo a session promotion.

Everything is undone from what the SessionPromotion record and its mapping
rows captured: the students moved up a class, the graduates deactivated and
the fee structures copied. Students the promotion did not touch keep their
class.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from decimal import Decimal

from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from apps.core.academic_sessions.services import set_current_session
from apps.core.fees.exceptions import AlreadyReverted, NotFound, UnsafeRevert, storage_guard
from apps.core.fees.ledger import ZERO, _quantize, recalculate
from apps.core.fees.models import FeeStructure, LedgerEntry, Receipt
from apps.core.fees.services import ADMISSION_FEE_PARTICULARS
from apps.core.schools.services import get_school
from apps.core.students.models import Student
from apps.core.students.services import (
    account_number_conflicts,
    reactivate_student,
    restore_classes,
    students_created_after,
)

from .models import SessionPromotion
from .services import PromotionProgress, student_batches


logger = logging.getLogger(__name__)


@dataclass
class RevertSafetyCheck:
    can_revert_safely: bool
    receipts_in_new_session: int = 0
    receipts_in_new_session_amount: Decimal = ZERO
    students_added_after_promotion: int = 0
    account_number_conflicts: list = field(default_factory=list)
    edited_account_numbers: list = field(default_factory=list)
    warnings: list = field(default_factory=list)

    def as_dict(self):
        data = asdict(self)
        data['receipts_in_new_session_amount'] = str(self.receipts_in_new_session_amount)
        return data


@dataclass
class RevertResult:
    promotion: SessionPromotion
    receipts_deleted: int = 0
    students_deleted: int = 0
    fee_charges_deleted: int = 0
    opening_balances_deleted: int = 0
    students_restored: int = 0
    graduates_restored: int = 0
    fee_structures_deleted: int = 0
    balances_recalculated: int = 0


def get_promotion(promotion_id, *, for_update=False) -> SessionPromotion:
    promotions = SessionPromotion.objects.select_related('source_session', 'target_session')
    if for_update:
        promotions = promotions.select_for_update()
    try:
        return promotions.get(pk=promotion_id)
    except SessionPromotion.DoesNotExist:
        raise NotFound(f"Promotion {promotion_id} does not exist.", promotion_id=promotion_id)


def _pending_graduates(promotion):
    return list(promotion.graduates.filter(restored_at__isnull=True).select_related('student'))


def check_revert_safety(*, promotion) -> RevertSafetyCheck:
    receipts = Receipt.objects.filter(session=promotion.target_session)
    receipt_count = receipts.count()
    receipt_amount = _quantize(receipts.aggregate(total=Sum('net_amount')).get('total'))
    new_students = students_created_after(promotion.promoted_at).count()

    graduates = _pending_graduates(promotion)
    conflicts = account_number_conflicts(
        [graduate.original_account_number for graduate in graduates],
        exclude_ids=[graduate.student_id for graduate in graduates],
    )
    edited = [
        graduate.prefixed_account_number
        for graduate in graduates
        if graduate.student.account_number != graduate.prefixed_account_number
    ]

    warnings = []
    if receipt_count:
        warnings.append(
            f"{receipt_count} receipt(s) totalling {receipt_amount} in {promotion.target_session.name} will be deleted."
        )
    if new_students:
        warnings.append(f"{new_students} student(s) added after the promotion will be deleted.")
    if conflicts:
        warnings.append(
            f"Account number(s) {', '.join(conflicts)} of passed-out students are now used by other students."
        )
    if edited:
        warnings.append(
            f"Account number(s) {', '.join(edited)} of passed-out students were edited after the promotion; "
            'original numbers will be restored.'
        )

    return RevertSafetyCheck(
        can_revert_safely=not (receipt_count or new_students or conflicts or edited),
        receipts_in_new_session=receipt_count,
        receipts_in_new_session_amount=receipt_amount,
        students_added_after_promotion=new_students,
        account_number_conflicts=conflicts,
        edited_account_numbers=edited,
        warnings=warnings,
    )


def _delete_target_receipts(*, target_session, affected):
    receipts = Receipt.objects.filter(session=target_session)
    receipt_ids = list(receipts.values_list('id', flat=True))
    affected.update(receipts.values_list('student_id', flat=True))
    LedgerEntry.objects.filter(
        reference_type__in=[LedgerEntry.REF_RECEIPT, LedgerEntry.REF_DISCOUNT, LedgerEntry.REF_REVERSAL],
        reference_id__in=receipt_ids,
    ).delete()
    Receipt.objects.filter(id__in=receipt_ids).delete()
    return len(receipt_ids)


def _delete_students(student_ids):
    LedgerEntry.objects.filter(student_id__in=student_ids).delete()
    Receipt.objects.filter(student_id__in=student_ids).delete()
    deleted = Student.objects.filter(id__in=student_ids).count()
    Student.objects.filter(id__in=student_ids).delete()
    return deleted


def _delete_target_entries(*, target_session, reference_type, affected):
    entries = LedgerEntry.objects.filter(session=target_session, reference_type=reference_type)
    affected.update(entries.values_list('student_id', flat=True))
    deleted, _ = entries.delete()
    return deleted


@storage_guard
@transaction.atomic
def revert_promotion(*, promotion_id, force_delete=False, reason='', progress=None, school=None) -> RevertResult:
    notify = progress or (lambda update: None)
    promotion = get_promotion(promotion_id, for_update=True)
    school = get_school(school)

    if promotion.is_reverted:
        raise AlreadyReverted(
            f"Promotion {promotion.id} was already reverted.",
            promotion_id=promotion.id,
            reverted_at=promotion.reverted_at.isoformat() if promotion.reverted_at else None,
        )

    safety = check_revert_safety(promotion=promotion)
    if not safety.can_revert_safely and not force_delete:
        logger.warning(
            'Revert refused, promotion is not safe to revert',
            extra={'promotion_id': promotion.id, 'warnings': safety.warnings},
        )
        raise UnsafeRevert('Reverting this promotion would delete data entered after it.', safety=safety)

    target = promotion.target_session
    graduates = _pending_graduates(promotion)
    new_student_ids = list(students_created_after(promotion.promoted_at).values_list('id', flat=True))

    if force_delete:
        held = account_number_conflicts(
            [graduate.original_account_number for graduate in graduates],
            exclude_ids=[graduate.student_id for graduate in graduates] + new_student_ids,
        )
        if held:
            raise UnsafeRevert(
                'Passed-out account numbers are held by students who existed before the promotion.',
                safety=safety,
                held_account_numbers=held,
            )

    result = RevertResult(promotion=promotion)
    affected = set()

    if force_delete:
        notify(PromotionProgress('Deleting data entered after the promotion', 10))
        result.receipts_deleted = _delete_target_receipts(target_session=target, affected=affected)
        result.students_deleted = _delete_students(new_student_ids)
        affected.difference_update(new_student_ids)

    if promotion.added_session_fees:
        notify(PromotionProgress('Removing session fees', 25))
        admission_students = LedgerEntry.objects.filter(
            session=target,
            reference_type=LedgerEntry.REF_FEE_CHARGE,
            particulars__startswith=ADMISSION_FEE_PARTICULARS,
        ).values_list('student_id', flat=True)
        Student.objects.filter(id__in=list(admission_students)).update(admission_fee_paid=False)
        result.fee_charges_deleted = _delete_target_entries(
            target_session=target,
            reference_type=LedgerEntry.REF_FEE_CHARGE,
            affected=affected,
        )

    if promotion.carried_forward_dues:
        notify(PromotionProgress('Removing carried forward dues', 40))
        result.opening_balances_deleted = _delete_target_entries(
            target_session=target,
            reference_type=LedgerEntry.REF_OPENING_BALANCE,
            affected=affected,
        )

    if promotion.promoted_classes:
        notify(PromotionProgress('Restoring classes', 55))
        result.students_restored = restore_classes(
            promotion.class_moves.values_list('student_id', 'from_class')
        )

    if promotion.deactivated_graduates:
        notify(PromotionProgress('Reactivating passed-out students', 70))
        restored_at = timezone.now()
        for graduate in graduates:
            reactivate_student(student=graduate.student, account_number=graduate.original_account_number)
            graduate.restored_at = restored_at
            graduate.save(update_fields=['restored_at'])
        result.graduates_restored = len(graduates)

    if promotion.copied_fee_structures:
        notify(PromotionProgress('Removing copied fee structures', 80))
        result.fee_structures_deleted, _ = FeeStructure.objects.filter(
            session=target,
            id__in=promotion.copied_fee_structure_ids,
        ).delete()

    if promotion.set_current_session:
        notify(PromotionProgress('Restoring current session', 85))
        set_current_session(session=promotion.source_session, school=school)

    notify(PromotionProgress('Recalculating balances', 90))
    for batch in student_batches(Student.objects.filter(id__in=affected)):
        with transaction.atomic():
            for student in batch:
                result.balances_recalculated += recalculate(student=student, session=target)

    promotion.status = SessionPromotion.STATUS_REVERTED
    promotion.reverted_at = timezone.now()
    promotion.revert_reason = (reason or '').strip()[:255]
    promotion.save(update_fields=['status', 'reverted_at', 'revert_reason'])
    notify(PromotionProgress('Revert completed', 100))

    logger.info(
        'Promotion reverted',
        extra={
            'promotion_id': promotion.id,
            'forced': force_delete,
            'receipts_deleted': result.receipts_deleted,
            'students_deleted': result.students_deleted,
            'fee_charges_deleted': result.fee_charges_deleted,
            'opening_balances_deleted': result.opening_balances_deleted,
            'students_restored': result.students_restored,
            'graduates_restored': result.graduates_restored,
        },
    )
    return result
