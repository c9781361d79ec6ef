from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from apps.core.academic_sessions.services import set_current_session
from apps.core.fees.exceptions import AlreadyPromoted, storage_guard
from apps.core.fees.ledger import ZERO, students_with_dues
from apps.core.fees.models import FeeStructure
from apps.core.fees.services import add_session_fees, carry_forward_balance, copy_fee_structures
from apps.core.schools.services import get_school
from apps.core.students.classes import TERMINAL_CLASS
from apps.core.students.models import Student
from apps.core.students.services import (
    class_strength,
    deactivate_graduates,
    promote_all_classes,
    students_in_class,
)

from .models import GraduateDeactivation, PromotedStudent, SessionPromotion


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PromotionOptions:
    copy_fee_structures: bool = True
    carry_forward_dues: bool = True
    deactivate_graduates: bool = True
    promote_classes: bool = True
    add_tuition_fees: bool = True
    add_transport_fees: bool = True
    add_admission_fees: bool = True
    set_current_session: bool = True

    @property
    def add_session_fees(self) -> bool:
        return self.add_tuition_fees or self.add_transport_fees or self.add_admission_fees


@dataclass(frozen=True)
class PromotionProgress:
    message: str
    percent: int


@dataclass
class PromotionResult:
    promotion: SessionPromotion
    fee_structures_copied: int = 0
    dues_carried_forward_count: int = 0
    dues_carried_forward_amount: Decimal = ZERO
    students_graduated: int = 0
    students_promoted: int = 0
    students_with_fees_added: int = 0
    fee_charges_added_count: int = 0
    fee_charges_added_amount: Decimal = ZERO


@dataclass
class PromotionPreview:
    class_counts: dict = field(default_factory=dict)
    total_students: int = 0
    graduating_students: int = 0
    students_with_transport: int = 0
    students_with_dues: int = 0
    total_dues_amount: Decimal = ZERO
    fee_structures: int = 0
    already_promoted: bool = False

    def as_dict(self):
        return asdict(self)


def student_batches(queryset, size=None):
    """Yield lists of students, ``FEES_BATCH_SIZE`` at a time, in id order."""
    size = size or settings.FEES_BATCH_SIZE
    ids = list(queryset.order_by('id').values_list('id', flat=True).distinct())
    for start in range(0, len(ids), size):
        yield list(
            Student.objects.filter(id__in=ids[start:start + size])
            .select_related('transport_route')
            .order_by('id')
        )


def completed_promotion_for(target_session):
    return SessionPromotion.objects.filter(
        target_session=target_session,
        status=SessionPromotion.STATUS_COMPLETED,
    ).first()


def preview_promotion(*, source_session, target_session=None) -> PromotionPreview:
    counts = class_strength()
    dues = students_with_dues(session=source_session)
    return PromotionPreview(
        class_counts=counts,
        total_students=sum(counts.values()),
        graduating_students=students_in_class(TERMINAL_CLASS).count(),
        students_with_transport=Student.objects.active().filter(has_transport=True).count(),
        students_with_dues=len(dues),
        total_dues_amount=sum(dues.values(), ZERO),
        fee_structures=FeeStructure.objects.filter(session=source_session, is_active=True).count(),
        already_promoted=bool(target_session and completed_promotion_for(target_session)),
    )


def _carry_forward_dues(*, source_session, target_session, notify):
    count, amount = 0, ZERO
    with_entries = Student.objects.filter(ledger_entries__session=source_session)
    for batch in student_batches(with_entries):
        with transaction.atomic():
            for student in batch:
                entry = carry_forward_balance(
                    student=student,
                    source_session=source_session,
                    target_session=target_session,
                )
                if entry is not None:
                    count += 1
                    amount += entry.net_effect
        notify(PromotionProgress(f"Dues carried forward for {count} students", 35))
    return count, amount


def _add_session_fees(*, target_session, options, notify):
    students, charges, amount = 0, 0, ZERO
    for batch in student_batches(Student.objects.active()):
        with transaction.atomic():
            for student in batch:
                entries = add_session_fees(
                    student=student,
                    session=target_session,
                    tuition=options.add_tuition_fees,
                    transport=options.add_transport_fees,
                    admission=options.add_admission_fees,
                )
                if entries:
                    students += 1
                    charges += len(entries)
                    amount += sum((entry.debit_amount for entry in entries), ZERO)
        notify(PromotionProgress(f"Session fees added for {students} students", 85))
    return students, charges, amount


@storage_guard
@transaction.atomic
def promote_session(*, source_session, target_session, options=None, progress=None, school=None) -> PromotionResult:
    """Move the school from ``source_session`` into ``target_session``.

    Steps run in a fixed order, each one switchable through ``options``:
    copy fee structures, carry forward balances, deactivate graduates,
    promote classes, charge session fees, set the current session. The
    whole call is one transaction; a target session can only be promoted
    into once until that promotion is reverted.
    """
    options = options or PromotionOptions()
    notify = progress or (lambda update: None)
    school = get_school(school)

    if source_session.pk == target_session.pk:
        raise ValidationError('Source and target sessions must be different.')

    existing = completed_promotion_for(target_session)
    if existing is not None:
        logger.warning(
            'Promotion refused, target already promoted',
            extra={'target_session': target_session.name, 'promotion_id': existing.id},
        )
        raise AlreadyPromoted(
            f"Session {target_session.name} was already created by a promotion.",
            target_session=target_session.name,
            promotion_id=existing.id,
        )

    logger.info(
        'Promotion started',
        extra={'source_session': source_session.name, 'target_session': target_session.name},
    )
    copied = []
    graduates = []
    carried_count, carried_amount = 0, ZERO
    moves = []
    fee_students, fee_charges, fee_amount = 0, 0, ZERO

    if options.copy_fee_structures:
        notify(PromotionProgress('Copying fee structures', 5))
        copied = copy_fee_structures(source_session=source_session, target_session=target_session)

    if options.carry_forward_dues:
        notify(PromotionProgress('Carrying forward dues', 15))
        carried_count, carried_amount = _carry_forward_dues(
            source_session=source_session,
            target_session=target_session,
            notify=notify,
        )

    if options.deactivate_graduates:
        notify(PromotionProgress('Deactivating passed-out students', 40))
        graduates = deactivate_graduates(session_name=source_session.name)

    if options.promote_classes:
        notify(PromotionProgress('Promoting classes', 45))
        moves = promote_all_classes()

    if options.add_session_fees:
        notify(PromotionProgress('Adding session fees', 65))
        fee_students, fee_charges, fee_amount = _add_session_fees(
            target_session=target_session,
            options=options,
            notify=notify,
        )

    if options.set_current_session:
        notify(PromotionProgress('Setting current session', 95))
        set_current_session(session=target_session, school=school)

    promotion = SessionPromotion.objects.create(
        source_session=source_session,
        target_session=target_session,
        status=SessionPromotion.STATUS_COMPLETED,
        copied_fee_structures=options.copy_fee_structures,
        carried_forward_dues=options.carry_forward_dues,
        deactivated_graduates=options.deactivate_graduates,
        promoted_classes=options.promote_classes,
        added_tuition_fees=options.add_tuition_fees,
        added_transport_fees=options.add_transport_fees,
        added_admission_fees=options.add_admission_fees,
        set_current_session=options.set_current_session,
        copied_fee_structure_ids=[row.id for row in copied],
        fee_structures_copied=len(copied),
        dues_carried_forward_count=carried_count,
        dues_carried_forward_amount=carried_amount,
        students_graduated=len(graduates),
        students_promoted=len(moves),
        fee_charges_added_count=fee_charges,
        fee_charges_added_amount=fee_amount,
        promoted_at=timezone.now(),
    )
    GraduateDeactivation.objects.bulk_create([
        GraduateDeactivation(
            promotion=promotion,
            student=student,
            original_account_number=original,
            prefixed_account_number=student.account_number,
        )
        for student, original in graduates
    ])
    PromotedStudent.objects.bulk_create([
        PromotedStudent(
            promotion=promotion,
            student_id=student_id,
            from_class=from_class,
            to_class=to_class,
        )
        for student_id, from_class, to_class in moves
    ], batch_size=settings.FEES_BATCH_SIZE)

    notify(PromotionProgress('Promotion completed', 100))
    logger.info(
        'Promotion completed',
        extra={
            'promotion_id': promotion.id,
            'fee_structures_copied': len(copied),
            'dues_carried_forward': carried_count,
            'students_graduated': len(graduates),
            'students_promoted': len(moves),
            'fee_charges_added': fee_charges,
        },
    )
    return PromotionResult(
        promotion=promotion,
        fee_structures_copied=len(copied),
        dues_carried_forward_count=carried_count,
        dues_carried_forward_amount=carried_amount,
        students_graduated=len(graduates),
        students_promoted=len(moves),
        students_with_fees_added=fee_students,
        fee_charges_added_count=fee_charges,
        fee_charges_added_amount=fee_amount,
    )
