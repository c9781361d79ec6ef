from __future__ import annotations

import logging
from collections import defaultdict

from django.db import transaction
from django.db.models import Count
from django.utils import timezone

from .classes import (
    TERMINAL_CLASS,
    add_graduate_prefix,
    next_class,
    promotable_classes_descending,
)
from .models import Student


logger = logging.getLogger(__name__)


def students_in_class(class_name: str, *, active_only=True):
    students = Student.objects.in_class(class_name)
    if active_only:
        students = students.active()
    return students


def class_strength() -> dict:
    rows = Student.objects.active().values('current_class').annotate(total=Count('id')).order_by()
    return {row['current_class']: row['total'] for row in rows}


@transaction.atomic
def promote_all_classes() -> list[tuple[int, str, str]]:
    """Move every active student up one class, highest class first.

    A class is moved only after the class above it, so no student moves twice.
    Returns ``(student_id, from_class, to_class)`` for every student moved.
    """
    moved = []
    for class_name in promotable_classes_descending():
        target = next_class(class_name)
        student_ids = list(students_in_class(class_name).values_list('id', flat=True))
        if not student_ids:
            continue
        Student.objects.filter(id__in=student_ids).update(current_class=target, updated_at=timezone.now())
        logger.info('Promoted class', extra={'from_class': class_name, 'to_class': target, 'count': len(student_ids)})
        moved.extend((student_id, class_name, target) for student_id in student_ids)
    return moved


@transaction.atomic
def restore_classes(moves) -> int:
    """Put students back into the classes given as ``(student_id, class_name)`` pairs."""
    by_class = defaultdict(list)
    for student_id, class_name in moves:
        by_class[class_name].append(student_id)

    restored = 0
    for class_name, student_ids in by_class.items():
        count = Student.objects.filter(id__in=student_ids).update(current_class=class_name, updated_at=timezone.now())
        if count:
            logger.info('Restored class', extra={'to_class': class_name, 'count': count})
        restored += count
    return restored


@transaction.atomic
def deactivate_graduates(*, session_name: str) -> list[tuple[Student, str]]:
    """Deactivate active terminal-class students and mark their account numbers.

    Returns (student, original_account_number) pairs so the caller can keep
    the mapping needed to restore them.
    """
    deactivated = []
    graduates = students_in_class(TERMINAL_CLASS).select_for_update().order_by('id')
    for student in graduates:
        original = student.account_number
        student.account_number = add_graduate_prefix(original, session_name)
        student.is_active = False
        student.save(update_fields=['account_number', 'is_active', 'updated_at'])
        deactivated.append((student, original))
    return deactivated


def reactivate_student(*, student: Student, account_number: str) -> Student:
    student.account_number = account_number
    student.is_active = True
    student.save(update_fields=['account_number', 'is_active', 'updated_at'])
    return student


def account_number_conflicts(account_numbers, *, exclude_ids=()) -> list[str]:
    """Account numbers from the given list already used by other students."""
    numbers = [number for number in account_numbers if number]
    if not numbers:
        return []
    return list(
        Student.objects.filter(account_number__in=numbers)
        .exclude(id__in=list(exclude_ids))
        .order_by('account_number')
        .values_list('account_number', flat=True)
    )


def students_created_after(moment):
    return Student.objects.filter(created_at__gt=moment)
