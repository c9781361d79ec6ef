from __future__ import annotations

import calendar
from datetime import date
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from .models import TransportEnrollment, TransportRoute


# No transport runs in June, so a full session bills at most 11 months.
NON_BILLABLE_MONTHS = (6,)
MAX_TRANSPORT_MONTHS = 12 - len(NON_BILLABLE_MONTHS)


def transport_fee_for_class(*, route: TransportRoute, class_name: str) -> Decimal:
    return route.fee_for_class(class_name)


def session_months(start_date: date, end_date: date):
    year, month = start_date.year, start_date.month
    while (year, month) <= (end_date.year, end_date.month):
        yield year, month
        month += 1
        if month > 12:
            year, month = year + 1, 1


def _month_bounds(year: int, month: int):
    return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])


def transport_charge_for_session(*, student, session) -> tuple[int, Decimal]:
    """Billable transport months and amount for a student over a session.

    Months are counted from the student's enrollment history, skipping June.
    A transport student with no enrollment overlapping the session is billed
    the full 11 months at the route's fee for their class.
    """
    if not student.has_transport or not student.transport_route_id:
        return 0, Decimal('0.00')

    default_fee = student.transport_route.fee_for_class(student.current_class)
    enrollments = list(
        TransportEnrollment.objects.filter(
            student=student,
            start_date__lte=session.end_date,
        ).exclude(end_date__lt=session.start_date).order_by('start_date', 'id')
    )
    if not enrollments:
        return MAX_TRANSPORT_MONTHS, default_fee * MAX_TRANSPORT_MONTHS

    months = 0
    total = Decimal('0.00')
    for year, month in session_months(session.start_date, session.end_date):
        if month in NON_BILLABLE_MONTHS:
            continue
        first_day, last_day = _month_bounds(year, month)
        enrollment = next((row for row in enrollments if row.covers(first_day, last_day)), None)
        if enrollment is not None:
            months += 1
            total += enrollment.monthly_fee_at_enrollment

    if months == 0:
        return MAX_TRANSPORT_MONTHS, default_fee * MAX_TRANSPORT_MONTHS
    return months, total


@transaction.atomic
def enroll_student(*, student, route: TransportRoute, start_date=None) -> TransportEnrollment:
    start_date = start_date or timezone.localdate()
    if not route.is_active:
        raise ValidationError('Transport route is inactive.')

    TransportEnrollment.objects.filter(
        student=student,
        end_date__isnull=True,
    ).update(end_date=start_date)

    enrollment = TransportEnrollment(
        student=student,
        route=route,
        start_date=start_date,
        monthly_fee_at_enrollment=route.fee_for_class(student.current_class),
    )
    enrollment.full_clean()
    enrollment.save()

    student.has_transport = True
    student.transport_route = route
    student.save(update_fields=['has_transport', 'transport_route', 'updated_at'])
    return enrollment


@transaction.atomic
def discontinue_transport(*, student, end_date=None) -> int:
    end_date = end_date or timezone.localdate()
    closed = TransportEnrollment.objects.filter(
        student=student,
        end_date__isnull=True,
    ).update(end_date=end_date)

    student.has_transport = False
    student.transport_route = None
    student.save(update_fields=['has_transport', 'transport_route', 'updated_at'])
    return closed
