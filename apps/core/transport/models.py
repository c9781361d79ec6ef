from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q

from apps.core.students.classes import (
    TRANSPORT_TIER_6_TO_8,
    TRANSPORT_TIER_9_TO_12,
    transport_tier,
)
from apps.core.students.models import Student


class TransportRoute(models.Model):
    name = models.CharField(max_length=120, unique=True)
    description = models.CharField(max_length=255, blank=True)
    fee_nc_to_5 = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    fee_6_to_8 = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    fee_9_to_12 = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['name', 'id']
        constraints = [
            models.CheckConstraint(
                condition=Q(fee_nc_to_5__gte=0) & Q(fee_6_to_8__gte=0) & Q(fee_9_to_12__gte=0),
                name='transport_route_fees_non_negative',
            ),
        ]

    def fee_for_class(self, class_name: str) -> Decimal:
        tier = transport_tier(class_name)
        if tier == TRANSPORT_TIER_9_TO_12:
            return self.fee_9_to_12
        if tier == TRANSPORT_TIER_6_TO_8:
            return self.fee_6_to_8
        return self.fee_nc_to_5

    def __str__(self):
        return self.name


class TransportEnrollment(models.Model):
    student = models.ForeignKey(
        Student,
        on_delete=models.CASCADE,
        related_name='transport_enrollments',
    )
    route = models.ForeignKey(
        TransportRoute,
        on_delete=models.PROTECT,
        related_name='enrollments',
    )
    start_date = models.DateField()
    end_date = models.DateField(null=True, blank=True)
    monthly_fee_at_enrollment = models.DecimalField(max_digits=12, decimal_places=2)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['student_id', 'start_date', 'id']
        indexes = [
            models.Index(fields=['student', 'start_date']),
        ]

    def clean(self):
        super().clean()
        if self.end_date and self.start_date and self.end_date < self.start_date:
            raise ValidationError({'end_date': 'End date cannot be before start date.'})
        if self.monthly_fee_at_enrollment is None or self.monthly_fee_at_enrollment < 0:
            raise ValidationError({'monthly_fee_at_enrollment': 'Monthly fee must be zero or greater.'})

    def covers(self, first_day, last_day) -> bool:
        return self.start_date <= last_day and (self.end_date is None or self.end_date >= first_day)

    def __str__(self):
        return f"{self.student_id} on {self.route.name} from {self.start_date}"
