from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q

from apps.core.academic_sessions.models import AcademicSession
from apps.core.students.classes import CLASS_CHOICES
from apps.core.students.models import Student


class SessionPromotion(models.Model):
    """What a promotion did, in enough detail to undo it."""

    STATUS_COMPLETED = 'completed'
    STATUS_REVERTED = 'reverted'
    STATUS_CHOICES = (
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_REVERTED, 'Reverted'),
    )

    source_session = models.ForeignKey(
        AcademicSession,
        on_delete=models.PROTECT,
        related_name='promotions_from',
    )
    target_session = models.ForeignKey(
        AcademicSession,
        on_delete=models.PROTECT,
        related_name='promotions_to',
    )
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_COMPLETED)

    copied_fee_structures = models.BooleanField(default=False)
    carried_forward_dues = models.BooleanField(default=False)
    deactivated_graduates = models.BooleanField(default=False)
    promoted_classes = models.BooleanField(default=False)
    added_tuition_fees = models.BooleanField(default=False)
    added_transport_fees = models.BooleanField(default=False)
    added_admission_fees = models.BooleanField(default=False)
    set_current_session = models.BooleanField(default=False)

    copied_fee_structure_ids = models.JSONField(default=list, blank=True)
    fee_structures_copied = models.PositiveIntegerField(default=0)
    dues_carried_forward_count = models.PositiveIntegerField(default=0)
    dues_carried_forward_amount = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal('0.00'))
    students_graduated = models.PositiveIntegerField(default=0)
    students_promoted = models.PositiveIntegerField(default=0)
    fee_charges_added_count = models.PositiveIntegerField(default=0)
    fee_charges_added_amount = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal('0.00'))

    promoted_at = models.DateTimeField()
    reverted_at = models.DateTimeField(null=True, blank=True)
    revert_reason = models.CharField(max_length=255, blank=True)

    class Meta:
        ordering = ['-promoted_at', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['target_session'],
                condition=Q(status='completed'),
                name='unique_completed_promotion_per_target',
            ),
        ]

    @property
    def added_session_fees(self) -> bool:
        return self.added_tuition_fees or self.added_transport_fees or self.added_admission_fees

    @property
    def is_reverted(self) -> bool:
        return self.status == self.STATUS_REVERTED

    def clean(self):
        super().clean()
        if self.source_session_id and self.source_session_id == self.target_session_id:
            raise ValidationError({'target_session': 'Target session must differ from source session.'})

    def __str__(self):
        return f"{self.source_session.name} -> {self.target_session.name} ({self.get_status_display()})"


class GraduateDeactivation(models.Model):
    """Original and marked account number of a graduate deactivated by a promotion."""

    promotion = models.ForeignKey(
        SessionPromotion,
        on_delete=models.CASCADE,
        related_name='graduates',
    )
    student = models.ForeignKey(
        Student,
        on_delete=models.CASCADE,
        related_name='graduate_deactivations',
    )
    original_account_number = models.CharField(max_length=50)
    prefixed_account_number = models.CharField(max_length=50)
    restored_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['promotion_id', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['promotion', 'student'],
                name='unique_graduate_per_promotion',
            ),
        ]

    def __str__(self):
        return f"{self.prefixed_account_number} <- {self.original_account_number}"


class PromotedStudent(models.Model):
    """Class a student held before a promotion moved them up."""

    promotion = models.ForeignKey(
        SessionPromotion,
        on_delete=models.CASCADE,
        related_name='class_moves',
    )
    student = models.ForeignKey(
        Student,
        on_delete=models.CASCADE,
        related_name='class_moves',
    )
    from_class = models.CharField(max_length=10, choices=CLASS_CHOICES)
    to_class = models.CharField(max_length=10, choices=CLASS_CHOICES)

    class Meta:
        ordering = ['promotion_id', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['promotion', 'student'],
                name='unique_class_move_per_promotion',
            ),
        ]

    def __str__(self):
        return f"{self.student_id}: {self.from_class} -> {self.to_class}"
