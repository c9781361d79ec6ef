from django.db import models
from django.db.models import Q


class School(models.Model):
    """Single-row configuration record for the school running this ledger."""

    SINGLETON_ID = 1

    name = models.CharField(max_length=255, default='School')
    address = models.TextField(blank=True)
    phone = models.CharField(max_length=20, blank=True)
    current_session = models.ForeignKey(
        'academic_sessions.AcademicSession',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='current_for_schools',
    )
    last_receipt_number = models.PositiveIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=Q(id=1),
                name='school_single_row',
            ),
        ]

    @classmethod
    def load(cls):
        school, _ = cls.objects.get_or_create(pk=cls.SINGLETON_ID)
        return school

    def save(self, *args, **kwargs):
        self.pk = self.SINGLETON_ID
        super().save(*args, **kwargs)

    def __str__(self):
        return self.name
