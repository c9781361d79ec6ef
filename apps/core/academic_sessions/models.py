from django.db import models
from django.db.models import F, Q


class AcademicSession(models.Model):
    name = models.CharField(max_length=20, unique=True)  # e.g. 2024-25
    start_date = models.DateField()
    end_date = models.DateField()
    is_current = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-start_date', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['is_current'],
                condition=Q(is_current=True),
                name='unique_current_session',
            ),
            models.CheckConstraint(
                condition=Q(end_date__gt=F('start_date')),
                name='session_end_after_start',
            ),
        ]
        indexes = [
            models.Index(fields=['start_date']),
        ]

    def __str__(self):
        return self.name
