from django.core.exceptions import ValidationError
from django.db import models
from django.utils import timezone

from .classes import CLASS_CHOICES, has_graduate_prefix, is_valid_class


class StudentQuerySet(models.QuerySet):
    def active(self):
        return self.filter(is_active=True)

    def in_class(self, class_name):
        return self.filter(current_class=class_name)


class Student(models.Model):
    sr_number = models.CharField(max_length=30)
    account_number = models.CharField(max_length=50, unique=True)
    name = models.CharField(max_length=150)
    father_name = models.CharField(max_length=150, blank=True)
    phone = models.CharField(max_length=20, blank=True)
    current_class = models.CharField(max_length=10, choices=CLASS_CHOICES)
    section = models.CharField(max_length=5, default='A')
    admission_date = models.DateField(default=timezone.localdate)
    admission_fee_paid = models.BooleanField(default=False)
    has_transport = models.BooleanField(default=False)
    transport_route = models.ForeignKey(
        'transport.TransportRoute',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='students',
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(default=timezone.now, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = StudentQuerySet.as_manager()

    class Meta:
        ordering = ['current_class', 'section', 'name', 'id']
        indexes = [
            models.Index(fields=['current_class', 'is_active']),
            models.Index(fields=['sr_number']),
        ]

    def clean(self):
        super().clean()
        if self.account_number:
            self.account_number = self.account_number.strip()
        if not self.account_number:
            raise ValidationError({'account_number': 'Account number is required.'})
        if not is_valid_class(self.current_class):
            raise ValidationError({'current_class': 'Unknown class.'})
        if self.is_active and has_graduate_prefix(self.account_number):
            raise ValidationError({'account_number': 'Active students cannot carry a passed-out marker.'})
        if self.has_transport and not self.transport_route_id:
            raise ValidationError({'transport_route': 'Transport route is required when transport is enabled.'})

    def __str__(self):
        return f"{self.name} ({self.account_number}, {self.current_class}-{self.section})"
