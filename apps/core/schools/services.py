from django.db import transaction

from apps.core.schools.models import School


def get_school(school=None):
    return school or School.load()


def record_receipt_number(*, number: int, school=None):
    """Keep the last issued receipt number in step with manual numbering."""
    school = get_school(school)
    with transaction.atomic():
        locked = School.objects.select_for_update().get(pk=school.pk)
        if number > locked.last_receipt_number:
            locked.last_receipt_number = number
            locked.save(update_fields=['last_receipt_number', 'updated_at'])
            school.last_receipt_number = number
    return school.last_receipt_number
