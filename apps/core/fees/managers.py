from django.db import models


class LedgerEntryQuerySet(models.QuerySet):
    def for_student(self, student, session=None):
        queryset = self.filter(student=student)
        if session is not None:
            queryset = queryset.filter(session=session)
        return queryset

    def chronological(self):
        return self.order_by('entry_date', 'sequence')

    def latest_first(self):
        return self.order_by('-entry_date', '-sequence')

    def of_reference(self, reference_type, reference_id=None):
        queryset = self.filter(reference_type=reference_type)
        if reference_id is not None:
            queryset = queryset.filter(reference_id=reference_id)
        return queryset
