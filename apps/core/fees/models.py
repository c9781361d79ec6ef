from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from django.utils import timezone

from apps.core.academic_sessions.models import AcademicSession
from apps.core.students.classes import CLASS_CHOICES
from apps.core.students.models import Student

from .managers import LedgerEntryQuerySet


class FinancialRecordModel(models.Model):
    class Meta:
        abstract = True

    def delete(self, *args, **kwargs):
        raise ValidationError('Financial records cannot be deleted. Use the cancellation workflow.')


class FeeStructure(models.Model):
    FEE_MONTHLY = 'monthly'
    FEE_ANNUAL = 'annual'
    FEE_ADMISSION = 'admission'
    FEE_REGISTRATION = 'registration'
    FEE_TYPE_CHOICES = (
        (FEE_MONTHLY, 'Monthly'),
        (FEE_ANNUAL, 'Annual'),
        (FEE_ADMISSION, 'Admission'),
        (FEE_REGISTRATION, 'Registration'),
    )

    session = models.ForeignKey(
        AcademicSession,
        on_delete=models.CASCADE,
        related_name='fee_structures',
    )
    class_name = models.CharField(max_length=10, choices=CLASS_CHOICES)
    fee_type = models.CharField(max_length=20, choices=FEE_TYPE_CHOICES)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['session_id', 'class_name', 'fee_type', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['session', 'class_name', 'fee_type'],
                name='unique_fee_type_per_class_session',
            ),
            models.CheckConstraint(
                condition=Q(amount__gte=0),
                name='fee_structure_amount_non_negative',
            ),
        ]

    def clean(self):
        super().clean()
        if self.amount is None or self.amount < 0:
            raise ValidationError({'amount': 'Amount must be zero or greater.'})

    def __str__(self):
        return f"{self.class_name} {self.get_fee_type_display()} {self.amount} ({self.session.name})"


class Receipt(FinancialRecordModel):
    MODE_CASH = 'cash'
    MODE_ONLINE = 'online'
    PAYMENT_MODE_CHOICES = (
        (MODE_CASH, 'Cash'),
        (MODE_ONLINE, 'Online'),
    )

    receipt_number = models.PositiveIntegerField(unique=True)
    student = models.ForeignKey(
        Student,
        on_delete=models.PROTECT,
        related_name='receipts',
    )
    session = models.ForeignKey(
        AcademicSession,
        on_delete=models.PROTECT,
        related_name='receipts',
    )
    receipt_date = models.DateField(default=timezone.localdate)
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    discount_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    net_amount = models.DecimalField(max_digits=12, decimal_places=2)
    payment_mode = models.CharField(max_length=10, choices=PAYMENT_MODE_CHOICES, default=MODE_CASH)
    online_reference = models.CharField(max_length=120, blank=True)
    remarks = models.CharField(max_length=255, blank=True)
    is_cancelled = models.BooleanField(default=False)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-receipt_date', '-receipt_number']
        constraints = [
            models.CheckConstraint(
                condition=Q(net_amount__gt=0),
                name='receipt_net_amount_positive',
            ),
            models.CheckConstraint(
                condition=Q(discount_amount__gte=0),
                name='receipt_discount_non_negative',
            ),
        ]
        indexes = [
            models.Index(fields=['student', 'session']),
            models.Index(fields=['session', 'receipt_date']),
        ]

    def clean(self):
        super().clean()
        if self.net_amount is None or self.net_amount <= 0:
            raise ValidationError({'net_amount': 'Net amount must be greater than zero.'})
        if self.total_amount is not None and self.discount_amount is not None:
            if self.net_amount != self.total_amount - self.discount_amount:
                raise ValidationError({'net_amount': 'Net amount must equal total minus discount.'})
        if self.payment_mode == self.MODE_ONLINE and not (self.online_reference or '').strip():
            raise ValidationError({'online_reference': 'Online payments need a reference.'})

    def __str__(self):
        return f"Receipt #{self.receipt_number}"


class ReceiptItem(models.Model):
    FEE_TUITION = 'tuition'
    FEE_TRANSPORT = 'transport'
    FEE_ADMISSION = 'admission'
    FEE_REGISTRATION = 'registration'
    FEE_PREVIOUS_DUES = 'previous_dues'
    FEE_OTHER = 'other'
    FEE_TYPE_CHOICES = (
        (FEE_TUITION, 'Tuition'),
        (FEE_TRANSPORT, 'Transport'),
        (FEE_ADMISSION, 'Admission'),
        (FEE_REGISTRATION, 'Registration'),
        (FEE_PREVIOUS_DUES, 'Previous dues'),
        (FEE_OTHER, 'Other'),
    )

    receipt = models.ForeignKey(
        Receipt,
        on_delete=models.CASCADE,
        related_name='items',
    )
    fee_type = models.CharField(max_length=20, choices=FEE_TYPE_CHOICES, default=FEE_TUITION)
    description = models.CharField(max_length=255, blank=True)
    month_year = models.CharField(max_length=20, blank=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2)

    class Meta:
        ordering = ['receipt_id', 'id']

    def __str__(self):
        return f"{self.get_fee_type_display()} {self.amount}"


class LedgerEntry(FinancialRecordModel):
    TYPE_DEBIT = 'debit'
    TYPE_CREDIT = 'credit'
    ENTRY_TYPE_CHOICES = (
        (TYPE_DEBIT, 'Debit'),
        (TYPE_CREDIT, 'Credit'),
    )

    REF_FEE_CHARGE = 'fee_charge'
    REF_RECEIPT = 'receipt'
    REF_ADJUSTMENT = 'adjustment'
    REF_REVERSAL = 'reversal'
    REF_OPENING_BALANCE = 'opening_balance'
    REF_DISCOUNT = 'discount'
    REFERENCE_TYPE_CHOICES = (
        (REF_FEE_CHARGE, 'Fee charge'),
        (REF_RECEIPT, 'Receipt'),
        (REF_ADJUSTMENT, 'Adjustment'),
        (REF_REVERSAL, 'Reversal'),
        (REF_OPENING_BALANCE, 'Opening balance'),
        (REF_DISCOUNT, 'Discount'),
    )

    student = models.ForeignKey(
        Student,
        on_delete=models.PROTECT,
        related_name='ledger_entries',
    )
    session = models.ForeignKey(
        AcademicSession,
        on_delete=models.PROTECT,
        related_name='ledger_entries',
    )
    entry_date = models.DateField()
    particulars = models.CharField(max_length=255, blank=True)
    entry_type = models.CharField(max_length=10, choices=ENTRY_TYPE_CHOICES)
    debit_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    credit_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    balance = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    reference_type = models.CharField(max_length=20, choices=REFERENCE_TYPE_CHOICES)
    reference_id = models.BigIntegerField(null=True, blank=True)
    # Cancellation leaves credits unflagged; reversal state is carried by the REVERSAL rows.
    is_reversed = models.BooleanField(default=False)
    sequence = models.PositiveBigIntegerField(editable=False)
    created_at = models.DateTimeField(auto_now_add=True)

    objects = LedgerEntryQuerySet.as_manager()

    class Meta:
        ordering = ['student_id', 'entry_date', 'sequence']
        constraints = [
            models.UniqueConstraint(
                fields=['student', 'sequence'],
                name='unique_ledger_sequence_per_student',
            ),
            models.CheckConstraint(
                condition=(
                    Q(entry_type='debit', debit_amount__gt=0, credit_amount=0)
                    | Q(entry_type='credit', credit_amount__gt=0, debit_amount=0)
                ),
                name='ledger_entry_single_side_amount',
            ),
        ]
        indexes = [
            models.Index(fields=['student', 'session', 'entry_date', 'sequence']),
            models.Index(fields=['session', 'reference_type']),
            models.Index(fields=['reference_type', 'reference_id']),
        ]

    @property
    def net_effect(self) -> Decimal:
        return self.debit_amount - self.credit_amount

    @property
    def amount(self) -> Decimal:
        return self.debit_amount if self.entry_type == self.TYPE_DEBIT else self.credit_amount

    def __str__(self):
        return f"{self.entry_type} {self.amount} ({self.reference_type}:{self.reference_id}) bal {self.balance}"
