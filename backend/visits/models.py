import uuid
from django.db import models
from django.db.models import Q
from django.utils import timezone

from .insurance.types import AuthorizationStatus, VisitType


def _local_time():
    return timezone.localtime().time()


class Visit(models.Model):
    FUNDING_SELF_PAY = 'SELF_PAY'
    FUNDING_INSURANCE = 'INSURANCE'
    FUNDING_CHOICES = [
        (FUNDING_SELF_PAY, 'Self pay'),
        (FUNDING_INSURANCE, 'Insurance'),
    ]

    STATUS_REGISTERED = 'REGISTERED'
    STATUS_IN_PROGRESS = 'IN_PROGRESS'
    STATUS_COMPLETED = 'COMPLETED'
    STATUS_CANCELLED = 'CANCELLED'
    STATUS_CHOICES = [
        (STATUS_REGISTERED, 'Registered'),
        (STATUS_IN_PROGRESS, 'In progress'),
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_CANCELLED, 'Cancelled'),
    ]
    TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_CANCELLED)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    # Patient 由外部模块维护，这里只存引用
    patient_id = models.CharField(max_length=64, db_index=True)
    visit_date = models.DateField(default=timezone.localdate)
    visit_time = models.TimeField(default=_local_time)
    department = models.CharField(max_length=100, default='OPTOMETRY')
    funding_type = models.CharField(max_length=20, choices=FUNDING_CHOICES)
    insurer = models.CharField(max_length=100, blank=True, default='')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_REGISTERED, db_index=True)
    cancel_reason = models.TextField(blank=True, default='')
    cash_conversion_reason = models.TextField(blank=True, default='')
    converted_to_cash_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    created_by = models.CharField(max_length=64)
    updated_by = models.CharField(max_length=64, blank=True, default='')

    class Meta:
        db_table = 'visits'

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    @property
    def is_insurance(self):
        return self.funding_type == self.FUNDING_INSURANCE


class Verification(models.Model):
    VISIT_TYPE_CHOICES = [(v.value, v.name.replace('_', ' ').title()) for v in VisitType]
    AUTHORIZATION_STATUS_CHOICES = [(s.value, s.value.title()) for s in AuthorizationStatus]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    visit = models.ForeignKey(Visit, on_delete=models.PROTECT, related_name='verifications')
    card_no = models.CharField(max_length=50, db_index=True)
    visit_type_id = models.PositiveSmallIntegerField(choices=VISIT_TYPE_CHOICES)
    referral_no = models.CharField(max_length=100, blank=True, default='')
    remarks_sent = models.TextField(blank=True, default='')
    card_status = models.CharField(max_length=50, blank=True, default='')
    authorization_status = models.CharField(max_length=20, choices=AUTHORIZATION_STATUS_CHOICES, db_index=True)
    authorization_no = models.CharField(max_length=100, blank=True, default='')
    member_name = models.CharField(max_length=255, blank=True, default='')
    response_remarks = models.TextField(blank=True, default='')
    # 保险机构原始响应，只做审计存档，业务逻辑不读
    response_payload = models.JSONField(blank=True, null=True)
    verified_by = models.CharField(max_length=64)
    verified_at = models.DateTimeField(default=timezone.now, db_index=True)
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = 'insurance_verifications'
        ordering = ['-verified_at', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['visit'],
                condition=Q(is_active=True),
                name='uniq_active_verification_per_visit',
            ),
        ]
