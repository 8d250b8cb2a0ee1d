# models.py

from datetime import timedelta

from django.db import models, transaction
from django.utils import timezone
from encrypted_model_fields.fields import EncryptedCharField

from .milestones import Milestone, ProgressMap, ProgressStatus


MILESTONE_CHOICES = [(int(m), m.label) for m in Milestone]


class AuthorityConfig(models.Model):
    """Connection settings for the insurance authority API"""
    name = models.CharField(max_length=100, unique=True)
    base_url = models.URLField(help_text="Authority queue API base URL")
    cons_id = models.CharField(max_length=100, blank=True)
    secret_key = EncryptedCharField(max_length=200, blank=True)
    user_key = EncryptedCharField(max_length=200, blank=True)
    timeout = models.IntegerField(default=10, help_text="Request timeout in seconds")
    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Authority Configuration"
        verbose_name_plural = "Authority Configurations"

    def __str__(self):
        return f"{self.name} - {self.base_url}"


class Visit(models.Model):
    """One patient encounter, keyed by the HIS visit number (no_rawat)"""
    visit_id = models.CharField(max_length=50, unique=True)
    clinic_id = models.CharField(max_length=20, help_text="Authority clinic code")
    provider_id = models.CharField(max_length=20, help_text="Authority provider code")
    visit_date = models.DateField()
    registered_at = models.DateTimeField(help_text="Registration time as recorded by the HIS")

    queue_number = models.CharField(max_length=20, blank=True)
    queue_sequence = models.IntegerField(default=0)
    medical_record_no = models.CharField(max_length=30, blank=True)
    visit_type = models.IntegerField(null=True, blank=True)
    is_insured = models.BooleanField(default=True)

    task_progress = models.JSONField(default=dict, blank=True)
    # Quota and schedule figures frozen at registration time
    payload_snapshot = models.JSONField(null=True, blank=True)

    # Mirror of task_progress["1"] so registration state can be filtered in SQL
    status = models.CharField(max_length=10, choices=[(s.value, s.value.title()) for s in ProgressStatus],
                              default=ProgressStatus.READY.value)
    blocked_reason = models.TextField(blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['registered_at']
        indexes = [
            models.Index(fields=['status', 'registered_at'], name='qsync_visit_status_reg_idx'),
            models.Index(fields=['clinic_id', 'provider_id', 'visit_date'], name='qsync_visit_slot_idx'),
            models.Index(fields=['visit_date'], name='qsync_visit_date_idx'),
        ]
        verbose_name = "Visit"
        verbose_name_plural = "Visits"

    def __str__(self):
        return f"{self.visit_id} ({self.clinic_id}/{self.provider_id} {self.visit_date}) - {self.status}"

    @property
    def progress(self) -> ProgressMap:
        return ProgressMap.from_json(self.task_progress)

    def set_progress(self, milestone, status, reason=None, event_at=None, save=True):
        """
        Apply one state-machine transition and persist the progress map.

        With ``save`` the transition is applied to the row as stored, under a
        row lock, so entries other workers wrote since this instance was
        loaded are kept.
        """
        if not save or self.pk is None:
            return self._apply_progress(milestone, status, reason, event_at)

        with transaction.atomic():
            self.task_progress, self.status, self.blocked_reason = Visit.objects.select_for_update().values_list(
                'task_progress', 'status', 'blocked_reason',
            ).get(pk=self.pk)
            entry = self._apply_progress(milestone, status, reason, event_at)
            update_fields = ['task_progress', 'updated_at']
            if Milestone(milestone) == Milestone.REGISTER:
                update_fields += ['status', 'blocked_reason']
            self.save(update_fields=update_fields)
        return entry

    def _apply_progress(self, milestone, status, reason, event_at):
        progress = self.progress
        entry = progress.apply(milestone, status, reason=reason, event_at=event_at, now=timezone.now())
        self.task_progress = progress.to_json()
        if Milestone(milestone) == Milestone.REGISTER:
            self.status = entry.status.value
            self.blocked_reason = entry.blocked_reason or entry.failed_reason
        return entry


class PollingWatermark(models.Model):
    """Ingestion cursor for one HIS milestone stream"""
    stream = models.CharField(max_length=30, unique=True)
    committed_cursor = models.DateTimeField()
    pending_cursor = models.DateTimeField(null=True, blank=True)
    # no_rawat of the last row at the cursor timestamp; rows sharing that
    # timestamp are resumed after it
    committed_key = models.CharField(max_length=50, blank=True, default='')
    pending_key = models.CharField(max_length=50, blank=True, default='')
    batch_count = models.IntegerField(default=0)
    last_polled_at = models.DateTimeField(null=True, blank=True)
    last_error = models.TextField(blank=True, null=True)

    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Polling Watermark"
        verbose_name_plural = "Polling Watermarks"

    def __str__(self):
        return f"{self.stream} @ {self.committed_cursor}"

    @property
    def cursor(self):
        return self.pending_cursor or self.committed_cursor

    @property
    def position(self):
        """(timestamp, no_rawat) resume point"""
        if self.pending_cursor is not None:
            return self.pending_cursor, self.pending_key
        return self.committed_cursor, self.committed_key


class ScheduleSnapshot(models.Model):
    """Cached provider practice schedule and capacity for one date"""
    SOURCE_AUTHORITY_SYNC = 'AUTHORITY_SYNC'
    SOURCE_AUTO_FETCH = 'AUTO_FETCH'
    SOURCE_MANUAL = 'MANUAL'
    SOURCE_CHOICES = [
        (SOURCE_AUTHORITY_SYNC, 'Authority sync'),
        (SOURCE_AUTO_FETCH, 'Auto-fetch from HIS'),
        (SOURCE_MANUAL, 'Manually seeded'),
    ]

    clinic_id = models.CharField(max_length=20)
    provider_id = models.CharField(max_length=20)
    schedule_date = models.DateField()
    start_time = models.CharField(max_length=8, help_text="HH:MM or HH:MM:SS")
    end_time = models.CharField(max_length=8, blank=True)
    quota = models.IntegerField(default=0)

    clinic_name = models.CharField(max_length=100, blank=True)
    provider_name = models.CharField(max_length=150, blank=True)
    source = models.CharField(max_length=20, choices=SOURCE_CHOICES, default=SOURCE_AUTHORITY_SYNC)
    fetched_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ['schedule_date', 'start_time']
        constraints = [
            models.UniqueConstraint(
                fields=['clinic_id', 'provider_id', 'schedule_date', 'start_time'],
                name='unique_schedule_slot',
            ),
        ]
        indexes = [
            models.Index(fields=['clinic_id', 'provider_id', 'schedule_date'], name='qsync_schedule_slot_idx'),
        ]
        verbose_name = "Schedule Snapshot"
        verbose_name_plural = "Schedule Snapshots"

    def __str__(self):
        return f"{self.clinic_id}/{self.provider_id} {self.schedule_date} {self.practice_hours} ({self.source})"

    @property
    def practice_hours(self) -> str:
        if not self.start_time or not self.end_time:
            return ''
        return f"{self.start_time[:5]}-{self.end_time[:5]}"


class QueueJob(models.Model):
    """One outbound authority call for a (visit, milestone) pair"""
    STATUS_PENDING = 'PENDING'
    STATUS_SENT = 'SENT'
    STATUS_FAILED = 'FAILED'
    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_SENT, 'Sent'),
        (STATUS_FAILED, 'Failed'),
    ]

    visit = models.ForeignKey(Visit, on_delete=models.CASCADE, related_name='queue_jobs')
    milestone = models.IntegerField(choices=MILESTONE_CHOICES)
    payload = models.JSONField()

    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default=STATUS_PENDING)
    retry_count = models.IntegerField(default=0)
    last_error = models.TextField(blank=True, null=True)
    claimed_until = models.DateTimeField(null=True, blank=True, help_text="Dispatcher reservation expiry")

    event_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    sent_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['created_at', 'id']
        constraints = [
            models.UniqueConstraint(fields=['visit', 'milestone'], name='unique_visit_milestone_job'),
        ]
        indexes = [
            models.Index(fields=['status', 'created_at'], name='qsync_job_status_created_idx'),
        ]
        verbose_name = "Queue Job"
        verbose_name_plural = "Queue Jobs"

    def __str__(self):
        return f"{self.visit.visit_id} milestone {self.milestone} - {self.status}"

    def claim(self, ttl_seconds):
        """Reserve the job for one dispatcher; False when another one holds it"""
        now = timezone.now()
        until = now + timedelta(seconds=ttl_seconds)
        claimed = QueueJob.objects.filter(
            pk=self.pk, status=self.STATUS_PENDING,
        ).filter(
            models.Q(claimed_until__isnull=True) | models.Q(claimed_until__lt=now),
        ).update(claimed_until=until)
        if claimed:
            self.claimed_until = until
        return bool(claimed)

    def mark_sent(self):
        self.status = self.STATUS_SENT
        self.sent_at = timezone.now()
        self.last_error = None
        self.claimed_until = None
        self.save(update_fields=['status', 'sent_at', 'last_error', 'claimed_until', 'updated_at'])

    def mark_attempt_failed(self, error_message, max_retry):
        """Count a failed attempt; returns True when the job is now terminally FAILED"""
        self.retry_count += 1
        self.last_error = error_message
        if self.retry_count >= max_retry:
            self.status = self.STATUS_FAILED
        self.claimed_until = None
        self.save(update_fields=['status', 'retry_count', 'last_error', 'claimed_until', 'updated_at'])
        return self.status == self.STATUS_FAILED

    def reset_for_retry(self):
        self.status = self.STATUS_PENDING
        self.retry_count = 0
        self.last_error = None
        self.claimed_until = None
        self.save(update_fields=['status', 'retry_count', 'last_error', 'claimed_until', 'updated_at'])


class DispatchLog(models.Model):
    """Request/response record for every authority call"""
    queue_job = models.ForeignKey(QueueJob, on_delete=models.CASCADE, related_name='logs')
    endpoint = models.CharField(max_length=200)
    request_payload = models.JSONField(default=dict, blank=True)
    response_payload = models.JSONField(null=True, blank=True)
    http_status = models.IntegerField(null=True, blank=True)
    response_code = models.IntegerField(null=True, blank=True)
    error_message = models.TextField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']
        verbose_name = "Dispatch Log"
        verbose_name_plural = "Dispatch Logs"

    def __str__(self):
        return f"{self.endpoint} job={self.queue_job_id} code={self.response_code}"


class ValidationIssue(models.Model):
    """Append-only record of an ordering violation or payload defect"""
    STATUS_PENDING = 'PENDING'
    STATUS_RESOLVED = 'RESOLVED'
    STATUS_IGNORED = 'IGNORED'
    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_RESOLVED, 'Resolved'),
        (STATUS_IGNORED, 'Ignored'),
    ]

    visit_id = models.CharField(max_length=50, db_index=True)
    milestone = models.IntegerField(choices=MILESTONE_CHOICES)
    expected_milestone = models.IntegerField(choices=MILESTONE_CHOICES, null=True, blank=True)
    missing_milestone = models.IntegerField(choices=MILESTONE_CHOICES, null=True, blank=True)
    reason = models.CharField(max_length=50)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default=STATUS_PENDING)

    created_by = models.CharField(max_length=50, blank=True, null=True)
    notes = models.TextField(blank=True, null=True)
    detected_at = models.DateTimeField(auto_now_add=True)
    resolved_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['-detected_at']
        indexes = [
            models.Index(fields=['visit_id', 'status'], name='qsync_issue_visit_status_idx'),
            models.Index(fields=['status', 'detected_at'], name='qsync_issue_status_det_idx'),
        ]
        verbose_name = "Validation Issue"
        verbose_name_plural = "Validation Issues"

    def __str__(self):
        return f"{self.visit_id} milestone {self.milestone}: {self.reason} - {self.status}"
