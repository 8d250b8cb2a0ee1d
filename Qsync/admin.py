from django.contrib import admin, messages
from django.utils.html import format_html

from .authorityClient import AuthorityClient
from .dispatchWorker import retry_failed_job
from .maintenanceUtils import delete_stuck_queue_jobs
from .models import (
    AuthorityConfig, DispatchLog, PollingWatermark, QueueJob, ScheduleSnapshot, ValidationIssue, Visit,
)
from .scheduleValidator import revalidate_visit
from .taskValidator import ignore_issue, resolve_issue

STATUS_COLORS = {
    'READY': 'blue',
    'BLOCKED': 'orange',
    'SENT': 'green',
    'FAILED': 'red',
    'PENDING': 'gray',
}


@admin.register(AuthorityConfig)
class AuthorityConfigAdmin(admin.ModelAdmin):
    list_display = ['name', 'base_url', 'timeout', 'is_active']
    list_filter = ['is_active']
    search_fields = ['name', 'base_url']
    readonly_fields = ['created_at', 'updated_at']

    actions = ['test_connection']

    def test_connection(self, request, queryset):
        results = []
        for config in queryset:
            try:
                result = AuthorityClient(config.name).check_server_availability()
                state = 'Available' if result['available'] else 'Unavailable'
                results.append(f"{config.name}: {state} - {result['status']}")
            except Exception as e:
                results.append(f"{config.name}: Error - {str(e)}")
        messages.info(request, "\n".join(results))
    test_connection.short_description = "Test authority connection"


@admin.register(Visit)
class VisitAdmin(admin.ModelAdmin):
    list_display = ['visit_id', 'clinic_id', 'provider_id', 'visit_date', 'queue_number', 'colored_status']
    list_filter = ['status', 'visit_date', 'clinic_id']
    search_fields = ['visit_id', 'medical_record_no', 'provider_id']
    readonly_fields = ['created_at', 'updated_at', 'task_progress', 'payload_snapshot']

    actions = ['revalidate', 'clear_stuck_jobs']

    def colored_status(self, obj):
        return format_html('<span style="color: {};">●</span> {}', STATUS_COLORS.get(obj.status, 'black'), obj.status)
    colored_status.short_description = 'Registration'

    def revalidate(self, request, queryset):
        changed = 0
        for visit in queryset:
            result = revalidate_visit(visit.visit_id)
            if result.get('changed'):
                changed += 1
        messages.success(request, f"Revalidated {queryset.count()} visits, {changed} changed status")
    revalidate.short_description = "Re-run schedule validation"

    def clear_stuck_jobs(self, request, queryset):
        deleted = 0
        for visit in queryset:
            deleted += delete_stuck_queue_jobs(visit.visit_id).get('deleted', 0)
        messages.success(request, f"Deleted {deleted} stuck queue jobs")
    clear_stuck_jobs.short_description = "Delete stuck queue jobs"


@admin.register(PollingWatermark)
class PollingWatermarkAdmin(admin.ModelAdmin):
    list_display = ['stream', 'committed_cursor', 'committed_key', 'pending_cursor', 'batch_count', 'last_polled_at', 'last_error']
    readonly_fields = ['updated_at']


@admin.register(ScheduleSnapshot)
class ScheduleSnapshotAdmin(admin.ModelAdmin):
    list_display = ['clinic_id', 'provider_id', 'schedule_date', 'start_time', 'end_time', 'quota', 'source']
    list_filter = ['source', 'schedule_date', 'clinic_id']
    search_fields = ['clinic_id', 'provider_id', 'provider_name']


class DispatchLogInline(admin.TabularInline):
    model = DispatchLog
    extra = 0
    fields = ['created_at', 'endpoint', 'http_status', 'response_code', 'error_message']
    readonly_fields = fields
    can_delete = False


@admin.register(QueueJob)
class QueueJobAdmin(admin.ModelAdmin):
    list_display = ['visit', 'milestone', 'colored_status', 'retry_count', 'created_at', 'sent_at']
    list_filter = ['status', 'milestone', 'created_at']
    search_fields = ['visit__visit_id']
    readonly_fields = ['created_at', 'updated_at', 'sent_at', 'payload']
    inlines = [DispatchLogInline]

    actions = ['retry_jobs']

    def colored_status(self, obj):
        return format_html('<span style="color: {};">●</span> {}', STATUS_COLORS.get(obj.status, 'black'), obj.status)
    colored_status.short_description = 'Status'

    def retry_jobs(self, request, queryset):
        retried = 0
        for job in queryset.filter(status=QueueJob.STATUS_FAILED):
            if 'error' not in retry_failed_job(job.pk):
                retried += 1
        messages.success(request, f"Requeued {retried} failed jobs")
    retry_jobs.short_description = "Retry selected failed jobs"


@admin.register(DispatchLog)
class DispatchLogAdmin(admin.ModelAdmin):
    list_display = ['queue_job', 'endpoint', 'http_status', 'response_code', 'created_at']
    list_filter = ['endpoint', 'response_code', 'created_at']
    search_fields = ['queue_job__visit__visit_id', 'error_message']
    readonly_fields = ['created_at']


@admin.register(ValidationIssue)
class ValidationIssueAdmin(admin.ModelAdmin):
    list_display = ['visit_id', 'milestone', 'missing_milestone', 'reason', 'status', 'detected_at']
    list_filter = ['status', 'reason', 'milestone']
    search_fields = ['visit_id', 'notes']
    readonly_fields = ['detected_at', 'resolved_at']

    actions = ['resolve_issues', 'ignore_issues']

    def resolve_issues(self, request, queryset):
        for issue in queryset:
            resolve_issue(issue.pk)
        messages.success(request, f"Resolved {queryset.count()} issues")
    resolve_issues.short_description = "Mark selected issues as resolved"

    def ignore_issues(self, request, queryset):
        for issue in queryset:
            ignore_issue(issue.pk)
        messages.success(request, f"Ignored {queryset.count()} issues")
    ignore_issues.short_description = "Mark selected issues as ignored"
