import django.db.models.deletion
import django.utils.timezone
import encrypted_model_fields.fields
from django.db import migrations, models


MILESTONE_CHOICES = [
    (1, 'Register'),
    (3, 'Checkin'),
    (4, 'Start'),
    (5, 'Finish'),
    (6, 'Pharmacy Started'),
    (7, 'Close'),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='AuthorityConfig',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=100, unique=True)),
                ('base_url', models.URLField(help_text='Authority queue API base URL')),
                ('cons_id', models.CharField(blank=True, max_length=100)),
                ('secret_key', encrypted_model_fields.fields.EncryptedCharField(blank=True, max_length=200)),
                ('user_key', encrypted_model_fields.fields.EncryptedCharField(blank=True, max_length=200)),
                ('timeout', models.IntegerField(default=10, help_text='Request timeout in seconds')),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Authority Configuration',
                'verbose_name_plural': 'Authority Configurations',
            },
        ),
        migrations.CreateModel(
            name='PollingWatermark',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('stream', models.CharField(max_length=30, unique=True)),
                ('committed_cursor', models.DateTimeField()),
                ('pending_cursor', models.DateTimeField(blank=True, null=True)),
                ('batch_count', models.IntegerField(default=0)),
                ('last_polled_at', models.DateTimeField(blank=True, null=True)),
                ('last_error', models.TextField(blank=True, null=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Polling Watermark',
                'verbose_name_plural': 'Polling Watermarks',
            },
        ),
        migrations.CreateModel(
            name='ScheduleSnapshot',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('clinic_id', models.CharField(max_length=20)),
                ('provider_id', models.CharField(max_length=20)),
                ('schedule_date', models.DateField()),
                ('start_time', models.CharField(help_text='HH:MM or HH:MM:SS', max_length=8)),
                ('end_time', models.CharField(blank=True, max_length=8)),
                ('quota', models.IntegerField(default=0)),
                ('clinic_name', models.CharField(blank=True, max_length=100)),
                ('provider_name', models.CharField(blank=True, max_length=150)),
                ('source', models.CharField(
                    choices=[
                        ('AUTHORITY_SYNC', 'Authority sync'),
                        ('AUTO_FETCH', 'Auto-fetch from HIS'),
                        ('MANUAL', 'Manually seeded'),
                    ],
                    default='AUTHORITY_SYNC',
                    max_length=20,
                )),
                ('fetched_at', models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                'verbose_name': 'Schedule Snapshot',
                'verbose_name_plural': 'Schedule Snapshots',
                'ordering': ['schedule_date', 'start_time'],
                'indexes': [
                    models.Index(fields=['clinic_id', 'provider_id', 'schedule_date'],
                                 name='qsync_schedule_slot_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(fields=('clinic_id', 'provider_id', 'schedule_date', 'start_time'),
                                            name='unique_schedule_slot'),
                ],
            },
        ),
        migrations.CreateModel(
            name='ValidationIssue',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('visit_id', models.CharField(db_index=True, max_length=50)),
                ('milestone', models.IntegerField(choices=MILESTONE_CHOICES)),
                ('expected_milestone', models.IntegerField(blank=True, choices=MILESTONE_CHOICES, null=True)),
                ('missing_milestone', models.IntegerField(blank=True, choices=MILESTONE_CHOICES, null=True)),
                ('reason', models.CharField(max_length=50)),
                ('status', models.CharField(
                    choices=[('PENDING', 'Pending'), ('RESOLVED', 'Resolved'), ('IGNORED', 'Ignored')],
                    default='PENDING',
                    max_length=10,
                )),
                ('created_by', models.CharField(blank=True, max_length=50, null=True)),
                ('notes', models.TextField(blank=True, null=True)),
                ('detected_at', models.DateTimeField(auto_now_add=True)),
                ('resolved_at', models.DateTimeField(blank=True, null=True)),
            ],
            options={
                'verbose_name': 'Validation Issue',
                'verbose_name_plural': 'Validation Issues',
                'ordering': ['-detected_at'],
                'indexes': [
                    models.Index(fields=['visit_id', 'status'], name='qsync_issue_visit_status_idx'),
                    models.Index(fields=['status', 'detected_at'], name='qsync_issue_status_det_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Visit',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('visit_id', models.CharField(max_length=50, unique=True)),
                ('clinic_id', models.CharField(help_text='Authority clinic code', max_length=20)),
                ('provider_id', models.CharField(help_text='Authority provider code', max_length=20)),
                ('visit_date', models.DateField()),
                ('registered_at', models.DateTimeField(help_text='Registration time as recorded by the HIS')),
                ('queue_number', models.CharField(blank=True, max_length=20)),
                ('queue_sequence', models.IntegerField(default=0)),
                ('medical_record_no', models.CharField(blank=True, max_length=30)),
                ('visit_type', models.IntegerField(blank=True, null=True)),
                ('is_insured', models.BooleanField(default=True)),
                ('task_progress', models.JSONField(blank=True, default=dict)),
                ('payload_snapshot', models.JSONField(blank=True, null=True)),
                ('status', models.CharField(
                    choices=[
                        ('DRAFT', 'Draft'),
                        ('READY', 'Ready'),
                        ('BLOCKED', 'Blocked'),
                        ('SENT', 'Sent'),
                        ('FAILED', 'Failed'),
                    ],
                    default='READY',
                    max_length=10,
                )),
                ('blocked_reason', models.TextField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Visit',
                'verbose_name_plural': 'Visits',
                'ordering': ['registered_at'],
                'indexes': [
                    models.Index(fields=['status', 'registered_at'], name='qsync_visit_status_reg_idx'),
                    models.Index(fields=['clinic_id', 'provider_id', 'visit_date'],
                                 name='qsync_visit_slot_idx'),
                    models.Index(fields=['visit_date'], name='qsync_visit_date_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='QueueJob',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('milestone', models.IntegerField(choices=MILESTONE_CHOICES)),
                ('payload', models.JSONField()),
                ('status', models.CharField(
                    choices=[('PENDING', 'Pending'), ('SENT', 'Sent'), ('FAILED', 'Failed')],
                    default='PENDING',
                    max_length=10,
                )),
                ('retry_count', models.IntegerField(default=0)),
                ('last_error', models.TextField(blank=True, null=True)),
                ('event_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('sent_at', models.DateTimeField(blank=True, null=True)),
                ('visit', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE,
                                            related_name='queue_jobs', to='Qsync.visit')),
            ],
            options={
                'verbose_name': 'Queue Job',
                'verbose_name_plural': 'Queue Jobs',
                'ordering': ['created_at', 'id'],
                'indexes': [
                    models.Index(fields=['status', 'created_at'], name='qsync_job_status_created_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(fields=('visit', 'milestone'), name='unique_visit_milestone_job'),
                ],
            },
        ),
        migrations.CreateModel(
            name='DispatchLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('endpoint', models.CharField(max_length=200)),
                ('request_payload', models.JSONField(blank=True, default=dict)),
                ('response_payload', models.JSONField(blank=True, null=True)),
                ('http_status', models.IntegerField(blank=True, null=True)),
                ('response_code', models.IntegerField(blank=True, null=True)),
                ('error_message', models.TextField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('queue_job', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE,
                                                related_name='logs', to='Qsync.queuejob')),
            ],
            options={
                'verbose_name': 'Dispatch Log',
                'verbose_name_plural': 'Dispatch Logs',
                'ordering': ['-created_at'],
            },
        ),
    ]
