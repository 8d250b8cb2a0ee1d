from celery import Celery
from celery.schedules import crontab
import os

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'core.settings')

app = Celery('Qsync')
app.config_from_object('django.conf:settings', namespace='CELERY')

# Celery Beat Schedule
app.conf.beat_schedule = {
    # === MILESTONE POLLERS (one per HIS stream) ===
    'poll-register': {
        'task': 'Qsync.tasks.poll_stream_task',
        'schedule': crontab(minute='*'),  # Every minute
        'kwargs': {'stream': 'REGISTER'},
    },
    'poll-checkin': {
        'task': 'Qsync.tasks.poll_stream_task',
        'schedule': crontab(minute='*'),
        'kwargs': {'stream': 'CHECKIN'},
    },
    'poll-start': {
        'task': 'Qsync.tasks.poll_stream_task',
        'schedule': crontab(minute='*'),
        'kwargs': {'stream': 'START'},
    },
    'poll-finish': {
        'task': 'Qsync.tasks.poll_stream_task',
        'schedule': crontab(minute='*'),
        'kwargs': {'stream': 'FINISH'},
    },
    'poll-pharmacy-started': {
        'task': 'Qsync.tasks.poll_stream_task',
        'schedule': crontab(minute='*'),
        'kwargs': {'stream': 'PHARMACY_STARTED'},
    },
    'poll-close': {
        'task': 'Qsync.tasks.poll_stream_task',
        'schedule': crontab(minute='*'),
        'kwargs': {'stream': 'CLOSE'},
    },

    # === QUEUE ===
    'build-queue': {
        'task': 'Qsync.tasks.build_queue_task',
        'schedule': crontab(minute='*'),  # Every minute
    },
    'dispatch-next-job': {
        'task': 'Qsync.tasks.dispatch_next_job_task',
        'schedule': 5.0,  # Every 5 seconds, one job per run
    },

    # === SCHEDULES ===
    'refresh-provider-schedules': {
        'task': 'Qsync.tasks.refresh_schedules_sweep_task',
        'schedule': crontab(minute=0, hour=5),  # Daily at 05:00 local time
    },

    # === MAINTENANCE ===
    'recheck-resolved-issues': {
        'task': 'Qsync.tasks.recheck_resolved_issues_task',
        'schedule': crontab(minute='*/30'),  # Every 30 minutes
    },
    'cleanup-dispatch-logs': {
        'task': 'Qsync.tasks.cleanup_dispatch_logs_task',
        'schedule': crontab(minute=30, hour=2),  # Daily at 02:30
    },
}


app.autodiscover_tasks()
