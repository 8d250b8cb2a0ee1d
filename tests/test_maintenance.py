import importlib
from datetime import timedelta

import pytest
from django.core.management import call_command
from django.utils import timezone

from core import settings as project_settings
from Qsync import tasks
from Qsync.dispatchWorker import DispatchWorker
from Qsync.maintenanceUtils import cleanup_dispatch_logs, delete_stuck_queue_jobs
from Qsync.milestones import Milestone, ProgressStatus
from Qsync.models import DispatchLog, QueueJob, Visit
from Qsync.queueManager import QueueManager
from Qsync.refreshCache import single_flight

from .conftest import FakeAuthorityClient

pytestmark = pytest.mark.django_db


def test_purge_deletes_unsent_jobs_and_resets_failed_progress(make_visit, settings):
    settings.QSYNC_DISPATCH_MAX_RETRY = 1
    visit = make_visit()
    QueueManager.build_registration_jobs()
    DispatchWorker(client=FakeAuthorityClient(codes=(201,))).process_next()

    result = delete_stuck_queue_jobs(visit.visit_id)

    visit.refresh_from_db()
    assert result == {'visit_id': visit.visit_id, 'deleted': 1, 'reset': [1]}
    assert not QueueJob.objects.exists()
    assert visit.status == ProgressStatus.READY.value
    assert QueueManager.build_registration_jobs()['queued'] == 1


def test_purge_keeps_sent_jobs(make_visit, fake_authority):
    visit = make_visit(progress={Milestone.REGISTER: ProgressStatus.SENT, Milestone.CHECKIN: ProgressStatus.DRAFT})
    QueueManager.build_milestone_jobs()
    DispatchWorker(client=fake_authority).process_next()
    visit.set_progress(Milestone.START, ProgressStatus.DRAFT, event_at=timezone.now())
    QueueManager.build_milestone_jobs()

    result = delete_stuck_queue_jobs(visit.visit_id)

    assert result['deleted'] == 1
    assert list(QueueJob.objects.values_list('milestone', flat=True)) == [int(Milestone.CHECKIN)]


def test_purge_of_unknown_visit_reports_error():
    assert delete_stuck_queue_jobs('missing') == {'visit_id': 'missing', 'error': 'Visit not found'}


def test_cleanup_removes_only_old_logs_of_sent_jobs(make_visit, fake_authority):
    make_visit(visit_id='V1')
    make_visit(visit_id='V2')
    QueueManager.build_registration_jobs()
    worker = DispatchWorker(client=fake_authority)
    worker.process_next()
    pending_job = QueueJob.objects.get(status=QueueJob.STATUS_PENDING)
    DispatchLog.objects.create(queue_job=pending_job, endpoint='/antrean/add', error_message='timeout')
    DispatchLog.objects.update(created_at=timezone.now() - timedelta(days=40))

    result = cleanup_dispatch_logs(retention_days=30)

    assert result == {'logs_deleted': 1}
    assert DispatchLog.objects.get().queue_job == pending_job


def test_task_is_skipped_while_previous_run_holds_the_slot():
    with single_flight('build-queue') as acquired:
        assert acquired
        assert tasks.build_queue_task() == tasks.SKIPPED

    assert 'registration' in tasks.build_queue_task()


def test_task_guards_share_the_redis_cache_by_default(monkeypatch):
    for name in ('QSYNC_CACHE_BACKEND', 'QSYNC_CACHE_LOCATION', 'REDIS_URL', 'CELERY_BROKER_URL'):
        monkeypatch.delenv(name, raising=False)

    module = importlib.reload(project_settings)

    assert module.CACHES['qsync']['BACKEND'] == 'django.core.cache.backends.redis.RedisCache'
    assert module.CACHES['qsync']['LOCATION'] == module.CELERY_BROKER_URL == 'redis://localhost:6379/0'


def test_task_failure_is_returned_not_raised(monkeypatch):
    def broken():
        raise RuntimeError('database is locked')

    monkeypatch.setattr(tasks.maintenanceUtils, 'cleanup_dispatch_logs', broken)

    assert tasks.cleanup_dispatch_logs_task() == {'error': 'database is locked'}


def test_command_reports_queue_statistics(make_visit, capsys):
    make_visit()
    call_command('qsync', action='build')
    call_command('qsync', action='stats')

    out = capsys.readouterr().out
    assert 'Queued 1 registrations' in out
    assert 'Pending: 1' in out
    assert Visit.objects.count() == 1
