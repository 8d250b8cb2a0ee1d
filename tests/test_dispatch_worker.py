from datetime import datetime, timedelta

import pytest
import requests
from django.utils import timezone

from Qsync.dispatchWorker import DispatchWorker, retry_failed_job
from Qsync.milestones import Milestone, ProgressStatus
from Qsync.models import DispatchLog, QueueJob, Visit
from Qsync.queueManager import QueueManager

from .conftest import FakeAuthorityClient

pytestmark = pytest.mark.django_db


@pytest.fixture
def queued_registration(make_visit):
    visit = make_visit()
    QueueManager.build_registration_jobs()
    return visit


def test_empty_queue_is_a_no_op(fake_authority):
    assert DispatchWorker(client=fake_authority).process_next() == {'processed': False}
    assert fake_authority.calls == []


def test_accepted_registration_marks_job_and_progress_sent(queued_registration, fake_authority):
    result = DispatchWorker(client=fake_authority).process_next()

    job = QueueJob.objects.get()
    visit = Visit.objects.get(pk=queued_registration.pk)
    assert result['status'] == QueueJob.STATUS_SENT
    assert job.sent_at is not None
    assert visit.status == ProgressStatus.SENT.value
    assert visit.progress.get(Milestone.REGISTER).sent_at is not None
    assert fake_authority.calls[0][0] == '/antrean/add'


def test_already_registered_answer_counts_as_success(queued_registration):
    client = FakeAuthorityClient(codes=(208,))

    result = DispatchWorker(client=client).process_next()

    assert result['status'] == QueueJob.STATUS_SENT
    assert DispatchLog.objects.get().response_code == 208


def test_job_fails_terminally_after_max_retries(queued_registration, settings):
    settings.QSYNC_DISPATCH_MAX_RETRY = 5
    client = FakeAuthorityClient(codes=(201,))
    worker = DispatchWorker(client=client)

    for _ in range(4):
        worker.process_next()
    job = QueueJob.objects.get()
    assert job.status == QueueJob.STATUS_PENDING
    assert job.retry_count == 4

    result = worker.process_next()

    job.refresh_from_db()
    visit = Visit.objects.get(pk=queued_registration.pk)
    assert result['status'] == QueueJob.STATUS_FAILED
    assert job.retry_count == 5
    assert 'code 201' in job.last_error
    assert visit.status == ProgressStatus.FAILED.value
    assert visit.progress.get(Milestone.REGISTER).failed_reason == job.last_error
    assert DispatchLog.objects.filter(queue_job=job).count() == 5
    assert worker.process_next() == {'processed': False}


def test_manual_retry_resets_budget_and_can_succeed(queued_registration, settings):
    settings.QSYNC_DISPATCH_MAX_RETRY = 1
    DispatchWorker(client=FakeAuthorityClient(codes=(201,))).process_next()
    job = QueueJob.objects.get()

    result = retry_failed_job(job.pk)
    DispatchWorker(client=FakeAuthorityClient()).process_next()

    job.refresh_from_db()
    assert result == {'job_id': job.pk, 'status': QueueJob.STATUS_PENDING, 'retry_count': 0}
    assert job.status == QueueJob.STATUS_SENT
    assert Visit.objects.get(pk=queued_registration.pk).status == ProgressStatus.SENT.value


def test_only_failed_jobs_can_be_retried(queued_registration):
    job = QueueJob.objects.get()

    assert 'error' in retry_failed_job(job.pk)
    assert retry_failed_job(999999) == {'job_id': 999999, 'error': 'Job not found'}


def test_transport_error_counts_as_failed_attempt(queued_registration):
    client = FakeAuthorityClient(error=requests.exceptions.ConnectionError('connection refused'))

    result = DispatchWorker(client=client).process_next()

    job = QueueJob.objects.get()
    log = DispatchLog.objects.get()
    assert result['error'] == 'Request failed: connection refused'
    assert job.status == QueueJob.STATUS_PENDING
    assert job.retry_count == 1
    assert log.http_status is None
    assert log.error_message == result['error']


def test_milestone_update_uses_update_endpoint(make_visit, fake_authority):
    visit = make_visit(progress={Milestone.REGISTER: ProgressStatus.SENT, Milestone.CHECKIN: ProgressStatus.DRAFT})
    QueueManager.build_milestone_jobs()

    DispatchWorker(client=fake_authority).process_next()

    endpoint, payload = fake_authority.calls[0]
    assert endpoint == '/antrean/updatewaktu'
    assert payload['taskid'] == 3
    assert Visit.objects.get(pk=visit.pk).progress.is_sent(Milestone.CHECKIN)


def test_oldest_job_is_dispatched_first(make_visit, fake_authority):
    make_visit(visit_id='FIRST')
    QueueManager.build_registration_jobs()
    make_visit(visit_id='SECOND')
    QueueManager.build_registration_jobs()

    DispatchWorker(client=fake_authority).process_next()

    assert fake_authority.calls[0][1]['kodebooking'] == 'FIRST'


class CheckinDuringCallClient(FakeAuthorityClient):
    """Stores a CHECKIN draft through another Visit instance while the call is in flight"""

    def submit_registration(self, payload):
        Visit.objects.get(visit_id=payload['kodebooking']).set_progress(
            Milestone.CHECKIN, ProgressStatus.DRAFT, event_at=datetime(2026, 1, 24, 8, 10),
        )
        return super().submit_registration(payload)


def test_progress_written_during_the_call_survives_success(queued_registration):
    DispatchWorker(client=CheckinDuringCallClient()).process_next()

    progress = Visit.objects.get(pk=queued_registration.pk).progress
    assert progress.is_sent(Milestone.REGISTER)
    assert progress.status(Milestone.CHECKIN) == ProgressStatus.DRAFT
    assert progress.get(Milestone.CHECKIN).event_at == datetime(2026, 1, 24, 8, 10)


def test_stale_visit_instance_does_not_revert_sent_registration(make_visit):
    visit = make_visit()
    stale = Visit.objects.get(pk=visit.pk)
    visit.set_progress(Milestone.REGISTER, ProgressStatus.SENT)

    stale.set_progress(Milestone.CHECKIN, ProgressStatus.DRAFT, event_at=datetime(2026, 1, 24, 8, 10))

    visit.refresh_from_db()
    assert visit.status == ProgressStatus.SENT.value
    assert visit.progress.is_sent(Milestone.REGISTER)
    assert visit.progress.status(Milestone.CHECKIN) == ProgressStatus.DRAFT


class ConcurrentTickClient(FakeAuthorityClient):
    """Runs a second dispatcher tick while the first one is waiting on the authority"""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.nested = None

    def submit_registration(self, payload):
        if self.nested is None:
            self.nested = DispatchWorker(client=self).process_next()
        return super().submit_registration(payload)


def test_claimed_job_is_not_sent_twice(queued_registration):
    client = ConcurrentTickClient()

    result = DispatchWorker(client=client).process_next()

    assert client.nested == {'processed': False}
    assert len(client.calls) == 1
    assert result['status'] == QueueJob.STATUS_SENT
    assert QueueJob.objects.get().claimed_until is None


def test_expired_claim_is_dispatched_again(queued_registration, fake_authority, settings):
    job = QueueJob.objects.get()
    assert job.claim(settings.QSYNC_DISPATCH_CLAIM_SECONDS)
    assert DispatchWorker(client=fake_authority).process_next() == {'processed': False}

    QueueJob.objects.filter(pk=job.pk).update(claimed_until=timezone.now() - timedelta(seconds=1))
    result = DispatchWorker(client=fake_authority).process_next()

    assert result['status'] == QueueJob.STATUS_SENT
    assert len(fake_authority.calls) == 1


def test_failed_attempt_releases_the_claim(queued_registration):
    DispatchWorker(client=FakeAuthorityClient(codes=(201,))).process_next()

    job = QueueJob.objects.get()
    assert job.status == QueueJob.STATUS_PENDING
    assert job.claimed_until is None
