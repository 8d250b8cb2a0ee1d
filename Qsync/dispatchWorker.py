import logging
from typing import Any, Dict

import requests
from django.conf import settings
from django.db.models import Q
from django.utils import timezone

from .authorityClient import (
    MILESTONE_UPDATE_ENDPOINT, REGISTRATION_ENDPOINT, AuthorityClient, AuthorityError, AuthorityResponse,
)
from .milestones import IllegalTransition, Milestone, ProgressStatus
from .models import DispatchLog, QueueJob

logger = logging.getLogger(__name__)


class DispatchWorker:
    """Sends queued jobs to the authority, one job per call"""

    def __init__(self, client: AuthorityClient = None):
        self._client = client

    @property
    def client(self) -> AuthorityClient:
        if self._client is None:
            self._client = AuthorityClient()
        return self._client

    def process_next(self) -> Dict[str, Any]:
        """
        Dispatch the oldest PENDING job that no other worker holds, if any.

        The job is claimed for QSYNC_DISPATCH_CLAIM_SECONDS before the call; a
        worker that loses the claim race returns without sending.
        """
        job = QueueJob.objects.filter(
            status=QueueJob.STATUS_PENDING,
        ).filter(
            Q(claimed_until__isnull=True) | Q(claimed_until__lt=timezone.now()),
        ).order_by('created_at', 'id').first()
        if job is None:
            return {'processed': False}
        if not job.claim(settings.QSYNC_DISPATCH_CLAIM_SECONDS):
            logger.info(f"Job {job.pk} was claimed by another worker")
            return {'processed': False}
        return self.dispatch(job)

    def _send(self, job: QueueJob) -> AuthorityResponse:
        if job.milestone == Milestone.REGISTER:
            response = self.client.submit_registration(job.payload)
        else:
            response = self.client.submit_milestone_update(job.payload)
        if not response.ok:
            raise AuthorityError(
                f"Authority returned code {response.code}: {response.message or 'Unknown error'}",
                code=response.code, http_status=response.http_status, body=response.body,
            )
        return response

    def dispatch(self, job: QueueJob) -> Dict[str, Any]:
        endpoint = REGISTRATION_ENDPOINT if job.milestone == Milestone.REGISTER else MILESTONE_UPDATE_ENDPOINT
        logger.info(f"Dispatching {job.visit.visit_id} milestone {job.milestone} (retry {job.retry_count})")

        try:
            response = self._send(job)
        except AuthorityError as e:
            self._log(job, endpoint, http_status=e.http_status, code=e.code, body=e.body, error=str(e))
            return self._handle_failure(job, str(e))
        except requests.exceptions.RequestException as e:
            error = f"Request failed: {e}"
            self._log(job, endpoint, error=error)
            return self._handle_failure(job, error)

        self._log(job, endpoint, http_status=response.http_status, code=response.code, body=response.body)
        return self._handle_success(job, response)

    def _log(self, job, endpoint, http_status=None, code=None, body=None, error=None):
        DispatchLog.objects.create(
            queue_job=job,
            endpoint=endpoint,
            request_payload=job.payload or {},
            response_payload=body,
            http_status=http_status,
            response_code=code,
            error_message=error,
        )

    def _handle_success(self, job: QueueJob, response: AuthorityResponse) -> Dict[str, Any]:
        job.mark_sent()
        try:
            job.visit.set_progress(job.milestone, ProgressStatus.SENT)
        except IllegalTransition as e:
            logger.error(f"Job {job.pk} was accepted but progress of {job.visit.visit_id} cannot move: {e}")
        logger.info(f"Sent {job.visit.visit_id} milestone {job.milestone} (code {response.code})")
        return {'processed': True, 'job_id': job.pk, 'status': job.status, 'code': response.code}

    def _handle_failure(self, job: QueueJob, error: str) -> Dict[str, Any]:
        max_retry = settings.QSYNC_DISPATCH_MAX_RETRY
        terminal = job.mark_attempt_failed(error, max_retry)
        logger.warning(f"Job {job.visit.visit_id} milestone {job.milestone} failed "
                       f"(attempt {job.retry_count}/{max_retry}): {error}")

        if terminal:
            try:
                job.visit.set_progress(job.milestone, ProgressStatus.FAILED, reason=error)
            except IllegalTransition as e:
                logger.error(f"Cannot mark progress of {job.visit.visit_id} FAILED: {e}")
            logger.error(f"Job {job.visit.visit_id} milestone {job.milestone} marked FAILED after {max_retry} attempts")

        return {'processed': True, 'job_id': job.pk, 'status': job.status,
                'retry_count': job.retry_count, 'error': error}


def retry_failed_job(job_id: int) -> Dict[str, Any]:
    """Put a FAILED job back in the queue with a fresh retry budget"""
    try:
        job = QueueJob.objects.get(pk=job_id)
    except QueueJob.DoesNotExist:
        return {'job_id': job_id, 'error': 'Job not found'}
    if job.status != QueueJob.STATUS_FAILED:
        return {'job_id': job_id, 'error': f'Job is {job.status}, only FAILED jobs can be retried'}

    job.reset_for_retry()
    logger.info(f"Job {job_id} reset to PENDING for manual retry")
    return {'job_id': job_id, 'status': job.status, 'retry_count': job.retry_count}
