import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Avg, Count
from django.utils import timezone

from . import taskValidator
from .milestones import FOLLOW_UP_MILESTONES, Milestone, ProgressStatus
from .models import QueueJob, Visit
from .payloads import PayloadError, build_milestone_payload, build_registration_payload

logger = logging.getLogger(__name__)


class QueueManager:
    """Turns visit progress into outbound QueueJob rows"""

    @staticmethod
    def enqueue(visit: Visit, milestone, payload: Dict[str, Any], event_at=None) -> Optional[QueueJob]:
        """Create the job for (visit, milestone); None if it already exists"""
        try:
            with transaction.atomic():
                return QueueJob.objects.create(
                    visit=visit,
                    milestone=int(milestone),
                    payload=payload,
                    event_at=event_at,
                )
        except IntegrityError:
            logger.debug(f"Job for {visit.visit_id} milestone {int(milestone)} already queued")
            return None

    @staticmethod
    def build_registration_jobs(limit: int = None) -> Dict[str, int]:
        """Queue the registration call for READY visits that have none yet"""
        limit = limit or settings.QSYNC_QUEUE_BUILD_LIMIT
        stats = {'queued': 0, 'errors': 0}

        visits = Visit.objects.filter(
            status=ProgressStatus.READY.value,
        ).exclude(
            queue_jobs__milestone=int(Milestone.REGISTER),
        ).order_by('registered_at')[:limit]

        for visit in visits:
            try:
                payload = build_registration_payload(visit)
            except PayloadError as e:
                logger.error(f"Cannot queue registration for {visit.visit_id}: {e}")
                stats['errors'] += 1
                continue

            if QueueManager.enqueue(visit, Milestone.REGISTER, payload, visit.registered_at):
                stats['queued'] += 1
                logger.info(f"Queued registration {visit.visit_id} ({visit.clinic_id}, no. {visit.queue_number})")
        return stats

    @staticmethod
    def build_milestone_jobs(limit: int = None) -> Dict[str, int]:
        """
        Queue milestone updates whose prerequisites were SENT.

        Only registered-and-sent visits within QSYNC_QUEUE_LOOKBACK_DAYS are
        scanned; every follow-up milestone depends on the registration.
        """
        limit = limit or settings.QSYNC_QUEUE_BUILD_LIMIT
        since = timezone.now().date() - timedelta(days=settings.QSYNC_QUEUE_LOOKBACK_DAYS)
        stats = {'queued': 0, 'waiting': 0, 'errors': 0}

        visits = Visit.objects.filter(status=ProgressStatus.SENT.value, visit_date__gte=since)
        existing = set(
            QueueJob.objects.filter(visit__in=visits).values_list('visit_id', 'milestone')
        )

        for visit in visits.order_by('registered_at').iterator():
            progress = visit.progress
            for milestone in FOLLOW_UP_MILESTONES:
                entry = progress.get(milestone)
                if entry is None or entry.status in (ProgressStatus.SENT, ProgressStatus.FAILED):
                    continue
                if (visit.pk, int(milestone)) in existing:
                    continue
                if not taskValidator.check_dependency(visit, milestone, record=False).satisfied:
                    stats['waiting'] += 1
                    continue

                try:
                    payload = build_milestone_payload(visit, milestone)
                except PayloadError as e:
                    logger.error(f"Cannot queue milestone {int(milestone)} for {visit.visit_id}: {e}")
                    stats['errors'] += 1
                    continue

                if QueueManager.enqueue(visit, milestone, payload, entry.event_at):
                    existing.add((visit.pk, int(milestone)))
                    stats['queued'] += 1
                    if stats['queued'] >= limit:
                        return stats
        return stats

    @staticmethod
    def build_queue() -> Dict[str, Any]:
        return {
            'registration': QueueManager.build_registration_jobs(),
            'milestones': QueueManager.build_milestone_jobs(),
        }

    @staticmethod
    def get_queue_statistics() -> Dict[str, Any]:
        """Get queue statistics"""
        jobs = QueueJob.objects.all()
        by_milestone = {}
        for row in jobs.values('milestone', 'status').annotate(count=Count('id')).order_by('milestone'):
            by_milestone.setdefault(row['milestone'], {})[row['status']] = row['count']

        return {
            'total': jobs.count(),
            'pending': jobs.filter(status=QueueJob.STATUS_PENDING).count(),
            'sent': jobs.filter(status=QueueJob.STATUS_SENT).count(),
            'failed': jobs.filter(status=QueueJob.STATUS_FAILED).count(),
            'average_retry_count': round(jobs.aggregate(avg=Avg('retry_count'))['avg'] or 0, 2),
            'by_milestone': by_milestone,
            'visits': {
                row['status']: row['count']
                for row in Visit.objects.values('status').annotate(count=Count('id')).order_by('status')
            },
        }

    @staticmethod
    def get_visit_progress(visit_id: str) -> Optional[Dict[str, Any]]:
        visit = Visit.objects.filter(visit_id=visit_id).first()
        if visit is None:
            return None
        return {
            'visit_id': visit.visit_id,
            'status': visit.status,
            'blocked_reason': visit.blocked_reason,
            'task_progress': visit.task_progress,
            'jobs': [
                {
                    'id': job.pk,
                    'milestone': job.milestone,
                    'status': job.status,
                    'retry_count': job.retry_count,
                    'last_error': job.last_error,
                    'sent_at': job.sent_at,
                }
                for job in visit.queue_jobs.order_by('milestone')
            ],
        }
