import logging
from datetime import timedelta
from typing import Any, Dict

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from .milestones import IllegalTransition, Milestone, ProgressStatus
from .models import DispatchLog, QueueJob, Visit

logger = logging.getLogger(__name__)


# ============================================================================
# OPERATOR DATA REPAIR
# ============================================================================

def delete_stuck_queue_jobs(visit_id: str) -> Dict[str, Any]:
    """
    Remove every unsent job of a visit so the queue builder rebuilds it.

    FAILED progress entries are reset (READY for the registration, DRAFT for
    later milestones) so they become eligible again.

    Returns:
        dict: deleted job count and the milestones that were reset
    """
    try:
        visit = Visit.objects.get(visit_id=visit_id)
    except Visit.DoesNotExist:
        return {'visit_id': visit_id, 'error': 'Visit not found'}

    with transaction.atomic():
        stuck = visit.queue_jobs.exclude(status=QueueJob.STATUS_SENT)
        deleted = stuck.count()
        stuck.delete()

        reset = []
        for milestone, entry in visit.progress.items():
            if entry.status != ProgressStatus.FAILED:
                continue
            target = ProgressStatus.READY if milestone == Milestone.REGISTER else ProgressStatus.DRAFT
            try:
                visit.set_progress(milestone, target)
                reset.append(int(milestone))
            except IllegalTransition as e:
                logger.error(f"Cannot reset milestone {int(milestone)} of {visit_id}: {e}")

    logger.info(f"Deleted {deleted} stuck job(s) for {visit_id}, reset milestones {reset}")
    return {'visit_id': visit_id, 'deleted': deleted, 'reset': reset}


# ============================================================================
# HOUSEKEEPING
# ============================================================================

def cleanup_dispatch_logs(retention_days: int = None) -> Dict[str, int]:
    """Delete request/response logs of SENT jobs older than the retention window"""
    retention_days = retention_days or settings.QSYNC_LOG_RETENTION_DAYS
    cutoff = timezone.now() - timedelta(days=retention_days)
    deleted, _ = DispatchLog.objects.filter(
        created_at__lt=cutoff,
        queue_job__status=QueueJob.STATUS_SENT,
    ).delete()
    logger.info(f"Cleanup completed: {deleted} dispatch logs older than {retention_days} days")
    return {'logs_deleted': deleted}
