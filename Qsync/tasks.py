"""
Celery tasks for the HIS -> insurance authority queue bridge.

The tasks handle:
- Incremental polling of each HIS milestone stream
- Building outbound queue jobs from visit progress
- Dispatching one queued job per tick to the authority
- Provider schedule refreshes (background and daily sweep)
- Validation issue rechecks and log cleanup

Every periodic task runs under a single-flight guard: a tick that fires while
the previous run of the same task is still busy is skipped. Failures are
logged with a traceback and returned as ``{'error': ...}``.
"""

import logging
import traceback

from celery import shared_task

from . import maintenanceUtils, quotaAggregator, taskValidator
from .cursorPoller import CursorPoller
from .dispatchWorker import DispatchWorker
from .queueManager import QueueManager
from .refreshCache import single_flight

logger = logging.getLogger(__name__)

SKIPPED = {'skipped': 'previous run still in progress'}


# ============================================================================
# PIPELINE TASKS
# ============================================================================

@shared_task
def poll_stream_task(stream):
    """
    Drain new rows of one HIS stream into the visit store.

    Args:
        stream (str): REGISTER, CHECKIN, START, FINISH, PHARMACY_STARTED or CLOSE

    Returns:
        dict: batch and row counts, or the error that rolled the batch back
    """
    try:
        with single_flight(f"poll:{stream}") as acquired:
            if not acquired:
                return SKIPPED
            return CursorPoller(stream).poll()
    except Exception as e:
        logger.error(f"Polling {stream} failed: {e}")
        logger.error(f"Traceback: {traceback.format_exc()}")
        return {'error': str(e)}


@shared_task
def build_queue_task():
    """Queue registrations of READY visits and milestones whose prerequisites were sent"""
    try:
        with single_flight('build-queue') as acquired:
            if not acquired:
                return SKIPPED
            results = QueueManager.build_queue()
            logger.info(f"Queue build: {results}")
            return results
    except Exception as e:
        logger.error(f"Queue build failed: {e}")
        logger.error(f"Traceback: {traceback.format_exc()}")
        return {'error': str(e)}


@shared_task
def dispatch_next_job_task():
    """Send the oldest PENDING job to the authority"""
    try:
        with single_flight('dispatch') as acquired:
            if not acquired:
                return SKIPPED
            return DispatchWorker().process_next()
    except Exception as e:
        logger.error(f"Dispatch failed: {e}")
        logger.error(f"Traceback: {traceback.format_exc()}")
        return {'error': str(e)}


# ============================================================================
# SCHEDULE TASKS
# ============================================================================

@shared_task
def refresh_schedule_task(clinic_id, schedule_date):
    """
    Fetch one clinic's provider schedules for one date from the authority.

    Queued by the quota aggregator when a snapshot is missing; the caller
    already holds the refresh lock, this task releases it.

    Args:
        clinic_id (str): authority clinic code
        schedule_date (str): YYYY-MM-DD
    """
    return quotaAggregator.run_schedule_refresh(clinic_id, schedule_date)


@shared_task
def refresh_schedules_sweep_task():
    """Daily refresh of every configured clinic for today and tomorrow"""
    try:
        with single_flight('refresh-sweep') as acquired:
            if not acquired:
                return SKIPPED
            results = quotaAggregator.refresh_schedules_sweep()
            summary = {
                'refreshed': sum(1 for r in results if 'rows' in r),
                'failed': sum(1 for r in results if 'error' in r),
                'skipped': sum(1 for r in results if 'skipped' in r),
            }
            logger.info(f"Schedule sweep: {summary}")
            return summary
    except Exception as e:
        logger.error(f"Schedule sweep failed: {e}")
        logger.error(f"Traceback: {traceback.format_exc()}")
        return {'error': str(e)}


# ============================================================================
# MAINTENANCE TASKS
# ============================================================================

@shared_task
def recheck_resolved_issues_task():
    try:
        with single_flight('recheck-issues') as acquired:
            if not acquired:
                return SKIPPED
            return taskValidator.recheck_resolved_issues()
    except Exception as e:
        logger.error(f"Issue recheck failed: {e}")
        logger.error(f"Traceback: {traceback.format_exc()}")
        return {'error': str(e)}


@shared_task
def cleanup_dispatch_logs_task():
    try:
        with single_flight('cleanup-logs') as acquired:
            if not acquired:
                return SKIPPED
            return maintenanceUtils.cleanup_dispatch_logs()
    except Exception as e:
        logger.error(f"Cleanup task failed: {e}")
        logger.error(f"Traceback: {traceback.format_exc()}")
        return {'error': str(e)}
