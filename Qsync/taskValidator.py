import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from django.conf import settings
from django.utils import timezone

from . import milestones
from .milestones import DEPENDENCIES, DependencyCheck, Milestone
from .models import ValidationIssue, Visit

logger = logging.getLogger(__name__)

REASON_CODES = {
    (Milestone.CHECKIN, Milestone.REGISTER): 'checkin_register_not_sent',
    (Milestone.START, Milestone.REGISTER): 'start_register_not_sent',
    (Milestone.START, Milestone.CHECKIN): 'start_checkin_not_sent',
    (Milestone.FINISH, Milestone.REGISTER): 'finish_register_not_sent',
    (Milestone.FINISH, Milestone.START): 'finish_start_not_sent',
    (Milestone.PHARMACY_STARTED, Milestone.REGISTER): 'pharmacy_register_not_sent',
    (Milestone.PHARMACY_STARTED, Milestone.FINISH): 'pharmacy_finish_not_sent',
    (Milestone.CLOSE, Milestone.REGISTER): 'close_register_not_sent',
    (Milestone.CLOSE, Milestone.FINISH): 'close_finish_not_sent',
}


def get_reason(milestone, missing) -> str:
    return REASON_CODES.get((Milestone(milestone), Milestone(missing)), 'unknown')


def expected_predecessor(milestone) -> Optional[Milestone]:
    """The milestone that normally comes right before ``milestone``"""
    groups = DEPENDENCIES.get(Milestone(milestone))
    return groups[-1][0] if groups else None


def log_issue(visit_id: str, milestone, missing, created_by: str = 'system', notes: str = None):
    """Record an ordering violation unless the same one is already PENDING"""
    reason = get_reason(milestone, missing)
    existing = ValidationIssue.objects.filter(
        visit_id=visit_id, reason=reason, status=ValidationIssue.STATUS_PENDING,
    ).first()
    if existing:
        return existing

    expected = expected_predecessor(milestone)
    issue = ValidationIssue.objects.create(
        visit_id=visit_id,
        milestone=int(milestone),
        expected_milestone=int(expected) if expected is not None else None,
        missing_milestone=int(missing),
        reason=reason,
        created_by=created_by,
        notes=notes,
    )
    logger.warning(f"Validation issue for {visit_id}: {reason} (milestone {int(milestone)})")
    return issue


def auto_resolve(visit_id: str, milestone) -> int:
    return ValidationIssue.objects.filter(
        visit_id=visit_id,
        milestone=int(milestone),
        status=ValidationIssue.STATUS_PENDING,
    ).update(status=ValidationIssue.STATUS_RESOLVED, resolved_at=timezone.now(),
             notes='Dependency satisfied')


def check_dependency(visit: Visit, milestone, record: bool = True, created_by: str = 'system') -> DependencyCheck:
    """
    Check whether every prerequisite of ``milestone`` was SENT for this visit.

    A violation is recorded as a ValidationIssue when ``record`` is set; a
    satisfied check resolves the visit's open issues for that milestone.
    """
    check = milestones.check_dependency(visit.progress, milestone)
    if check.satisfied:
        resolved = auto_resolve(visit.visit_id, milestone)
        if resolved:
            logger.info(f"Auto-resolved {resolved} issue(s) for {visit.visit_id} milestone {int(milestone)}")
    elif record:
        log_issue(visit.visit_id, milestone, check.missing, created_by=created_by)
    return check


def resolve_issue(issue_id: int, notes: str = None) -> ValidationIssue:
    issue = ValidationIssue.objects.get(pk=issue_id)
    issue.status = ValidationIssue.STATUS_RESOLVED
    issue.resolved_at = timezone.now()
    issue.notes = notes or issue.notes
    issue.save(update_fields=['status', 'resolved_at', 'notes'])
    logger.info(f"Validation issue {issue_id} marked as resolved")
    return issue


def ignore_issue(issue_id: int, notes: str = None) -> ValidationIssue:
    issue = ValidationIssue.objects.get(pk=issue_id)
    issue.status = ValidationIssue.STATUS_IGNORED
    issue.resolved_at = timezone.now()
    issue.notes = notes or 'Marked as ignored'
    issue.save(update_fields=['status', 'resolved_at', 'notes'])
    logger.info(f"Validation issue {issue_id} marked as ignored")
    return issue


def pending_issues_by_visit() -> List[Dict[str, Any]]:
    """PENDING issues grouped per visit, most recently detected first"""
    grouped = {}
    for issue in ValidationIssue.objects.filter(status=ValidationIssue.STATUS_PENDING).order_by('-detected_at'):
        group = grouped.setdefault(issue.visit_id, {
            'visit_id': issue.visit_id,
            'issues': [],
            'first_detected': issue.detected_at,
            'last_detected': issue.detected_at,
            'issue_count': 0,
        })
        group['issues'].append({
            'id': issue.pk,
            'milestone': issue.milestone,
            'expected_milestone': issue.expected_milestone,
            'missing_milestone': issue.missing_milestone,
            'reason': issue.reason,
            'detected_at': issue.detected_at,
            'created_by': issue.created_by,
            'notes': issue.notes,
        })
        group['first_detected'] = min(group['first_detected'], issue.detected_at)
        group['last_detected'] = max(group['last_detected'], issue.detected_at)
        group['issue_count'] += 1
    return list(grouped.values())


def recheck_resolved_issues() -> Dict[str, int]:
    """
    Reopen RESOLVED issues whose dependency is still unsatisfied.

    Only issues resolved more than QSYNC_RESOLVED_RECHECK_MINUTES ago and
    within the queue lookback window are considered.
    """
    now = timezone.now()
    issues = ValidationIssue.objects.filter(
        status=ValidationIssue.STATUS_RESOLVED,
        resolved_at__lte=now - timedelta(minutes=settings.QSYNC_RESOLVED_RECHECK_MINUTES),
        resolved_at__gte=now - timedelta(days=settings.QSYNC_QUEUE_LOOKBACK_DAYS),
    )
    visits = Visit.objects.in_bulk(set(issues.values_list('visit_id', flat=True)), field_name='visit_id')

    stats = {'checked': 0, 'reopened': 0}
    for issue in issues:
        visit = visits.get(issue.visit_id)
        if visit is None:
            continue
        stats['checked'] += 1
        if milestones.check_dependency(visit.progress, issue.milestone).satisfied:
            continue
        duplicate = ValidationIssue.objects.filter(
            visit_id=issue.visit_id, reason=issue.reason, status=ValidationIssue.STATUS_PENDING,
        ).exists()
        if duplicate:
            continue
        issue.status = ValidationIssue.STATUS_PENDING
        issue.resolved_at = None
        issue.notes = f"Reopened {now:%Y-%m-%d %H:%M}: dependency still not satisfied"
        issue.save(update_fields=['status', 'resolved_at', 'notes'])
        stats['reopened'] += 1

    if stats['reopened']:
        logger.warning(f"Reopened {stats['reopened']} validation issue(s)")
    return stats
