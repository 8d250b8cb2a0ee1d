from datetime import timedelta

import pytest
from django.utils import timezone

from Qsync import taskValidator
from Qsync.milestones import Milestone, ProgressStatus
from Qsync.models import ValidationIssue

pytestmark = pytest.mark.django_db


def test_violation_is_logged_once_while_pending(make_visit):
    visit = make_visit(progress={Milestone.REGISTER: ProgressStatus.SENT, Milestone.CHECKIN: ProgressStatus.DRAFT,
                                 Milestone.START: ProgressStatus.DRAFT})

    first = taskValidator.check_dependency(visit, Milestone.START)
    second = taskValidator.check_dependency(visit, Milestone.START)

    assert not first.satisfied and not second.satisfied
    issue = ValidationIssue.objects.get()
    assert issue.reason == 'start_checkin_not_sent'
    assert issue.expected_milestone == int(Milestone.CHECKIN)


def test_unsent_registration_is_reported_before_other_gaps(make_visit):
    visit = make_visit(progress={Milestone.FINISH: ProgressStatus.DRAFT})

    taskValidator.check_dependency(visit, Milestone.FINISH)

    assert ValidationIssue.objects.get().reason == 'finish_register_not_sent'


def test_satisfied_dependency_resolves_open_issues(make_visit):
    visit = make_visit(progress={Milestone.REGISTER: ProgressStatus.SENT, Milestone.CHECKIN: ProgressStatus.DRAFT,
                                 Milestone.START: ProgressStatus.DRAFT})
    taskValidator.check_dependency(visit, Milestone.START)

    visit.set_progress(Milestone.CHECKIN, ProgressStatus.SENT)
    check = taskValidator.check_dependency(visit, Milestone.START)

    issue = ValidationIssue.objects.get()
    assert check.satisfied
    assert issue.status == ValidationIssue.STATUS_RESOLVED
    assert issue.resolved_at is not None


def test_check_without_recording_leaves_no_issue(make_visit):
    visit = make_visit(progress={Milestone.CHECKIN: ProgressStatus.DRAFT})

    assert not taskValidator.check_dependency(visit, Milestone.CHECKIN, record=False).satisfied
    assert not ValidationIssue.objects.exists()


def test_resolve_and_ignore_are_operator_actions(make_visit):
    visit = make_visit(progress={Milestone.CHECKIN: ProgressStatus.DRAFT, Milestone.START: ProgressStatus.DRAFT})
    checkin_issue = taskValidator.log_issue(visit.visit_id, Milestone.CHECKIN, Milestone.REGISTER)
    start_issue = taskValidator.log_issue(visit.visit_id, Milestone.START, Milestone.REGISTER)

    taskValidator.resolve_issue(checkin_issue.pk, notes='Sent manually')
    taskValidator.ignore_issue(start_issue.pk)

    checkin_issue.refresh_from_db()
    start_issue.refresh_from_db()
    assert checkin_issue.status == ValidationIssue.STATUS_RESOLVED
    assert checkin_issue.notes == 'Sent manually'
    assert start_issue.status == ValidationIssue.STATUS_IGNORED
    assert taskValidator.pending_issues_by_visit() == []


def test_pending_issues_are_grouped_by_visit(make_visit):
    first = make_visit(visit_id='V1', progress={Milestone.CHECKIN: ProgressStatus.DRAFT,
                                                Milestone.START: ProgressStatus.DRAFT})
    second = make_visit(visit_id='V2', progress={Milestone.CHECKIN: ProgressStatus.DRAFT})
    taskValidator.log_issue(first.visit_id, Milestone.CHECKIN, Milestone.REGISTER)
    taskValidator.log_issue(first.visit_id, Milestone.START, Milestone.REGISTER)
    taskValidator.log_issue(second.visit_id, Milestone.CHECKIN, Milestone.REGISTER)

    groups = {group['visit_id']: group for group in taskValidator.pending_issues_by_visit()}

    assert groups['V1']['issue_count'] == 2
    assert groups['V2']['issue_count'] == 1
    assert {issue['reason'] for issue in groups['V1']['issues']} == {
        'checkin_register_not_sent', 'start_register_not_sent',
    }


def test_recheck_reopens_issue_whose_dependency_is_still_missing(make_visit, settings):
    settings.QSYNC_RESOLVED_RECHECK_MINUTES = 10
    stale = make_visit(visit_id='V1', progress={Milestone.CHECKIN: ProgressStatus.DRAFT})
    fixed = make_visit(visit_id='V2', progress={Milestone.REGISTER: ProgressStatus.SENT,
                                                Milestone.CHECKIN: ProgressStatus.DRAFT})
    for visit in (stale, fixed):
        issue = taskValidator.log_issue(visit.visit_id, Milestone.CHECKIN, Milestone.REGISTER)
        taskValidator.resolve_issue(issue.pk)
    ValidationIssue.objects.update(resolved_at=timezone.now() - timedelta(minutes=30))

    stats = taskValidator.recheck_resolved_issues()

    assert stats == {'checked': 2, 'reopened': 1}
    assert ValidationIssue.objects.get(visit_id='V1').status == ValidationIssue.STATUS_PENDING
    assert ValidationIssue.objects.get(visit_id='V2').status == ValidationIssue.STATUS_RESOLVED


def test_recently_resolved_issue_is_not_rechecked(make_visit):
    visit = make_visit(progress={Milestone.CHECKIN: ProgressStatus.DRAFT})
    issue = taskValidator.log_issue(visit.visit_id, Milestone.CHECKIN, Milestone.REGISTER)
    taskValidator.resolve_issue(issue.pk)

    assert taskValidator.recheck_resolved_issues() == {'checked': 0, 'reopened': 0}
