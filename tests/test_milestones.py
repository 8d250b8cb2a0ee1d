from datetime import datetime

import pytest

from Qsync.milestones import (
    IllegalTransition, Milestone, ProgressMap, ProgressStatus, check_dependency,
)

EVENT_AT = datetime(2026, 1, 24, 8, 15)


def sent_map(*milestones):
    progress = ProgressMap()
    progress.apply(Milestone.REGISTER, ProgressStatus.READY)
    for milestone in milestones:
        if milestone != Milestone.REGISTER:
            progress.apply(milestone, ProgressStatus.DRAFT, event_at=EVENT_AT)
        progress.apply(milestone, ProgressStatus.SENT)
    return progress


def test_registration_is_never_draft():
    with pytest.raises(IllegalTransition):
        ProgressMap().apply(Milestone.REGISTER, ProgressStatus.DRAFT)


@pytest.mark.parametrize('status', [ProgressStatus.READY, ProgressStatus.BLOCKED])
def test_ready_and_blocked_are_registration_only(status):
    with pytest.raises(IllegalTransition):
        ProgressMap().apply(Milestone.CHECKIN, status)


def test_sent_requires_prerequisites():
    progress = sent_map(Milestone.REGISTER)
    progress.apply(Milestone.START, ProgressStatus.DRAFT, event_at=EVENT_AT)

    with pytest.raises(IllegalTransition):
        progress.apply(Milestone.START, ProgressStatus.SENT)


def test_sent_is_terminal_and_resend_is_a_no_op():
    progress = sent_map(Milestone.REGISTER)
    first = progress.get(Milestone.REGISTER)

    assert progress.apply(Milestone.REGISTER, ProgressStatus.SENT) == first
    with pytest.raises(IllegalTransition):
        progress.apply(Milestone.REGISTER, ProgressStatus.FAILED, reason='late error')


def test_blocked_registration_cannot_be_sent():
    progress = ProgressMap()
    progress.apply(Milestone.REGISTER, ProgressStatus.BLOCKED, reason='No schedule')

    with pytest.raises(IllegalTransition):
        progress.apply(Milestone.REGISTER, ProgressStatus.SENT)


def test_close_accepts_finish_or_pharmacy():
    via_pharmacy = sent_map(Milestone.REGISTER, Milestone.CHECKIN, Milestone.START,
                            Milestone.FINISH, Milestone.PHARMACY_STARTED)
    via_finish = sent_map(Milestone.REGISTER, Milestone.CHECKIN, Milestone.START, Milestone.FINISH)
    registered_only = sent_map(Milestone.REGISTER)

    assert check_dependency(via_pharmacy, Milestone.CLOSE).satisfied
    assert check_dependency(via_finish, Milestone.CLOSE).satisfied
    check = check_dependency(registered_only, Milestone.CLOSE)
    assert not check.satisfied
    assert check.missing == Milestone.FINISH


def test_missing_registration_is_reported_first():
    progress = ProgressMap()
    progress.apply(Milestone.REGISTER, ProgressStatus.READY)

    check = check_dependency(progress, Milestone.START)

    assert check.missing == Milestone.REGISTER


def test_json_round_trip_keeps_event_time_and_string_keys():
    progress = sent_map(Milestone.REGISTER)
    progress.apply(Milestone.CHECKIN, ProgressStatus.DRAFT, event_at=EVENT_AT)

    raw = progress.to_json()
    restored = ProgressMap.from_json(raw)

    assert set(raw) == {'1', '3'}
    assert raw['3'] == {'status': 'DRAFT', 'event_at': '2026-01-24T08:15:00'}
    assert restored.get(Milestone.CHECKIN).event_at == EVENT_AT
    assert restored.is_sent(Milestone.REGISTER)


def test_event_time_survives_later_transitions():
    progress = sent_map(Milestone.REGISTER)
    progress.apply(Milestone.CHECKIN, ProgressStatus.DRAFT, event_at=EVENT_AT)
    progress.apply(Milestone.CHECKIN, ProgressStatus.FAILED, reason='timeout')

    entry = progress.apply(Milestone.CHECKIN, ProgressStatus.SENT)

    assert entry.event_at == EVENT_AT
    assert entry.failed_reason is None
