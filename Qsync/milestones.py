"""
Milestones and the per-visit progress state machine.

A visit reports its milestones to the insurance authority one at a time and in
order. The progress map stored on ``Visit.task_progress`` is a sparse table
keyed by milestone id::

    {
        "1": {"status": "SENT", "sent_at": "2026-01-24T08:01:10"},
        "3": {"status": "DRAFT", "event_at": "2026-01-24T08:15:00"},
    }

All mutations go through :meth:`ProgressMap.apply`, which asks
:func:`check_transition` whether the move is legal. Ordering rules live in a
single table, :data:`DEPENDENCIES`.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum, IntEnum
from typing import Dict, Iterator, Optional, Tuple


class IllegalTransition(ValueError):
    """Raised when a progress entry is asked to move to a state it cannot reach."""


class Milestone(IntEnum):
    REGISTER = 1
    CHECKIN = 3
    START = 4
    FINISH = 5
    PHARMACY_STARTED = 6
    CLOSE = 7

    @property
    def label(self) -> str:
        return self.name.replace('_', ' ').title()


class ProgressStatus(str, Enum):
    DRAFT = 'DRAFT'
    READY = 'READY'
    BLOCKED = 'BLOCKED'
    SENT = 'SENT'
    FAILED = 'FAILED'


REGISTER_ONLY_STATUSES = (ProgressStatus.READY, ProgressStatus.BLOCKED)

# milestone -> requirement groups. Every group must be satisfied; a group is
# satisfied when any of its members is SENT. The first member of a group is the
# one reported as missing.
DEPENDENCIES: Dict[Milestone, Tuple[Tuple[Milestone, ...], ...]] = {
    Milestone.CHECKIN: ((Milestone.REGISTER,),),
    Milestone.START: ((Milestone.REGISTER,), (Milestone.CHECKIN,)),
    Milestone.FINISH: ((Milestone.REGISTER,), (Milestone.START,)),
    Milestone.PHARMACY_STARTED: ((Milestone.REGISTER,), (Milestone.FINISH,)),
    Milestone.CLOSE: ((Milestone.REGISTER,), (Milestone.FINISH, Milestone.PHARMACY_STARTED)),
}

FOLLOW_UP_MILESTONES = tuple(m for m in Milestone if m != Milestone.REGISTER)


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec='seconds') if value else None


def _from_iso(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace('Z', ''))


@dataclass(frozen=True)
class ProgressEntry:
    status: ProgressStatus
    blocked_reason: Optional[str] = None
    sent_at: Optional[datetime] = None
    failed_reason: Optional[str] = None
    event_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, str]:
        data = {'status': self.status.value}
        if self.blocked_reason:
            data['blocked_reason'] = self.blocked_reason
        if self.sent_at:
            data['sent_at'] = _to_iso(self.sent_at)
        if self.failed_reason:
            data['failed_reason'] = self.failed_reason
        if self.event_at:
            data['event_at'] = _to_iso(self.event_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'ProgressEntry':
        return cls(
            status=ProgressStatus(data['status']),
            blocked_reason=data.get('blocked_reason'),
            sent_at=_from_iso(data.get('sent_at')),
            failed_reason=data.get('failed_reason'),
            event_at=_from_iso(data.get('event_at')),
        )


@dataclass(frozen=True)
class DependencyCheck:
    satisfied: bool
    missing: Optional[Milestone] = None


class ProgressMap:
    """Typed view over the JSON progress map of one visit."""

    def __init__(self, entries: Optional[Dict[Milestone, ProgressEntry]] = None):
        self._entries: Dict[Milestone, ProgressEntry] = dict(entries or {})

    @classmethod
    def from_json(cls, raw) -> 'ProgressMap':
        if not raw:
            return cls()
        if isinstance(raw, str):
            raw = json.loads(raw)
        entries = {}
        for key, value in raw.items():
            entries[Milestone(int(key))] = ProgressEntry.from_dict(value)
        return cls(entries)

    def to_json(self) -> Dict[str, Dict[str, str]]:
        return {str(int(m)): entry.to_dict() for m, entry in sorted(self._entries.items())}

    def get(self, milestone: Milestone) -> Optional[ProgressEntry]:
        return self._entries.get(Milestone(milestone))

    def status(self, milestone: Milestone) -> Optional[ProgressStatus]:
        entry = self.get(milestone)
        return entry.status if entry else None

    def is_sent(self, milestone: Milestone) -> bool:
        return self.status(milestone) == ProgressStatus.SENT

    def __contains__(self, milestone) -> bool:
        return Milestone(milestone) in self._entries

    def __iter__(self) -> Iterator[Milestone]:
        return iter(sorted(self._entries))

    def items(self):
        return sorted(self._entries.items())

    def apply(self, milestone: Milestone, status: ProgressStatus, *, reason: Optional[str] = None,
              event_at: Optional[datetime] = None, now: Optional[datetime] = None) -> ProgressEntry:
        """Move ``milestone`` to ``status`` and return the new entry.

        The event timestamp is carried over from the previous entry when not
        given, so later payloads still know when the milestone happened.
        """
        milestone = Milestone(milestone)
        status = ProgressStatus(status)
        check_transition(self, milestone, status)

        previous = self.get(milestone)
        if event_at is None and previous is not None:
            event_at = previous.event_at

        entry = ProgressEntry(
            status=status,
            blocked_reason=reason if status == ProgressStatus.BLOCKED else None,
            sent_at=(now or datetime.now()).replace(microsecond=0) if status == ProgressStatus.SENT else None,
            failed_reason=reason if status == ProgressStatus.FAILED else None,
            event_at=event_at,
        )
        if previous is not None and previous.status == ProgressStatus.SENT and status == ProgressStatus.SENT:
            entry = previous
        self._entries[milestone] = entry
        return entry


def check_dependency(progress: ProgressMap, milestone: Milestone) -> DependencyCheck:
    """Report whether every prerequisite of ``milestone`` has been SENT."""
    for group in DEPENDENCIES.get(Milestone(milestone), ()):
        if not any(progress.is_sent(required) for required in group):
            return DependencyCheck(satisfied=False, missing=group[0])
    return DependencyCheck(satisfied=True)


def check_transition(progress: ProgressMap, milestone: Milestone, new_status: ProgressStatus) -> None:
    """Raise :class:`IllegalTransition` unless ``milestone`` may move to ``new_status``."""
    milestone = Milestone(milestone)
    current = progress.status(milestone)

    if new_status in REGISTER_ONLY_STATUSES and milestone != Milestone.REGISTER:
        raise IllegalTransition(f"Milestone {int(milestone)} cannot be {new_status.value}")
    if new_status == ProgressStatus.DRAFT and milestone == Milestone.REGISTER:
        raise IllegalTransition("Registration is either READY or BLOCKED, never DRAFT")

    if current == ProgressStatus.SENT:
        if new_status == ProgressStatus.SENT:
            return
        raise IllegalTransition(f"Milestone {int(milestone)} was already SENT")

    if new_status == ProgressStatus.SENT:
        if current is None:
            raise IllegalTransition(f"Milestone {int(milestone)} has no progress entry to send")
        if current == ProgressStatus.BLOCKED:
            raise IllegalTransition("A BLOCKED registration cannot be sent")
        dependency = check_dependency(progress, milestone)
        if not dependency.satisfied:
            raise IllegalTransition(
                f"Milestone {int(milestone)} requires milestone {int(dependency.missing)} to be SENT first"
            )

    if new_status == ProgressStatus.FAILED and current is None:
        raise IllegalTransition(f"Milestone {int(milestone)} has no progress entry to fail")
