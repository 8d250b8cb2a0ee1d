import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from django.utils import timezone

from . import hisSource
from .milestones import IllegalTransition, Milestone, ProgressStatus
from .models import ScheduleSnapshot, Visit
from .quotaAggregator import calculate_quota, find_schedule, quota_snapshot
from .timeUtils import format_hours, to_date

logger = logging.getLogger(__name__)

MISSING_CLINIC_MAPPING = "Clinic has no authority code in maping_poli_bpjs"
MISSING_PROVIDER_MAPPING = "Provider has no authority code in maping_dokter_dpjpvclaim"


@dataclass
class ScheduleValidation:
    valid: bool
    blocked_reason: Optional[str] = None
    schedule: Optional[ScheduleSnapshot] = None

    @property
    def status(self) -> ProgressStatus:
        return ProgressStatus.READY if self.valid else ProgressStatus.BLOCKED


def auto_fetch_schedule(clinic_id: str, provider_id: str, schedule_date) -> int:
    """
    Infer a snapshot from the HIS weekly schedule (jadwal) for the weekday of
    ``schedule_date``. Rows without practice hours are not stored.

    Returns:
        number of snapshot rows created
    """
    target = to_date(schedule_date)
    created_count = 0
    for row in hisSource.fetch_schedule_by_weekday(clinic_id, provider_id, target):
        start = format_hours(row.get('jam_mulai'))
        end = format_hours(row.get('jam_selesai'))
        if not start or not end:
            logger.warning(f"HIS schedule row for {clinic_id}/{provider_id} has no practice hours, skipped")
            continue

        _, created = ScheduleSnapshot.objects.get_or_create(
            clinic_id=clinic_id,
            provider_id=provider_id,
            schedule_date=target,
            start_time=start,
            defaults={
                'end_time': end,
                'quota': int(row.get('kuota') or 0),
                'clinic_name': row.get('clinic_name') or '',
                'provider_name': row.get('provider_name') or '',
                'source': ScheduleSnapshot.SOURCE_AUTO_FETCH,
                'fetched_at': timezone.now(),
            },
        )
        if created:
            created_count += 1

    if created_count:
        logger.info(f"Auto-fetched {created_count} schedule rows for {clinic_id}/{provider_id} {target}")
    return created_count


def validate(clinic_id: str, provider_id: str, schedule_date, auto_fetch: bool = True) -> ScheduleValidation:
    """
    Decide whether a registration for this slot can be reported.

    A slot is valid when a snapshot with practice hours exists, after an
    auto-fetch from the HIS when ``auto_fetch`` is set. Zero capacity is valid.
    """
    if not clinic_id:
        return ScheduleValidation(valid=False, blocked_reason=MISSING_CLINIC_MAPPING)
    if not provider_id:
        return ScheduleValidation(valid=False, blocked_reason=MISSING_PROVIDER_MAPPING)

    schedule = find_schedule(clinic_id, provider_id, schedule_date)
    if schedule is None and auto_fetch:
        auto_fetch_schedule(clinic_id, provider_id, schedule_date)
        schedule = find_schedule(clinic_id, provider_id, schedule_date)

    if schedule is None:
        return ScheduleValidation(
            valid=False,
            blocked_reason=(
                f"No schedule for clinic {clinic_id} provider {provider_id} on {to_date(schedule_date)}; "
                f"check jadwal and the maping_poli_bpjs / maping_dokter_dpjpvclaim mappings"
            ),
        )
    if not schedule.practice_hours:
        return ScheduleValidation(
            valid=False,
            blocked_reason=f"Schedule for {clinic_id}/{provider_id} on {to_date(schedule_date)} has no practice hours",
            schedule=schedule,
        )
    return ScheduleValidation(valid=True, schedule=schedule)


def revalidate_visit(visit_id: str) -> Dict[str, Any]:
    """Re-run schedule validation for one unsent registration"""
    try:
        visit = Visit.objects.get(visit_id=visit_id)
    except Visit.DoesNotExist:
        return {'visit_id': visit_id, 'error': 'Visit not found'}

    previous = visit.status
    if previous not in (ProgressStatus.READY.value, ProgressStatus.BLOCKED.value):
        return {'visit_id': visit_id, 'status': previous, 'changed': False,
                'message': f'Registration is {previous}, nothing to revalidate'}

    result = validate(visit.clinic_id, visit.provider_id, visit.visit_date)
    snapshot = dict(visit.payload_snapshot or {})
    if result.valid and not snapshot.get('quota'):
        quota = calculate_quota(visit.clinic_id, visit.provider_id, visit.visit_date)
        if quota is not None:
            snapshot['quota'] = quota_snapshot(quota, visit.queue_sequence)
            snapshot.setdefault('clinic_name', quota.clinic_name)
            snapshot.setdefault('provider_name', quota.provider_name)
            visit.payload_snapshot = snapshot
            visit.save(update_fields=['payload_snapshot', 'updated_at'])

    try:
        visit.set_progress(Milestone.REGISTER, result.status, reason=result.blocked_reason)
    except IllegalTransition as e:
        logger.error(f"Cannot revalidate {visit_id}: {e}")
        return {'visit_id': visit_id, 'error': str(e)}

    logger.info(f"Revalidated {visit_id}: {previous} -> {visit.status}")
    return {
        'visit_id': visit_id,
        'status': visit.status,
        'changed': visit.status != previous,
        'blocked_reason': visit.blocked_reason,
    }


def revalidate_blocked_visits(limit: int = 100) -> List[Dict[str, Any]]:
    visit_ids = Visit.objects.filter(
        status=ProgressStatus.BLOCKED.value,
    ).order_by('registered_at').values_list('visit_id', flat=True)[:limit]
    return [revalidate_visit(visit_id) for visit_id in visit_ids]
