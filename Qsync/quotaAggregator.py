"""
Remaining-capacity computation for a (clinic, provider, date) slot.

Capacity comes from the cached ScheduleSnapshot; the registered count is a live
aggregate against the HIS. A missing snapshot is refreshed from the authority in
the background, guarded by the refresh lock in :mod:`Qsync.refreshCache` so a
burst of registrations for the same clinic/date triggers one fetch only.
"""

import logging
import math
import time
import traceback
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from django.conf import settings
from django.utils import timezone

from . import hisSource, refreshCache
from .authorityClient import AuthorityClient
from .models import ScheduleSnapshot
from .timeUtils import compose_local_datetime, format_hours, to_date, to_epoch_millis

logger = logging.getLogger(__name__)


@dataclass
class QuotaInfo:
    clinic_id: str
    provider_id: str
    schedule_date: str
    practice_hours: str
    start_time: str
    capacity: int
    registered: int
    remaining: int
    non_insured_capacity: int
    non_insured_remaining: int
    clinic_name: str = ''
    provider_name: str = ''
    is_fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def find_schedule(clinic_id: str, provider_id: str, schedule_date) -> Optional[ScheduleSnapshot]:
    return ScheduleSnapshot.objects.filter(
        clinic_id=clinic_id,
        provider_id=provider_id,
        schedule_date=to_date(schedule_date),
    ).order_by('start_time').first()


def get_last_known_schedule(clinic_id: str, provider_id: str, schedule_date) -> Optional[ScheduleSnapshot]:
    """
    Most recently fetched snapshot within the fallback window, re-dated to
    ``schedule_date``. The returned object is never saved.
    """
    target = to_date(schedule_date)
    window = timedelta(days=settings.QSYNC_FALLBACK_WINDOW_DAYS)
    snapshot = ScheduleSnapshot.objects.filter(
        clinic_id=clinic_id,
        provider_id=provider_id,
        schedule_date__gte=target - window,
        schedule_date__lte=target + window,
    ).order_by('-fetched_at', '-schedule_date').first()
    if snapshot is None:
        return None

    logger.info(f"Using last-known schedule {snapshot.schedule_date} for {clinic_id}/{provider_id} {target}")
    snapshot.pk = None
    snapshot.schedule_date = target
    return snapshot


def _wait_for_refresh(clinic_id: str, provider_id: str, schedule_date) -> Optional[ScheduleSnapshot]:
    deadline = time.monotonic() + settings.QSYNC_REFRESH_WAIT_SECONDS
    while time.monotonic() < deadline:
        time.sleep(settings.QSYNC_REFRESH_POLL_INTERVAL)
        schedule = find_schedule(clinic_id, provider_id, schedule_date)
        if schedule is not None:
            return schedule
        lock = refreshCache.get_refresh_lock(clinic_id, schedule_date)
        if not lock or not lock.get('refreshing'):
            return find_schedule(clinic_id, provider_id, schedule_date)
    return None


def calculate_quota(clinic_id: str, provider_id: str, schedule_date) -> Optional[QuotaInfo]:
    """
    Compute capacity and remaining quota for one provider slot.

    Returns:
        QuotaInfo, or None when neither a snapshot nor a fallback exists
    """
    schedule = find_schedule(clinic_id, provider_id, schedule_date)
    is_fallback = False

    if schedule is None:
        lock = refreshCache.get_refresh_lock(clinic_id, schedule_date)
        if refreshCache.is_circuit_open(clinic_id, schedule_date):
            logger.warning(f"Circuit open for {clinic_id} {schedule_date}, using last-known schedule")
        elif lock and lock.get('refreshing'):
            logger.info(f"Refresh in flight for {clinic_id} {schedule_date}, waiting")
            schedule = _wait_for_refresh(clinic_id, provider_id, schedule_date)
        else:
            logger.info(f"No schedule for {clinic_id}/{provider_id} {schedule_date}, refreshing in background")
            if trigger_refresh_async(clinic_id, schedule_date):
                # an eager or very fast worker may already have stored it
                schedule = find_schedule(clinic_id, provider_id, schedule_date)

        if schedule is None:
            schedule = get_last_known_schedule(clinic_id, provider_id, schedule_date)
            is_fallback = schedule is not None

    if schedule is None:
        logger.warning(f"No schedule and no fallback for {clinic_id}/{provider_id} {schedule_date}")
        return None

    registered = hisSource.count_competing_registrations(clinic_id, provider_id, schedule_date)
    capacity = max(0, schedule.quota or 0)
    non_insured_capacity = math.floor(capacity * settings.QSYNC_NON_INSURED_QUOTA_RATIO)

    return QuotaInfo(
        clinic_id=clinic_id,
        provider_id=provider_id,
        schedule_date=to_date(schedule_date).isoformat(),
        practice_hours=schedule.practice_hours,
        start_time=format_hours(schedule.start_time) if schedule.start_time else '',
        capacity=capacity,
        registered=registered,
        remaining=max(0, capacity - registered),
        non_insured_capacity=non_insured_capacity,
        non_insured_remaining=max(0, non_insured_capacity - registered),
        clinic_name=schedule.clinic_name,
        provider_name=schedule.provider_name,
        is_fallback=is_fallback,
    )


def estimate_service_time(schedule_date, start_time, queue_sequence: int) -> int:
    """Practice start plus QSYNC_MINUTES_PER_PATIENT per queue position, in epoch ms"""
    start = compose_local_datetime(schedule_date, start_time)
    estimated = start + timedelta(minutes=(queue_sequence or 0) * settings.QSYNC_MINUTES_PER_PATIENT)
    return to_epoch_millis(estimated)


def quota_snapshot(quota: QuotaInfo, queue_sequence: int) -> Dict[str, Any]:
    """Figures frozen onto a visit when it is registered"""
    estimated = 0
    if quota.start_time:
        estimated = estimate_service_time(quota.schedule_date, quota.start_time, queue_sequence)
    return {
        'practice_hours': quota.practice_hours,
        'capacity': quota.capacity,
        'remaining': quota.remaining,
        'non_insured_capacity': quota.non_insured_capacity,
        'non_insured_remaining': quota.non_insured_remaining,
        'estimated_service_ms': estimated,
        'is_fallback': quota.is_fallback,
    }


def trigger_refresh_async(clinic_id: str, schedule_date) -> bool:
    """Queue a background authority fetch unless one is already in flight"""
    if not refreshCache.set_refresh_lock(clinic_id, schedule_date):
        logger.info(f"Refresh for {clinic_id} {schedule_date} already in flight or circuit open")
        return False

    from .tasks import refresh_schedule_task

    try:
        refresh_schedule_task.delay(clinic_id, to_date(schedule_date).isoformat())
    except Exception as e:
        logger.error(f"Could not queue schedule refresh for {clinic_id} {schedule_date}: {e}")
        refreshCache.set_refresh_error(clinic_id, schedule_date, str(e))
        return False
    return True


def refresh_schedule_from_authority(clinic_id: str, schedule_date, client: AuthorityClient = None) -> int:
    """
    Upsert AUTHORITY_SYNC snapshots for every provider of a clinic on one date.

    Returns:
        number of snapshot rows written
    """
    client = client or AuthorityClient()
    target = to_date(schedule_date)
    rows = client.get_provider_schedule(clinic_id, target)
    if not rows:
        logger.warning(f"No authority schedule for clinic {clinic_id} on {target}")
        return 0

    written = 0
    for item in rows:
        hours = str(item.get('jadwal') or '')
        start, _, end = (part.strip() for part in hours.partition('-'))
        if not start or item.get('kodedokter') in (None, ''):
            logger.warning(f"Skipping authority schedule row without hours or provider: {item}")
            continue

        ScheduleSnapshot.objects.update_or_create(
            clinic_id=item.get('kodepoli') or clinic_id,
            provider_id=str(item['kodedokter']),
            schedule_date=target,
            start_time=format_hours(start),
            defaults={
                'end_time': format_hours(end) if end else '',
                'quota': int(item.get('kapasitaspasien') or 0),
                'clinic_name': item.get('namapoli') or '',
                'provider_name': item.get('namadokter') or '',
                'source': ScheduleSnapshot.SOURCE_AUTHORITY_SYNC,
                'fetched_at': timezone.now(),
            },
        )
        written += 1

    logger.info(f"Refreshed {written} schedule rows for clinic {clinic_id} on {target}")
    return written


def run_schedule_refresh(clinic_id: str, schedule_date, client: AuthorityClient = None) -> Dict[str, Any]:
    """Fetch and release the refresh lock, recording failures on the circuit breaker"""
    try:
        written = refresh_schedule_from_authority(clinic_id, schedule_date, client=client)
        refreshCache.complete_refresh_lock(clinic_id, schedule_date)
        return {'clinic_id': clinic_id, 'date': str(to_date(schedule_date)), 'rows': written}
    except Exception as e:
        logger.error(f"Schedule refresh failed for {clinic_id} {schedule_date}: {e}")
        logger.error(traceback.format_exc())
        refreshCache.set_refresh_error(clinic_id, schedule_date, str(e))
        return {'clinic_id': clinic_id, 'date': str(to_date(schedule_date)), 'error': str(e)}


def manual_refresh(clinics: Iterable[str], dates: Iterable, force: bool = True,
                   client: AuthorityClient = None) -> List[Dict[str, Any]]:
    """
    Refresh schedules synchronously for every clinic/date pair.

    Args:
        force: ignore an open circuit (operator-triggered refresh)
    """
    client = client or AuthorityClient()
    results = []
    for schedule_date in dates:
        for clinic_id in clinics:
            if force and refreshCache.is_circuit_open(clinic_id, schedule_date):
                refreshCache.clear_refresh_lock(clinic_id, schedule_date)
            if not refreshCache.set_refresh_lock(clinic_id, schedule_date):
                results.append({'clinic_id': clinic_id, 'date': str(to_date(schedule_date)),
                                'skipped': 'refresh in flight or circuit open'})
                continue
            results.append(run_schedule_refresh(clinic_id, schedule_date, client=client))
    return results


def refresh_schedules_sweep(client: AuthorityClient = None) -> List[Dict[str, Any]]:
    """Daily refresh of every configured clinic for today and tomorrow"""
    today = timezone.now().date()
    return manual_refresh(
        settings.QSYNC_REFRESH_CLINICS,
        [today, today + timedelta(days=1)],
        force=False,
        client=client,
    )
