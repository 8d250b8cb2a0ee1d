"""
Refresh locks and circuit breaker for authority schedule fetches.

Entries live in the ``qsync`` cache alias, keyed by (clinic, date). With a
shared backend such as Redis the dedup guarantee holds across processes; with
locmem it holds within one worker.

Entry shape::

    {'refreshing': bool, 'last_refreshed': float | None,
     'last_error': float | None, 'error_message': str | None}
"""

import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, Optional

from django.conf import settings
from django.core.cache import caches

from .timeUtils import to_date

logger = logging.getLogger(__name__)

CACHE_ALIAS = 'qsync'


def _cache():
    return caches[CACHE_ALIAS]


def _key(clinic_id: str, schedule_date) -> str:
    return f"qsync:refresh:{clinic_id}:{to_date(schedule_date).isoformat()}"


def get_refresh_lock(clinic_id: str, schedule_date) -> Optional[Dict[str, Any]]:
    return _cache().get(_key(clinic_id, schedule_date))


def set_refresh_lock(clinic_id: str, schedule_date) -> bool:
    """Claim the refresh for (clinic, date). False if someone else holds it or the circuit is open."""
    key = _key(clinic_id, schedule_date)
    entry = {'refreshing': True, 'last_refreshed': None, 'last_error': None, 'error_message': None}
    if _cache().add(key, entry, settings.QSYNC_REFRESH_LOCK_TTL):
        return True

    current = _cache().get(key)
    if current and current.get('refreshing'):
        return False
    if is_circuit_open(clinic_id, schedule_date):
        return False
    _cache().set(key, entry, settings.QSYNC_REFRESH_LOCK_TTL)
    return True


def complete_refresh_lock(clinic_id: str, schedule_date):
    _cache().set(
        _key(clinic_id, schedule_date),
        {'refreshing': False, 'last_refreshed': time.time(), 'last_error': None, 'error_message': None},
        settings.QSYNC_REFRESH_LOCK_TTL,
    )


def set_refresh_error(clinic_id: str, schedule_date, error_message: str = ''):
    """Record a failed refresh; opens the circuit for QSYNC_CIRCUIT_OPEN_SECONDS"""
    logger.warning(f"Schedule refresh failed for {clinic_id} {schedule_date}: {error_message}")
    _cache().set(
        _key(clinic_id, schedule_date),
        {'refreshing': False, 'last_refreshed': None, 'last_error': time.time(), 'error_message': error_message},
        max(settings.QSYNC_REFRESH_LOCK_TTL, settings.QSYNC_CIRCUIT_OPEN_SECONDS),
    )


def is_circuit_open(clinic_id: str, schedule_date) -> bool:
    entry = get_refresh_lock(clinic_id, schedule_date)
    if not entry or not entry.get('last_error'):
        return False
    return time.time() - entry['last_error'] < settings.QSYNC_CIRCUIT_OPEN_SECONDS


def clear_refresh_lock(clinic_id: str, schedule_date):
    _cache().delete(_key(clinic_id, schedule_date))


@contextmanager
def single_flight(name: str, ttl: int = None):
    """
    Claim a named run slot. Yields True when this caller owns the slot, False
    when another run of the same task is still in progress.
    """
    key = f"qsync:task:{name}"
    acquired = _cache().add(key, time.time(), ttl or settings.QSYNC_TASK_LOCK_TTL)
    try:
        yield acquired
    finally:
        if acquired:
            _cache().delete(key)
