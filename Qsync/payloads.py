"""Request bodies for the authority queue API"""

import logging
from typing import Any, Dict

from .milestones import Milestone
from .quotaAggregator import find_schedule
from .timeUtils import to_epoch_millis

logger = logging.getLogger(__name__)

VISIT_NOTE = "Harap hadir 30 menit lebih awal"
DEFAULT_VISIT_TYPE = 3


class PayloadError(ValueError):
    """A payload would be contractually invalid and must not be sent"""


def _practice_hours(visit, quota: Dict[str, Any]) -> str:
    hours = quota.get('practice_hours') or ''
    if hours:
        return hours
    schedule = find_schedule(visit.clinic_id, visit.provider_id, visit.visit_date)
    return schedule.practice_hours if schedule else ''


def build_registration_payload(visit) -> Dict[str, Any]:
    """
    Build the /antrean/add body for a READY visit.

    Raises:
        PayloadError: practice hours cannot be resolved, or the provider code
            is not numeric
    """
    snapshot = visit.payload_snapshot or {}
    quota = snapshot.get('quota') or {}
    patient = snapshot.get('patient') or {}

    practice_hours = _practice_hours(visit, quota)
    if not practice_hours:
        raise PayloadError(f"No practice hours for {visit.clinic_id}/{visit.provider_id} on {visit.visit_date}")

    try:
        provider_code = int(visit.provider_id)
    except (TypeError, ValueError):
        raise PayloadError(f"Provider code {visit.provider_id!r} is not numeric")

    return {
        'kodebooking': visit.visit_id,
        'jenispasien': 'JKN' if visit.is_insured else 'NON JKN',
        'nomorkartu': patient.get('card_no') or '-',
        'nik': patient.get('nik') or '-',
        'nohp': patient.get('phone') or '-',
        'kodepoli': visit.clinic_id,
        'namapoli': snapshot.get('clinic_name') or '',
        'pasienbaru': 1 if patient.get('is_new') else 0,
        'norm': visit.medical_record_no or '-',
        'tanggalperiksa': visit.visit_date.isoformat(),
        'kodedokter': provider_code,
        'namadokter': snapshot.get('provider_name') or '',
        'jampraktek': practice_hours,
        'jeniskunjungan': visit.visit_type or DEFAULT_VISIT_TYPE,
        'nomorreferensi': patient.get('referral_no') or '',
        'nomorantrean': visit.queue_number,
        'angkaantrean': visit.queue_sequence,
        'estimasidilayani': quota.get('estimated_service_ms') or 0,
        'sisakuotajkn': quota.get('remaining') or 0,
        'kuotajkn': quota.get('capacity') or 0,
        'sisakuotanonjkn': quota.get('non_insured_remaining') or 0,
        'kuotanonjkn': quota.get('non_insured_capacity') or 0,
        'keterangan': VISIT_NOTE,
    }


def build_milestone_payload(visit, milestone) -> Dict[str, Any]:
    """Build the /antrean/updatewaktu body for a reached milestone"""
    entry = visit.progress.get(milestone)
    if entry is None or entry.event_at is None:
        raise PayloadError(f"Milestone {int(milestone)} of {visit.visit_id} has no event time")
    return {
        'kodebooking': visit.visit_id,
        'taskid': int(Milestone(milestone)),
        'waktu': to_epoch_millis(entry.event_at),
    }
