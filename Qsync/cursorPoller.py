import logging
import traceback
from typing import Any, Dict, List

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from . import hisSource, pollingState, scheduleValidator, taskValidator
from .milestones import IllegalTransition, Milestone, ProgressMap, ProgressStatus
from .models import Visit
from .quotaAggregator import calculate_quota, quota_snapshot
from .timeUtils import compose_local_datetime, parse_local_datetime, to_date

logger = logging.getLogger(__name__)

STREAM_MILESTONES = {
    'REGISTER': Milestone.REGISTER,
    'CHECKIN': Milestone.CHECKIN,
    'START': Milestone.START,
    'FINISH': Milestone.FINISH,
    'PHARMACY_STARTED': Milestone.PHARMACY_STARTED,
    'CLOSE': Milestone.CLOSE,
}


def _int_or_none(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class CursorPoller:
    """Drains one HIS milestone stream into the visit store"""

    def __init__(self, stream: str, batch_size: int = None):
        if stream not in STREAM_MILESTONES:
            raise ValueError(f"Unknown stream {stream!r}, expected one of {', '.join(STREAM_MILESTONES)}")
        self.stream = stream
        self.milestone = STREAM_MILESTONES[stream]
        self.batch_size = batch_size or settings.QSYNC_POLL_BATCH_SIZE

    def poll(self) -> Dict[str, Any]:
        """
        Fetch and apply batches until the stream is drained.

        Each batch is committed on its own. A fatal error rolls the current batch
        back and ends the run; it is reported in the result, never raised.
        """
        stats = {'stream': self.stream, 'batches': 0, 'rows': 0,
                 'created': 0, 'updated': 0, 'skipped': 0}

        while True:
            position = pollingState.get_position(self.stream)
            cursor_value = position[0]
            try:
                rows = self._fetch(*position)
                if not rows:
                    break
                batch = self._process_batch(rows)
            except Exception as e:
                logger.error(f"Poll of {self.stream} failed after cursor {cursor_value}: {e}")
                logger.error(traceback.format_exc())
                pollingState.rollback(self.stream, str(e))
                stats['error'] = str(e)
                return stats

            if batch['rows'] == 0:
                # first row already deferred
                break

            watermark = pollingState.commit(self.stream)
            stats['batches'] += 1
            stats['rows'] += batch['rows']
            for outcome in ('created', 'updated', 'skipped'):
                stats[outcome] += batch[outcome]

            if batch['stop'] or watermark.position <= position:
                break

        stats['cursor'] = pollingState.get_cursor(self.stream)
        if stats['rows']:
            logger.info(f"Polled {self.stream}: {stats}")
        return stats

    def _fetch(self, cursor_value, after_key='') -> List[Dict[str, Any]]:
        if self.milestone == Milestone.REGISTER:
            return hisSource.fetch_register_rows(cursor_value, self.batch_size, after_key)
        return hisSource.fetch_milestone_rows(self.milestone, cursor_value, self.batch_size, after_key)

    def _event_time(self, row):
        if self.milestone == Milestone.REGISTER:
            return compose_local_datetime(row['tgl_registrasi'], row['jam_reg'])
        return parse_local_datetime(row['event_time'])

    def _process_batch(self, rows) -> Dict[str, Any]:
        batch = {'rows': 0, 'created': 0, 'updated': 0, 'skipped': 0, 'stop': False}
        today = timezone.now().date()
        last_position = None

        for row in rows:
            event_at = self._event_time(row)
            if self.milestone == Milestone.REGISTER and to_date(row['tgl_registrasi']) > today:
                # later rows are dated later still; leave them for a future run
                logger.info(f"Registration {row['no_rawat']} is dated {row['tgl_registrasi']}, deferred")
                batch['stop'] = True
                break

            if self.milestone == Milestone.REGISTER:
                outcome = self._process_register(row, event_at)
            else:
                outcome = self._process_milestone(row, event_at)
            batch[outcome] += 1
            batch['rows'] += 1
            position = (event_at, row['no_rawat'])
            if last_position is None or position > last_position:
                last_position = position

        if last_position is not None:
            pollingState.update_batch_cursor(self.stream, *last_position)
        return batch

    def _process_register(self, row, event_at) -> str:
        visit_id = row['no_rawat']
        if Visit.objects.filter(visit_id=visit_id).exists():
            return 'skipped'

        clinic_id = row.get('clinic_id') or ''
        provider_id = str(row.get('provider_id') or '')
        visit_date = to_date(row['tgl_registrasi'])
        queue_sequence = _int_or_none(row.get('no_reg')) or 0

        validation = scheduleValidator.validate(clinic_id, provider_id, visit_date)
        snapshot = {
            'clinic_name': row.get('clinic_name') or '',
            'provider_name': row.get('provider_name') or '',
            'patient': {
                'nik': row.get('no_ktp') or '',
                'card_no': row.get('no_peserta') or '',
                'phone': row.get('no_tlp') or '',
                'is_new': (row.get('status_poli') or '').strip().lower() == 'baru',
            },
            'quota': None,
        }
        if validation.valid:
            quota = calculate_quota(clinic_id, provider_id, visit_date)
            if quota is not None:
                snapshot['quota'] = quota_snapshot(quota, queue_sequence)

        progress = ProgressMap()
        progress.apply(Milestone.REGISTER, validation.status, reason=validation.blocked_reason,
                       event_at=event_at, now=timezone.now())

        try:
            with transaction.atomic():
                Visit.objects.create(
                    visit_id=visit_id,
                    clinic_id=clinic_id,
                    provider_id=provider_id,
                    visit_date=visit_date,
                    registered_at=event_at,
                    queue_number=str(row.get('no_reg') or ''),
                    queue_sequence=queue_sequence,
                    medical_record_no=row.get('no_rkm_medis') or '',
                    visit_type=_int_or_none(row.get('jenis_kunjungan')),
                    is_insured=True,
                    task_progress=progress.to_json(),
                    payload_snapshot=snapshot,
                    status=validation.status.value,
                    blocked_reason=validation.blocked_reason,
                )
        except IntegrityError:
            logger.debug(f"Visit {visit_id} already stored")
            return 'skipped'

        if validation.valid:
            logger.info(f"Registered {visit_id} READY for {clinic_id}/{provider_id} {visit_date}")
        else:
            logger.warning(f"Registered {visit_id} BLOCKED: {validation.blocked_reason}")
        return 'created'

    def _process_milestone(self, row, event_at) -> str:
        visit = Visit.objects.filter(visit_id=row['no_rawat']).first()
        if visit is None:
            logger.info(f"Milestone {int(self.milestone)} for unknown visit {row['no_rawat']}, skipped")
            return 'skipped'

        current = visit.progress.status(self.milestone)
        if current not in (None, ProgressStatus.DRAFT):
            return 'skipped'

        try:
            visit.set_progress(self.milestone, ProgressStatus.DRAFT, event_at=event_at)
        except IllegalTransition:
            # sent by the dispatcher since the visit was read
            return 'skipped'
        taskValidator.check_dependency(visit, self.milestone, created_by='poller')
        return 'updated'


def poll_stream(stream: str) -> Dict[str, Any]:
    return CursorPoller(stream).poll()
